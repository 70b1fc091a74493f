"""
投递渠道基类模块 - 定义所有投递渠道的统一接口。

本模块提供了 BaseDeliverer 抽象基类，所有具体渠道（控制台、Telegram 等）
都必须继承此基类并实现其抽象方法。

【核心抽象方法】
- send(): 把一条文本投递到渠道内的某个聊天

【可选生命周期】
- start() / stop(): 建立与释放连接，默认什么都不做

【约定】
- 投递失败时抛出 DeliveryError；发件箱分发器据此把条目放回队列
- 重试无意义的失败（如非法 chat_id）抛出 DeliveryError(permanent=True)

【Java 开发者类比】
- BaseDeliverer 相当于 Java 的 interface MessageSender
"""

from abc import ABC, abstractmethod


class BaseDeliverer(ABC):
    """
    投递渠道抽象基类。

    属性:
        name: 渠道标识名（如 "cli"、"telegram"），即目标地址 "channel:chat_id" 的前半段
        _running: 渠道运行状态标志
    """

    name: str = "base"

    def __init__(self):
        self._running = False

    async def start(self) -> None:
        """建立连接（如初始化 Bot 客户端）。"""
        self._running = True

    async def stop(self) -> None:
        """释放连接。"""
        self._running = False

    @abstractmethod
    async def send(self, chat_id: str, text: str) -> None:
        """
        投递一条消息。

        参数:
            chat_id: 渠道内的聊天标识
            text: 消息正文

        异常:
            DeliveryError: 投递失败
        """
        pass

    @property
    def is_running(self) -> bool:
        return self._running
