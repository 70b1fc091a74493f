"""
投递路由模块 - 根据目标地址把消息路由到对应的投递渠道。

目标地址格式为 "channel:chat_id"：
- "cli:direct"        → ConsoleDeliverer
- "telegram:123456"   → TelegramDeliverer

【二开提示】
添加新渠道的步骤：
1. 在 config/schema.py 中添加新渠道的配置类
2. 创建 delivery/your_channel.py 继承 BaseDeliverer
3. 在 from_config() 中添加初始化代码块
"""

from __future__ import annotations

from typing import Any

from loguru import logger
from rich.console import Console

from relaybot.config.schema import Config
from relaybot.delivery.base import BaseDeliverer
from relaybot.delivery.console import ConsoleDeliverer
from relaybot.errors import DeliveryError
from relaybot.utils.helpers import parse_destination


class DeliveryRouter:
    """
    投递路由器 - 管理所有投递渠道的生命周期并按目标地址分发。

    属性:
        deliverers: 已注册的渠道字典 {渠道名: 渠道实例}
    """

    def __init__(self, deliverers: list[BaseDeliverer] | None = None):
        self.deliverers: dict[str, BaseDeliverer] = {}
        for deliverer in deliverers or []:
            self.register(deliverer)

    @classmethod
    def from_config(cls, config: Config, console: Console | None = None) -> "DeliveryRouter":
        """根据配置初始化所有已启用的渠道（控制台渠道始终启用）。"""
        router = cls([ConsoleDeliverer(console)])

        if config.channels.telegram.enabled:
            # 延迟导入：未启用 Telegram 时不加载 python-telegram-bot
            from relaybot.delivery.telegram import TelegramDeliverer
            router.register(TelegramDeliverer(config.channels.telegram))
            logger.info("Telegram channel enabled")

        return router

    def register(self, deliverer: BaseDeliverer) -> None:
        self.deliverers[deliverer.name] = deliverer

    async def start_all(self) -> None:
        """逐个启动渠道。单个渠道启动失败不影响其他渠道。"""
        for name, deliverer in self.deliverers.items():
            try:
                await deliverer.start()
            except Exception as e:
                logger.error(f"Failed to start channel {name}: {e}")

    async def stop_all(self) -> None:
        for name, deliverer in self.deliverers.items():
            try:
                await deliverer.stop()
                logger.info(f"Stopped {name} channel")
            except Exception as e:
                logger.error(f"Error stopping {name}: {e}")

    async def deliver(self, destination: str, text: str) -> None:
        """
        把一条消息投递到目标地址。

        异常:
            DeliveryError: 目标地址非法或渠道未启用（permanent），或渠道投递失败
        """
        try:
            channel, chat_id = parse_destination(destination)
        except ValueError as e:
            raise DeliveryError(str(e), permanent=True) from e

        deliverer = self.deliverers.get(channel)
        if deliverer is None:
            raise DeliveryError(f"Unknown channel: {channel}", permanent=True)

        await deliverer.send(chat_id, text)

    def get_status(self) -> dict[str, Any]:
        return {
            name: {"enabled": True, "running": deliverer.is_running}
            for name, deliverer in self.deliverers.items()
        }

    @property
    def enabled_channels(self) -> list[str]:
        return list(self.deliverers.keys())
