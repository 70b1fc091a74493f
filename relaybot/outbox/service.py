"""
发件箱 - 生产者（定时任务、后台任务、健康巡检）与投递层之间的唯一接口。

生产者只负责 enqueue，不直接调用任何投递渠道；
投递层（OutboxDispatcher）通过 drain 原子地取走并标记条目。

约定：
- 哨兵 "SKIP"（大小写无关，忽略首尾空白、反引号与句点）或空文本不会写入
- 同一目标的条目按生产者完成顺序投递
- 不做内容去重：两个生产者产出相同文本时投递两次
"""

from loguru import logger

from relaybot.store.models import OutboxEntry
from relaybot.store.sqlite import StateStore
from relaybot.utils.helpers import is_noop, now_ms, short_id


class Outbox:
    """
    发件箱服务。

    参数:
        store: 状态存储
        clock: 返回毫秒时间戳的时钟（测试中可注入）
    """

    def __init__(self, store: StateStore, clock=now_ms):
        self.store = store
        self.clock = clock

    def enqueue(self, destination: str, body: str | None, producer_ref: str) -> OutboxEntry | None:
        """
        写入一条待投递产出。

        参数:
            destination: 目标地址（"channel:chat_id"）
            body: 正文；为哨兵或空文本时不写入
            producer_ref: 生产者引用（如 "schedule:<id>:<run_id>"、"task:<id>"）

        返回:
            写入的条目；被哨兵抑制时返回 None
        """
        if is_noop(body):
            logger.debug(f"Outbox: suppressed no-op output from {producer_ref}")
            return None

        entry = OutboxEntry(
            id=short_id(12),
            destination=destination,
            body=body.strip(),
            producer_ref=producer_ref,
            produced_at_ms=self.clock(),
        )
        self.store.enqueue(entry)
        logger.debug(f"Outbox: queued {entry.id} for {destination} from {producer_ref}")
        return entry

    def drain(self, destination: str) -> list[OutboxEntry]:
        """取走某个目标的全部未投递条目（原子地标记为已投递），按产出顺序排列。"""
        return self.store.drain(destination, self.clock())

    def requeue(self, entries: list[OutboxEntry]) -> int:
        """把投递失败的条目放回未投递状态，下个周期重试。"""
        return self.store.requeue([e.id for e in entries])

    def pending_destinations(self) -> list[str]:
        return self.store.pending_destinations()

    def pending(self, destination: str | None = None, limit: int = 50) -> list[OutboxEntry]:
        """查看未投递条目（不改变状态）。"""
        return self.store.list_entries(destination=destination, limit=limit)

    def purge(self, retention_days: int) -> int:
        """删除超过保留期的已投递条目。"""
        return self.store.purge_outbox(retention_days * 24 * 60 * 60 * 1000, self.clock())
