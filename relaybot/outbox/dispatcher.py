"""
发件箱分发器 - 持续运行的投递循环。

工作流程（每个轮询周期）：
1. 列出有未投递条目的目标
2. 对每个目标 drain（原子地取走并标记）
3. 按顺序交给 DeliveryRouter 投递
4. 某条投递失败或投递中被取消时，把它和同批次剩余条目放回队列（保持顺序，至少一次投递）

类比 Java: Kafka Consumer 的 poll() 循环 + 手动 offset 回滚。
"""

import asyncio

from loguru import logger

from relaybot.delivery.router import DeliveryRouter
from relaybot.errors import DeliveryError, StoreCorruptedError
from relaybot.outbox.service import Outbox


class OutboxDispatcher:
    """
    发件箱分发器。

    参数:
        outbox: 发件箱服务
        router: 投递路由器
        poll_interval_s: 轮询间隔（秒）
    """

    def __init__(self, outbox: Outbox, router: DeliveryRouter, poll_interval_s: float = 2.0):
        self.outbox = outbox
        self.router = router
        self.poll_interval_s = poll_interval_s
        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Outbox dispatcher started (every {self.poll_interval_s}s)")

    def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            self._task = None

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.dispatch_once()
                await asyncio.sleep(self.poll_interval_s)
            except asyncio.CancelledError:
                break
            except StoreCorruptedError:
                raise
            except Exception as e:
                logger.error(f"Outbox dispatcher error: {e}")
                await asyncio.sleep(self.poll_interval_s)

    async def dispatch_once(self) -> int:
        """
        执行一个投递周期。

        返回:
            成功投递的条目数
        """
        delivered = 0
        for destination in self.outbox.pending_destinations():
            delivered += await self._dispatch_destination(destination)
        return delivered

    async def _dispatch_destination(self, destination: str) -> int:
        entries = self.outbox.drain(destination)
        delivered = 0
        index = 0
        try:
            for index, entry in enumerate(entries):
                try:
                    await self.router.deliver(destination, entry.body)
                except DeliveryError as e:
                    if e.permanent:
                        # 重试无意义，条目保持已投递状态，只记录日志
                        logger.error(f"Dropping outbox entry {entry.id} for {destination}: {e}")
                        continue
                    self._requeue_rest(destination, entries[index:], e)
                    break
                except Exception as e:
                    self._requeue_rest(destination, entries[index:], e)
                    break
                delivered += 1
        except asyncio.CancelledError:
            # 关闭时正在投递：当前条目和剩余条目放回队列，下次启动再投
            self.outbox.requeue(entries[index:])
            logger.warning(f"Delivery to {destination} cancelled, requeued {len(entries) - index} entries")
            raise
        if delivered:
            logger.info(f"Delivered {delivered} outbox entries to {destination}")
        return delivered

    def _requeue_rest(self, destination: str, remaining: list, error: Exception) -> None:
        self.outbox.requeue(remaining)
        logger.warning(f"Delivery to {destination} failed, requeued {len(remaining)} entries: {error}")
