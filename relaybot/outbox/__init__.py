"""发件箱模块：生产者与投递层之间的持久化队列。"""

from relaybot.outbox.dispatcher import OutboxDispatcher
from relaybot.outbox.service import Outbox

__all__ = ["Outbox", "OutboxDispatcher"]
