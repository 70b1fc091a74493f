"""状态存储模块：崩溃安全的 SQLite 存储及其记录类型。"""

from relaybot.store.models import (
    BuiltinHandler,
    FreeformInstruction,
    HeartbeatAlert,
    OutboxEntry,
    Payload,
    Schedule,
    ScheduleRun,
    Task,
)
from relaybot.store.sqlite import StateStore

__all__ = [
    "StateStore",
    "BuiltinHandler",
    "FreeformInstruction",
    "Payload",
    "Schedule",
    "ScheduleRun",
    "Task",
    "OutboxEntry",
    "HeartbeatAlert",
]
