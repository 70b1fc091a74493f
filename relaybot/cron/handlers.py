"""
内置处理器与默认系统 Schedule。

内置处理器是注册到 CronService 的 Python 协程，通过 BuiltinHandler(name) 载荷引用：
- cleanup-tasks：清理过期/超量的终态后台任务
- purge-outbox：清理超过保留期的已投递发件箱条目

内置处理器的返回值只记录为运行输出，不写入发件箱。

二开提示：
- 新增内置处理器：在 build_handlers() 中注册，并按需在 default_schedules() 中加一个系统 Schedule
"""

from typing import Awaitable, Callable

from loguru import logger

from relaybot.config.schema import Config
from relaybot.store.models import BuiltinHandler, Schedule
from relaybot.store.sqlite import StateStore
from relaybot.utils.helpers import now_ms

BuiltinFn = Callable[[], Awaitable[str | None]]

CLEANUP_TASKS = "cleanup-tasks"
PURGE_OUTBOX = "purge-outbox"

_DAY_MS = 24 * 60 * 60 * 1000


def build_handlers(store: StateStore, config: Config, clock=now_ms) -> dict[str, BuiltinFn]:
    """构建内置处理器注册表 {名称: 协程函数}。"""

    async def cleanup_tasks() -> str:
        removed = store.purge_tasks(
            max_age_ms=config.tasks.retention_days * _DAY_MS,
            keep=config.tasks.max_terminal,
            now_ms=clock(),
        )
        logger.info(f"Cleanup: removed {removed} terminal tasks")
        return f"Removed {removed} terminal tasks"

    async def purge_outbox() -> str:
        removed = store.purge_outbox(config.outbox.retention_days * _DAY_MS, clock())
        logger.info(f"Cleanup: purged {removed} delivered outbox entries")
        return f"Purged {removed} delivered outbox entries"

    return {
        CLEANUP_TASKS: cleanup_tasks,
        PURGE_OUTBOX: purge_outbox,
    }


def default_schedules(created_at_ms: int) -> list[Schedule]:
    """系统引导时确保存在的 Schedule。已存在的不会被覆盖。"""
    return [
        Schedule(
            id="task-cleanup",
            name="Clean up terminal tasks",
            schedule_expr="0 3 * * *",
            payload=BuiltinHandler(CLEANUP_TASKS),
            kind="system",
            created_at_ms=created_at_ms,
            updated_at_ms=created_at_ms,
        ),
        Schedule(
            id="outbox-purge",
            name="Purge delivered outbox entries",
            schedule_expr="30 3 * * *",
            payload=BuiltinHandler(PURGE_OUTBOX),
            kind="system",
            created_at_ms=created_at_ms,
            updated_at_ms=created_at_ms,
        ),
    ]
