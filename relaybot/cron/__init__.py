"""定时任务调度模块：周期性与一次性地调用 Agent 或内置处理器。"""

from relaybot.cron.service import CronService

__all__ = ["CronService"]
