"""后台任务模块：按需创建的 Agent 任务及其执行器。"""

from relaybot.agent.runner import TaskRunner

__all__ = ["TaskRunner"]
