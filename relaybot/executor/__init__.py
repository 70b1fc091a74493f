"""进程执行器模块：以子进程方式调用外部 Agent。"""

from relaybot.executor.process import ExecutionResult, ProcessExecutor

__all__ = ["ProcessExecutor", "ExecutionResult"]
