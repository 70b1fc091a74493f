"""
告警分诊 - 决定一组失败的探针结果是否值得打扰用户，以及告警文本是什么。

分诊器接口：triage(failures) → 告警文本，或 "SKIP" 表示不值得告警。
- AgentTriager：把失败列表交给外部 Agent 判断（生产环境使用）
- RuleTriager：静态格式化，不做判断（Agent 分诊失败时的兜底，也用于测试）
"""

from abc import ABC, abstractmethod
from pathlib import Path

from relaybot.errors import ExecutionTimeoutError, TransientExecutionError
from relaybot.executor.process import ProcessExecutor
from relaybot.heartbeat.probes import ProbeResult

TRIAGE_PROMPT = """You are the health monitor of a personal assistant host.
The following health checks failed:

{health_results}

Decide whether this warrants interrupting the user.
If it does, reply with a terse alert (at most 3 lines) saying what is broken.
If it is transient or not actionable, reply with just: SKIP"""


def format_failures(failures: list[ProbeResult]) -> str:
    return "\n".join(f"- {f.name}: {f.detail}" for f in failures)


class Triager(ABC):
    """分诊器接口。"""

    @abstractmethod
    async def triage(self, failures: list[ProbeResult]) -> str:
        """返回告警文本，或 "SKIP"。"""
        pass


class RuleTriager(Triager):
    """静态分诊：始终告警，把失败项逐条列出。"""

    def __init__(self, title: str = "Relaybot health alert"):
        self.title = title

    async def triage(self, failures: list[ProbeResult]) -> str:
        return f"{self.title}\n\n{format_failures(failures)}"


class AgentTriager(Triager):
    """
    Agent 分诊：调用外部 Agent 判断是否告警。

    调用失败（非零退出、无法解析、超时）时抛出异常，由 HeartbeatService 回落到 RuleTriager。
    """

    def __init__(self, executor: ProcessExecutor, timeout_s: float = 120, cwd: Path | None = None):
        self.executor = executor
        self.timeout_s = timeout_s
        self.cwd = cwd

    async def triage(self, failures: list[ProbeResult]) -> str:
        prompt = TRIAGE_PROMPT.format(health_results=format_failures(failures))
        result = await self.executor.run(prompt, cwd=self.cwd, timeout_s=self.timeout_s)
        if result.outcome == "timeout":
            raise ExecutionTimeoutError(self.timeout_s)
        if not result.ok:
            raise TransientExecutionError(result.error or "triage failed", exit_code=result.exit_code)
        return result.output
