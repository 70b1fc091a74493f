"""
进程执行器 - 以子进程方式调用外部推理 Agent。

Agent 被当作黑盒命令行程序：
- 指令（payload）写入 stdin
- 输出从 stdout 读取；output_format="json" 时取 JSON 的 result 字段
- 每次调用都有硬超时，超时后杀掉整个进程组

调用结果不会以异常形式抛给调用方，而是统一返回 ExecutionResult，
由调用方（CronService / TaskRunner / AgentTriager）把结果写入状态存储。

类比 Java: ProcessBuilder + Future.get(timeout)，超时后 destroyForcibly()。
"""

import asyncio
import json
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Literal

from loguru import logger

from relaybot.errors import ExecutionTimeoutError, TransientExecutionError

Outcome = Literal["success", "failure", "timeout"]


@dataclass
class ExecutionResult:
    """一次 Agent 调用的结构化结果。"""
    outcome: Outcome
    output: str = ""
    error: str | None = None
    exit_code: int | None = None
    duration_ms: int = 0
    pid: int | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == "success"


class ProcessExecutor:
    """
    外部 Agent 的子进程执行器。

    参数:
        command: 命令行（如 ["claude", "-p", "--output-format", "json", ...]）
        output_format: "json" 取 result 字段；"text" 直接使用 stdout
        default_timeout_s: 未指定超时时使用的默认值（秒）
        max_output_chars: 输出截断上限，防止超长输出撑爆状态存储
    """

    def __init__(
        self,
        command: list[str],
        output_format: str = "json",
        default_timeout_s: float = 600,
        max_output_chars: int = 50_000,
    ):
        if not command:
            raise ValueError("Agent command must not be empty")
        self.command = list(command)
        self.output_format = output_format
        self.default_timeout_s = default_timeout_s
        self.max_output_chars = max_output_chars

    async def run(
        self,
        payload: str,
        cwd: Path | str | None = None,
        timeout_s: float | None = None,
        on_spawn: Callable[[int], None] | None = None,
    ) -> ExecutionResult:
        """
        执行一次 Agent 调用。

        参数:
            payload: 写入 stdin 的指令文本
            cwd: 子进程工作目录
            timeout_s: 超时（秒），None 时使用 default_timeout_s
            on_spawn: 子进程启动后回调，参数为 pid（用于把 pid 记录到存储）

        返回:
            ExecutionResult，outcome 为 success / failure / timeout
        """
        timeout = timeout_s or self.default_timeout_s
        started = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
                # 独立进程组：超时时可以连同 Agent 派生的子进程一起杀掉
                start_new_session=True,
            )
        except OSError as e:
            logger.error(f"Failed to start agent {self.command[0]}: {e}")
            return ExecutionResult(
                outcome="failure",
                error=f"Failed to start agent: {e}",
                duration_ms=self._elapsed_ms(started),
            )

        logger.debug(f"Agent spawned pid={process.pid}, payload {len(payload)} chars, timeout {timeout}s")
        if on_spawn:
            try:
                on_spawn(process.pid)
            except Exception:
                await self._kill(process)
                raise

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(payload.encode("utf-8")),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            await self._kill(process)
            err = ExecutionTimeoutError(timeout)
            logger.warning(f"Agent pid={process.pid}: {err}")
            return ExecutionResult(
                outcome="timeout",
                error=str(err),
                exit_code=process.returncode,
                duration_ms=self._elapsed_ms(started),
                pid=process.pid,
            )
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        duration_ms = self._elapsed_ms(started)
        stdout_text = stdout.decode("utf-8", errors="replace")
        stderr_text = stderr.decode("utf-8", errors="replace")

        try:
            if process.returncode != 0:
                raise TransientExecutionError(
                    f"Agent exited {process.returncode}: {stderr_text.strip()[-2000:]}",
                    exit_code=process.returncode,
                )
            output = self._parse_output(stdout_text)
        except TransientExecutionError as e:
            logger.warning(f"Agent pid={process.pid} failed: {e}")
            return ExecutionResult(
                outcome="failure",
                output=stdout_text[: self.max_output_chars],
                error=str(e),
                exit_code=process.returncode,
                duration_ms=duration_ms,
                pid=process.pid,
            )

        if len(output) > self.max_output_chars:
            output = output[: self.max_output_chars] + "\n... (truncated)"

        logger.debug(f"Agent pid={process.pid} finished in {duration_ms}ms, {len(output)} chars")
        return ExecutionResult(
            outcome="success",
            output=output,
            exit_code=process.returncode,
            duration_ms=duration_ms,
            pid=process.pid,
        )

    def _parse_output(self, stdout: str) -> str:
        """按 output_format 解析 stdout。JSON 无法解析时抛出 TransientExecutionError。"""
        if self.output_format != "json":
            return stdout.strip()

        try:
            parsed = json.loads(stdout)
        except json.JSONDecodeError as e:
            raise TransientExecutionError(f"Unparseable agent output: {e}") from e

        if not isinstance(parsed, dict):
            return stdout.strip()
        if parsed.get("is_error"):
            raise TransientExecutionError(f"Agent reported an error: {parsed.get('result', '')}")
        result = parsed.get("result")
        if result is None:
            return stdout.strip()
        return str(result).strip()

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        """强制终止子进程所在的整个进程组，并回收子进程。"""
        if process.returncode is None:
            kill_process_group(process.pid)
        await process.wait()

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)


def kill_process_group(pid: int) -> bool:
    """
    按 pid 杀掉进程组（进程以 start_new_session 启动，pgid == pid）。

    返回:
        True 表示发出了信号；进程已不存在时返回 False
    """
    try:
        os.killpg(pid, signal.SIGKILL)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        logger.warning(f"No permission to kill process group {pid}")
        return False


def is_process_alive(pid: int) -> bool:
    """检查 pid 对应的进程是否仍然存活（信号 0 探测）。"""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
