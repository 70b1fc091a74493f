"""
错误类型定义 - relaybot 编排核心的异常分类。

除 StoreCorruptedError 外，所有异常都在本地恢复，
并以结构化结果（运行状态 + 错误详情）写入状态存储，不会让进程崩溃。

分类：
- TransientExecutionError：子进程非零退出或输出无法解析（不自动重试）
- ExecutionTimeoutError：子进程超时，已被强制终止
- TaskInterruptedError：宿主重启后发现的孤儿 running 记录（合成，不来自子进程）
- ProbeError：健康探针自身执行失败
- DeliveryError：投递到目标地址失败，条目保留未投递状态，下个周期重试
- StoreCorruptedError：存储损坏，致命错误，必须终止进程
"""


class RelaybotError(Exception):
    """relaybot 所有自定义异常的基类。"""


class TransientExecutionError(RelaybotError):
    """Agent 子进程返回非零退出码，或输出无法解析。"""

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.exit_code = exit_code


class ExecutionTimeoutError(RelaybotError, TimeoutError):
    """Agent 子进程超出时间上限，已被强制终止。"""

    def __init__(self, timeout_s: float):
        super().__init__(f"Agent timed out after {format_duration(timeout_s)}")
        self.timeout_s = timeout_s


class TaskInterruptedError(RelaybotError):
    """宿主进程重启后发现的孤儿 running 记录。"""

    def __init__(self, message: str = "interrupted"):
        super().__init__(message)


class ProbeError(RelaybotError):
    """健康探针执行失败（如网络不可达），会被当作失败的探针结果处理。"""

    def __init__(self, probe: str, message: str):
        super().__init__(f"{probe}: {message}")
        self.probe = probe


class DeliveryError(RelaybotError):
    """
    投递失败。对应的发件箱条目会被放回队列，下个周期重新投递。

    permanent=True 表示重试无意义（未知渠道、非法 chat_id），条目不再放回队列。
    """

    def __init__(self, message: str, permanent: bool = False):
        super().__init__(message)
        self.permanent = permanent


class InvalidTransitionError(RelaybotError):
    """后台任务状态的非法迁移（状态只能单向前进）。"""


class StoreCorruptedError(RelaybotError):
    """状态存储损坏。致命错误，不允许带着损坏的存储继续运行。"""


def format_duration(seconds: float) -> str:
    """把秒数格式化为 "1h 5m" / "30s" 这样的短文本。"""
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)
