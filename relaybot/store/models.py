"""
持久化记录类型定义 - 状态存储拥有的全部实体。

本模块定义了编排核心的所有持久化数据结构：
- BuiltinHandler / FreeformInstruction：Schedule 载荷（带标签的变体）
- Schedule：命名的周期性/一次性工作单元
- ScheduleRun：Schedule 的一次具体触发
- Task：按需创建的后台任务
- OutboxEntry：等待投递的一条产出
- HeartbeatAlert：健康告警的去重记录

所有时间戳均为毫秒级 Unix 时间戳。
内存中的组件只持有每个周期刷新的临时视图，权威状态只在 StateStore 中。

二开提示：
- 如需添加新的载荷类型（如执行本地脚本），在 Payload 联合类型中增加一个变体，
  并在 cron/service.py 的 _dispatch 中补充对应分支
"""

from dataclasses import dataclass
from typing import Any, Literal, Union


# ==============================================================================
# Schedule 载荷：带标签的变体，分发点是有限、可穷举的分支
# ==============================================================================


@dataclass(frozen=True)
class BuiltinHandler:
    """引用一个内置的 Python 处理器（如 cleanup-tasks）。"""
    name: str


@dataclass(frozen=True)
class FreeformInstruction:
    """自由文本指令，原样交给外部推理 Agent 执行。"""
    text: str


Payload = Union[BuiltinHandler, FreeformInstruction]


def payload_to_dict(payload: Payload) -> dict[str, Any]:
    """把载荷序列化为可写入 JSON 列的字典。"""
    if isinstance(payload, BuiltinHandler):
        return {"kind": "builtin", "name": payload.name}
    if isinstance(payload, FreeformInstruction):
        return {"kind": "instruction", "text": payload.text}
    raise TypeError(f"Unknown payload type: {type(payload).__name__}")


def payload_from_dict(data: dict[str, Any]) -> Payload:
    """从 JSON 字典还原载荷。未知的 kind 直接报错，不做猜测。"""
    kind = data.get("kind")
    if kind == "builtin":
        return BuiltinHandler(name=data["name"])
    if kind == "instruction":
        return FreeformInstruction(text=data.get("text", ""))
    raise ValueError(f"Unknown payload kind: {kind!r}")


# ==============================================================================
# 实体
# ==============================================================================


ScheduleKind = Literal["system", "default", "user"]
RunStatus = Literal["running", "success", "failure", "timeout", "skipped"]
TaskStatus = Literal["pending", "running", "completed", "failed"]


@dataclass
class Schedule:
    """
    命名的周期性或一次性工作单元。

    id 全局唯一且创建后不可变；禁用的 Schedule 会被保留，不会被静默删除。
    schedule_expr 为 5 段 cron 表达式，或一次性形式 "@at <ISO-8601>"。
    """
    id: str
    schedule_expr: str
    payload: Payload
    name: str = ""
    enabled: bool = True
    kind: ScheduleKind = "user"
    timeout_override: int | None = None   # 单独的超时（秒），覆盖全局默认值
    destination: str | None = None        # 投递目标，None 表示使用默认目标
    report_failures: bool = False         # 失败时是否也写入发件箱（默认静默）
    tz: str | None = None                 # cron 表达式使用的时区（如 "Asia/Shanghai"）
    created_at_ms: int = 0
    updated_at_ms: int = 0

    @property
    def label(self) -> str:
        return self.name or self.id


@dataclass
class ScheduleRun:
    """Schedule 的一次具体触发。同一个 Schedule 最多只有一个 running 的 ScheduleRun。"""
    id: str
    schedule_id: str
    started_at_ms: int
    status: RunStatus = "running"
    ended_at_ms: int | None = None
    output: str | None = None
    error: str | None = None


@dataclass
class Task:
    """
    按需创建的后台任务，绑定一个投递目标。

    状态单向迁移：pending → running → {completed, failed}，离开 pending 后不会再回去。
    """
    id: str
    task_desc: str
    payload: str
    destination: str
    status: TaskStatus = "pending"
    created_at_ms: int = 0
    started_at_ms: int | None = None
    completed_at_ms: int | None = None
    result: str | None = None
    error: str | None = None
    pid: int | None = None
    timeout_override: int | None = None


@dataclass
class OutboxEntry:
    """
    一条等待投递的产出。

    只写一次；投递层读取时原子地标记为已投递，已投递的条目不会再次投递。
    """
    id: str
    destination: str
    body: str
    producer_ref: str
    produced_at_ms: int
    delivered: bool = False
    delivered_at_ms: int | None = None
    attempts: int = 0


@dataclass
class HeartbeatAlert:
    """健康告警去重记录。按指纹原地覆盖，从不删除。"""
    fingerprint: str
    last_sent_at_ms: int
    last_text: str = ""  # 最近一次投递的告警文本（仅供查看）
