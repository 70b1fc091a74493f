"""
健康探针 - HealthMonitor 在每个巡检周期并发运行的检查项。

每个探针返回一个 ProbeResult；探针自身抛出的异常（包括 ProbeError）
由 HeartbeatService 捕获并转换为失败的 ProbeResult，不会中断巡检。

内置探针：
- scheduler_fresh / taskrunner_fresh：调度循环与任务轮询写入的新鲜度标记是否过期
- stuck_tasks：运行时间超过阈值（默认 2 小时）的后台任务
- failing_schedules：最近 N 次运行全部失败的 Schedule（"中毒"）
- agent_command：Agent 可执行文件是否在 PATH 上
- store_integrity：SQLite quick_check
- http:<url>：对配置的 URL 做 GET 连通性检查（httpx）

二开提示：
- 新增探针：继承 HealthProbe 实现 check()，并在 build_probes() 中注册
"""

import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

from relaybot.agent.runner import POLL_MARKER
from relaybot.config.schema import Config
from relaybot.cron.service import TICK_MARKER
from relaybot.errors import ProbeError
from relaybot.store.sqlite import StateStore
from relaybot.utils.helpers import now_ms, time_ago


@dataclass
class ProbeResult:
    """一次探针检查的结果。name 是稳定的身份标识，detail 只用于展示。"""
    name: str
    ok: bool
    detail: str = ""


class HealthProbe(ABC):
    """健康探针基类。"""

    name: str = "probe"

    @abstractmethod
    async def check(self) -> ProbeResult:
        pass

    def passed(self, detail: str = "") -> ProbeResult:
        return ProbeResult(self.name, True, detail)

    def failed(self, detail: str) -> ProbeResult:
        return ProbeResult(self.name, False, detail)


class MarkerFreshnessProbe(HealthProbe):
    """检查某个循环写入的新鲜度标记是否在阈值内。"""

    def __init__(self, name: str, store: StateStore, marker: str, stale_after_s: int, clock=now_ms):
        self.name = name
        self.store = store
        self.marker = marker
        self.stale_after_ms = stale_after_s * 1000
        self.clock = clock

    async def check(self) -> ProbeResult:
        value = self.store.get_marker(self.marker)
        if value is None:
            return self.failed(f"{self.marker} has never been written")
        now = self.clock()
        if now - value > self.stale_after_ms:
            return self.failed(f"{self.marker} is stale (last {time_ago(value, now)})")
        return self.passed(f"last {time_ago(value, now)}")


class StuckTasksProbe(HealthProbe):
    name = "stuck_tasks"

    def __init__(self, store: StateStore, stuck_after_s: int, clock=now_ms):
        self.store = store
        self.stuck_after_ms = stuck_after_s * 1000
        self.clock = clock

    async def check(self) -> ProbeResult:
        now = self.clock()
        stuck = [
            t for t in self.store.list_tasks(status="running")
            if t.started_at_ms and now - t.started_at_ms > self.stuck_after_ms
        ]
        if stuck:
            return self.failed(f"{len(stuck)} task(s) running too long: " + ", ".join(t.task_desc for t in stuck))
        return self.passed()


class FailingSchedulesProbe(HealthProbe):
    """最近 threshold 次运行全部为 failure/timeout 的启用中 Schedule。"""

    name = "failing_schedules"

    def __init__(self, store: StateStore, threshold: int = 3):
        self.store = store
        self.threshold = threshold

    async def check(self) -> ProbeResult:
        enabled = {s.id: s for s in self.store.list_schedules(include_disabled=False)}
        poisoned = []
        for schedule_id, runs in self.store.recent_runs_by_schedule(self.threshold).items():
            if schedule_id not in enabled or len(runs) < self.threshold:
                continue
            if all(r.status in ("failure", "timeout") for r in runs):
                poisoned.append(enabled[schedule_id].label)
        if poisoned:
            return self.failed(f"Last {self.threshold} runs failed: " + ", ".join(sorted(poisoned)))
        return self.passed()


class AgentCommandProbe(HealthProbe):
    name = "agent_command"

    def __init__(self, command: list[str]):
        self.command = command

    async def check(self) -> ProbeResult:
        executable = self.command[0] if self.command else ""
        path = shutil.which(executable) if executable else None
        if not path:
            return self.failed(f"Agent executable not found on PATH: {executable or '(empty)'}")
        return self.passed(path)


class StoreIntegrityProbe(HealthProbe):
    """SQLite quick_check。存储损坏时 StoreCorruptedError 向上传播，由宿主进程终止。"""

    name = "store_integrity"

    def __init__(self, store: StateStore):
        self.store = store

    async def check(self) -> ProbeResult:
        self.store.check_integrity()
        return self.passed()


class HttpProbe(HealthProbe):
    """对 URL 做 GET 请求，5xx 或网络错误视为失败。"""

    def __init__(self, url: str, timeout_s: float = 10.0, transport: httpx.AsyncBaseTransport | None = None):
        self.url = url
        self.name = f"http:{url}"
        self.timeout_s = timeout_s
        self.transport = transport

    async def check(self) -> ProbeResult:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_s, follow_redirects=True, transport=self.transport
            ) as client:
                response = await client.get(self.url)
        except httpx.HTTPError as e:
            raise ProbeError(self.name, f"request failed: {e}") from e
        if response.status_code >= 500:
            return self.failed(f"HTTP {response.status_code}")
        return self.passed(f"HTTP {response.status_code}")


def build_probes(store: StateStore, config: Config, clock=now_ms) -> list[HealthProbe]:
    """根据配置构建内置探针列表。"""
    hb = config.heartbeat
    probes: list[HealthProbe] = []
    if config.scheduler.enabled:
        stale_s = max(hb.stale_after_s, config.scheduler.tick_interval_s * 3)
        probes.append(MarkerFreshnessProbe("scheduler_fresh", store, TICK_MARKER, stale_s, clock))
    stale_s = max(hb.stale_after_s, config.tasks.poll_interval_s * 3)
    probes.append(MarkerFreshnessProbe("taskrunner_fresh", store, POLL_MARKER, stale_s, clock))
    probes.extend([
        StuckTasksProbe(store, config.tasks.stuck_after_s, clock),
        FailingSchedulesProbe(store, hb.failing_runs_threshold),
        AgentCommandProbe(config.agent.command),
        StoreIntegrityProbe(store),
    ])
    probes.extend(HttpProbe(url) for url in hb.http_probes)
    return probes
