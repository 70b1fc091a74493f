"""
健康巡检服务 - 定期检查宿主自身的健康状况，并对告警做分诊与去重。

本模块实现了周期性巡检：
- 按固定间隔（默认 30 分钟）运行一次巡检周期
- 周期流程：collect（并发运行全部探针）→ triage（分诊）→ 抑制或告警
- 全部探针通过时不调用分诊，也不写任何告警记录
- 分诊返回 SKIP 时不写发件箱、不更新告警记录
- 同一组失败探针（指纹相同）在抑制窗口（默认 2 小时）内最多告警一次

指纹只取失败探针的名称（排序后做 SHA-256），不含 detail 文本，
因此同一故障的描述措辞变化不会打破去重。

架构设计：
- 基于 asyncio.Task 的定期循环，先等待一个间隔再执行
- 告警通过 Outbox 投递，与其他产出走同一条投递路径
- Agent 分诊失败时回落到静态格式化（RuleTriager），去重规则照常生效

二开提示：
- run_once() 支持手动触发，适合调试（CLI: relaybot heartbeat check）
"""

import asyncio
import hashlib
from dataclasses import dataclass, field
from typing import Literal

from loguru import logger

from relaybot.errors import ProbeError, StoreCorruptedError
from relaybot.heartbeat.probes import HealthProbe, ProbeResult
from relaybot.heartbeat.triage import RuleTriager, Triager
from relaybot.outbox.service import Outbox
from relaybot.store.models import OutboxEntry
from relaybot.store.sqlite import StateStore
from relaybot.utils.helpers import is_noop, now_ms

# 默认巡检间隔：30 分钟
DEFAULT_HEARTBEAT_INTERVAL_S = 30 * 60

# 默认告警抑制窗口：2 小时
DEFAULT_SUPPRESSION_WINDOW_S = 2 * 60 * 60

HEARTBEAT_MARKER = "heartbeat.run"

CycleStatus = Literal["ok", "skipped", "suppressed", "alerted"]


def fingerprint(failures: list[ProbeResult]) -> str:
    """失败探针的稳定身份：排序后的名称做 SHA-256。"""
    names = sorted({f.name for f in failures})
    return hashlib.sha256("\n".join(names).encode("utf-8")).hexdigest()[:32]


@dataclass
class HeartbeatReport:
    """一次巡检周期的结果。"""
    status: CycleStatus
    results: list[ProbeResult] = field(default_factory=list)
    text: str | None = None
    fingerprint: str | None = None
    entry: OutboxEntry | None = None

    @property
    def failures(self) -> list[ProbeResult]:
        return [r for r in self.results if not r.ok]


class HeartbeatService:
    """
    健康巡检服务。

    参数:
        store: 状态存储（告警去重记录、巡检标记）
        outbox: 发件箱（告警投递）
        probes: 探针列表
        triager: 分诊器（通常为 AgentTriager）
        destination: 告警投递地址
        interval_s: 巡检间隔（秒）
        suppression_window_s: 告警去重窗口（秒）
        enabled: 是否启用
        fallback: 分诊失败时使用的分诊器
        clock: 返回毫秒时间戳的时钟
    """

    def __init__(
        self,
        store: StateStore,
        outbox: Outbox,
        probes: list[HealthProbe],
        triager: Triager,
        destination: str,
        interval_s: int = DEFAULT_HEARTBEAT_INTERVAL_S,
        suppression_window_s: int = DEFAULT_SUPPRESSION_WINDOW_S,
        enabled: bool = True,
        fallback: Triager | None = None,
        clock=now_ms,
    ):
        self.store = store
        self.outbox = outbox
        self.probes = probes
        self.triager = triager
        self.fallback = fallback or RuleTriager()
        self.destination = destination
        self.interval_s = interval_s
        self.suppression_window_ms = suppression_window_s * 1000
        self.enabled = enabled
        self.clock = clock
        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """启动巡检服务。如果 enabled=False 则直接返回不启动。"""
        if not self.enabled:
            logger.info("Heartbeat disabled")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Heartbeat started (every {self.interval_s}s, {len(self.probes)} probes)")

    def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            self._task = None

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    async def _run_loop(self) -> None:
        """巡检主循环。先等待一个间隔周期，再执行巡检，循环往复。"""
        while self._running:
            try:
                await asyncio.sleep(self.interval_s)
                if self._running:
                    await self.run_once()
            except asyncio.CancelledError:
                break
            except StoreCorruptedError:
                raise
            except Exception as e:
                logger.error(f"Heartbeat error: {e}")

    # ========== 巡检周期 ==========

    async def collect(self) -> list[ProbeResult]:
        """并发运行全部探针。探针抛出的异常转换为失败结果；存储损坏除外。"""
        outcomes = await asyncio.gather(
            *(probe.check() for probe in self.probes), return_exceptions=True
        )
        results: list[ProbeResult] = []
        for probe, outcome in zip(self.probes, outcomes):
            if isinstance(outcome, StoreCorruptedError):
                raise outcome
            if isinstance(outcome, ProbeError):
                results.append(ProbeResult(probe.name, False, str(outcome)))
            elif isinstance(outcome, BaseException):
                results.append(ProbeResult(probe.name, False, f"Check crashed: {outcome}"))
            else:
                results.append(outcome)
        return results

    async def run_once(self) -> HeartbeatReport:
        """
        执行一次巡检周期：collect → triage → 抑制或告警。

        返回:
            HeartbeatReport，status 为 ok / skipped / suppressed / alerted
        """
        results = await self.collect()
        now = self.clock()
        self.store.set_marker(HEARTBEAT_MARKER, now)

        failures = [r for r in results if not r.ok]
        if not failures:
            logger.info("Heartbeat: OK")
            return HeartbeatReport("ok", results)

        for f in failures:
            logger.warning(f"Heartbeat FAIL {f.name}: {f.detail}")

        text = await self._triage(failures)
        if is_noop(text):
            logger.info("Heartbeat: triage says SKIP (not worth alerting)")
            return HeartbeatReport("skipped", results, text=text)

        fp = fingerprint(failures)
        previous = self.store.get_alert(fp)
        if previous and now - previous.last_sent_at_ms < self.suppression_window_ms:
            logger.info(f"Heartbeat: alert {fp[:8]} suppressed (duplicate within window)")
            return HeartbeatReport("suppressed", results, text=text, fingerprint=fp)

        entry = self.outbox.enqueue(self.destination, text, f"heartbeat:{fp[:8]}")
        self.store.put_alert(fp, now, text)
        logger.info(f"Heartbeat: alert {fp[:8]} queued for {self.destination}")
        return HeartbeatReport("alerted", results, text=text, fingerprint=fp, entry=entry)

    async def _triage(self, failures: list[ProbeResult]) -> str:
        try:
            return await self.triager.triage(failures)
        except StoreCorruptedError:
            raise
        except Exception as e:
            logger.error(f"Heartbeat triage failed, sending raw alert: {e}")
            return await self.fallback.triage(failures)
