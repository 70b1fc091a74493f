"""Tests for the heartbeat: probes, triage fallback, and fingerprint-based alert suppression."""

import httpx
import pytest

from conftest import HOUR_MS, MINUTE_MS, T0, FakeExecutor
from relaybot.errors import ExecutionTimeoutError, ProbeError, StoreCorruptedError, TransientExecutionError
from relaybot.heartbeat.probes import (
    AgentCommandProbe,
    FailingSchedulesProbe,
    HealthProbe,
    HttpProbe,
    MarkerFreshnessProbe,
    ProbeResult,
    StuckTasksProbe,
)
from relaybot.heartbeat.service import HEARTBEAT_MARKER, HeartbeatService, fingerprint
from relaybot.heartbeat.triage import AgentTriager, RuleTriager, Triager
from relaybot.store.models import FreeformInstruction, Schedule, Task


class StaticProbe(HealthProbe):
    """Probe whose outcome is controlled by the test."""

    def __init__(self, name: str, ok: bool = True, detail: str = "", error: Exception | None = None):
        self.name = name
        self.ok = ok
        self.detail = detail
        self.error = error

    async def check(self) -> ProbeResult:
        if self.error:
            raise self.error
        return ProbeResult(self.name, self.ok, self.detail)


class ScriptedTriager(Triager):
    def __init__(self, reply: str = "Disk is full", error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.calls = 0

    async def triage(self, failures):
        self.calls += 1
        if self.error:
            raise self.error
        return self.reply


@pytest.fixture
def make_monitor(store, outbox, clock):
    def _make(probes, triager=None, **kwargs) -> HeartbeatService:
        return HeartbeatService(
            store=store,
            outbox=outbox,
            probes=probes,
            triager=triager or ScriptedTriager(),
            destination="telegram:1",
            clock=clock,
            **kwargs,
        )
    return _make


# ── Cycle outcomes ───────────────────────────────────────────────────


class TestCycle:
    async def test_all_ok_skips_triage(self, make_monitor, store, outbox):
        triager = ScriptedTriager()
        monitor = make_monitor([StaticProbe("a"), StaticProbe("b")], triager)

        report = await monitor.run_once()

        assert report.status == "ok"
        assert triager.calls == 0
        assert outbox.pending() == []
        assert store.get_marker(HEARTBEAT_MARKER) == T0

    async def test_alert_then_suppress_then_realert(self, make_monitor, outbox, clock):
        """The same failure alerts once per suppression window."""
        monitor = make_monitor([StaticProbe("disk", ok=False, detail="95% used")])

        first = await monitor.run_once()
        assert first.status == "alerted"
        assert first.entry.body == "Disk is full"
        assert first.entry.destination == "telegram:1"

        clock.advance(30 * MINUTE_MS)
        assert (await monitor.run_once()).status == "suppressed"
        clock.advance(HOUR_MS)
        assert (await monitor.run_once()).status == "suppressed"

        clock.advance(31 * MINUTE_MS)
        assert (await monitor.run_once()).status == "alerted"
        assert len(outbox.pending()) == 2

    async def test_detail_change_keeps_fingerprint(self, make_monitor, clock):
        probe = StaticProbe("disk", ok=False, detail="95% used")
        monitor = make_monitor([probe])
        first = await monitor.run_once()

        probe.detail = "97% used"
        clock.advance(MINUTE_MS)
        second = await monitor.run_once()

        assert second.status == "suppressed"
        assert second.fingerprint == first.fingerprint

    async def test_new_failure_set_alerts_immediately(self, make_monitor, clock):
        disk = StaticProbe("disk", ok=False)
        net = StaticProbe("net")
        monitor = make_monitor([disk, net])
        await monitor.run_once()

        net.ok = False
        clock.advance(MINUTE_MS)
        assert (await monitor.run_once()).status == "alerted"

    async def test_skip_verdict_writes_nothing(self, make_monitor, store, outbox):
        monitor = make_monitor([StaticProbe("disk", ok=False)], ScriptedTriager(reply="SKIP"))

        report = await monitor.run_once()

        assert report.status == "skipped"
        assert outbox.pending() == []
        assert store.get_alert(fingerprint(report.failures)) is None

    async def test_triage_failure_falls_back_to_rules(self, make_monitor, outbox, clock):
        triager = ScriptedTriager(error=TransientExecutionError("agent exited 1"))
        monitor = make_monitor([StaticProbe("disk", ok=False, detail="95% used")], triager)

        report = await monitor.run_once()

        assert report.status == "alerted"
        assert report.entry.body == "Relaybot health alert\n\n- disk: 95% used"
        clock.advance(MINUTE_MS)
        assert (await monitor.run_once()).status == "suppressed"


# ── Probe errors ─────────────────────────────────────────────────────


class TestProbeErrors:
    async def test_probe_error_becomes_failure(self, make_monitor):
        monitor = make_monitor([StaticProbe("http", error=ProbeError("http", "connection refused"))])
        [result] = await monitor.collect()
        assert not result.ok
        assert result.detail == "http: connection refused"

    async def test_crashing_probe_becomes_failure(self, make_monitor):
        monitor = make_monitor([StaticProbe("buggy", error=KeyError("oops")), StaticProbe("fine")])
        results = await monitor.collect()
        assert [(r.name, r.ok) for r in results] == [("buggy", False), ("fine", True)]
        assert results[0].detail.startswith("Check crashed")

    async def test_store_corruption_propagates(self, make_monitor):
        monitor = make_monitor([StaticProbe("store", error=StoreCorruptedError("malformed"))])
        with pytest.raises(StoreCorruptedError):
            await monitor.run_once()


# ── Built-in probes ──────────────────────────────────────────────────


class TestProbes:
    async def test_marker_freshness(self, store, clock):
        probe = MarkerFreshnessProbe("scheduler_fresh", store, "scheduler.tick", stale_after_s=600, clock=clock)
        assert not (await probe.check()).ok

        store.set_marker("scheduler.tick", clock())
        clock.advance(5 * MINUTE_MS)
        assert (await probe.check()).ok

        clock.advance(6 * MINUTE_MS)
        result = await probe.check()
        assert not result.ok
        assert "stale" in result.detail

    async def test_stuck_tasks(self, store, clock):
        store.create_task(Task(id="t1", task_desc="crawl", payload="x", destination="cli:direct",
                               created_at_ms=clock()))
        store.claim_task("t1", clock())
        probe = StuckTasksProbe(store, stuck_after_s=2 * 60 * 60, clock=clock)

        assert (await probe.check()).ok
        clock.advance(2 * HOUR_MS + MINUTE_MS)
        result = await probe.check()
        assert not result.ok
        assert "crawl" in result.detail

    async def test_failing_schedules(self, store):
        for schedule_id, enabled in (("poisoned", True), ("paused", False)):
            store.upsert_schedule(Schedule(id=schedule_id, schedule_expr="* * * * *",
                                           payload=FreeformInstruction("x"), enabled=enabled))
            for i in range(3):
                run_id = f"{schedule_id}-{i}"
                store.try_start_run(schedule_id, run_id, T0 + i)
                store.finish_run(run_id, "timeout" if i else "failure", T0 + i)

        result = await FailingSchedulesProbe(store, threshold=3).check()

        assert not result.ok
        assert "poisoned" in result.detail
        assert "paused" not in result.detail

    async def test_recent_success_clears_failing(self, store):
        store.upsert_schedule(Schedule(id="s", schedule_expr="* * * * *", payload=FreeformInstruction("x")))
        for i, status in enumerate(("failure", "failure", "success")):
            store.try_start_run("s", f"r{i}", T0 + i)
            store.finish_run(f"r{i}", status, T0 + i)
        assert (await FailingSchedulesProbe(store, threshold=3).check()).ok

    async def test_agent_command(self):
        assert not (await AgentCommandProbe(["definitely-not-installed-agent"]).check()).ok
        assert (await AgentCommandProbe(["sh", "-c", "true"]).check()).ok

    async def test_http_probe(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503 if request.url.path == "/down" else 200)

        transport = httpx.MockTransport(handler)
        assert (await HttpProbe("http://svc.local/up", transport=transport).check()).ok
        result = await HttpProbe("http://svc.local/down", transport=transport).check()
        assert not result.ok
        assert result.detail == "HTTP 503"

    async def test_http_probe_network_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        probe = HttpProbe("http://svc.local/", transport=httpx.MockTransport(handler))
        with pytest.raises(ProbeError):
            await probe.check()


# ── Triage ───────────────────────────────────────────────────────────


class TestTriage:
    async def test_agent_triager_returns_output(self):
        executor = FakeExecutor(output="Scheduler is stuck")
        triager = AgentTriager(executor, timeout_s=30)
        text = await triager.triage([ProbeResult("scheduler_fresh", False, "stale")])
        assert text == "Scheduler is stuck"
        assert "- scheduler_fresh: stale" in executor.calls[0]["payload"]
        assert executor.calls[0]["timeout_s"] == 30

    async def test_agent_triager_timeout_raises(self):
        triager = AgentTriager(FakeExecutor(outcome="timeout", output=""))
        with pytest.raises(ExecutionTimeoutError):
            await triager.triage([ProbeResult("x", False)])

    async def test_agent_triager_failure_raises(self):
        triager = AgentTriager(FakeExecutor(outcome="failure", output="", error="exit 1"))
        with pytest.raises(TransientExecutionError):
            await triager.triage([ProbeResult("x", False)])

    async def test_rule_triager_lists_failures(self):
        text = await RuleTriager(title="Alert").triage([ProbeResult("a", False, "down"), ProbeResult("b", False)])
        assert text == "Alert\n\n- a: down\n- b: "

    def test_fingerprint_ignores_order_and_detail(self):
        a = [ProbeResult("x", False, "one"), ProbeResult("y", False)]
        b = [ProbeResult("y", False, "other"), ProbeResult("x", False)]
        assert fingerprint(a) == fingerprint(b)
        assert fingerprint(a) != fingerprint(a[:1])
