"""Tests for the cron service: due evaluation, single-flight, concurrency and publishing."""

from datetime import datetime

import pytest

from conftest import MINUTE_MS, T0, FakeExecutor, settle
from relaybot.config.schema import Config
from relaybot.cron.handlers import build_handlers
from relaybot.cron.service import TICK_MARKER, CronService
from relaybot.cron.trigger import is_due, next_fire_after
from relaybot.store.models import BuiltinHandler, FreeformInstruction, Schedule
from relaybot.store.sqlite import StateStore


def make_service(store, outbox, clock, executor, **kwargs) -> CronService:
    return CronService(
        store=store,
        executor=executor,
        outbox=outbox,
        handlers=build_handlers(store, Config(), clock),
        clock=clock,
        **kwargs,
    )


def seed(store: StateStore, schedule_id: str = "news", expr: str = "*/15 * * * *",
         created_at_ms: int = T0 - 120 * MINUTE_MS, **kwargs) -> Schedule:
    payload = kwargs.pop("payload", FreeformInstruction("summarize the news"))
    return store.upsert_schedule(Schedule(
        id=schedule_id,
        name=schedule_id,
        schedule_expr=expr,
        payload=payload,
        created_at_ms=created_at_ms,
        updated_at_ms=created_at_ms,
        **kwargs,
    ))


# ── Trigger math ─────────────────────────────────────────────────────


class TestTrigger:
    def test_next_fire_is_strictly_after(self):
        assert next_fire_after("*/15 * * * *", T0) == T0 + 15 * MINUTE_MS

    def test_missed_firings_collapse_into_one_due(self):
        assert is_due("*/15 * * * *", T0 - 40 * MINUTE_MS, T0)
        assert not is_due("*/15 * * * *", T0, T0 + 14 * MINUTE_MS)

    def test_at_expression_expires(self):
        when = datetime.fromtimestamp((T0 + 5 * MINUTE_MS) / 1000).isoformat()
        assert next_fire_after(f"@at {when}", T0) == T0 + 5 * MINUTE_MS
        assert next_fire_after(f"@at {when}", T0 + 5 * MINUTE_MS) is None


# ── Due evaluation ───────────────────────────────────────────────────


class TestTick:
    async def test_catch_up_fires_exactly_once(self, store, outbox, clock):
        """A */15 schedule last evaluated 40 minutes ago runs once, not twice."""
        seed(store)
        store.touch_evaluated("news", T0 - 40 * MINUTE_MS)
        executor = FakeExecutor(output="headlines")
        service = make_service(store, outbox, clock, executor)

        launched = await service.tick(T0)
        await service.join()
        assert len(launched) == 1
        assert await service.tick(T0) == []
        await service.join()

        assert len(executor.calls) == 1
        runs = store.list_runs("news")
        assert [r.status for r in runs] == ["success"]
        assert [e.body for e in outbox.pending()] == ["headlines"]

    async def test_new_schedule_does_not_fire_immediately(self, store, outbox, clock):
        executor = FakeExecutor()
        service = make_service(store, outbox, clock, executor)
        service.add_job("news", "*/15 * * * *", FreeformInstruction("x"))

        assert await service.tick(T0) == []
        assert await service.tick(T0 + 14 * MINUTE_MS) == []
        assert len(await service.tick(T0 + 15 * MINUTE_MS)) == 1
        await service.join()

    async def test_disabled_schedule_is_ignored(self, store, outbox, clock):
        seed(store, enabled=False)
        service = make_service(store, outbox, clock, FakeExecutor())
        assert await service.tick(T0) == []

    async def test_tick_writes_marker(self, store, outbox, clock):
        service = make_service(store, outbox, clock, FakeExecutor())
        await service.tick(T0)
        assert store.get_marker(TICK_MARKER) == T0

    async def test_reenabled_schedule_does_not_catch_up(self, store, outbox, clock):
        seed(store)
        service = make_service(store, outbox, clock, FakeExecutor())
        service.enable_job("news", False)
        clock.advance(3 * 60 * MINUTE_MS)
        service.enable_job("news", True)
        assert await service.tick(clock()) == []

    async def test_one_shot_fires_once(self, store, outbox, clock):
        when = datetime.fromtimestamp((T0 + 5 * MINUTE_MS) / 1000).isoformat()
        executor = FakeExecutor()
        service = make_service(store, outbox, clock, executor)
        service.add_job("reminder", f"@at {when}", FreeformInstruction("stand up"))

        assert await service.tick(T0 + MINUTE_MS) == []
        assert len(await service.tick(T0 + 10 * MINUTE_MS)) == 1
        await service.join()
        assert await service.tick(T0 + 20 * MINUTE_MS) == []
        assert len(executor.calls) == 1


# ── Single-flight and concurrency ────────────────────────────────────


class TestSingleFlight:
    async def test_overlapping_firing_is_skipped(self, store, outbox, clock):
        seed(store)
        executor = FakeExecutor(gated=True)
        service = make_service(store, outbox, clock, executor)

        assert len(await service.tick(T0)) == 1
        await settle()
        assert await service.tick(T0 + 15 * MINUTE_MS) == []

        executor.release()
        await service.join()

        statuses = sorted(r.status for r in store.list_runs("news"))
        assert statuses == ["skipped", "success"]
        skipped = [r for r in store.list_runs("news") if r.status == "skipped"][0]
        assert "still in progress" in skipped.error
        assert len(executor.calls) == 1

    async def test_manual_run_respects_single_flight(self, store, outbox, clock):
        seed(store)
        store.try_start_run("news", "held", T0)
        service = make_service(store, outbox, clock, FakeExecutor())
        assert await service.run_job("news") is None

    async def test_concurrency_is_bounded(self, store, outbox, clock):
        for name in ("a", "b", "c"):
            seed(store, name)
        executor = FakeExecutor(gated=True)
        service = make_service(store, outbox, clock, executor, max_concurrent_runs=2)

        assert len(await service.tick(T0)) == 3
        await settle(10)
        assert executor.active == 2

        executor.release()
        await service.join()
        assert executor.max_active == 2
        assert len(executor.calls) == 3

    async def test_reconcile_marks_orphans_interrupted(self, store, outbox, clock):
        seed(store)
        store.try_start_run("news", "orphan", T0 - MINUTE_MS)
        service = make_service(store, outbox, clock, FakeExecutor())

        orphans = service.reconcile()

        assert [r.id for r in orphans] == ["orphan"]
        run = store.get_run("orphan")
        assert (run.status, run.error) == ("failure", "interrupted")


# ── Execution outcomes ───────────────────────────────────────────────


class TestOutcomes:
    async def test_prompt_carries_job_header(self, store, outbox, clock):
        seed(store)
        executor = FakeExecutor()
        service = make_service(store, outbox, clock, executor, default_timeout_s=42)

        await service.run_job("news")

        call = executor.calls[0]
        assert call["payload"].startswith("[Job: news] Time: ")
        assert call["payload"].endswith("summarize the news")
        assert call["timeout_s"] == 42

    async def test_timeout_override_wins(self, store, outbox, clock):
        seed(store, timeout_override=5)
        executor = FakeExecutor()
        service = make_service(store, outbox, clock, executor)
        await service.run_job("news")
        assert executor.calls[0]["timeout_s"] == 5

    async def test_timeout_is_recorded_but_silent(self, store, outbox, clock):
        seed(store)
        executor = FakeExecutor(outcome="timeout", output="", error="Agent timed out after 10m")
        service = make_service(store, outbox, clock, executor)

        run = await service.run_job("news")

        assert run.status == "timeout"
        assert run.error == "Agent timed out after 10m"
        assert outbox.pending() == []

    async def test_failure_reported_when_opted_in(self, store, outbox, clock):
        seed(store, report_failures=True, destination="telegram:42")
        executor = FakeExecutor(outcome="failure", output="", error="Agent exited 1: boom")
        service = make_service(store, outbox, clock, executor)

        await service.run_job("news")

        [entry] = outbox.pending()
        assert entry.destination == "telegram:42"
        assert entry.body == "Scheduled job 'news' failure: Agent exited 1: boom"

    async def test_skip_output_writes_nothing(self, store, outbox, clock):
        seed(store)
        service = make_service(store, outbox, clock, FakeExecutor(output="  skip. "))
        run = await service.run_job("news")
        assert run.status == "success"
        assert outbox.pending() == []

    async def test_builtin_output_is_not_delivered(self, store, outbox, clock):
        service = make_service(store, outbox, clock, FakeExecutor())
        service.bootstrap()

        run = await service.run_job("task-cleanup")

        assert run.status == "success"
        assert run.output == "Removed 0 terminal tasks"
        assert outbox.pending() == []

    async def test_unknown_builtin_fails(self, store, outbox, clock):
        seed(store, payload=BuiltinHandler("no-such-handler"))
        service = make_service(store, outbox, clock, FakeExecutor())
        run = await service.run_job("news")
        assert run.status == "failure"
        assert "no-such-handler" in run.error

    async def test_executor_crash_is_recorded_as_failure(self, store, outbox, clock):
        def explode(payload):
            raise RuntimeError("executor blew up")

        seed(store)
        service = make_service(store, outbox, clock, FakeExecutor(responder=explode))
        run = await service.run_job("news")
        assert run.status == "failure"
        assert run.error == "executor blew up"


# ── Management API ───────────────────────────────────────────────────


class TestManagement:
    async def test_bootstrap_does_not_override_user_edits(self, store, outbox, clock):
        service = make_service(store, outbox, clock, FakeExecutor())
        assert service.bootstrap() == ["task-cleanup", "outbox-purge"]
        service.enable_job("task-cleanup", False)
        assert service.bootstrap() == []
        assert store.get_schedule("task-cleanup").enabled is False

    @pytest.mark.parametrize("expr", ["not a cron", "* * * *", "61 * * * *", "@at yesterday"])
    async def test_add_job_rejects_invalid_expressions(self, store, outbox, clock, expr):
        service = make_service(store, outbox, clock, FakeExecutor())
        with pytest.raises(ValueError):
            service.add_job("bad", expr, FreeformInstruction("x"))
        assert store.list_schedules() == []

    async def test_add_job_rejects_unknown_timezone(self, store, outbox, clock):
        service = make_service(store, outbox, clock, FakeExecutor())
        with pytest.raises(ValueError):
            service.add_job("bad", "0 9 * * *", FreeformInstruction("x"), tz="Mars/Olympus")

    async def test_add_one_shot_rejects_unknown_timezone(self, store, outbox, clock):
        service = make_service(store, outbox, clock, FakeExecutor())
        with pytest.raises(ValueError, match="Unknown timezone"):
            service.add_job("bad", "@at 2026-12-01T09:00:00", FreeformInstruction("x"), tz="Mars/Olympus")
        assert store.list_schedules() == []

    async def test_list_jobs_sorted_by_next_run(self, store, outbox, clock):
        service = make_service(store, outbox, clock, FakeExecutor())
        service.add_job("daily", "0 9 * * *", FreeformInstruction("x"), job_id="daily")
        service.add_job("often", "*/5 * * * *", FreeformInstruction("x"), job_id="often")
        assert [s.id for s in service.list_jobs()] == ["often", "daily"]

    async def test_remove_job(self, store, outbox, clock):
        service = make_service(store, outbox, clock, FakeExecutor())
        job = service.add_job("x", "0 9 * * *", FreeformInstruction("x"))
        assert service.remove_job(job.id) is True
        assert service.remove_job(job.id) is False

    async def test_run_disabled_job_needs_force(self, store, outbox, clock):
        seed(store, enabled=False)
        service = make_service(store, outbox, clock, FakeExecutor())
        assert await service.run_job("news") is None
        assert (await service.run_job("news", force=True)).status == "success"

    async def test_start_bootstraps_and_ticks(self, store, outbox, clock):
        service = make_service(store, outbox, clock, FakeExecutor(), tick_interval_s=3600)
        await service.start()
        await settle()
        try:
            status = service.status()
            assert status["enabled"] is True
            assert status["jobs"] == 2
            assert status["last_tick_at_ms"] == T0
        finally:
            service.stop()
