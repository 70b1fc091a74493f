"""Tests for background task execution, startup reconciliation and status summaries."""

import subprocess
import sys

import pytest

from conftest import MINUTE_MS, T0, FakeExecutor, settle
from relaybot.agent.runner import POLL_MARKER, TaskRunner
from relaybot.errors import InvalidTransitionError
from relaybot.executor.process import ExecutionResult


@pytest.fixture
def make_runner(store, outbox, clock, tmp_path):
    def _make(executor, **kwargs) -> TaskRunner:
        return TaskRunner(
            store=store,
            executor=executor,
            outbox=outbox,
            workspace=tmp_path / "workspace",
            clock=clock,
            **kwargs,
        )
    return _make


# ── Execution ────────────────────────────────────────────────────────


class TestExecution:
    async def test_completed_task_delivers_result(self, make_runner, store, outbox):
        """A created task runs once and produces exactly one entry for its destination."""
        executor = FakeExecutor(responder=lambda p: ExecutionResult("success", output=p.upper()))
        runner = make_runner(executor)
        task = runner.create("greet", "say hello", "telegram:7")

        assert runner.run_pending_once() == [task.id]
        await runner.join()

        stored = store.get_task(task.id)
        assert stored.status == "completed"
        assert stored.result == "SAY HELLO"
        [entry] = outbox.pending()
        assert (entry.destination, entry.body) == ("telegram:7", "SAY HELLO")
        assert entry.producer_ref == f"task:{task.id}"

    async def test_create_does_not_execute(self, make_runner, store):
        executor = FakeExecutor()
        runner = make_runner(executor)
        task = runner.create("greet", "say hello", "cli:direct")
        assert store.get_task(task.id).status == "pending"
        assert executor.calls == []

    async def test_failure_always_notifies(self, make_runner, store, outbox):
        executor = FakeExecutor(outcome="timeout", output="", error="Agent timed out after 10m")
        runner = make_runner(executor)
        task = runner.create("crawl site", "crawl it", "cli:direct")

        runner.run_pending_once()
        await runner.join()

        stored = store.get_task(task.id)
        assert stored.status == "failed"
        assert stored.error == "Agent timed out after 10m"
        [entry] = outbox.pending()
        assert entry.body == "Background task failed: crawl site\nAgent timed out after 10m"

    async def test_skip_result_writes_nothing(self, make_runner, store, outbox):
        runner = make_runner(FakeExecutor(output="`SKIP`"))
        task = runner.create("maybe", "only if needed", "cli:direct")
        runner.run_pending_once()
        await runner.join()
        assert store.get_task(task.id).status == "completed"
        assert outbox.pending() == []

    async def test_runs_in_destination_workdir(self, make_runner, tmp_path):
        executor = FakeExecutor()
        runner = make_runner(executor, default_timeout_s=77)
        runner.create("a", "x", "telegram:123")
        runner.run_pending_once()
        await runner.join()

        call = executor.calls[0]
        assert call["cwd"] == tmp_path / "workspace" / "tasks" / "telegram_123"
        assert call["cwd"].is_dir()
        assert call["timeout_s"] == 77

    async def test_timeout_override(self, make_runner):
        executor = FakeExecutor()
        runner = make_runner(executor)
        runner.create("a", "x", "cli:direct", timeout_override=9)
        runner.run_pending_once()
        await runner.join()
        assert executor.calls[0]["timeout_s"] == 9

    async def test_unusable_workspace_fails_with_notice(self, make_runner, store, outbox, tmp_path):
        (tmp_path / "workspace").write_text("not a directory")
        executor = FakeExecutor()
        runner = make_runner(executor)
        task = runner.create("d", "say hello", "cli:direct")

        runner.run_pending_once()
        await runner.join()

        stored = store.get_task(task.id)
        assert stored.status == "failed"
        assert stored.error.startswith("Task crashed")
        assert executor.calls == []
        [entry] = outbox.pending()
        assert entry.body.startswith("Background task failed: d\nTask crashed")

    async def test_executor_crash_fails_with_notice(self, make_runner, store, outbox):
        def explode(payload):
            raise RuntimeError("executor blew up")

        runner = make_runner(FakeExecutor(responder=explode))
        task = runner.create("crawl site", "crawl it", "telegram:7")

        runner.run_pending_once()
        await runner.join()

        stored = store.get_task(task.id)
        assert stored.status == "failed"
        assert stored.error == "Task crashed: executor blew up"
        [entry] = outbox.pending()
        assert entry.destination == "telegram:7"
        assert entry.body == "Background task failed: crawl site\nTask crashed: executor blew up"

    async def test_poll_writes_marker(self, make_runner, store, clock):
        runner = make_runner(FakeExecutor())
        runner.run_pending_once()
        assert store.get_marker(POLL_MARKER) == clock()


# ── Worker pool ──────────────────────────────────────────────────────


class TestPool:
    async def test_excess_tasks_stay_pending(self, make_runner, store, clock):
        executor = FakeExecutor(gated=True)
        runner = make_runner(executor, max_concurrent=2)
        ids = []
        for i in range(3):
            ids.append(runner.create(f"job {i}", "x", "cli:direct").id)
            clock.advance(1)

        assert runner.run_pending_once() == ids[:2]
        await settle()
        assert executor.active == 2
        assert store.get_task(ids[2]).status == "pending"
        assert runner.run_pending_once() == []

        executor.release()
        await runner.join()
        assert runner.run_pending_once() == [ids[2]]
        await runner.join()
        assert executor.max_active == 2
        assert {store.get_task(i).status for i in ids} == {"completed"}

    async def test_pending_claimed_in_creation_order(self, make_runner, clock):
        runner = make_runner(FakeExecutor(gated=True), max_concurrent=1)
        first = runner.create("first", "x", "cli:direct")
        clock.advance(1)
        runner.create("second", "x", "cli:direct")
        assert runner.run_pending_once() == [first.id]
        runner.executor.release()
        await runner.join()


# ── Reconciliation and transitions ───────────────────────────────────


class TestReconcile:
    async def test_orphan_process_is_killed(self, make_runner, store, clock):
        orphan = subprocess.Popen(
            [sys.executable, "-c", "import time; time.sleep(30)"],
            start_new_session=True,
        )
        try:
            runner = make_runner(FakeExecutor())
            task = runner.create("long job", "x", "cli:direct")
            store.claim_task(task.id, clock())
            store.set_task_pid(task.id, orphan.pid)

            [reconciled] = runner.reconcile()

            assert reconciled.status == "failed"
            assert reconciled.error == "interrupted"
            assert orphan.wait(timeout=5) != 0
        finally:
            if orphan.poll() is None:
                orphan.kill()
                orphan.wait()

    async def test_reconcile_without_pid(self, make_runner, store, clock):
        runner = make_runner(FakeExecutor())
        task = runner.create("job", "x", "cli:direct")
        store.claim_task(task.id, clock())
        assert [t.id for t in runner.reconcile()] == [task.id]
        assert runner.reconcile() == []

    async def test_status_never_goes_back(self, make_runner, store):
        runner = make_runner(FakeExecutor())
        task = runner.create("job", "x", "cli:direct")
        runner.run_pending_once()
        await runner.join()
        assert store.claim_task(task.id, T0) is None
        with pytest.raises(InvalidTransitionError):
            store.finish_task(task.id, "failed", T0)


# ── Summary ──────────────────────────────────────────────────────────


class TestSummary:
    def test_empty_summary(self, make_runner):
        assert make_runner(FakeExecutor()).summary() == ""

    async def test_summary_lists_running_and_recent(self, make_runner, store, clock):
        runner = make_runner(FakeExecutor())
        old = runner.create("old report", "x", "cli:direct")
        store.claim_task(old.id, clock())
        store.finish_task(old.id, "completed", clock(), result="r")

        clock.advance(90 * MINUTE_MS)
        recent = runner.create("fresh report", "x", "cli:direct")
        store.claim_task(recent.id, clock())
        clock.advance(10 * MINUTE_MS)
        store.finish_task(recent.id, "completed", clock(), result="r")

        busy = runner.create("crawl", "x", "cli:direct")
        store.claim_task(busy.id, clock())
        clock.advance(5 * MINUTE_MS)

        assert runner.summary().splitlines() == [
            "[Background Tasks]",
            'Running: "crawl" (5m elapsed)',
            'Completed: "fresh report" (5m ago)',
        ]
