"""Pytest configuration and shared fixtures.

Run with:
    pytest tests/                       # Run all tests
    pytest tests/test_scheduler.py -v   # Run specific test file
"""

import asyncio
from datetime import datetime
from pathlib import Path

import pytest

from relaybot.executor.process import ExecutionResult
from relaybot.outbox.service import Outbox
from relaybot.store.sqlite import StateStore

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS

# 2026-01-05 12:00 local time, a Monday
T0 = int(datetime(2026, 1, 5, 12, 0).timestamp() * 1000)


class FakeClock:
    """Injectable millisecond clock."""

    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


class FakeExecutor:
    """Stand-in for ProcessExecutor that never spawns a process.

    Either returns a fixed result, or calls ``responder(payload)`` to build one.
    When ``gate`` is set, every call blocks until the gate is released, which
    lets tests observe in-flight work.
    """

    def __init__(
        self,
        output: str = "done",
        outcome: str = "success",
        error: str | None = None,
        responder=None,
        gated: bool = False,
    ):
        self.output = output
        self.outcome = outcome
        self.error = error
        self.responder = responder
        self.gate = asyncio.Event() if gated else None
        self.calls: list[dict] = []
        self.active = 0
        self.max_active = 0

    def release(self) -> None:
        if self.gate:
            self.gate.set()

    async def run(self, payload, cwd=None, timeout_s=None, on_spawn=None) -> ExecutionResult:
        self.calls.append({"payload": payload, "cwd": cwd, "timeout_s": timeout_s})
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
        finally:
            self.active -= 1

        if self.responder:
            return self.responder(payload)
        return ExecutionResult(outcome=self.outcome, output=self.output, error=self.error)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path) -> StateStore:
    return StateStore(tmp_path / "state.db")


@pytest.fixture
def outbox(store: StateStore, clock: FakeClock) -> Outbox:
    return Outbox(store, clock=clock)


async def settle(rounds: int = 5) -> None:
    """Let scheduled asyncio tasks progress to their next suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)
