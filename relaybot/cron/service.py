"""定时任务调度服务 - 按 Schedule 定义周期性地调用 Agent 或内置处理器。

本模块实现了调度引擎：
- 固定节奏的 tick：每 tick_interval_s 秒唤醒一次，与任何 Schedule 的节奏无关
- 到期判断：基于持久化的"上次评估时间"，宿主重启后错过的触发只补跑一次
- 单飞：同一 Schedule 同时最多一个运行实例，重叠的触发记录为 skipped
- 有界并发：不同 Schedule 的运行作为 asyncio 任务并发执行，受信号量限制
- 硬超时：超时的子进程被杀掉，运行记录为 timeout
- 失败不重试，也不会自动禁用；默认只记录不通知（report_failures 可开启通知）

架构设计：
- 所有状态都在 StateStore 中，服务本身只持有进行中运行的 asyncio 任务句柄
- 载荷分发是对带标签变体的穷举：BuiltinHandler → 内置协程，FreeformInstruction → ProcessExecutor
- 产出交给 Outbox，不直接调用投递渠道

二开提示：
- 可通过 handlers 参数注册自定义内置处理器
- tick(now_ms) 支持注入时钟，适合调试与测试
"""

import asyncio
from pathlib import Path

from loguru import logger

from relaybot.cron.handlers import BuiltinFn, default_schedules
from relaybot.cron.trigger import is_due, next_fire_after, validate_expr
from relaybot.errors import ExecutionTimeoutError, StoreCorruptedError
from relaybot.executor.process import ProcessExecutor
from relaybot.outbox.service import Outbox
from relaybot.store.models import (
    BuiltinHandler,
    FreeformInstruction,
    Payload,
    Schedule,
    ScheduleRun,
)
from relaybot.store.sqlite import StateStore
from relaybot.utils.helpers import format_local_time, now_ms, short_id

TICK_MARKER = "scheduler.tick"


def build_job_prompt(schedule: Schedule, text: str, at_ms: int) -> str:
    """在指令前加上任务标识与当前时间的头部。"""
    return f"[Job: {schedule.id}] Time: {format_local_time(at_ms)}\n\n{text}"


class CronService:
    """定时任务调度服务。

    职责：
    - 启动时收尾上一个宿主进程遗留的 running 记录，并引导系统 Schedule
    - 每个 tick 评估所有启用的 Schedule，为到期的启动运行
    - 提供 CRUD API 供 CLI 调用
    """

    def __init__(
        self,
        store: StateStore,
        executor: ProcessExecutor,
        outbox: Outbox,
        default_destination: str = "cli:direct",
        default_timeout_s: int = 600,
        tick_interval_s: float = 30,
        max_concurrent_runs: int = 4,
        workspace: Path | None = None,
        handlers: dict[str, BuiltinFn] | None = None,
        clock=now_ms,
    ):
        """
        初始化定时任务服务。

        参数:
            store: 状态存储
            executor: Agent 进程执行器
            outbox: 发件箱
            default_destination: Schedule 未指定目标时的投递地址
            default_timeout_s: Schedule 未单独设置超时时的默认值（秒）
            tick_interval_s: tick 间隔（秒）
            max_concurrent_runs: 同时运行的 Schedule 数上限
            workspace: Agent 子进程的工作目录
            handlers: 内置处理器注册表 {名称: 协程函数}
            clock: 返回毫秒时间戳的时钟
        """
        self.store = store
        self.executor = executor
        self.outbox = outbox
        self.default_destination = default_destination
        self.default_timeout_s = default_timeout_s
        self.tick_interval_s = tick_interval_s
        self.workspace = workspace
        self.handlers: dict[str, BuiltinFn] = dict(handlers or {})
        self.clock = clock
        self._semaphore = asyncio.Semaphore(max_concurrent_runs)
        self._inflight: dict[str, asyncio.Task] = {}  # run_id → 运行任务
        self._task: asyncio.Task | None = None  # tick 循环任务
        self._running = False
        self._fatal: StoreCorruptedError | None = None

    # ========== 生命周期 ==========

    async def start(self) -> None:
        """启动调度服务：收尾遗留记录、引导系统 Schedule、启动 tick 循环。"""
        self.reconcile()
        self.bootstrap()
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            f"Cron service started with {len(self.store.list_schedules())} schedules "
            f"(tick every {self.tick_interval_s}s)"
        )

    def stop(self) -> None:
        """停止 tick 循环并取消进行中的运行（子进程会被杀掉，记录在下次启动时收尾）。"""
        self._running = False
        if self._task:
            self._task.cancel()
            self._task = None
        for task in list(self._inflight.values()):
            task.cancel()

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    def reconcile(self) -> list[ScheduleRun]:
        """把上一个宿主进程遗留的 running 记录收尾为 failure（interrupted）。"""
        orphans = self.store.reconcile_running_runs(self.clock())
        for run in orphans:
            logger.warning(f"Cron: run {run.id} of '{run.schedule_id}' was interrupted by a restart")
        return orphans

    def bootstrap(self) -> list[str]:
        """确保系统 Schedule 存在（只补缺失的，不覆盖用户修改）。"""
        added = self.store.ensure_schedules(default_schedules(self.clock()))
        if added:
            logger.info(f"Cron: bootstrapped schedules {', '.join(added)}")
        return added

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
                await asyncio.sleep(self.tick_interval_s)
                if self._fatal:
                    raise self._fatal
            except asyncio.CancelledError:
                break
            except StoreCorruptedError:
                raise
            except Exception as e:
                logger.error(f"Cron tick error: {e}")
                await asyncio.sleep(self.tick_interval_s)

    # ========== 调度 ==========

    async def tick(self, now_ms: int | None = None) -> list[str]:
        """
        评估一次所有启用的 Schedule。

        参数:
            now_ms: 当前时间（毫秒），None 时使用时钟

        返回:
            本次启动的运行 id 列表
        """
        now = now_ms if now_ms is not None else self.clock()
        launched: list[str] = []

        for schedule in self.store.list_schedules(include_disabled=False):
            try:
                run_id = self._evaluate(schedule, now)
            except StoreCorruptedError:
                raise
            except Exception as e:
                logger.error(f"Cron: cannot evaluate '{schedule.label}' ({schedule.id}): {e}")
                continue
            if run_id:
                launched.append(run_id)

        self.store.set_marker(TICK_MARKER, now)
        if launched:
            logger.debug(f"Cron tick: launched {len(launched)} runs")
        return launched

    def _evaluate(self, schedule: Schedule, now: int) -> str | None:
        """判断到期并尝试启动一次运行。返回启动的运行 id，未启动时返回 None。"""
        last = self.store.get_last_evaluated(schedule.id)
        baseline = last if last is not None else schedule.created_at_ms
        if not is_due(schedule.schedule_expr, baseline, now, schedule.tz):
            self.store.touch_evaluated(schedule.id, now)
            return None

        run_id = short_id(12)
        if not self.store.try_start_run(schedule.id, run_id, now):
            self.store.record_skipped_run(
                schedule.id, short_id(12), now, "previous run still in progress"
            )
            logger.info(f"Cron: '{schedule.label}' is still running, skipped this firing")
            return None

        self._launch(schedule, run_id)
        return run_id

    def _launch(self, schedule: Schedule, run_id: str) -> None:
        task = asyncio.create_task(self._execute(schedule, run_id))
        self._inflight[run_id] = task
        task.add_done_callback(lambda _: self._inflight.pop(run_id, None))

    async def join(self) -> None:
        """等待所有进行中的运行结束（测试与关闭时使用）。"""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)
        if self._fatal:
            raise self._fatal

    @property
    def inflight(self) -> list[str]:
        return list(self._inflight)

    async def _execute(self, schedule: Schedule, run_id: str) -> None:
        """执行一次运行：分发载荷 → 结束运行记录 → 按需写入发件箱。"""
        try:
            async with self._semaphore:
                logger.info(f"Cron: executing '{schedule.label}' ({schedule.id}) run {run_id}")
                try:
                    status, output, error = await self._dispatch(schedule)
                except StoreCorruptedError:
                    raise
                except Exception as e:
                    status, output, error = "failure", None, str(e)

                run = self.store.finish_run(run_id, status, self.clock(), output=output, error=error)
                if run is None:
                    logger.warning(f"Cron: run {run_id} was already finalized")
                    return

                if status == "success":
                    logger.info(f"Cron: '{schedule.label}' completed")
                else:
                    logger.error(f"Cron: '{schedule.label}' {status}: {error}")
                self._publish(schedule, run)
        except StoreCorruptedError as e:
            self._fatal = e

    async def _dispatch(self, schedule: Schedule) -> tuple[str, str | None, str | None]:
        """
        按载荷类型分发执行。

        返回:
            (status, output, error)，status 为 success / failure / timeout
        """
        payload: Payload = schedule.payload
        timeout_s = schedule.timeout_override or self.default_timeout_s

        if isinstance(payload, BuiltinHandler):
            handler = self.handlers.get(payload.name)
            if handler is None:
                return "failure", None, f"Unknown builtin handler: {payload.name}"
            try:
                output = await asyncio.wait_for(handler(), timeout=timeout_s)
            except asyncio.TimeoutError:
                return "timeout", None, str(ExecutionTimeoutError(timeout_s))
            return "success", output, None

        if isinstance(payload, FreeformInstruction):
            prompt = build_job_prompt(schedule, payload.text, self.clock())
            result = await self.executor.run(prompt, cwd=self.workspace, timeout_s=timeout_s)
            return result.outcome, result.output or None, result.error

        raise TypeError(f"Unknown payload type: {type(payload).__name__}")

    def _publish(self, schedule: Schedule, run: ScheduleRun) -> None:
        """把运行结果写入发件箱。内置处理器的输出只记录不投递；失败默认静默。"""
        destination = schedule.destination or self.default_destination
        producer_ref = f"schedule:{schedule.id}:{run.id}"

        if run.status == "success":
            if isinstance(schedule.payload, FreeformInstruction):
                self.outbox.enqueue(destination, run.output, producer_ref)
            return

        if schedule.report_failures:
            body = f"Scheduled job '{schedule.label}' {run.status}: {run.error or 'unknown error'}"
            self.outbox.enqueue(destination, body, producer_ref)

    # ========== 公开 API ==========

    def list_jobs(self, include_disabled: bool = False) -> list[Schedule]:
        """列出 Schedule（按下次触发时间排序）。"""
        schedules = self.store.list_schedules(include_disabled=include_disabled)
        now = self.clock()

        def sort_key(s: Schedule) -> float:
            try:
                next_ms = next_fire_after(s.schedule_expr, now, s.tz)
            except ValueError:
                return float("inf")
            return next_ms if next_ms is not None else float("inf")

        return sorted(schedules, key=sort_key)

    def next_run_at(self, schedule: Schedule) -> int | None:
        """Schedule 的下次触发时间（毫秒），非法表达式或已过期的一次性 Schedule 返回 None。"""
        if not schedule.enabled:
            return None
        try:
            return next_fire_after(schedule.schedule_expr, self.clock(), schedule.tz)
        except ValueError:
            return None

    def add_job(
        self,
        name: str,
        schedule_expr: str,
        payload: Payload,
        destination: str | None = None,
        timeout_override: int | None = None,
        report_failures: bool = False,
        tz: str | None = None,
        job_id: str | None = None,
    ) -> Schedule:
        """
        添加新的 Schedule。

        参数:
            name: 名称
            schedule_expr: cron 表达式或 "@at <ISO-8601>"
            payload: BuiltinHandler 或 FreeformInstruction
            destination: 投递目标，None 表示使用默认目标
            timeout_override: 单独的超时（秒）
            report_failures: 失败时是否也写入发件箱
            tz: cron 表达式使用的时区
            job_id: 指定 id，None 时自动生成

        异常:
            ValueError: 表达式非法或 id 已存在
        """
        validate_expr(schedule_expr, tz)
        if isinstance(payload, BuiltinHandler) and payload.name not in self.handlers:
            raise ValueError(f"Unknown builtin handler: {payload.name}")

        schedule_id = job_id or short_id()
        if self.store.get_schedule(schedule_id):
            raise ValueError(f"Schedule {schedule_id} already exists")

        now = self.clock()
        schedule = Schedule(
            id=schedule_id,
            name=name,
            schedule_expr=schedule_expr,
            payload=payload,
            destination=destination,
            timeout_override=timeout_override,
            report_failures=report_failures,
            tz=tz,
            created_at_ms=now,
            updated_at_ms=now,
        )
        self.store.upsert_schedule(schedule)
        logger.info(f"Cron: added job '{name}' ({schedule.id})")
        return schedule

    def remove_job(self, job_id: str) -> bool:
        """删除指定 ID 的 Schedule。返回是否成功删除。"""
        removed = self.store.delete_schedule(job_id)
        if removed:
            logger.info(f"Cron: removed job {job_id}")
        return removed

    def enable_job(self, job_id: str, enabled: bool = True) -> Schedule | None:
        """启用或禁用 Schedule。重新启用时从当前时间开始计算，不补跑禁用期间的触发。"""
        schedule = self.store.set_schedule_enabled(job_id, enabled, self.clock())
        if schedule:
            logger.info(f"Cron: {'enabled' if enabled else 'disabled'} job {job_id}")
        return schedule

    async def run_job(self, job_id: str, force: bool = False) -> ScheduleRun | None:
        """
        手动触发一次运行并等待结束。

        force=True 时可执行已禁用的 Schedule。仍然遵守单飞：
        已有运行中的实例时返回 None。
        """
        schedule = self.store.get_schedule(job_id)
        if schedule is None or (not force and not schedule.enabled):
            return None

        run_id = short_id(12)
        if not self.store.try_start_run(schedule.id, run_id, self.clock()):
            logger.info(f"Cron: '{schedule.label}' is already running")
            return None

        await self._execute(schedule, run_id)
        if self._fatal:
            raise self._fatal
        return self.store.get_run(run_id)

    def runs(self, job_id: str | None = None, limit: int = 20) -> list[ScheduleRun]:
        return self.store.list_runs(job_id, limit)

    def status(self) -> dict:
        """获取服务状态摘要（运行状态、Schedule 数、进行中的运行、上次 tick 时间）。"""
        schedules = self.store.list_schedules()
        return {
            "enabled": self._running,
            "jobs": len(schedules),
            "active_jobs": sum(1 for s in schedules if s.enabled),
            "running": len(self.store.list_running_runs()),
            "last_tick_at_ms": self.store.get_marker(TICK_MARKER),
        }
