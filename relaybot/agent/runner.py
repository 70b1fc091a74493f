"""
后台任务执行模块 - 按需创建、有界并发地执行 Agent 后台任务。

与定时任务不同，后台任务由请求方（聊天消息、CLI）按需创建，
执行完毕后把结果投递回创建时绑定的目标地址。

【任务的工作原理】
1. create() 写入一条 pending 任务后立即返回，不阻塞调用方
2. 轮询循环按创建时间先后认领 pending 任务（pending → running 是原子操作）
3. 工作池满时，多余的任务保持 pending，等下一个周期
4. 每个任务只携带自己的指令，在按目标地址划分的工作目录中执行，不共享任何对话上下文
5. 成功：原始结果写入发件箱，状态 completed；结果为 SKIP 时不写入
6. 失败/超时：状态 failed，并且一定写入一条简短的失败通知

【启动收尾】
宿主进程崩溃时，running 状态的任务不会有人收尾。
启动时把它们全部标记为 failed（interrupted），记录的子进程仍存活时先杀掉。

【Java 开发者类比】
- create() 相当于 executorService.submit()，但任务先持久化
- run_pending_once() 相当于线程池从阻塞队列 take() 任务
- asyncio.Semaphore 相当于固定大小的线程池
"""

import asyncio
from pathlib import Path

from loguru import logger

from relaybot.errors import InvalidTransitionError, StoreCorruptedError, TaskInterruptedError
from relaybot.executor.process import ProcessExecutor, is_process_alive, kill_process_group
from relaybot.outbox.service import Outbox
from relaybot.store.models import Task
from relaybot.store.sqlite import StateStore
from relaybot.utils.helpers import ensure_dir, now_ms, safe_filename, short_id

POLL_MARKER = "taskrunner.poll"


class TaskRunner:
    """
    后台任务执行器 - 负责任务的创建、认领、执行与结果投递。

    属性:
        store: 状态存储
        executor: Agent 进程执行器
        outbox: 发件箱
        workspace: 工作区根目录，任务在 <workspace>/tasks/<目标地址> 下执行
        max_concurrent: 工作池大小
        poll_interval_s: 轮询间隔（秒）
        default_timeout_s: 任务未单独设置超时时的默认值（秒）
        _inflight: 当前正在执行的任务字典 {task_id: asyncio.Task}
    """

    def __init__(
        self,
        store: StateStore,
        executor: ProcessExecutor,
        outbox: Outbox,
        workspace: Path,
        max_concurrent: int = 4,
        poll_interval_s: float = 5,
        default_timeout_s: int = 600,
        clock=now_ms,
    ):
        self.store = store
        self.executor = executor
        self.outbox = outbox
        self.workspace = workspace
        self.max_concurrent = max_concurrent
        self.poll_interval_s = poll_interval_s
        self.default_timeout_s = default_timeout_s
        self.clock = clock
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._inflight: dict[str, asyncio.Task[None]] = {}
        self._task: asyncio.Task | None = None
        self._running = False
        self._fatal: StoreCorruptedError | None = None

    # ========== 创建 ==========

    def create(
        self,
        task_desc: str,
        payload: str,
        destination: str,
        timeout_override: int | None = None,
    ) -> Task:
        """
        创建一个 pending 后台任务，立即返回。

        参数:
            task_desc: 简短的任务描述（用于通知与状态摘要）
            payload: 交给 Agent 的完整指令
            destination: 结果投递目标（"channel:chat_id"）
            timeout_override: 单独的超时（秒）

        返回:
            创建的 Task
        """
        task = Task(
            id=short_id(),
            task_desc=task_desc,
            payload=payload,
            destination=destination,
            created_at_ms=self.clock(),
            timeout_override=timeout_override,
        )
        self.store.create_task(task)
        logger.info(f"Task [{task.id}] created: {task_desc}")
        return task

    # ========== 生命周期 ==========

    async def start(self) -> None:
        self.reconcile()
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Task runner started ({self.max_concurrent} workers, poll every {self.poll_interval_s}s)")

    def stop(self) -> None:
        """停止轮询并取消进行中的任务（子进程会被杀掉，记录在下次启动时收尾）。"""
        self._running = False
        if self._task:
            self._task.cancel()
            self._task = None
        for task in list(self._inflight.values()):
            task.cancel()

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    def reconcile(self) -> list[Task]:
        """把遗留的 running 任务标记为 failed（interrupted），并杀掉仍存活的孤儿子进程。"""
        reconciled: list[Task] = []
        interrupted = TaskInterruptedError()
        for task in self.store.list_tasks(status="running"):
            if task.pid and is_process_alive(task.pid):
                logger.warning(f"Task [{task.id}]: killing orphaned agent process {task.pid}")
                kill_process_group(task.pid)
            try:
                reconciled.append(
                    self.store.finish_task(task.id, "failed", self.clock(), error=str(interrupted))
                )
            except InvalidTransitionError as e:
                logger.warning(f"Task [{task.id}]: {e}")
                continue
            logger.warning(f"Task [{task.id}] was interrupted by a restart")
        return reconciled

    async def _run_loop(self) -> None:
        while self._running:
            try:
                self.run_pending_once()
                await asyncio.sleep(self.poll_interval_s)
                if self._fatal:
                    raise self._fatal
            except asyncio.CancelledError:
                break
            except StoreCorruptedError:
                raise
            except Exception as e:
                logger.error(f"Task runner error: {e}")
                await asyncio.sleep(self.poll_interval_s)

    # ========== 执行 ==========

    def run_pending_once(self) -> list[str]:
        """
        执行一个轮询周期：在有空闲工作位时按先来先服务认领 pending 任务。

        返回:
            本周期认领并启动的任务 id 列表
        """
        started: list[str] = []
        free = self.max_concurrent - len(self._inflight)
        if free > 0:
            for pending in self.store.list_tasks(status="pending", limit=free):
                claimed = self.store.claim_task(pending.id, self.clock())
                if claimed is None:
                    continue  # 已被其他进程认领
                self._launch(claimed)
                started.append(claimed.id)

        self.store.set_marker(POLL_MARKER, self.clock())
        return started

    def _launch(self, task: Task) -> None:
        handle = asyncio.create_task(self._execute(task))
        self._inflight[task.id] = handle
        handle.add_done_callback(lambda _: self._inflight.pop(task.id, None))

    async def join(self) -> None:
        """等待所有进行中的任务结束（测试与关闭时使用）。"""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)
        if self._fatal:
            raise self._fatal

    @property
    def inflight(self) -> list[str]:
        return list(self._inflight)

    def workdir_for(self, destination: str) -> Path:
        """按目标地址划分的工作目录，不同目标的任务互不可见。"""
        return ensure_dir(self.workspace / "tasks" / safe_filename(destination))

    async def _execute(self, task: Task) -> None:
        try:
            async with self._semaphore:
                logger.info(f"Task [{task.id}] starting: {task.task_desc}")
                try:
                    result = await self.executor.run(
                        task.payload,
                        cwd=self.workdir_for(task.destination),
                        timeout_s=task.timeout_override or self.default_timeout_s,
                        on_spawn=lambda pid: self.store.set_task_pid(task.id, pid),
                    )
                except StoreCorruptedError:
                    raise
                except Exception as e:
                    # 工作目录不可用、执行器崩溃等，同样收尾为 failed 并通知
                    self._fail(task, f"Task crashed: {e}")
                    return

                if result.ok:
                    self.store.finish_task(task.id, "completed", self.clock(), result=result.output)
                    self.outbox.enqueue(task.destination, result.output, f"task:{task.id}")
                    logger.info(f"Task [{task.id}] completed ({result.duration_ms}ms)")
                    return

                self._fail(task, result.error or result.outcome)
        except StoreCorruptedError as e:
            self._fatal = e
        except InvalidTransitionError as e:
            logger.warning(f"Task [{task.id}]: {e}")

    def _fail(self, task: Task, error: str) -> None:
        """标记任务失败并写入失败通知（失败一定要让请求方知道）。"""
        self.store.finish_task(task.id, "failed", self.clock(), error=error)
        self.outbox.enqueue(
            task.destination,
            f"Background task failed: {task.task_desc}\n{error}",
            f"task:{task.id}",
        )
        logger.error(f"Task [{task.id}] failed: {error}")

    # ========== 状态摘要 ==========

    def summary(self, recent_window_ms: int = 60 * 60 * 1000) -> str:
        """
        后台任务状态摘要：运行中的任务，以及最近一小时内完成的任务。

        返回:
            多行摘要文本，没有可报告内容时返回空字符串
        """
        now = self.clock()
        running = self.store.list_tasks(status="running")
        recent = [
            t for t in self.store.list_tasks(status="completed")
            if t.completed_at_ms and t.completed_at_ms >= now - recent_window_ms
        ]
        if not running and not recent:
            return ""

        lines = ["[Background Tasks]"]
        for t in running:
            elapsed = (now - (t.started_at_ms or now)) // 60_000
            lines.append(f'Running: "{t.task_desc}" ({elapsed}m elapsed)')
        for t in recent:
            ago = (now - t.completed_at_ms) // 60_000
            lines.append(f'Completed: "{t.task_desc}" ({ago}m ago)')
        return "\n".join(lines)
