"""
CLI 命令模块 - relaybot 的所有命令行命令定义。

本模块使用 Typer 框架定义 relaybot 的完整 CLI 命令体系：
- onboard：初始化配置和工作空间
- gateway：启动宿主进程（调度 + 后台任务 + 发件箱投递 + 健康巡检）
- status：查看系统状态
- cron：定时任务管理（增删改查、手动触发、运行历史）
- tasks：后台任务管理（创建、列表、详情）
- outbox：发件箱管理（查看未投递条目、手动投递一轮）
- heartbeat：手动执行一次健康巡检

技术栈：
- Typer：CLI 框架（基于 Click，支持类型注解自动生成帮助文档）
- Rich：终端美化输出（表格、面板）

二开提示：
- gateway 命令是最完整的启动入口，包含了所有服务的编排逻辑
- CLI 与 gateway 可以同时运行：所有修改都经由同一个 SQLite 存储的原子操作
"""

import asyncio
import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from relaybot import __logo__, __version__
from relaybot.config.schema import Config
from relaybot.errors import StoreCorruptedError

if TYPE_CHECKING:
    from relaybot.agent.runner import TaskRunner
    from relaybot.cron.service import CronService
    from relaybot.executor.process import ProcessExecutor
    from relaybot.outbox.service import Outbox
    from relaybot.store.sqlite import StateStore

# 创建 Typer 应用实例（CLI 根命令）
app = typer.Typer(
    name="relaybot",
    help=f"{__logo__} relaybot - Personal assistant host",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    """版本号回调：当用户传入 --version/-v 参数时，打印版本号并退出。"""
    if value:
        console.print(f"{__logo__} relaybot v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """relaybot CLI 根命令回调。处理全局选项（如 --version）。"""
    pass


# ============================================================================
# 组件装配
# ============================================================================


@dataclass
class Runtime:
    """一次命令执行所需的全部组件。"""
    config: Config
    store: "StateStore"
    executor: "ProcessExecutor"
    outbox: "Outbox"
    cron: "CronService"
    runner: "TaskRunner"


def _make_runtime(config: Config | None = None) -> Runtime:
    """
    按配置装配编排核心组件。

    存储损坏时打印错误并以退出码 1 结束。
    """
    from relaybot.agent.runner import TaskRunner
    from relaybot.config.loader import get_store_path, load_config
    from relaybot.cron.handlers import build_handlers
    from relaybot.cron.service import CronService
    from relaybot.executor.process import ProcessExecutor
    from relaybot.outbox.service import Outbox
    from relaybot.store.sqlite import StateStore
    from relaybot.utils.helpers import get_workspace_path

    config = config or load_config()
    try:
        store = StateStore(get_store_path())
    except StoreCorruptedError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    workspace = get_workspace_path(config.agent.workspace)
    executor = ProcessExecutor(
        command=config.agent.command,
        output_format=config.agent.output_format,
        default_timeout_s=config.agent.timeout_s,
        max_output_chars=config.agent.max_output_chars,
    )
    outbox = Outbox(store)
    cron = CronService(
        store,
        executor,
        outbox,
        default_destination=config.scheduler.default_destination,
        default_timeout_s=config.agent.timeout_s,
        tick_interval_s=config.scheduler.tick_interval_s,
        max_concurrent_runs=config.scheduler.max_concurrent_runs,
        workspace=workspace,
        handlers=build_handlers(store, config),
    )
    runner = TaskRunner(
        store,
        executor,
        outbox,
        workspace=workspace,
        max_concurrent=config.tasks.max_concurrent,
        poll_interval_s=config.tasks.poll_interval_s,
        default_timeout_s=config.agent.timeout_s,
    )
    return Runtime(config, store, executor, outbox, cron, runner)


def _make_heartbeat(rt: Runtime):
    from relaybot.heartbeat.probes import build_probes
    from relaybot.heartbeat.service import HeartbeatService
    from relaybot.heartbeat.triage import AgentTriager

    hb = rt.config.heartbeat
    return HeartbeatService(
        rt.store,
        rt.outbox,
        probes=build_probes(rt.store, rt.config),
        triager=AgentTriager(rt.executor, timeout_s=hb.triage_timeout_s, cwd=rt.config.workspace_path),
        destination=rt.config.alert_destination,
        interval_s=hb.interval_s,
        suppression_window_s=hb.suppression_window_s,
        enabled=hb.enabled,
    )


def _fmt_time(ms: int | None) -> str:
    import time
    if not ms:
        return ""
    return time.strftime("%Y-%m-%d %H:%M", time.localtime(ms / 1000))


# ============================================================================
# Onboard / Setup
# ============================================================================


@app.command()
def onboard():
    """
    初始化 relaybot 配置和工作空间。

    执行流程：
    1. 在 ~/.relaybot/ 下创建默认配置文件 config.json
    2. 创建工作空间目录
    3. 初始化状态数据库并写入系统 Schedule
    """
    from relaybot.config.loader import get_config_path, get_store_path, save_config
    from relaybot.utils.helpers import get_workspace_path

    config_path = get_config_path()

    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    config = Config()
    save_config(config)
    console.print(f"[green]✓[/green] Created config at {config_path}")

    workspace = get_workspace_path(config.agent.workspace)
    console.print(f"[green]✓[/green] Created workspace at {workspace}")

    rt = _make_runtime(config)
    rt.cron.bootstrap()
    console.print(f"[green]✓[/green] Initialized state store at {get_store_path()}")

    console.print(f"\n{__logo__} relaybot is ready!")
    console.print("\nNext steps:")
    console.print("  1. Make sure the agent command works: [cyan]claude -p[/cyan]")
    console.print("  2. Optionally enable Telegram in [cyan]~/.relaybot/config.json[/cyan]")
    console.print("  3. Start the host: [cyan]relaybot gateway[/cyan]")


# ============================================================================
# Gateway
# ============================================================================


@app.command()
def gateway(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    启动 relaybot 宿主进程（核心启动命令）。

    编排所有子服务：
    1. 加载配置，打开状态存储并做完整性检查
    2. 创建投递路由（控制台 + 已启用的渠道）
    3. 启动调度服务（收尾遗留运行、引导系统 Schedule）
    4. 启动后台任务执行器（收尾遗留任务）
    5. 启动发件箱分发器与健康巡检
    6. 任一循环因存储损坏退出时，整个进程以非零退出码终止
    """
    from relaybot.delivery.router import DeliveryRouter
    from relaybot.outbox.dispatcher import OutboxDispatcher

    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")

    console.print(f"{__logo__} Starting relaybot gateway...")

    rt = _make_runtime()
    config = rt.config
    try:
        rt.store.check_integrity()
    except StoreCorruptedError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    router = DeliveryRouter.from_config(config, console)
    dispatcher = OutboxDispatcher(rt.outbox, router, poll_interval_s=config.outbox.poll_interval_s)
    heartbeat = _make_heartbeat(rt)

    console.print(f"[green]✓[/green] Channels enabled: {', '.join(router.enabled_channels)}")
    console.print(f"[green]✓[/green] Tasks: {config.tasks.max_concurrent} workers")
    if config.heartbeat.enabled:
        console.print(f"[green]✓[/green] Heartbeat: every {config.heartbeat.interval_s // 60}m")

    async def run() -> int:
        await router.start_all()
        try:
            if config.scheduler.enabled:
                await rt.cron.start()
                cron_status = rt.cron.status()
                console.print(f"[green]✓[/green] Cron: {cron_status['active_jobs']} active schedules")
            await rt.runner.start()
            await dispatcher.start()
            await heartbeat.start()

            loops = [t for t in (rt.cron.task, rt.runner.task, dispatcher.task, heartbeat.task) if t]
            done, _ = await asyncio.wait(loops, return_when=asyncio.FIRST_EXCEPTION)
            for task in done:
                if not task.cancelled() and task.exception():
                    raise task.exception()
            return 0
        except StoreCorruptedError as e:
            logger.critical(f"Halting: {e}")
            console.print(f"[red]Fatal: {e}[/red]")
            return 1
        finally:
            heartbeat.stop()
            dispatcher.stop()
            rt.runner.stop()
            rt.cron.stop()
            await router.stop_all()

    try:
        code = asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\nShutting down...")
        code = 0
    if code:
        raise typer.Exit(code)


# ============================================================================
# Cron Commands
# ============================================================================


cron_app = typer.Typer(help="Manage scheduled jobs")
app.add_typer(cron_app, name="cron")


@cron_app.command("list")
def cron_list(
    all: bool = typer.Option(False, "--all", "-a", help="Include disabled jobs"),
):
    """
    列出所有 Schedule。

    以表格形式展示 ID、名称、调度表达式、类型、状态和下次运行时间。
    默认只显示启用的 Schedule，使用 --all 显示全部。
    """
    rt = _make_runtime()
    jobs = rt.cron.list_jobs(include_disabled=all)

    if not jobs:
        console.print("No scheduled jobs.")
        return

    table = Table(title="Scheduled Jobs")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Schedule")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Next Run")

    for job in jobs:
        status = "[green]enabled[/green]" if job.enabled else "[dim]disabled[/dim]"
        table.add_row(
            job.id, job.name, job.schedule_expr, job.kind, status, _fmt_time(rt.cron.next_run_at(job))
        )

    console.print(table)


@cron_app.command("add")
def cron_add(
    name: str = typer.Option(..., "--name", "-n", help="Job name"),
    message: str = typer.Option(None, "--message", "-m", help="Instruction for the agent"),
    builtin: str = typer.Option(None, "--builtin", "-b", help="Built-in handler name"),
    cron_expr: str = typer.Option(None, "--cron", "-c", help="Cron expression (e.g. '0 9 * * *')"),
    at: str = typer.Option(None, "--at", help="Run once at time (ISO format)"),
    to: str = typer.Option(None, "--to", help="Destination (e.g. 'telegram:123456')"),
    timeout: int = typer.Option(None, "--timeout", help="Timeout in seconds"),
    report_failures: bool = typer.Option(False, "--report-failures", help="Deliver failure notices"),
    tz: str = typer.Option(None, "--tz", help="Time zone for the cron expression"),
):
    """
    添加一个新的 Schedule。

    调度方式（二选一）：
    - --cron "表达式"：使用 cron 表达式（如 "0 9 * * *" = 每天早上9点）
    - --at "时间"：指定时间执行一次（ISO 格式）

    载荷（二选一）：--message 交给 Agent 的指令，或 --builtin 内置处理器。
    """
    from relaybot.store.models import BuiltinHandler, FreeformInstruction

    if bool(cron_expr) == bool(at):
        console.print("[red]Error: Must specify exactly one of --cron or --at[/red]")
        raise typer.Exit(1)
    if bool(message) == bool(builtin):
        console.print("[red]Error: Must specify exactly one of --message or --builtin[/red]")
        raise typer.Exit(1)

    expr = cron_expr or f"@at {at}"
    payload = FreeformInstruction(message) if message else BuiltinHandler(builtin)

    rt = _make_runtime()
    try:
        job = rt.cron.add_job(
            name=name,
            schedule_expr=expr,
            payload=payload,
            destination=to,
            timeout_override=timeout,
            report_failures=report_failures,
            tz=tz,
        )
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]✓[/green] Added job '{job.name}' ({job.id})")


@cron_app.command("remove")
def cron_remove(
    job_id: str = typer.Argument(..., help="Job ID to remove"),
):
    """删除指定 ID 的 Schedule。"""
    rt = _make_runtime()
    if rt.cron.remove_job(job_id):
        console.print(f"[green]✓[/green] Removed job {job_id}")
    else:
        console.print(f"[red]Job {job_id} not found[/red]")


@cron_app.command("enable")
def cron_enable(
    job_id: str = typer.Argument(..., help="Job ID"),
    disable: bool = typer.Option(False, "--disable", help="Disable instead of enable"),
):
    """启用或禁用指定的 Schedule。使用 --disable 标志来禁用。"""
    rt = _make_runtime()
    job = rt.cron.enable_job(job_id, enabled=not disable)
    if job:
        status = "disabled" if disable else "enabled"
        console.print(f"[green]✓[/green] Job '{job.label}' {status}")
    else:
        console.print(f"[red]Job {job_id} not found[/red]")


@cron_app.command("run")
def cron_run(
    job_id: str = typer.Argument(..., help="Job ID to run"),
    force: bool = typer.Option(False, "--force", "-f", help="Run even if disabled"),
):
    """手动执行指定的 Schedule 并等待结束。产出写入发件箱，由 gateway 投递。"""
    rt = _make_runtime()
    run = asyncio.run(rt.cron.run_job(job_id, force=force))

    if run is None:
        console.print(f"[red]Failed to run job {job_id}[/red]")
        raise typer.Exit(1)
    if run.status == "success":
        console.print(f"[green]✓[/green] Job executed (run {run.id})")
    else:
        console.print(f"[red]Job {run.status}: {run.error}[/red]")


@cron_app.command("runs")
def cron_runs(
    job_id: str = typer.Argument(None, help="Job ID (all jobs when omitted)"),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of runs to show"),
):
    """查看运行历史（按开始时间倒序）。"""
    rt = _make_runtime()
    runs = rt.cron.runs(job_id, limit)
    if not runs:
        console.print("No runs recorded.")
        return

    table = Table(title="Schedule Runs")
    table.add_column("Run", style="cyan")
    table.add_column("Job")
    table.add_column("Started")
    table.add_column("Status")
    table.add_column("Error")

    colors = {"success": "green", "running": "yellow", "skipped": "dim"}
    for run in runs:
        color = colors.get(run.status, "red")
        table.add_row(
            run.id, run.schedule_id, _fmt_time(run.started_at_ms),
            f"[{color}]{run.status}[/{color}]", run.error or "",
        )
    console.print(table)


# ============================================================================
# Task Commands
# ============================================================================


tasks_app = typer.Typer(help="Manage background tasks")
app.add_typer(tasks_app, name="tasks")


@tasks_app.command("list")
def tasks_list(
    status: str = typer.Option(None, "--status", "-s", help="Filter by status"),
):
    """列出后台任务（按创建时间排序）。"""
    rt = _make_runtime()
    tasks = rt.store.list_tasks(status=status)
    if not tasks:
        console.print("No tasks.")
        return

    table = Table(title="Background Tasks")
    table.add_column("ID", style="cyan")
    table.add_column("Task")
    table.add_column("Destination")
    table.add_column("Status")
    table.add_column("Created")

    for t in tasks:
        table.add_row(t.id, t.task_desc, t.destination, t.status, _fmt_time(t.created_at_ms))
    console.print(table)


@tasks_app.command("show")
def tasks_show(
    task_id: str = typer.Argument(..., help="Task ID"),
):
    """查看单个后台任务的详情（结果或错误）。"""
    rt = _make_runtime()
    task = rt.store.get_task(task_id)
    if task is None:
        console.print(f"[red]Task {task_id} not found[/red]")
        raise typer.Exit(1)

    console.print(f"[cyan]{task.id}[/cyan] {task.task_desc}")
    console.print(f"Status: {task.status}")
    console.print(f"Destination: {task.destination}")
    console.print(f"Created: {_fmt_time(task.created_at_ms)}")
    if task.started_at_ms:
        console.print(f"Started: {_fmt_time(task.started_at_ms)}")
    if task.completed_at_ms:
        console.print(f"Completed: {_fmt_time(task.completed_at_ms)}")
    if task.result:
        console.print(f"\n{task.result}")
    if task.error:
        console.print(f"\n[red]{task.error}[/red]")


@tasks_app.command("create")
def tasks_create(
    desc: str = typer.Option(..., "--desc", "-d", help="Short task description"),
    message: str = typer.Option(..., "--message", "-m", help="Instruction for the agent"),
    to: str = typer.Option(None, "--to", help="Destination (default: scheduler default destination)"),
    timeout: int = typer.Option(None, "--timeout", help="Timeout in seconds"),
):
    """创建一个 pending 后台任务，由运行中的 gateway 执行。"""
    rt = _make_runtime()
    task = rt.runner.create(
        desc, message, to or rt.config.scheduler.default_destination, timeout_override=timeout
    )
    console.print(f"[green]✓[/green] Created task {task.id}")


# ============================================================================
# Outbox Commands
# ============================================================================


outbox_app = typer.Typer(help="Inspect and deliver the outbox")
app.add_typer(outbox_app, name="outbox")


@outbox_app.command("list")
def outbox_list(
    to: str = typer.Option(None, "--to", help="Filter by destination"),
    all: bool = typer.Option(False, "--all", "-a", help="Include delivered entries"),
):
    """列出发件箱条目（默认只显示未投递的）。"""
    rt = _make_runtime()
    entries = rt.store.list_entries(destination=to, include_delivered=all)
    if not entries:
        console.print("Outbox is empty.")
        return

    table = Table(title="Outbox")
    table.add_column("ID", style="cyan")
    table.add_column("Destination")
    table.add_column("From")
    table.add_column("Produced")
    table.add_column("Delivered")
    table.add_column("Body")

    from relaybot.utils.helpers import truncate_string
    for e in entries:
        table.add_row(
            e.id, e.destination, e.producer_ref, _fmt_time(e.produced_at_ms),
            "[green]✓[/green]" if e.delivered else "", truncate_string(e.body.replace("\n", " "), 60),
        )
    console.print(table)


@outbox_app.command("drain")
def outbox_drain():
    """手动执行一个投递周期（使用配置中启用的渠道）。"""
    from relaybot.delivery.router import DeliveryRouter
    from relaybot.outbox.dispatcher import OutboxDispatcher

    rt = _make_runtime()
    router = DeliveryRouter.from_config(rt.config, console)
    dispatcher = OutboxDispatcher(rt.outbox, router)

    async def run() -> int:
        await router.start_all()
        try:
            return await dispatcher.dispatch_once()
        finally:
            await router.stop_all()

    delivered = asyncio.run(run())
    console.print(f"[green]✓[/green] Delivered {delivered} entries")


# ============================================================================
# Heartbeat Commands
# ============================================================================


heartbeat_app = typer.Typer(help="Health monitoring")
app.add_typer(heartbeat_app, name="heartbeat")


@heartbeat_app.command("check")
def heartbeat_check():
    """立即执行一次健康巡检。告警照常经过分诊与去重后写入发件箱。"""
    rt = _make_runtime()
    heartbeat = _make_heartbeat(rt)
    try:
        report = asyncio.run(heartbeat.run_once())
    except StoreCorruptedError as e:
        console.print(f"[red]Fatal: {e}[/red]")
        raise typer.Exit(1)

    table = Table(title="Health Checks")
    table.add_column("Probe", style="cyan")
    table.add_column("Result")
    table.add_column("Detail")
    for r in report.results:
        table.add_row(r.name, "[green]ok[/green]" if r.ok else "[red]FAIL[/red]", r.detail)
    console.print(table)
    console.print(f"Outcome: {report.status}")


# ============================================================================
# Status Commands
# ============================================================================


@app.command()
def status():
    """
    显示 relaybot 系统状态。

    展示内容：
    - 配置文件、工作空间、状态数据库路径
    - Agent 命令行
    - Schedule / 后台任务 / 发件箱概况
    - 各循环的最近活动时间
    """
    from relaybot.config.loader import get_config_path, get_store_path
    from relaybot.utils.helpers import time_ago

    config_path = get_config_path()
    rt = _make_runtime()
    config = rt.config
    workspace = config.workspace_path

    console.print(f"{__logo__} relaybot Status\n")

    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")
    console.print(f"Workspace: {workspace} {'[green]✓[/green]' if workspace.exists() else '[red]✗[/red]'}")
    console.print(f"State store: {get_store_path()}")
    console.print(f"Agent: {' '.join(config.agent.command)}")

    cron_status = rt.cron.status()
    console.print(f"Schedules: {cron_status['active_jobs']} active / {cron_status['jobs']} total")
    for name in ("pending", "running", "failed"):
        console.print(f"Tasks {name}: {len(rt.store.list_tasks(status=name))}")
    console.print(f"Outbox pending: {len(rt.store.list_entries(limit=1000))}")

    for marker in ("scheduler.tick", "taskrunner.poll", "heartbeat.run"):
        value = rt.store.get_marker(marker)
        console.print(f"{marker}: {time_ago(value) if value else '[dim]never[/dim]'}")

    summary = rt.runner.summary()
    if summary:
        console.print(f"\n{summary}")


if __name__ == "__main__":
    app()
