"""
状态存储 - 基于 SQLite 的崩溃安全存储，编排核心唯一的共享可变资源。

本模块实现了 StateStore：
- Schedule / ScheduleRun：定时单元定义与运行记录
- Task：后台任务及其单向状态迁移
- OutboxEntry：发件箱条目
- HeartbeatAlert：告警去重记录
- Marker：各循环写入的新鲜度标记（供健康探针读取）

两个原子原语：
- 检查并设置（try_start_run / claim_task）：实现单飞
- 读取并标记（drain）：实现"同一条目不会被取走两次"

所有原子操作都在 BEGIN IMMEDIATE 事务中完成，跨进程（gateway 与 CLI）同样有效。
组件之间不做额外加锁，只通过这些原语修改共享记录。

存储损坏（"database disk image is malformed" 等）会被转换为 StoreCorruptedError，
调用方不应吞掉该异常：带着损坏的存储继续运行比明确崩溃更糟。

二开提示：
- 如需换成外部数据库（如 PostgreSQL），保持本类的公开方法签名不变即可
"""

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from loguru import logger

from relaybot.errors import InvalidTransitionError, StoreCorruptedError
from relaybot.store.models import (
    HeartbeatAlert,
    OutboxEntry,
    Schedule,
    ScheduleRun,
    Task,
    payload_from_dict,
    payload_to_dict,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS schedules (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    schedule_expr TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1 CHECK (enabled IN (0, 1)),
    kind TEXT NOT NULL DEFAULT 'user' CHECK (kind IN ('system', 'default', 'user')),
    timeout_override INTEGER,
    destination TEXT,
    report_failures INTEGER NOT NULL DEFAULT 0 CHECK (report_failures IN (0, 1)),
    tz TEXT,
    created_at_ms INTEGER NOT NULL,
    updated_at_ms INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS schedule_state (
    schedule_id TEXT PRIMARY KEY,
    last_evaluated_ms INTEGER,
    running_run_id TEXT
);

CREATE TABLE IF NOT EXISTS schedule_runs (
    id TEXT PRIMARY KEY,
    schedule_id TEXT NOT NULL,
    started_at_ms INTEGER NOT NULL,
    ended_at_ms INTEGER,
    status TEXT NOT NULL CHECK (status IN ('running', 'success', 'failure', 'timeout', 'skipped')),
    output TEXT,
    error TEXT
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL CHECK (status IN ('pending', 'running', 'completed', 'failed')),
    task_desc TEXT NOT NULL,
    payload TEXT NOT NULL,
    destination TEXT NOT NULL,
    created_at_ms INTEGER NOT NULL,
    started_at_ms INTEGER,
    completed_at_ms INTEGER,
    result TEXT,
    error TEXT,
    pid INTEGER,
    timeout_override INTEGER
);

CREATE TABLE IF NOT EXISTS outbox (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    destination TEXT NOT NULL,
    body TEXT NOT NULL,
    producer_ref TEXT NOT NULL,
    produced_at_ms INTEGER NOT NULL,
    delivered INTEGER NOT NULL DEFAULT 0 CHECK (delivered IN (0, 1)),
    delivered_at_ms INTEGER,
    attempts INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS heartbeat_alerts (
    fingerprint TEXT PRIMARY KEY,
    last_sent_at_ms INTEGER NOT NULL,
    last_text TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS markers (
    name TEXT PRIMARY KEY,
    value_ms INTEGER NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_schedule_runs_single_flight
    ON schedule_runs(schedule_id) WHERE status = 'running';
CREATE INDEX IF NOT EXISTS idx_schedule_runs_schedule_started
    ON schedule_runs(schedule_id, started_at_ms);
CREATE INDEX IF NOT EXISTS idx_tasks_status_created
    ON tasks(status, created_at_ms);
CREATE INDEX IF NOT EXISTS idx_outbox_destination_pending
    ON outbox(destination, delivered, produced_at_ms, seq);
"""

_TERMINAL_TASK_STATUSES = ("completed", "failed")
_TERMINAL_RUN_STATUSES = ("success", "failure", "timeout")
_CORRUPTION_MARKERS = ("malformed", "not a database", "file is encrypted")


def _is_corruption(exc: sqlite3.DatabaseError) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _CORRUPTION_MARKERS)


class StateStore:
    """
    崩溃安全的状态存储。

    每次操作打开一个短连接（WAL 模式 + busy_timeout），操作都很快完成，
    不会等待任何子进程工作。

    属性:
        path: SQLite 数据库文件路径
    """

    def __init__(self, path: Path | str, busy_timeout_s: float = 30.0):
        self.path = Path(path)
        self.busy_timeout_s = busy_timeout_s
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    # ========== 连接与事务 ==========

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """打开一个自动提交模式的连接，并把损坏类错误转换为 StoreCorruptedError。"""
        conn: sqlite3.Connection | None = None
        try:
            conn = sqlite3.connect(self.path, timeout=self.busy_timeout_s, isolation_level=None)
            conn.row_factory = sqlite3.Row
            yield conn
        except sqlite3.DatabaseError as e:
            if _is_corruption(e):
                logger.critical(f"State store corrupted at {self.path}: {e}")
                raise StoreCorruptedError(f"State store corrupted at {self.path}: {e}") from e
            raise
        finally:
            if conn is not None:
                conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE 事务：立即获取写锁，保证检查与写入之间没有其他写者。"""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)

    def check_integrity(self) -> None:
        """运行 PRAGMA quick_check，结果不是 ok 时抛出 StoreCorruptedError。"""
        with self._connect() as conn:
            rows = conn.execute("PRAGMA quick_check").fetchall()
        results = [row[0] for row in rows]
        if results != ["ok"]:
            raise StoreCorruptedError(f"Integrity check failed: {'; '.join(results[:5])}")

    # ========== Schedule ==========

    def upsert_schedule(self, schedule: Schedule) -> Schedule:
        """新增或更新一个 Schedule。id 是主键，创建后不可变；更新时保留 created_at_ms。"""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO schedules(
                    id, name, schedule_expr, payload_json, enabled, kind, timeout_override,
                    destination, report_failures, tz, created_at_ms, updated_at_ms
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    schedule_expr = excluded.schedule_expr,
                    payload_json = excluded.payload_json,
                    enabled = excluded.enabled,
                    kind = excluded.kind,
                    timeout_override = excluded.timeout_override,
                    destination = excluded.destination,
                    report_failures = excluded.report_failures,
                    tz = excluded.tz,
                    updated_at_ms = excluded.updated_at_ms
                """,
                _schedule_params(schedule),
            )
            row = conn.execute("SELECT * FROM schedules WHERE id = ?", (schedule.id,)).fetchone()
        return _row_to_schedule(row)

    def ensure_schedules(self, defaults: list[Schedule]) -> list[str]:
        """系统引导：只插入缺失的 Schedule（已存在的保持用户的修改不变）。返回新增的 id 列表。"""
        added: list[str] = []
        with self._transaction() as conn:
            for schedule in defaults:
                cur = conn.execute(
                    """
                    INSERT OR IGNORE INTO schedules(
                        id, name, schedule_expr, payload_json, enabled, kind, timeout_override,
                        destination, report_failures, tz, created_at_ms, updated_at_ms
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    _schedule_params(schedule),
                )
                if cur.rowcount:
                    added.append(schedule.id)
        return added

    def get_schedule(self, schedule_id: str) -> Schedule | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM schedules WHERE id = ?", (schedule_id,)).fetchone()
        return _row_to_schedule(row) if row else None

    def list_schedules(self, include_disabled: bool = True) -> list[Schedule]:
        query = "SELECT * FROM schedules"
        if not include_disabled:
            query += " WHERE enabled = 1"
        query += " ORDER BY created_at_ms, id"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_schedule(row) for row in rows]

    def set_schedule_enabled(self, schedule_id: str, enabled: bool, now_ms: int) -> Schedule | None:
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE schedules SET enabled = ?, updated_at_ms = ? WHERE id = ?",
                (1 if enabled else 0, now_ms, schedule_id),
            )
            if not cur.rowcount:
                return None
            if enabled:
                # 重新启用时从当前时间开始计算，避免补跑禁用期间错过的触发
                conn.execute(
                    """
                    INSERT INTO schedule_state(schedule_id, last_evaluated_ms) VALUES (?, ?)
                    ON CONFLICT(schedule_id) DO UPDATE SET last_evaluated_ms = excluded.last_evaluated_ms
                    """,
                    (schedule_id, now_ms),
                )
            row = conn.execute("SELECT * FROM schedules WHERE id = ?", (schedule_id,)).fetchone()
        return _row_to_schedule(row)

    def delete_schedule(self, schedule_id: str) -> bool:
        """显式删除一个 Schedule（只由用户操作触发）。运行历史保留。"""
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM schedules WHERE id = ?", (schedule_id,))
            conn.execute("DELETE FROM schedule_state WHERE schedule_id = ?", (schedule_id,))
        return cur.rowcount > 0

    # ========== ScheduleRun / 单飞 ==========

    def get_last_evaluated(self, schedule_id: str) -> int | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT last_evaluated_ms FROM schedule_state WHERE schedule_id = ?", (schedule_id,)
            ).fetchone()
        return row["last_evaluated_ms"] if row else None

    def touch_evaluated(self, schedule_id: str, now_ms: int) -> None:
        with self._transaction() as conn:
            _set_last_evaluated(conn, schedule_id, now_ms)

    def try_start_run(self, schedule_id: str, run_id: str, now_ms: int) -> bool:
        """
        原子地检查并设置 running 标记（单飞）。

        在同一个事务中：
        1. 检查该 Schedule 是否已有 running 标记，有则返回 False
        2. 设置 running 标记并推进 last_evaluated
        3. 插入一条 running 状态的 ScheduleRun

        返回:
            True 表示成功占位，调用方可以开始执行；False 表示已有运行中的实例
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT running_run_id FROM schedule_state WHERE schedule_id = ?", (schedule_id,)
            ).fetchone()
            if row and row["running_run_id"]:
                return False
            conn.execute(
                """
                INSERT INTO schedule_state(schedule_id, last_evaluated_ms, running_run_id) VALUES (?, ?, ?)
                ON CONFLICT(schedule_id) DO UPDATE SET
                    last_evaluated_ms = excluded.last_evaluated_ms,
                    running_run_id = excluded.running_run_id
                """,
                (schedule_id, now_ms, run_id),
            )
            conn.execute(
                "INSERT INTO schedule_runs(id, schedule_id, started_at_ms, status) VALUES (?, ?, ?, 'running')",
                (run_id, schedule_id, now_ms),
            )
        return True

    def finish_run(
        self,
        run_id: str,
        status: str,
        now_ms: int,
        output: str | None = None,
        error: str | None = None,
    ) -> ScheduleRun | None:
        """结束一次运行：记录结果并清除 running 标记。只对 running 状态的记录生效。"""
        if status not in _TERMINAL_RUN_STATUSES:
            raise ValueError(f"Invalid terminal run status: {status}")
        with self._transaction() as conn:
            cur = conn.execute(
                """
                UPDATE schedule_runs SET status = ?, ended_at_ms = ?, output = ?, error = ?
                WHERE id = ? AND status = 'running'
                """,
                (status, now_ms, output, error, run_id),
            )
            conn.execute(
                "UPDATE schedule_state SET running_run_id = NULL WHERE running_run_id = ?", (run_id,)
            )
            if not cur.rowcount:
                return None
            row = conn.execute("SELECT * FROM schedule_runs WHERE id = ?", (run_id,)).fetchone()
        return _row_to_run(row)

    def record_skipped_run(self, schedule_id: str, run_id: str, now_ms: int, reason: str) -> ScheduleRun:
        """记录一次因单飞被跳过的触发，同时推进 last_evaluated。"""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO schedule_runs(id, schedule_id, started_at_ms, ended_at_ms, status, error)
                VALUES (?, ?, ?, ?, 'skipped', ?)
                """,
                (run_id, schedule_id, now_ms, now_ms, reason),
            )
            _set_last_evaluated(conn, schedule_id, now_ms)
            row = conn.execute("SELECT * FROM schedule_runs WHERE id = ?", (run_id,)).fetchone()
        return _row_to_run(row)

    def get_run(self, run_id: str) -> ScheduleRun | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM schedule_runs WHERE id = ?", (run_id,)).fetchone()
        return _row_to_run(row) if row else None

    def list_runs(self, schedule_id: str | None = None, limit: int = 20) -> list[ScheduleRun]:
        """按开始时间倒序列出运行记录。"""
        with self._connect() as conn:
            if schedule_id:
                rows = conn.execute(
                    "SELECT * FROM schedule_runs WHERE schedule_id = ? ORDER BY started_at_ms DESC, rowid DESC LIMIT ?",
                    (schedule_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM schedule_runs ORDER BY started_at_ms DESC, rowid DESC LIMIT ?", (limit,)
                ).fetchall()
        return [_row_to_run(row) for row in rows]

    def recent_runs_by_schedule(self, per_schedule: int) -> dict[str, list[ScheduleRun]]:
        """每个 Schedule 最近 per_schedule 次已结束的运行（不含 skipped），按时间倒序。"""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM (
                    SELECT *, ROW_NUMBER() OVER (
                        PARTITION BY schedule_id ORDER BY started_at_ms DESC, rowid DESC
                    ) AS rn
                    FROM schedule_runs WHERE status IN ('success', 'failure', 'timeout')
                ) WHERE rn <= ? ORDER BY schedule_id, started_at_ms DESC, rn
                """,
                (per_schedule,),
            ).fetchall()
        grouped: dict[str, list[ScheduleRun]] = {}
        for row in rows:
            grouped.setdefault(row["schedule_id"], []).append(_row_to_run(row))
        return grouped

    def list_running_runs(self) -> list[ScheduleRun]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM schedule_runs WHERE status = 'running' ORDER BY started_at_ms"
            ).fetchall()
        return [_row_to_run(row) for row in rows]

    def reconcile_running_runs(self, now_ms: int, error: str = "interrupted") -> list[ScheduleRun]:
        """启动时调用：把上一个宿主进程遗留的 running 记录标记为 failure 并清除标记。"""
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM schedule_runs WHERE status = 'running'").fetchall()
            conn.execute(
                "UPDATE schedule_runs SET status = 'failure', ended_at_ms = ?, error = ? WHERE status = 'running'",
                (now_ms, error),
            )
            conn.execute("UPDATE schedule_state SET running_run_id = NULL WHERE running_run_id IS NOT NULL")
        return [_row_to_run(row) for row in rows]

    # ========== Task ==========

    def create_task(self, task: Task) -> Task:
        if task.status != "pending":
            raise InvalidTransitionError(f"New task {task.id} must start as pending, got {task.status}")
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO tasks(id, status, task_desc, payload, destination, created_at_ms, timeout_override)
                VALUES (?, 'pending', ?, ?, ?, ?, ?)
                """,
                (task.id, task.task_desc, task.payload, task.destination, task.created_at_ms, task.timeout_override),
            )
        return task

    def get_task(self, task_id: str) -> Task | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return _row_to_task(row) if row else None

    def list_tasks(self, status: str | None = None, limit: int | None = None) -> list[Task]:
        """按创建时间正序列出任务（pending 任务即按先来先服务的顺序）。"""
        query = "SELECT * FROM tasks"
        params: list = []
        if status:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY created_at_ms, rowid"
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_task(row) for row in rows]

    def claim_task(self, task_id: str, now_ms: int) -> Task | None:
        """原子地把任务从 pending 迁移到 running。已被他人认领或不存在时返回 None。"""
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE tasks SET status = 'running', started_at_ms = ? WHERE id = ? AND status = 'pending'",
                (now_ms, task_id),
            )
            if not cur.rowcount:
                return None
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return _row_to_task(row)

    def set_task_pid(self, task_id: str, pid: int | None) -> None:
        with self._transaction() as conn:
            conn.execute("UPDATE tasks SET pid = ? WHERE id = ? AND status = 'running'", (pid, task_id))

    def finish_task(
        self,
        task_id: str,
        status: str,
        now_ms: int,
        result: str | None = None,
        error: str | None = None,
    ) -> Task:
        """
        把任务从 running 迁移到终态（completed / failed）。

        异常:
            InvalidTransitionError: 目标状态不是终态，或任务当前不在 running 状态
        """
        if status not in _TERMINAL_TASK_STATUSES:
            raise InvalidTransitionError(f"Task {task_id}: {status} is not a terminal status")
        with self._transaction() as conn:
            cur = conn.execute(
                """
                UPDATE tasks SET status = ?, completed_at_ms = ?, result = ?, error = ?, pid = NULL
                WHERE id = ? AND status = 'running'
                """,
                (status, now_ms, result, error, task_id),
            )
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if row is None:
            raise InvalidTransitionError(f"Task {task_id} not found")
        if not cur.rowcount:
            raise InvalidTransitionError(f"Task {task_id}: cannot move from {row['status']} to {status}")
        return _row_to_task(row)

    def purge_tasks(self, max_age_ms: int, keep: int, now_ms: int) -> int:
        """清理终态任务：超过保留时长的删除；剩余的按完成时间只保留最新的 keep 条。"""
        cutoff = now_ms - max_age_ms
        with self._transaction() as conn:
            cur = conn.execute(
                """
                DELETE FROM tasks WHERE status IN ('completed', 'failed')
                AND COALESCE(completed_at_ms, created_at_ms) < ?
                """,
                (cutoff,),
            )
            deleted = cur.rowcount
            cur = conn.execute(
                """
                DELETE FROM tasks WHERE id IN (
                    SELECT id FROM tasks WHERE status IN ('completed', 'failed')
                    ORDER BY COALESCE(completed_at_ms, created_at_ms) DESC
                    LIMIT -1 OFFSET ?
                )
                """,
                (keep,),
            )
            deleted += cur.rowcount
        return deleted

    # ========== Outbox ==========

    def enqueue(self, entry: OutboxEntry) -> OutboxEntry:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO outbox(id, destination, body, producer_ref, produced_at_ms)
                VALUES (?, ?, ?, ?, ?)
                """,
                (entry.id, entry.destination, entry.body, entry.producer_ref, entry.produced_at_ms),
            )
        return entry

    def drain(self, destination: str, now_ms: int) -> list[OutboxEntry]:
        """
        原子地读取并标记：取出某个目标的全部未投递条目，并在同一事务中标记为已投递。

        顺序为生产者完成顺序（produced_at_ms，其次是插入序号）。
        同一目标的并发 drain 由 BEGIN IMMEDIATE 写锁串行化，不会返回同一条目两次。
        """
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM outbox WHERE destination = ? AND delivered = 0
                ORDER BY produced_at_ms, seq
                """,
                (destination,),
            ).fetchall()
            if not rows:
                return []
            conn.executemany(
                "UPDATE outbox SET delivered = 1, delivered_at_ms = ?, attempts = attempts + 1 WHERE seq = ?",
                [(now_ms, row["seq"]) for row in rows],
            )
        entries = [_row_to_entry(row) for row in rows]
        for entry in entries:
            entry.delivered = True
            entry.delivered_at_ms = now_ms
            entry.attempts += 1
        return entries

    def requeue(self, entry_ids: list[str]) -> int:
        """把投递失败的条目放回未投递状态（至少一次投递）。"""
        if not entry_ids:
            return 0
        with self._transaction() as conn:
            cur = conn.executemany(
                "UPDATE outbox SET delivered = 0, delivered_at_ms = NULL WHERE id = ?",
                [(entry_id,) for entry_id in entry_ids],
            )
        return cur.rowcount

    def pending_destinations(self) -> list[str]:
        """列出有未投递条目的目标，按最早条目的时间排序。"""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT destination, MIN(produced_at_ms) AS first_at FROM outbox
                WHERE delivered = 0 GROUP BY destination ORDER BY first_at
                """
            ).fetchall()
        return [row["destination"] for row in rows]

    def list_entries(
        self,
        destination: str | None = None,
        include_delivered: bool = False,
        limit: int = 50,
    ) -> list[OutboxEntry]:
        clauses: list[str] = []
        params: list = []
        if destination:
            clauses.append("destination = ?")
            params.append(destination)
        if not include_delivered:
            clauses.append("delivered = 0")
        query = "SELECT * FROM outbox"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY produced_at_ms, seq LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_entry(row) for row in rows]

    def purge_outbox(self, max_age_ms: int, now_ms: int) -> int:
        """删除投递时间早于保留窗口的已投递条目。未投递条目永不清理。"""
        with self._transaction() as conn:
            cur = conn.execute(
                "DELETE FROM outbox WHERE delivered = 1 AND delivered_at_ms < ?", (now_ms - max_age_ms,)
            )
        return cur.rowcount

    # ========== HeartbeatAlert ==========

    def get_alert(self, fingerprint: str) -> HeartbeatAlert | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM heartbeat_alerts WHERE fingerprint = ?", (fingerprint,)).fetchone()
        if not row:
            return None
        return HeartbeatAlert(
            fingerprint=row["fingerprint"],
            last_sent_at_ms=row["last_sent_at_ms"],
            last_text=row["last_text"],
        )

    def put_alert(self, fingerprint: str, now_ms: int, text: str = "") -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO heartbeat_alerts(fingerprint, last_sent_at_ms, last_text) VALUES (?, ?, ?)
                ON CONFLICT(fingerprint) DO UPDATE SET
                    last_sent_at_ms = excluded.last_sent_at_ms,
                    last_text = excluded.last_text
                """,
                (fingerprint, now_ms, text),
            )

    # ========== Marker ==========

    def set_marker(self, name: str, now_ms: int) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO markers(name, value_ms) VALUES (?, ?)
                ON CONFLICT(name) DO UPDATE SET value_ms = excluded.value_ms
                """,
                (name, now_ms),
            )

    def get_marker(self, name: str) -> int | None:
        with self._connect() as conn:
            row = conn.execute("SELECT value_ms FROM markers WHERE name = ?", (name,)).fetchone()
        return row["value_ms"] if row else None


# ==============================================================================
# 行 ↔ 数据类转换
# ==============================================================================


def _set_last_evaluated(conn: sqlite3.Connection, schedule_id: str, now_ms: int) -> None:
    conn.execute(
        """
        INSERT INTO schedule_state(schedule_id, last_evaluated_ms) VALUES (?, ?)
        ON CONFLICT(schedule_id) DO UPDATE SET last_evaluated_ms = excluded.last_evaluated_ms
        """,
        (schedule_id, now_ms),
    )


def _schedule_params(s: Schedule) -> tuple:
    return (
        s.id,
        s.name,
        s.schedule_expr,
        json.dumps(payload_to_dict(s.payload)),
        1 if s.enabled else 0,
        s.kind,
        s.timeout_override,
        s.destination,
        1 if s.report_failures else 0,
        s.tz,
        s.created_at_ms,
        s.updated_at_ms,
    )


def _row_to_schedule(row: sqlite3.Row) -> Schedule:
    return Schedule(
        id=row["id"],
        name=row["name"],
        schedule_expr=row["schedule_expr"],
        payload=payload_from_dict(json.loads(row["payload_json"])),
        enabled=bool(row["enabled"]),
        kind=row["kind"],
        timeout_override=row["timeout_override"],
        destination=row["destination"],
        report_failures=bool(row["report_failures"]),
        tz=row["tz"],
        created_at_ms=row["created_at_ms"],
        updated_at_ms=row["updated_at_ms"],
    )


def _row_to_run(row: sqlite3.Row) -> ScheduleRun:
    return ScheduleRun(
        id=row["id"],
        schedule_id=row["schedule_id"],
        started_at_ms=row["started_at_ms"],
        ended_at_ms=row["ended_at_ms"],
        status=row["status"],
        output=row["output"],
        error=row["error"],
    )


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        status=row["status"],
        task_desc=row["task_desc"],
        payload=row["payload"],
        destination=row["destination"],
        created_at_ms=row["created_at_ms"],
        started_at_ms=row["started_at_ms"],
        completed_at_ms=row["completed_at_ms"],
        result=row["result"],
        error=row["error"],
        pid=row["pid"],
        timeout_override=row["timeout_override"],
    )


def _row_to_entry(row: sqlite3.Row) -> OutboxEntry:
    return OutboxEntry(
        id=row["id"],
        destination=row["destination"],
        body=row["body"],
        producer_ref=row["producer_ref"],
        produced_at_ms=row["produced_at_ms"],
        delivered=bool(row["delivered"]),
        delivered_at_ms=row["delivered_at_ms"],
        attempts=row["attempts"],
    )
