"""
Position store adapter backed by libSQL.

All reads and writes of task rows go through a TaskTransaction obtained from
TaskStore.transaction(). Write transactions start with BEGIN IMMEDIATE so the
database write lock is held before any range-shift read, which serializes
conflicting writers to a partition.

Database: ~/.taskboard/taskboard.db (see config.DB_PATH)
"""

import json
import logging
import threading
import time
from collections.abc import Iterator
from contextlib import closing, contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import libsql_experimental as libsql  # type: ignore[import-untyped]  # pyright: ignore[reportMissingModuleSource]

from .config import BUSY_TIMEOUT_MS, DB_PATH, SPACING
from .errors import (
    ConflictError,
    InvalidArgumentError,
    OperationCancelledError,
    StorageError,
)
from .models import (
    TASK_COLUMNS,
    Task,
    TaskFilters,
    TaskPriority,
    TaskStatus,
    _json_dumps,
    _row_to_task,
)

logger = logging.getLogger(__name__)

# Driver messages that mean another connection holds the lock
_LOCK_MARKERS = ("database is locked", "database table is locked", "busy")

_SELECT_TASKS = f"SELECT {', '.join(TASK_COLUMNS)} FROM tasks"

# Partition order; created_at and id keep ties deterministic
_PARTITION_ORDER = "position ASC, created_at ASC, id ASC"

# Board order for listings spanning several statuses
_STATUS_RANK = (
    "CASE status "
    + " ".join(f"WHEN '{status.value}' THEN {rank}" for rank, status in enumerate(TaskStatus))
    + " END"
)

# Columns update_fields may write
_UPDATABLE_COLUMNS = ("title", "description", "priority", "tags", "due_date")


def _now() -> str:
    return datetime.now().isoformat(timespec="microseconds")


def _escape_like(text: str) -> str:
    """Escape LIKE wildcards so text matches literally (ESCAPE '\\')."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _wrap_error(exc: Exception) -> StorageError:
    """Map a driver exception onto the engine's error taxonomy."""
    message = str(exc)
    if any(marker in message.lower() for marker in _LOCK_MARKERS):
        return ConflictError(message)
    return StorageError(message)


def _init_schema(conn: "libsql.Connection") -> None:  # pyright: ignore[reportAttributeAccessIssue]
    """Initialize database schema."""
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS tasks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            owner TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'todo',
            position INTEGER NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            priority TEXT NOT NULL DEFAULT 'medium',
            tags TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            due_date TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_tasks_partition ON tasks(owner, status, position);
        CREATE INDEX IF NOT EXISTS idx_tasks_priority ON tasks(owner, priority);
    """)

    # Databases created before due dates existed
    cursor = conn.execute("PRAGMA table_info(tasks)")
    columns = [col[1] for col in cursor.fetchall()]
    if "due_date" not in columns:
        conn.execute("ALTER TABLE tasks ADD COLUMN due_date TEXT")

    conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_due_date ON tasks(owner, due_date)")
    conn.commit()


class TaskTransaction:
    """Statements executed inside one store transaction.

    Every statement first checks the cancellation event and the deadline, so
    an expired or cancelled operation stops before touching the database again.
    """

    def __init__(
        self,
        conn: "libsql.Connection",  # pyright: ignore[reportAttributeAccessIssue]
        deadline: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._conn = conn
        self._deadline = deadline
        self._cancel_event = cancel_event

    def check(self) -> None:
        """Raise if the operation was cancelled or ran past its deadline."""
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise OperationCancelledError("Operation cancelled")
        if self._deadline is not None and time.monotonic() >= self._deadline:
            raise OperationCancelledError("Operation deadline exceeded")

    def execute(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> Any:
        self.check()
        try:
            return self._conn.execute(sql, tuple(params))
        except Exception as e:
            raise _wrap_error(e) from e

    def commit(self) -> None:
        self.check()
        try:
            self._conn.commit()
        except Exception as e:
            raise _wrap_error(e) from e

    def rollback(self) -> None:
        """Roll back, logging instead of masking the error that caused it."""
        try:
            self._conn.rollback()
        except Exception:
            logger.warning("Rollback failed", exc_info=True)

    # ============================================
    # Reads
    # ============================================

    def get_task(self, task_id: int) -> Task | None:
        cursor = self.execute(f"{_SELECT_TASKS} WHERE id = ?", (task_id,))
        row = cursor.fetchone()
        if not row:
            return None
        return _row_to_task(row, TASK_COLUMNS)

    def max_position(self, owner: str, status: TaskStatus) -> int | None:
        """Highest position in the partition, or None when it is empty."""
        cursor = self.execute(
            "SELECT MAX(position) FROM tasks WHERE owner = ? AND status = ?",
            (owner, status.value),
        )
        row = cursor.fetchone()
        return row[0] if row else None

    def partition(self, owner: str, status: TaskStatus) -> list[Task]:
        """All tasks of one (owner, status) partition in board order."""
        cursor = self.execute(
            f"{_SELECT_TASKS} WHERE owner = ? AND status = ? ORDER BY {_PARTITION_ORDER}",
            (owner, status.value),
        )
        return [_row_to_task(row, TASK_COLUMNS) for row in cursor.fetchall()]

    def statuses(self, owner: str) -> list[TaskStatus]:
        """Statuses the owner currently has tasks in, in board order."""
        cursor = self.execute(
            "SELECT DISTINCT status FROM tasks WHERE owner = ?",
            (owner,),
        )
        found = {value for (value,) in cursor.fetchall()}
        return [status for status in TaskStatus if status.value in found]

    def _filters(self, owner: str, filters: TaskFilters | None) -> tuple[str, list[Any]]:
        where = "WHERE owner = ?"
        params: list[Any] = [owner]
        if filters is None:
            return where, params

        if filters.statuses:
            placeholders = ",".join("?" * len(filters.statuses))
            where += f" AND status IN ({placeholders})"
            params.extend(status.value for status in filters.statuses)
        if filters.priority:
            where += " AND priority = ?"
            params.append(filters.priority.value)
        if filters.tag:
            # tags is a JSON array; match the quoted element
            where += " AND tags LIKE ? ESCAPE '\\'"
            params.append(f"%{_escape_like(json.dumps(filters.tag))}%")
        if filters.search:
            where += " AND (title LIKE ? ESCAPE '\\' OR description LIKE ? ESCAPE '\\')"
            pattern = f"%{_escape_like(filters.search)}%"
            params.extend([pattern, pattern])
        if filters.due_start:
            where += " AND due_date >= ?"
            params.append(filters.due_start)
        if filters.due_end:
            where += " AND due_date <= ?"
            params.append(filters.due_end)
        return where, params

    def list_tasks(
        self,
        owner: str,
        filters: TaskFilters | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Task]:
        where, params = self._filters(owner, filters)
        cursor = self.execute(
            f"{_SELECT_TASKS} {where} ORDER BY {_STATUS_RANK}, {_PARTITION_ORDER} LIMIT ? OFFSET ?",
            [*params, limit, offset],
        )
        return [_row_to_task(row, TASK_COLUMNS) for row in cursor.fetchall()]

    def count_tasks(self, owner: str, filters: TaskFilters | None = None) -> int:
        where, params = self._filters(owner, filters)
        cursor = self.execute(f"SELECT COUNT(*) FROM tasks {where}", params)
        row = cursor.fetchone()
        return row[0] if row else 0

    # ============================================
    # Writes
    # ============================================

    def insert_task(
        self,
        owner: str,
        status: TaskStatus,
        position: int,
        title: str,
        description: str | None = None,
        priority: TaskPriority = TaskPriority.MEDIUM,
        tags: list[str] | None = None,
        due_date: str | None = None,
    ) -> Task:
        now = _now()
        cursor = self.execute(
            """
            INSERT INTO tasks (
                owner, status, position, title, description, priority, tags,
                due_date, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                owner,
                status.value,
                position,
                title,
                description,
                priority.value,
                _json_dumps(tags or []),
                due_date,
                now,
                now,
            ),
        )
        task = self.get_task(cursor.lastrowid)
        if task is None:
            raise StorageError("Inserted task could not be read back")
        return task

    def shift(
        self,
        owner: str,
        status: TaskStatus,
        delta: int,
        *,
        gte: int | None = None,
        gt: int | None = None,
        lt: int | None = None,
        lte: int | None = None,
        exclude_id: int | None = None,
    ) -> int:
        """Add ``delta`` to the position of every task in a partition range.

        Bounds left as None are open. Returns the number of shifted rows.
        """
        sql = "UPDATE tasks SET position = position + ?, updated_at = ? WHERE owner = ? AND status = ?"
        params: list[Any] = [delta, _now(), owner, status.value]
        for op, bound in ((">=", gte), (">", gt), ("<", lt), ("<=", lte)):
            if bound is not None:
                sql += f" AND position {op} ?"
                params.append(bound)
        if exclude_id is not None:
            sql += " AND id != ?"
            params.append(exclude_id)

        cursor = self.execute(sql, params)
        logger.debug(
            "Shifted %d task(s) in %s/%s by %+d", cursor.rowcount, owner, status.value, delta
        )
        return cursor.rowcount

    def place(self, task_id: int, status: TaskStatus, position: int) -> None:
        """Write a task's status and position."""
        self.execute(
            "UPDATE tasks SET status = ?, position = ?, updated_at = ? WHERE id = ?",
            (status.value, position, _now(), task_id),
        )

    def update_fields(self, task_id: int, owner: str, values: dict[str, Any]) -> bool:
        """Write descriptive fields of an owner's task.

        Only the columns in _UPDATABLE_COLUMNS may be set; ordering columns
        change through shift() and place(). Returns False when no row matched.
        """
        unknown = set(values) - set(_UPDATABLE_COLUMNS)
        if unknown:
            raise InvalidArgumentError(f"Cannot update column(s): {', '.join(sorted(unknown))}")

        updates = ["updated_at = ?"]
        params: list[Any] = [_now()]
        for column in _UPDATABLE_COLUMNS:
            if column not in values:
                continue
            value = values[column]
            if column == "tags":
                value = _json_dumps(value or [])
            elif column == "priority":
                value = value.value
            updates.append(f"{column} = ?")
            params.append(value)

        params.extend([task_id, owner])
        cursor = self.execute(
            f"UPDATE tasks SET {', '.join(updates)} WHERE id = ? AND owner = ?",
            params,
        )
        return cursor.rowcount > 0

    def delete_task(self, task_id: int, owner: str) -> bool:
        cursor = self.execute(
            "DELETE FROM tasks WHERE id = ? AND owner = ?",
            (task_id, owner),
        )
        return cursor.rowcount > 0


class TaskStore:
    """Transactional access to the tasks table.

    Opens one connection per transaction; the schema is created on first use.
    """

    def __init__(
        self,
        db_path: Path | str = DB_PATH,
        spacing: int = SPACING,
        busy_timeout_ms: int = BUSY_TIMEOUT_MS,
    ) -> None:
        if isinstance(spacing, bool) or not isinstance(spacing, int) or spacing <= 0:
            raise InvalidArgumentError(f"Spacing must be a positive integer, got {spacing!r}")
        self.db_path = Path(db_path)
        self.spacing = spacing
        self.busy_timeout_ms = busy_timeout_ms
        self._schema_ready = False
        self._schema_lock = threading.Lock()

    def _busy_timeout_ms(self, deadline: float | None) -> int:
        """Lock wait for a new connection, bounded by the operation deadline."""
        if deadline is None:
            return int(self.busy_timeout_ms)
        remaining_ms = (deadline - time.monotonic()) * 1000
        if remaining_ms <= 0:
            raise OperationCancelledError("Operation deadline exceeded")
        return max(1, min(int(self.busy_timeout_ms), int(remaining_ms)))

    def _connect(self, deadline: float | None = None) -> "libsql.Connection":  # pyright: ignore[reportAttributeAccessIssue]
        """Get database connection, creating schema if needed.

        The connection's busy timeout never outlasts ``deadline``, so waiting
        on another writer's lock cannot overrun the caller's timeout.
        """
        busy_timeout_ms = self._busy_timeout_ms(deadline)
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = libsql.connect(str(self.db_path))  # pyright: ignore[reportAttributeAccessIssue]
        except Exception as e:
            raise _wrap_error(e) from e

        try:
            conn.execute(f"PRAGMA busy_timeout = {busy_timeout_ms}")
            if not self._schema_ready:
                with self._schema_lock:
                    if not self._schema_ready:
                        _init_schema(conn)
                        self._schema_ready = True
        except Exception as e:
            conn.close()
            raise _wrap_error(e) from e
        return conn

    @contextmanager
    def transaction(
        self,
        write: bool = True,
        deadline: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Iterator[TaskTransaction]:
        """Scoped transaction: commit on normal exit, roll back on any exception.

        Args:
            write: Take the write lock up front (BEGIN IMMEDIATE)
            deadline: time.monotonic() value after which statements are refused
            cancel_event: Event that aborts the transaction once set

        Yields:
            TaskTransaction bound to a fresh connection
        """
        with closing(self._connect(deadline)) as conn:
            tx = TaskTransaction(conn, deadline=deadline, cancel_event=cancel_event)
            try:
                tx.execute("BEGIN IMMEDIATE" if write else "BEGIN")
                yield tx
                tx.commit()
            except BaseException:
                tx.rollback()
                raise
