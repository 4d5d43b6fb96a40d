"""A persistent task queue stored in an SQLite database."""

from __future__ import annotations

import hashlib
import json
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator, Optional

from .core import (
    CronPattern,
    FangTaskState,
    NoTimestampsError,
    ScheduleOnce,
    Task,
    TaskNotSchedulableError,
)
from .cron import parse_schedule
from .runnable import Runnable

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICROSECOND = timedelta(microseconds=1)
_PENDING_STATES = (FangTaskState.NEW.value, FangTaskState.RETRIED.value)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS fang_tasks (
    id TEXT PRIMARY KEY,
    metadata TEXT NOT NULL,
    error_message TEXT,
    state TEXT NOT NULL DEFAULT 'new'
        CHECK (state IN ('new', 'in_progress', 'failed', 'finished', 'retried')),
    task_type TEXT NOT NULL DEFAULT 'common',
    uniq_hash TEXT,
    retries INTEGER NOT NULL DEFAULT 0,
    scheduled_at INTEGER NOT NULL,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS fang_tasks_state_index ON fang_tasks (state);
CREATE INDEX IF NOT EXISTS fang_tasks_type_index ON fang_tasks (task_type);
CREATE INDEX IF NOT EXISTS fang_tasks_scheduled_at_index ON fang_tasks (scheduled_at);
CREATE INDEX IF NOT EXISTS fang_tasks_uniq_hash ON fang_tasks (uniq_hash);
"""


class QueueError(Exception):
    """An operation on the queue's storage failed."""


class TaskNotUniqError(QueueError):
    """The operation needs a task whose ``uniq()`` returns True."""

    def __init__(
        self,
        message: str = (
            "Can not perform this operation if task is not uniq, "
            "please check its definition in impl Runnable"
        ),
    ):
        super().__init__(message)


def calculate_hash(json_text: str) -> str:
    """Hex-encoded SHA-256 digest of the given text."""
    return hashlib.sha256(json_text.encode("utf-8")).hexdigest()


def _metadata_text(metadata: dict[str, Any]) -> str:
    return json.dumps(metadata, separators=(",", ":"), sort_keys=True, ensure_ascii=False)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _to_micros(moment: datetime) -> int:
    return (_as_utc(moment) - _EPOCH) // _MICROSECOND


def _from_micros(value: int) -> datetime:
    return _EPOCH + timedelta(microseconds=value)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=uuid.UUID(row["id"]),
        metadata=json.loads(row["metadata"]),
        error_message=row["error_message"],
        state=FangTaskState(row["state"]),
        task_type=row["task_type"],
        uniq_hash=row["uniq_hash"],
        retries=row["retries"],
        scheduled_at=_from_micros(row["scheduled_at"]),
        created_at=_from_micros(row["created_at"]),
        updated_at=_from_micros(row["updated_at"]),
    )


class Queueable(ABC):
    """Operations a synchronous task queue provides to workers and tasks."""

    @abstractmethod
    def fetch_and_touch_task(self, task_type: str) -> Optional[Task]:
        """Take the next due task of ``task_type`` and mark it in progress."""

    @abstractmethod
    def insert_task(self, params: Runnable) -> Task:
        """Enqueue a task to run as soon as possible."""

    @abstractmethod
    def schedule_task(self, params: Runnable) -> Task:
        """Enqueue a task at the moment given by its ``cron()``."""

    @abstractmethod
    def remove_all_tasks(self) -> int:
        """Remove every task; return how many were removed."""

    @abstractmethod
    def remove_all_scheduled_tasks(self) -> int:
        """Remove tasks scheduled in the future; return how many were removed."""

    @abstractmethod
    def remove_tasks_of_type(self, task_type: str) -> int:
        """Remove all tasks of ``task_type``; return how many were removed."""

    @abstractmethod
    def remove_task(self, task_id: uuid.UUID) -> int:
        """Remove the task with the given id; return how many were removed."""

    @abstractmethod
    def remove_task_by_metadata(self, task: Runnable) -> int:
        """Remove tasks with the same metadata as a uniq ``task``."""

    @abstractmethod
    def find_task_by_id(self, task_id: uuid.UUID) -> Optional[Task]:
        """Return the task with the given id, or None."""

    @abstractmethod
    def update_task_state(self, task: Task, state: FangTaskState) -> Task:
        """Set the state of ``task`` and return the stored result."""

    @abstractmethod
    def fail_task(self, task: Task, error: str) -> Task:
        """Mark ``task`` failed with an error message."""

    @abstractmethod
    def schedule_retry(self, task: Task, backoff_seconds: int, error: str) -> Task:
        """Mark ``task`` retried and run it again after ``backoff_seconds``."""


class Queue(Queueable):
    """A task queue kept in an SQLite database, safe to share between threads."""

    def __init__(self, database: str = ":memory:", *, timeout: float = 5.0):
        self.database = database
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(
                database,
                timeout=timeout,
                check_same_thread=False,
                isolation_level=None,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(_SCHEMA)
        except sqlite3.Error as error:
            raise QueueError(f"cannot open task database {database!r}: {error}") from error

    def __enter__(self) -> "Queue":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the underlying database connection."""
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as error:
                raise QueueError(str(error)) from error
            try:
                yield self._conn
            except sqlite3.Error as error:
                self._conn.rollback()
                raise QueueError(str(error)) from error
            except BaseException:
                self._conn.rollback()
                raise
            try:
                self._conn.execute("COMMIT")
            except sqlite3.Error as error:
                self._conn.rollback()
                raise QueueError(str(error)) from error

    @staticmethod
    def _select_by_id(conn: sqlite3.Connection, task_id: uuid.UUID) -> Optional[Task]:
        row = conn.execute(
            "SELECT * FROM fang_tasks WHERE id = ?", (str(task_id),)
        ).fetchone()
        return _row_to_task(row) if row is not None else None

    @classmethod
    def _require_by_id(cls, conn: sqlite3.Connection, task_id: uuid.UUID) -> Task:
        task = cls._select_by_id(conn, task_id)
        if task is None:
            raise QueueError(f"task {task_id} not found")
        return task

    @staticmethod
    def _delete(conn: sqlite3.Connection, where: str, args: tuple[Any, ...]) -> int:
        return conn.execute(f"DELETE FROM fang_tasks {where}", args).rowcount

    def _update(self, conn: sqlite3.Connection, task: Task, **columns: Any) -> Task:
        assignments = ", ".join(f"{name} = ?" for name in columns)
        cursor = conn.execute(
            f"UPDATE fang_tasks SET {assignments} WHERE id = ?",
            (*columns.values(), str(task.id)),
        )
        if cursor.rowcount != 1:
            raise QueueError(f"task {task.id} not found")
        return self._require_by_id(conn, task.id)

    def _insert(self, params: Runnable, scheduled_at: datetime) -> Task:
        metadata = params.to_metadata()
        text = _metadata_text(metadata)
        uniq_hash = calculate_hash(text) if params.uniq() else None
        with self._transaction() as conn:
            if uniq_hash is not None:
                placeholders = ", ".join("?" for _ in _PENDING_STATES)
                row = conn.execute(
                    "SELECT * FROM fang_tasks WHERE uniq_hash = ? "
                    f"AND state IN ({placeholders}) LIMIT 1",
                    (uniq_hash, *_PENDING_STATES),
                ).fetchone()
                if row is not None:
                    return _row_to_task(row)
            task_id = uuid.uuid4()
            now = _to_micros(_now())
            conn.execute(
                "INSERT INTO fang_tasks (id, metadata, error_message, state, task_type, "
                "uniq_hash, retries, scheduled_at, created_at, updated_at) "
                "VALUES (?, ?, NULL, ?, ?, ?, 0, ?, ?, ?)",
                (
                    str(task_id),
                    text,
                    FangTaskState.NEW.value,
                    params.task_type(),
                    uniq_hash,
                    _to_micros(scheduled_at),
                    now,
                    now,
                ),
            )
            return self._require_by_id(conn, task_id)

    def fetch_and_touch_task(self, task_type: str) -> Optional[Task]:
        placeholders = ", ".join("?" for _ in _PENDING_STATES)
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM fang_tasks WHERE scheduled_at <= ? "
                f"AND state IN ({placeholders}) AND task_type = ? "
                "ORDER BY scheduled_at ASC, created_at ASC, rowid ASC LIMIT 1",
                (_to_micros(_now()), *_PENDING_STATES, task_type),
            ).fetchone()
            if row is None:
                return None
            return self._update(
                conn,
                _row_to_task(row),
                state=FangTaskState.IN_PROGRESS.value,
                updated_at=_to_micros(_now()),
            )

    def insert_task(self, params: Runnable) -> Task:
        return self._insert(params, _now())

    def schedule_task(self, params: Runnable) -> Task:
        scheduled = params.cron()
        if isinstance(scheduled, CronPattern):
            moment = parse_schedule(scheduled.pattern).next_after(_now())
            if moment is None:
                raise NoTimestampsError()
        elif isinstance(scheduled, ScheduleOnce):
            moment = _as_utc(scheduled.moment)
        else:
            raise TaskNotSchedulableError()
        return self._insert(params, moment)

    def remove_all_tasks(self) -> int:
        with self._transaction() as conn:
            return self._delete(conn, "", ())

    def remove_all_scheduled_tasks(self) -> int:
        with self._transaction() as conn:
            return self._delete(conn, "WHERE scheduled_at > ?", (_to_micros(_now()),))

    def remove_tasks_of_type(self, task_type: str) -> int:
        with self._transaction() as conn:
            return self._delete(conn, "WHERE task_type = ?", (task_type,))

    def remove_task(self, task_id: uuid.UUID) -> int:
        with self._transaction() as conn:
            return self._delete(conn, "WHERE id = ?", (str(task_id),))

    def remove_task_by_metadata(self, task: Runnable) -> int:
        if not task.uniq():
            raise TaskNotUniqError()
        uniq_hash = calculate_hash(_metadata_text(task.to_metadata()))
        with self._transaction() as conn:
            return self._delete(conn, "WHERE uniq_hash = ?", (uniq_hash,))

    def find_task_by_id(self, task_id: uuid.UUID) -> Optional[Task]:
        with self._transaction() as conn:
            return self._select_by_id(conn, task_id)

    def update_task_state(self, task: Task, state: FangTaskState) -> Task:
        with self._transaction() as conn:
            return self._update(
                conn, task, state=state.value, updated_at=_to_micros(_now())
            )

    def fail_task(self, task: Task, error: str) -> Task:
        with self._transaction() as conn:
            return self._update(
                conn,
                task,
                state=FangTaskState.FAILED.value,
                error_message=error,
                updated_at=_to_micros(_now()),
            )

    def schedule_retry(self, task: Task, backoff_seconds: int, error: str) -> Task:
        now = _now()
        scheduled_at = now + timedelta(seconds=backoff_seconds)
        with self._transaction() as conn:
            return self._update(
                conn,
                task,
                state=FangTaskState.RETRIED.value,
                error_message=error,
                retries=task.retries + 1,
                scheduled_at=_to_micros(scheduled_at),
                updated_at=_to_micros(now),
            )