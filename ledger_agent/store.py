"""Task and audit persistence.

The engine writes two kinds of record:

- ``Task``: a scheduled or staged tool execution. Created PENDING by the
  component that schedules it; its terminal status (COMPLETED or FAILED) is
  written exactly once by whoever runs it.
- ``ModelEvent``: an append-only audit record of one agent round.

``InMemoryStore`` is the default and what tests use. ``SQLiteStore`` keeps
the same records in a local database file, with a ``task_deps`` edge table
for dependencies.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class TaskStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Task(BaseModel):
    """A deferred unit of tool execution."""

    id: int
    cbid: int
    thread_id: int
    tool_call_id: str
    tool_name: str
    tool_args: dict[str, Any] = {}
    handle: str
    status: TaskStatus = TaskStatus.PENDING
    depends_on: list[int] = []
    request_model_event_id: int | None = None
    result: dict[str, Any] | None = None
    created_at: str = Field(default_factory=_now)
    updated_at: str | None = None

    @property
    def settled(self) -> bool:
        return self.status != TaskStatus.PENDING


class NewTask(BaseModel):
    """Fields the caller supplies when creating a Task."""

    cbid: int
    thread_id: int
    tool_call_id: str
    tool_name: str
    tool_args: dict[str, Any] = {}
    handle: str
    depends_on: list[int] = []
    request_model_event_id: int | None = None


class ModelEvent(BaseModel):
    """Immutable audit record of one agent round."""

    id: int | None = None
    thread_id: int
    sender_id: int | None = None
    model_id: str
    system_prompt: str = ""
    input_prompt: str = ""
    tool_calls: list[dict[str, Any]] = []
    response_content: str | None = None
    assistant_message_id: int | None = None
    cb_profile_id: int | None = None
    created_at: str = Field(default_factory=_now)


class TaskTransitionError(ValueError):
    """Task status can only move from PENDING to a terminal state, once."""


def _check_transition(task: Task, status: TaskStatus) -> None:
    if status == TaskStatus.PENDING:
        raise TaskTransitionError(f"Task {task.id} cannot move back to pending")
    if task.settled:
        raise TaskTransitionError(f"Task {task.id} is already {task.status.value}")


class TaskStore(Protocol):
    async def create_task(self, new: NewTask) -> Task: ...
    async def update_task_status(
        self, task_id: int, status: TaskStatus, result: dict[str, Any] | None = None
    ) -> Task: ...
    async def get_task(self, task_id: int) -> Task | None: ...


class ModelEventStore(Protocol):
    async def append_model_event(self, event: ModelEvent) -> ModelEvent: ...
    async def list_model_events(self, thread_id: int, limit: int = 50) -> list[ModelEvent]: ...


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryStore:
    """Process-local store for tests and single-process runs."""

    def __init__(self) -> None:
        self.tasks: dict[int, Task] = {}
        self.events: list[ModelEvent] = []
        self._task_ids = itertools.count(1)
        self._event_ids = itertools.count(1)

    async def create_task(self, new: NewTask) -> Task:
        for dep in new.depends_on:
            if dep not in self.tasks:
                raise KeyError(f"Unknown dependency task {dep}")
        task = Task(id=next(self._task_ids), **new.model_dump())
        self.tasks[task.id] = task
        return task

    async def update_task_status(
        self, task_id: int, status: TaskStatus, result: dict[str, Any] | None = None
    ) -> Task:
        task = self.tasks[task_id]
        _check_transition(task, status)
        updated = task.model_copy(update={"status": status, "result": result, "updated_at": _now()})
        self.tasks[task_id] = updated
        return updated

    async def get_task(self, task_id: int) -> Task | None:
        return self.tasks.get(task_id)

    async def append_model_event(self, event: ModelEvent) -> ModelEvent:
        stored = event.model_copy(update={"id": next(self._event_ids)})
        self.events.append(stored)
        return stored

    async def list_model_events(self, thread_id: int, limit: int = 50) -> list[ModelEvent]:
        matching = [e for e in self.events if e.thread_id == thread_id]
        return matching[-limit:]


# ---------------------------------------------------------------------------
# SQLite
# ---------------------------------------------------------------------------

_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    cbid TEXT NOT NULL,
    thread_id TEXT NOT NULL,
    tool_call_id TEXT NOT NULL,
    tool_name TEXT NOT NULL,
    tool_args TEXT,
    handle TEXT NOT NULL,
    status TEXT NOT NULL,
    request_model_event_id TEXT,
    result TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS task_deps (
    task_id INTEGER NOT NULL REFERENCES tasks(id),
    depends_on INTEGER NOT NULL REFERENCES tasks(id),
    PRIMARY KEY (task_id, depends_on)
);

CREATE TABLE IF NOT EXISTS model_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    thread_id TEXT NOT NULL,
    sender_id TEXT,
    model_id TEXT NOT NULL,
    system_prompt TEXT,
    input_prompt TEXT,
    tool_calls TEXT,
    response_content TEXT,
    assistant_message_id TEXT,
    cb_profile_id TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_thread ON tasks(thread_id);
CREATE INDEX IF NOT EXISTS idx_events_thread ON model_events(thread_id);
"""


def _id_text(value: int | None) -> str | None:
    return None if value is None else str(value)


def _id_int(value: str | None) -> int | None:
    return None if value is None else int(value)


class SQLiteStore:
    """SQLite-backed store. Ids are stored as decimal text.

    Blocking sqlite calls run in a worker thread so the event loop is never
    blocked; one connection is shared behind a lock.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def _get_db(self) -> sqlite3.Connection:
        """Lazy connection. Creates tables on first call."""
        if self._conn is not None:
            return self._conn
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.executescript(_TABLES_SQL)
        self._conn = conn
        return conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # -- Tasks ------------------------------------------------------------

    def _create_task_sync(self, new: NewTask) -> Task:
        with self._lock:
            db = self._get_db()
            created_at = _now()
            cur = db.execute(
                """INSERT INTO tasks
                   (cbid, thread_id, tool_call_id, tool_name, tool_args, handle,
                    status, request_model_event_id, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    str(new.cbid), str(new.thread_id), new.tool_call_id, new.tool_name,
                    json.dumps(new.tool_args, default=str), new.handle,
                    TaskStatus.PENDING.value, _id_text(new.request_model_event_id), created_at,
                ),
            )
            task_id = int(cur.lastrowid)
            db.executemany(
                "INSERT INTO task_deps (task_id, depends_on) VALUES (?, ?)",
                [(task_id, dep) for dep in new.depends_on],
            )
            db.commit()
            return Task(id=task_id, created_at=created_at, **new.model_dump())

    def _load_task(self, db: sqlite3.Connection, task_id: int) -> Task | None:
        row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if row is None:
            return None
        deps = [r[0] for r in db.execute(
            "SELECT depends_on FROM task_deps WHERE task_id = ? ORDER BY depends_on", (task_id,)
        ).fetchall()]
        return Task(
            id=row["id"],
            cbid=int(row["cbid"]),
            thread_id=int(row["thread_id"]),
            tool_call_id=row["tool_call_id"],
            tool_name=row["tool_name"],
            tool_args=json.loads(row["tool_args"] or "{}"),
            handle=row["handle"],
            status=TaskStatus(row["status"]),
            depends_on=deps,
            request_model_event_id=_id_int(row["request_model_event_id"]),
            result=json.loads(row["result"]) if row["result"] else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _get_task_sync(self, task_id: int) -> Task | None:
        with self._lock:
            return self._load_task(self._get_db(), task_id)

    def _update_task_sync(self, task_id: int, status: TaskStatus, result: dict[str, Any] | None) -> Task:
        with self._lock:
            db = self._get_db()
            task = self._load_task(db, task_id)
            if task is None:
                raise KeyError(f"Unknown task {task_id}")
            _check_transition(task, status)
            updated_at = _now()
            db.execute(
                "UPDATE tasks SET status = ?, result = ?, updated_at = ? WHERE id = ? AND status = ?",
                (
                    status.value,
                    json.dumps(result, default=str) if result is not None else None,
                    updated_at,
                    task_id,
                    TaskStatus.PENDING.value,
                ),
            )
            db.commit()
            return task.model_copy(update={"status": status, "result": result, "updated_at": updated_at})

    async def create_task(self, new: NewTask) -> Task:
        return await asyncio.to_thread(self._create_task_sync, new)

    async def update_task_status(
        self, task_id: int, status: TaskStatus, result: dict[str, Any] | None = None
    ) -> Task:
        return await asyncio.to_thread(self._update_task_sync, task_id, status, result)

    async def get_task(self, task_id: int) -> Task | None:
        return await asyncio.to_thread(self._get_task_sync, task_id)

    # -- Model events -----------------------------------------------------

    def _append_event_sync(self, event: ModelEvent) -> ModelEvent:
        with self._lock:
            db = self._get_db()
            cur = db.execute(
                """INSERT INTO model_events
                   (thread_id, sender_id, model_id, system_prompt, input_prompt, tool_calls,
                    response_content, assistant_message_id, cb_profile_id, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    str(event.thread_id), _id_text(event.sender_id), event.model_id,
                    event.system_prompt, event.input_prompt,
                    json.dumps(event.tool_calls, default=str), event.response_content,
                    _id_text(event.assistant_message_id), _id_text(event.cb_profile_id),
                    event.created_at,
                ),
            )
            db.commit()
            return event.model_copy(update={"id": int(cur.lastrowid)})

    def _list_events_sync(self, thread_id: int, limit: int) -> list[ModelEvent]:
        with self._lock:
            rows = self._get_db().execute(
                "SELECT * FROM model_events WHERE thread_id = ? ORDER BY id DESC LIMIT ?",
                (str(thread_id), limit),
            ).fetchall()
        events = [
            ModelEvent(
                id=row["id"],
                thread_id=int(row["thread_id"]),
                sender_id=_id_int(row["sender_id"]),
                model_id=row["model_id"],
                system_prompt=row["system_prompt"] or "",
                input_prompt=row["input_prompt"] or "",
                tool_calls=json.loads(row["tool_calls"] or "[]"),
                response_content=row["response_content"],
                assistant_message_id=_id_int(row["assistant_message_id"]),
                cb_profile_id=_id_int(row["cb_profile_id"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]
        events.reverse()
        return events

    async def append_model_event(self, event: ModelEvent) -> ModelEvent:
        return await asyncio.to_thread(self._append_event_sync, event)

    async def list_model_events(self, thread_id: int, limit: int = 50) -> list[ModelEvent]:
        return await asyncio.to_thread(self._list_events_sync, thread_id, limit)
