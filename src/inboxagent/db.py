from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from textwrap import dedent
from typing import Any, TypeVar

from pydantic import BaseModel

from inboxagent.errors import InputValidationError, InvalidTransition, NotFound, StorageError
from inboxagent.models import (
    Contact,
    HistoryEntry,
    InboundMessage,
    Owner,
    Task,
    TaskStatus,
    validate_transition,
)

log = logging.getLogger(__name__)


class ThreadSafeConnection:
    """:class:`sqlite3.Connection` wrapper serialising access with a lock.

    The scan loop fans out per-owner work on the event loop while the CLI and
    agent tools share the same connection, so every statement goes through
    the lock.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    def execute(self, sql: str, parameters: Any = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, parameters)

    def executescript(self, sql_script: str) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.executescript(sql_script)

    def commit(self) -> None:
        with self._lock:
            self._conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the lock for a read-modify-write sequence.

        Commits when the block exits normally, rolls back on any exception.
        """
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except BaseException:
                self._conn.rollback()
                raise

    def close(self) -> None:
        with self._lock:
            self._conn.close()


DbConnection = ThreadSafeConnection

ModelT = TypeVar("ModelT", bound=BaseModel)

# Columns a caller may change through update_task().
_TASK_UPDATE_FIELDS = (
    "status",
    "context",
    "conversation_history",
    "waiting_for",
    "last_action",
    "metadata",
)
_JSON_FIELDS = {"context", "conversation_history", "metadata"}


def _rows_to(model: type[ModelT], rows: list[sqlite3.Row]) -> list[ModelT]:
    return [model(**row) for row in rows]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_utc_iso(dt: datetime) -> str:
    """Normalise *dt* to a UTC ISO string so stored timestamps sort lexically."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _dump_json(value: Any) -> str:
    if isinstance(value, list):
        value = [v.model_dump() if isinstance(v, HistoryEntry) else v for v in value]
    return json.dumps(value, default=str)


def init_db(db_path: Path) -> ThreadSafeConnection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    raw = sqlite3.connect(str(db_path), check_same_thread=False)
    raw.row_factory = sqlite3.Row
    db = ThreadSafeConnection(raw)
    # The CLI and the scanner daemon share this file.
    db.execute("PRAGMA journal_mode=WAL")

    db.executescript(
        dedent("""\
        PRAGMA foreign_keys = ON;

        CREATE TABLE IF NOT EXISTS owners (
            id TEXT PRIMARY KEY,
            email TEXT NOT NULL,
            google_access_token TEXT,
            hubspot_access_token TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS contacts (
            owner_id TEXT NOT NULL,
            crm_id TEXT NOT NULL,
            email TEXT NOT NULL,
            firstname TEXT NOT NULL DEFAULT '',
            lastname TEXT NOT NULL DEFAULT '',
            phone TEXT NOT NULL DEFAULT '',
            notes TEXT NOT NULL DEFAULT '',
            PRIMARY KEY (owner_id, crm_id),
            FOREIGN KEY (owner_id) REFERENCES owners(id)
        );

        CREATE TABLE IF NOT EXISTS emails (
            owner_id TEXT NOT NULL,
            message_id TEXT NOT NULL,
            from_email TEXT NOT NULL,
            from_name TEXT NOT NULL DEFAULT '',
            subject TEXT NOT NULL DEFAULT '',
            body TEXT NOT NULL DEFAULT '',
            received_at TEXT NOT NULL,
            PRIMARY KEY (owner_id, message_id),
            FOREIGN KEY (owner_id) REFERENCES owners(id)
        );

        CREATE TABLE IF NOT EXISTS tasks (
            id TEXT PRIMARY KEY,
            owner_id TEXT NOT NULL,
            type TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            context TEXT NOT NULL DEFAULT '{}',
            conversation_history TEXT NOT NULL DEFAULT '[]',
            waiting_for TEXT,
            last_action TEXT,
            metadata TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            completed_at TEXT,
            FOREIGN KEY (owner_id) REFERENCES owners(id)
        );

        CREATE INDEX IF NOT EXISTS idx_tasks_owner_status
            ON tasks(owner_id, status, created_at);
        CREATE INDEX IF NOT EXISTS idx_emails_received
            ON emails(owner_id, received_at);
    """)
    )

    db.commit()
    return db


# -- owners ------------------------------------------------------------------


def upsert_owner(
    db: DbConnection,
    *,
    owner_id: str,
    email: str,
    google_access_token: str | None = None,
    hubspot_access_token: str | None = None,
) -> None:
    db.execute(
        dedent("""\
        INSERT INTO owners (id, email, google_access_token, hubspot_access_token, created_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            email = excluded.email,
            google_access_token = COALESCE(excluded.google_access_token, google_access_token),
            hubspot_access_token = COALESCE(excluded.hubspot_access_token, hubspot_access_token)
    """),
        (owner_id, email, google_access_token, hubspot_access_token, _now_iso()),
    )
    db.commit()


def get_owner(db: DbConnection, owner_id: str) -> Owner | None:
    row = db.execute("SELECT * FROM owners WHERE id = ?", (owner_id,)).fetchone()
    return Owner(**row) if row else None


def list_owners(db: DbConnection) -> list[Owner]:
    rows = db.execute("SELECT * FROM owners ORDER BY created_at").fetchall()
    return _rows_to(Owner, rows)


# -- contacts ----------------------------------------------------------------


def upsert_contact(db: DbConnection, owner_id: str, contact: Contact) -> None:
    db.execute(
        dedent("""\
        INSERT INTO contacts (owner_id, crm_id, email, firstname, lastname, phone, notes)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(owner_id, crm_id) DO UPDATE SET
            email = excluded.email,
            firstname = excluded.firstname,
            lastname = excluded.lastname,
            phone = excluded.phone,
            notes = excluded.notes
    """),
        (
            owner_id,
            contact.crm_id,
            contact.email,
            contact.firstname,
            contact.lastname,
            contact.phone,
            contact.notes,
        ),
    )
    db.commit()


def find_contacts_by_name(db: DbConnection, owner_id: str, name: str) -> list[Contact]:
    """Case-insensitive substring match on the contact's full name."""
    if not name.strip():
        return []
    rows = db.execute(
        dedent("""\
        SELECT * FROM contacts
        WHERE owner_id = ?
          AND instr(lower(trim(firstname || ' ' || lastname)), lower(?)) > 0
        ORDER BY firstname, lastname
    """),
        (owner_id, name.strip()),
    ).fetchall()
    return _rows_to(Contact, rows)


def search_contacts(
    db: DbConnection, owner_id: str, query: str, limit: int = 5
) -> list[Contact]:
    rows = db.execute(
        dedent("""\
        SELECT * FROM contacts
        WHERE owner_id = ?
          AND (instr(lower(firstname || ' ' || lastname), lower(?)) > 0
               OR instr(lower(email), lower(?)) > 0
               OR instr(lower(notes), lower(?)) > 0)
        LIMIT ?
    """),
        (owner_id, query, query, query, limit),
    ).fetchall()
    return _rows_to(Contact, rows)


# -- cached mailbox ----------------------------------------------------------


def store_email(db: DbConnection, owner_id: str, message: InboundMessage) -> bool:
    """Cache *message*; returns False when it was already stored."""
    cursor = db.execute(
        dedent("""\
        INSERT OR IGNORE INTO emails
            (owner_id, message_id, from_email, from_name, subject, body, received_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """),
        (
            owner_id,
            message.message_id,
            message.from_email,
            message.from_name,
            message.subject,
            message.body,
            to_utc_iso(message.received_at),
        ),
    )
    db.commit()
    return cursor.rowcount > 0


def get_latest_email_time(db: DbConnection, owner_id: str) -> datetime | None:
    row = db.execute(
        "SELECT MAX(received_at) AS latest FROM emails WHERE owner_id = ?",
        (owner_id,),
    ).fetchone()
    if not row or row["latest"] is None:
        return None
    return datetime.fromisoformat(row["latest"])


def get_emails_since(
    db: DbConnection, owner_id: str, since: datetime
) -> list[InboundMessage]:
    rows = db.execute(
        dedent("""\
        SELECT * FROM emails
        WHERE owner_id = ? AND received_at >= ?
        ORDER BY received_at DESC
    """),
        (owner_id, to_utc_iso(since)),
    ).fetchall()
    return _rows_to(InboundMessage, rows)


def search_emails(
    db: DbConnection, owner_id: str, query: str, limit: int = 5
) -> list[InboundMessage]:
    rows = db.execute(
        dedent("""\
        SELECT * FROM emails
        WHERE owner_id = ?
          AND (instr(lower(subject), lower(?)) > 0 OR instr(lower(body), lower(?)) > 0)
        ORDER BY received_at DESC
        LIMIT ?
    """),
        (owner_id, query, query, limit),
    ).fetchall()
    return _rows_to(InboundMessage, rows)


def recent_emails(db: DbConnection, owner_id: str, limit: int = 5) -> list[InboundMessage]:
    rows = db.execute(
        "SELECT * FROM emails WHERE owner_id = ? ORDER BY received_at DESC LIMIT ?",
        (owner_id, limit),
    ).fetchall()
    return _rows_to(InboundMessage, rows)


# -- tasks -------------------------------------------------------------------


def create_task(
    db: DbConnection,
    *,
    owner_id: str,
    task_type: str,
    context: dict[str, Any],
    conversation_history: list[HistoryEntry] | None = None,
) -> Task:
    task_id = uuid.uuid4().hex
    now = _now_iso()
    try:
        db.execute(
            dedent("""\
            INSERT INTO tasks
                (id, owner_id, type, status, context, conversation_history,
                 metadata, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, '{}', ?, ?)
        """),
            (
                task_id,
                owner_id,
                task_type,
                TaskStatus.PENDING.value,
                _dump_json(context),
                _dump_json(conversation_history or []),
                now,
                now,
            ),
        )
        db.commit()
    except sqlite3.Error as e:
        raise StorageError(f"Could not create {task_type} task for {owner_id}: {e}") from e

    log.info("Task %s created (%s) for owner %s", task_id, task_type, owner_id)
    task = get_task(db, task_id)
    if task is None:
        raise StorageError(f"Task {task_id} vanished after insert")
    return task


def get_task(db: DbConnection, task_id: str) -> Task | None:
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    return Task(**row) if row else None


def list_tasks(db: DbConnection, owner_id: str | None = None) -> list[Task]:
    if owner_id is None:
        rows = db.execute(
            "SELECT * FROM tasks ORDER BY created_at DESC, rowid DESC"
        ).fetchall()
    else:
        rows = db.execute(
            "SELECT * FROM tasks WHERE owner_id = ? ORDER BY created_at DESC, rowid DESC",
            (owner_id,),
        ).fetchall()
    return _rows_to(Task, rows)


def get_tasks_by_status(
    db: DbConnection, owner_id: str, status: TaskStatus | str
) -> list[Task]:
    rows = db.execute(
        dedent("""\
        SELECT * FROM tasks
        WHERE owner_id = ? AND status = ?
        ORDER BY created_at DESC, rowid DESC
    """),
        (owner_id, str(status)),
    ).fetchall()
    return _rows_to(Task, rows)


def get_owner_ids_with_waiting_tasks(db: DbConnection) -> list[str]:
    rows = db.execute(
        "SELECT DISTINCT owner_id FROM tasks WHERE status = ? ORDER BY owner_id",
        (TaskStatus.WAITING_RESPONSE.value,),
    ).fetchall()
    return [row["owner_id"] for row in rows]


def _mentions_address(key: str, address: str) -> bool:
    """True if *address* appears in *key* as a whole address, not inside a longer one."""
    pattern = rf"(?<![\w.+-]){re.escape(address)}(?![\w.-])"
    return re.search(pattern, key, re.IGNORECASE) is not None


def find_task_waiting_for_sender(
    db: DbConnection, owner_id: str, sender: str
) -> Task | None:
    """Most recently created waiting task of *owner_id* whose key mentions *sender*."""
    sender = sender.strip()
    if not sender:
        return None
    rows = db.execute(
        dedent("""\
        SELECT * FROM tasks
        WHERE owner_id = ?
          AND status = ?
          AND waiting_for IS NOT NULL
          AND instr(lower(waiting_for), lower(?)) > 0
        ORDER BY created_at DESC, rowid DESC
    """),
        (owner_id, TaskStatus.WAITING_RESPONSE.value, sender),
    ).fetchall()
    for row in rows:
        if _mentions_address(row["waiting_for"], sender):
            return Task(**row)
    return None


def update_task(db: DbConnection, task_id: str, **updates: Any) -> Task:
    """Merge *updates* into the task, refreshing ``updated_at``.

    Status changes are checked against the state machine and ``waiting_for``
    is kept present exactly while the task is ``waiting_response``.
    Completion goes through :func:`complete_task` only.
    """
    unknown = set(updates) - set(_TASK_UPDATE_FIELDS)
    if unknown:
        raise InputValidationError(f"Cannot update task fields: {sorted(unknown)}")

    with db.transaction() as conn:
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if row is None:
            raise NotFound(f"Task {task_id} not found")
        current = Task(**row)

        new_status = TaskStatus(updates.get("status", current.status))
        if new_status != current.status and not validate_transition(
            current.status, new_status
        ):
            raise InvalidTransition(task_id, current.status, new_status)
        if new_status == TaskStatus.COMPLETED and current.status != TaskStatus.COMPLETED:
            raise InputValidationError(
                f"Task {task_id}: use complete_task to mark a task completed"
            )

        waiting_for = updates.get("waiting_for", current.waiting_for)
        if new_status == TaskStatus.WAITING_RESPONSE:
            if not waiting_for:
                raise InputValidationError(
                    f"Task {task_id}: waiting_response requires a waiting_for key"
                )
        else:
            if updates.get("waiting_for"):
                raise InputValidationError(
                    f"Task {task_id}: waiting_for is only allowed while waiting_response"
                )
            waiting_for = None

        values: dict[str, Any] = {
            key: _dump_json(value) if key in _JSON_FIELDS else value
            for key, value in updates.items()
        }
        values["status"] = new_status.value
        values["waiting_for"] = waiting_for
        values["updated_at"] = _now_iso()

        assignments = ", ".join(f"{key} = ?" for key in values)
        conn.execute(
            f"UPDATE tasks SET {assignments} WHERE id = ?",
            [*values.values(), task_id],
        )
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()

    if new_status != current.status:
        log.info("Task %s: %s -> %s", task_id, current.status, new_status)
    return Task(**row)


def complete_task(
    db: DbConnection, task_id: str, final_context: dict[str, Any] | None = None
) -> bool:
    """Mark the task completed, replacing its context with *final_context*.

    Completing an already completed task is a no-op that still returns True,
    so duplicate scans can race here safely.
    """
    now = _now_iso()
    with db.transaction() as conn:
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if row is None:
            log.warning("Cannot complete unknown task %s", task_id)
            return False
        current = Task(**row)
        if current.status == TaskStatus.COMPLETED:
            log.info("Task %s already completed", task_id)
            return True
        if not validate_transition(current.status, TaskStatus.COMPLETED):
            raise InvalidTransition(task_id, current.status, TaskStatus.COMPLETED)

        context = final_context if final_context is not None else current.context
        conn.execute(
            dedent("""\
            UPDATE tasks
            SET status = ?, completed_at = ?, updated_at = ?, context = ?, waiting_for = NULL
            WHERE id = ? AND status != ?
        """),
            (
                TaskStatus.COMPLETED.value,
                now,
                now,
                _dump_json(context),
                task_id,
                TaskStatus.COMPLETED.value,
            ),
        )

    log.info("Task %s completed", task_id)
    return True


def fail_task(db: DbConnection, task_id: str, error: str, **details: Any) -> Task:
    """Move the task to ``failed``, recording *error* and *details* in metadata."""
    task = get_task(db, task_id)
    if task is None:
        raise NotFound(f"Task {task_id} not found")
    metadata = {
        **task.metadata,
        "error": error,
        "failed_at": _now_iso(),
        **details,
    }
    return update_task(db, task_id, status=TaskStatus.FAILED, metadata=metadata)


def append_task_message(db: DbConnection, task_id: str, role: str, content: str) -> bool:
    """Append one entry to the task's conversation history."""
    entry = HistoryEntry(role=role, content=content)  # type: ignore[arg-type]
    with db.transaction() as conn:
        row = conn.execute(
            "SELECT conversation_history FROM tasks WHERE id = ?", (task_id,)
        ).fetchone()
        if row is None:
            return False
        history = json.loads(row["conversation_history"] or "[]")
        history.append(entry.model_dump())
        conn.execute(
            "UPDATE tasks SET conversation_history = ?, updated_at = ? WHERE id = ?",
            (json.dumps(history), _now_iso(), task_id),
        )
    return True
