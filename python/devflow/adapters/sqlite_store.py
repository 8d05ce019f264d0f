"""SQLite-backed durable store for workflow states and task status (aiosqlite)."""

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import aiosqlite

from devflow.exceptions import StoreUnavailableError

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS workflow_states (
    task_id       TEXT PRIMARY KEY,
    current_state TEXT NOT NULL,
    progress      INTEGER NOT NULL DEFAULT 0,
    state_json    TEXT NOT NULL,
    retry_count   INTEGER NOT NULL DEFAULT 0,
    last_error    TEXT,
    updated_at    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    task_id      TEXT PRIMARY KEY,
    repo_root    TEXT NOT NULL,
    status       TEXT NOT NULL,
    created_at   TEXT NOT NULL,
    updated_at   TEXT NOT NULL,
    completed_at TEXT
);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SqliteStateStore:
    """Implements IStateStore and ITaskStatusSink on one SQLite file."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None

    async def initialize(self) -> None:
        """Connect and create tables."""
        if self._db is not None:
            return
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._db = await aiosqlite.connect(self.db_path)
            self._db.row_factory = aiosqlite.Row
            if self.db_path != ":memory:":
                await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.executescript(SCHEMA)
            await self._db.commit()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Cannot open state store at {self.db_path}: {exc}") from exc
        logger.info("State store ready at %s", self.db_path)

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("State store not initialized - call initialize() first")
        return self._db

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    # ── IStateStore ──────────────────────────────────────────────────

    async def get(self, task_id: str) -> Optional[Dict[str, Any]]:
        try:
            async with self.conn.execute(
                "SELECT state_json FROM workflow_states WHERE task_id = ?", (task_id,)
            ) as cursor:
                row = await cursor.fetchone()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Failed to read workflow state {task_id}: {exc}") from exc
        if row is None:
            return None
        return json.loads(row["state_json"])

    async def upsert(self, task_id: str, state: Dict[str, Any]) -> None:
        try:
            await self.conn.execute(
                """
                INSERT INTO workflow_states (
                    task_id, current_state, progress, state_json, retry_count, last_error, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(task_id) DO UPDATE SET
                    current_state = excluded.current_state,
                    progress = excluded.progress,
                    state_json = excluded.state_json,
                    retry_count = excluded.retry_count,
                    last_error = excluded.last_error,
                    updated_at = excluded.updated_at
                """,
                (
                    task_id,
                    state["current_state"],
                    int(state.get("progress", 0)),
                    json.dumps(state),
                    int(state.get("retry_count", 0)),
                    state.get("last_error"),
                    state.get("updated_at") or _now(),
                ),
            )
            await self.conn.commit()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Failed to persist workflow state {task_id}: {exc}") from exc

    # ── ITaskStatusSink ──────────────────────────────────────────────

    async def register_task(self, task_id: str, repo_root: str) -> Dict[str, Any]:
        """Insert the task, or mark an existing one RUNNING again."""
        now = _now()
        try:
            await self.conn.execute(
                """
                INSERT INTO tasks (task_id, repo_root, status, created_at, updated_at, completed_at)
                VALUES (?, ?, 'RUNNING', ?, ?, NULL)
                ON CONFLICT(task_id) DO UPDATE SET
                    repo_root = excluded.repo_root,
                    status = 'RUNNING',
                    updated_at = excluded.updated_at,
                    completed_at = NULL
                """,
                (task_id, repo_root, now, now),
            )
            await self.conn.commit()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Failed to register task {task_id}: {exc}") from exc
        task = await self.get_task(task_id)
        assert task is not None
        return task

    async def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        try:
            async with self.conn.execute("SELECT * FROM tasks WHERE task_id = ?", (task_id,)) as cursor:
                row = await cursor.fetchone()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Failed to read task {task_id}: {exc}") from exc
        return dict(row) if row is not None else None

    async def update_task_status(
        self, task_id: str, status: str, completed_at: Optional[datetime] = None
    ) -> None:
        try:
            await self.conn.execute(
                "UPDATE tasks SET status = ?, updated_at = ?, completed_at = ? WHERE task_id = ?",
                (status, _now(), completed_at.isoformat() if completed_at else None, task_id),
            )
            await self.conn.commit()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Failed to update task {task_id}: {exc}") from exc
