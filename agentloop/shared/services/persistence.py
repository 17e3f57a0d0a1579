"""Durable storage for sessions, messages and iteration records.

Storage layout (SQLite, one file shared by every workspace):
    sessions(id, folder_path, provider, kind, created_at, updated_at)
    messages(session_id, sequence, message_type, message_json, created_at)
    iterations(folder_path, task_id, iteration_number, session_id, status, created_at)
    session_links(folder_path, session_id, file_name, link_type, created_at, updated_at)

Messages are stored as JSON blobs so the agent's event shape can change
without schema migrations. Iterations are scoped to the workspace the
store was opened for.
"""

from __future__ import annotations

import abc
import json
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from agentloop.engine.errors import PersistenceError
from agentloop.engine.models import (
    FolderSession,
    IterationRecord,
    IterationStatus,
    LinkType,
    SessionLink,
)

logger = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class DurableStore(abc.ABC):
    """Async persistence interface consumed by the engine."""

    @abc.abstractmethod
    async def create_session(
        self, session_id: str, cwd: str, provider: str, kind: str
    ) -> None:
        """Record a session. Creating an existing session is a no-op."""

    @abc.abstractmethod
    async def save_message(
        self, session_id: str, message: dict[str, Any], sequence: int
    ) -> None:
        """Store message at a caller-assigned sequence number (from 1)."""

    @abc.abstractmethod
    async def get_session_messages(self, session_id: str) -> list[dict[str, Any]]:
        """Messages of a session ordered by sequence."""

    @abc.abstractmethod
    async def get_next_sequence(self, session_id: str) -> int:
        """One past the highest stored sequence (1 for a new session)."""

    @abc.abstractmethod
    async def get_folder_sessions(self, cwd: str) -> list[FolderSession]:
        """Sessions created in a workspace folder, newest first."""

    @abc.abstractmethod
    async def save_iteration_record(
        self, task_id: str, iteration_number: int, status: IterationStatus
    ) -> None:
        """Insert an iteration, or update its status if it exists."""

    @abc.abstractmethod
    async def update_iteration_status(
        self, task_id: str, iteration_number: int, status: IterationStatus
    ) -> None: ...

    @abc.abstractmethod
    async def update_iteration_session_id(
        self, task_id: str, iteration_number: int, session_id: str
    ) -> None: ...

    @abc.abstractmethod
    async def get_iterations(self, task_id: str) -> list[IterationRecord]:
        """Iterations of a task ordered by iteration number."""

    @abc.abstractmethod
    async def get_all_iterations(self) -> dict[str, list[IterationRecord]]:
        """Iterations of every task in the workspace, grouped by task."""

    @abc.abstractmethod
    async def save_session_link(
        self, session_id: str, file_name: str, link_type: LinkType
    ) -> None:
        """Link a workspace file to a session, replacing any earlier link."""

    @abc.abstractmethod
    async def get_session_link(
        self, file_name: str, link_type: LinkType
    ) -> SessionLink | None: ...

    async def close(self) -> None:
        return None


# (version, statements). Append new versions; never edit applied ones.
_MIGRATIONS: list[tuple[int, list[str]]] = [
    (1, [
        """
        CREATE TABLE IF NOT EXISTS sessions (
            id TEXT PRIMARY KEY,
            folder_path TEXT NOT NULL,
            provider TEXT NOT NULL DEFAULT 'claude_code',
            kind TEXT NOT NULL DEFAULT 'plan',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_sessions_folder_path ON sessions(folder_path)",
        """
        CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL,
            sequence INTEGER NOT NULL,
            message_type TEXT NOT NULL,
            message_json TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(session_id, sequence)
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_messages_session_id ON messages(session_id)",
        """
        CREATE TABLE IF NOT EXISTS iterations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            folder_path TEXT NOT NULL,
            task_id TEXT NOT NULL,
            iteration_number INTEGER NOT NULL,
            session_id TEXT,
            status TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(folder_path, task_id, iteration_number)
        )
        """,
    ]),
    (2, [
        """
        CREATE TABLE IF NOT EXISTS session_links (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            folder_path TEXT NOT NULL,
            session_id TEXT NOT NULL,
            file_name TEXT NOT NULL,
            link_type TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(folder_path, file_name, link_type)
        )
        """,
    ]),
]

_ITERATION_COLUMNS = """
    SELECT it.task_id, it.iteration_number, it.session_id, it.status,
           it.created_at, s.provider
    FROM iterations it
    LEFT JOIN sessions s ON it.session_id = s.id
"""


def _row_to_iteration(row: aiosqlite.Row) -> IterationRecord:
    return IterationRecord(
        task_id=row["task_id"],
        iteration_number=int(row["iteration_number"]),
        status=IterationStatus(row["status"]),
        session_id=row["session_id"] or "",
        created_at=row["created_at"],
        provider=row["provider"],
    )


class SqliteDurableStore(DurableStore):
    """DurableStore backed by an aiosqlite connection.

    Opened lazily on first use; call close() (or use ``async with``)
    when done.
    """

    def __init__(self, db_path: str | Path, workspace: str) -> None:
        self._db_path = str(db_path)
        self._workspace = str(workspace)
        self._db: aiosqlite.Connection | None = None

    @property
    def workspace(self) -> str:
        return self._workspace

    async def __aenter__(self) -> SqliteDurableStore:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def connect(self) -> aiosqlite.Connection:
        if self._db is not None:
            return self._db
        try:
            if self._db_path != ":memory:":
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            db = await aiosqlite.connect(self._db_path)
            db.row_factory = aiosqlite.Row
            await self._migrate(db)
        except (OSError, aiosqlite.Error) as exc:
            raise PersistenceError("open database", str(exc)) from exc
        self._db = db
        logger.info("Durable store opened at %s", self._db_path)
        return db

    async def _migrate(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
            """
        )
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
        current = row[0] if row and row[0] is not None else 0
        for version, statements in _MIGRATIONS:
            if version <= current:
                continue
            for statement in statements:
                await db.execute(statement)
            await db.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (version, _utcnow_iso()),
            )
            logger.info("Applied schema migration v%d", version)
        await db.commit()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def _write(self, operation: str, sql: str, params: tuple) -> None:
        db = await self.connect()
        try:
            await db.execute(sql, params)
            await db.commit()
        except aiosqlite.Error as exc:
            raise PersistenceError(operation, str(exc)) from exc

    async def _read(
        self,
        operation: str,
        sql: str,
        params: tuple,
        convert: Callable[[aiosqlite.Row], Any],
    ) -> list[Any]:
        db = await self.connect()
        try:
            async with db.execute(sql, params) as cur:
                rows = await cur.fetchall()
        except aiosqlite.Error as exc:
            raise PersistenceError(operation, str(exc)) from exc
        return [convert(row) for row in rows]

    # ── Sessions and messages ──

    async def create_session(
        self, session_id: str, cwd: str, provider: str, kind: str
    ) -> None:
        now = _utcnow_iso()
        await self._write(
            "create session",
            """
            INSERT OR IGNORE INTO sessions (id, folder_path, provider, kind, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (session_id, cwd, provider, kind, now, now),
        )

    async def save_message(
        self, session_id: str, message: dict[str, Any], sequence: int
    ) -> None:
        await self._write(
            "save message",
            """
            INSERT OR REPLACE INTO messages (session_id, sequence, message_type, message_json, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                session_id,
                sequence,
                str(message.get("type", "")),
                json.dumps(message),
                _utcnow_iso(),
            ),
        )

    async def get_session_messages(self, session_id: str) -> list[dict[str, Any]]:
        raw = await self._read(
            "load session messages",
            "SELECT message_json FROM messages WHERE session_id = ? ORDER BY sequence ASC",
            (session_id,),
            lambda row: row["message_json"],
        )
        messages: list[dict[str, Any]] = []
        for text in raw:
            try:
                messages.append(json.loads(text))
            except json.JSONDecodeError:
                logger.warning("Skipping corrupt stored message in session %s", session_id)
        return messages

    async def get_next_sequence(self, session_id: str) -> int:
        rows = await self._read(
            "read message sequence",
            "SELECT MAX(sequence) AS max_seq FROM messages WHERE session_id = ?",
            (session_id,),
            lambda row: row["max_seq"],
        )
        max_seq = rows[0] if rows else None
        return (max_seq or 0) + 1

    async def get_folder_sessions(self, cwd: str) -> list[FolderSession]:
        return await self._read(
            "list sessions",
            """
            SELECT id, provider, kind, created_at FROM sessions
            WHERE folder_path = ? ORDER BY created_at DESC
            """,
            (cwd,),
            lambda row: FolderSession(
                session_id=row["id"],
                provider=row["provider"],
                kind=row["kind"],
                created_at=row["created_at"],
            ),
        )

    # ── Iterations ──

    async def save_iteration_record(
        self, task_id: str, iteration_number: int, status: IterationStatus
    ) -> None:
        await self._write(
            "save iteration",
            """
            INSERT INTO iterations (folder_path, task_id, iteration_number, status, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(folder_path, task_id, iteration_number) DO UPDATE SET
                status = excluded.status
            """,
            (self._workspace, task_id, iteration_number, status.value, _utcnow_iso()),
        )

    async def update_iteration_status(
        self, task_id: str, iteration_number: int, status: IterationStatus
    ) -> None:
        await self._write(
            "update iteration status",
            """
            UPDATE iterations SET status = ?
            WHERE folder_path = ? AND task_id = ? AND iteration_number = ?
            """,
            (status.value, self._workspace, task_id, iteration_number),
        )

    async def update_iteration_session_id(
        self, task_id: str, iteration_number: int, session_id: str
    ) -> None:
        await self._write(
            "update iteration session id",
            """
            UPDATE iterations SET session_id = ?
            WHERE folder_path = ? AND task_id = ? AND iteration_number = ?
            """,
            (session_id, self._workspace, task_id, iteration_number),
        )

    async def get_iterations(self, task_id: str) -> list[IterationRecord]:
        return await self._read(
            "load iterations",
            _ITERATION_COLUMNS
            + " WHERE it.folder_path = ? AND it.task_id = ? ORDER BY it.iteration_number ASC",
            (self._workspace, task_id),
            _row_to_iteration,
        )

    async def get_all_iterations(self) -> dict[str, list[IterationRecord]]:
        records = await self._read(
            "load all iterations",
            _ITERATION_COLUMNS
            + " WHERE it.folder_path = ? ORDER BY it.task_id, it.iteration_number ASC",
            (self._workspace,),
            _row_to_iteration,
        )
        grouped: dict[str, list[IterationRecord]] = {}
        for record in records:
            grouped.setdefault(record.task_id, []).append(record)
        return grouped

    # ── Session links ──

    async def save_session_link(
        self, session_id: str, file_name: str, link_type: LinkType
    ) -> None:
        now = _utcnow_iso()
        await self._write(
            "save session link",
            """
            INSERT INTO session_links (folder_path, session_id, file_name, link_type, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(folder_path, file_name, link_type) DO UPDATE SET
                session_id = excluded.session_id,
                updated_at = excluded.updated_at
            """,
            (self._workspace, session_id, file_name, link_type.value, now, now),
        )

    async def get_session_link(
        self, file_name: str, link_type: LinkType
    ) -> SessionLink | None:
        links = await self._read(
            "load session link",
            """
            SELECT sl.session_id, sl.file_name, sl.link_type, sl.created_at,
                   sl.updated_at, s.provider
            FROM session_links sl
            LEFT JOIN sessions s ON sl.session_id = s.id
            WHERE sl.folder_path = ? AND sl.file_name = ? AND sl.link_type = ?
            """,
            (self._workspace, file_name, link_type.value),
            lambda row: SessionLink(
                session_id=row["session_id"],
                file_name=row["file_name"],
                link_type=LinkType(row["link_type"]),
                created_at=row["created_at"],
                updated_at=row["updated_at"],
                provider=row["provider"],
            ),
        )
        return links[0] if links else None


async def guarded(
    operation: Awaitable[Any],
    description: str,
) -> bool:
    """Await a persistence call, logging failures instead of raising.

    Used where the in-memory store stays authoritative and a lost write
    must not interrupt the live stream.
    """
    try:
        await operation
    except PersistenceError as exc:
        logger.error("Persistence failure (%s): %s", description, exc)
        return False
    return True
