"""Session and message persistence with SQLite storage."""

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

import aiosqlite

from skipper.exceptions import SessionNotFoundError
from skipper.llm import Message
from skipper.logging import get_logger

log = get_logger(__name__)

DEFAULT_TITLE = "New conversation"


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


class MessageStore(Protocol):
    """What the turn loop needs from persistence."""

    async def append_message(self, session_id: str, message: Message) -> None: ...

    async def replace_messages(self, session_id: str, messages: list[Message]) -> None: ...


@dataclass
class Session:
    """A conversation session record."""

    id: str
    title: str = DEFAULT_TITLE
    working_directory: str = ""
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class CompactionRecord:
    """One entry of a session's compaction history."""

    id: str
    session_id: str
    summary: str
    original_tokens: int
    compacted_tokens: int
    messages_pruned: int
    created_at: str


class SessionStore:
    """Stores sessions and their ordered messages in SQLite."""

    def __init__(self, db_path: Path | str):
        """Initialize the store.

        Args:
            db_path: SQLite database path
        """
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("PRAGMA foreign_keys = ON")
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    working_directory TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    metadata TEXT NOT NULL DEFAULT '{}'
                )
            """)
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                    sequence INTEGER NOT NULL,
                    id TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    PRIMARY KEY (session_id, sequence)
                )
            """)
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS compactions (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                    summary TEXT NOT NULL,
                    original_tokens INTEGER NOT NULL,
                    compacted_tokens INTEGER NOT NULL,
                    messages_pruned INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_sessions_updated_at ON sessions(updated_at)"
            )
            await self._db.commit()
        return self._db

    @staticmethod
    def _row_to_session(row: Any) -> Session:
        return Session(
            id=row[0],
            title=row[1],
            working_directory=row[2],
            created_at=row[3],
            updated_at=row[4],
            metadata=json.loads(row[5]),
        )

    async def create_session(
        self,
        session_id: str | None = None,
        working_directory: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> Session:
        """Create and persist a new session."""
        db = await self._ensure_db()
        session = Session(
            id=session_id or str(uuid.uuid4()),
            working_directory=working_directory,
            metadata=metadata or {},
        )
        await db.execute(
            """
            INSERT INTO sessions (id, title, working_directory, created_at, updated_at, metadata)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                session.id,
                session.title,
                session.working_directory,
                session.created_at,
                session.updated_at,
                json.dumps(session.metadata),
            ),
        )
        await db.commit()
        log.info("Created new session", session_id=session.id)
        return session

    async def load_session(self, session_id: str) -> Session | None:
        """Get a session by ID.

        Returns:
            Session or None if not found
        """
        db = await self._ensure_db()
        async with db.execute(
            "SELECT id, title, working_directory, created_at, updated_at, metadata FROM sessions WHERE id = ?",
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_session(row) if row else None

    async def get_or_create_session(self, session_id: str, working_directory: str = "") -> Session:
        session = await self.load_session(session_id)
        if session:
            return session
        return await self.create_session(session_id=session_id, working_directory=working_directory)

    async def list_sessions(self, limit: int = 10) -> list[Session]:
        """List recent sessions, most recently updated first."""
        db = await self._ensure_db()
        async with db.execute(
            """
            SELECT id, title, working_directory, created_at, updated_at, metadata
            FROM sessions
            ORDER BY updated_at DESC
            LIMIT ?
            """,
            (limit,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_session(row) for row in rows]

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session and everything stored for it.

        Returns:
            True if deleted, False if not found
        """
        db = await self._ensure_db()
        cursor = await db.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        await db.commit()
        return cursor.rowcount > 0

    async def update_title(self, session_id: str, title: str) -> None:
        db = await self._ensure_db()
        cursor = await db.execute(
            "UPDATE sessions SET title = ?, updated_at = ? WHERE id = ?",
            (title, _utcnow_iso(), session_id),
        )
        await db.commit()
        if cursor.rowcount == 0:
            raise SessionNotFoundError(session_id)

    async def _require_session(self, db: aiosqlite.Connection, session_id: str) -> None:
        async with db.execute("SELECT 1 FROM sessions WHERE id = ?", (session_id,)) as cursor:
            if await cursor.fetchone() is None:
                raise SessionNotFoundError(session_id)

    async def append_message(self, session_id: str, message: Message) -> None:
        """Append a message, assigning the next sequence number."""
        db = await self._ensure_db()
        await self._require_session(db, session_id)
        await db.execute(
            """
            INSERT INTO messages (session_id, sequence, id, payload)
            VALUES (?, (SELECT COALESCE(MAX(sequence), 0) + 1 FROM messages WHERE session_id = ?), ?, ?)
            """,
            (session_id, session_id, message.id, json.dumps(message.to_dict(), default=str)),
        )
        await db.execute(
            "UPDATE sessions SET updated_at = ? WHERE id = ?",
            (_utcnow_iso(), session_id),
        )
        await db.commit()

    async def replace_messages(self, session_id: str, messages: list[Message]) -> None:
        """Replace a session's whole history in one transaction."""
        db = await self._ensure_db()
        await self._require_session(db, session_id)
        try:
            await db.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
            await db.executemany(
                "INSERT INTO messages (session_id, sequence, id, payload) VALUES (?, ?, ?, ?)",
                [
                    (session_id, index, message.id, json.dumps(message.to_dict(), default=str))
                    for index, message in enumerate(messages, start=1)
                ],
            )
            await db.execute(
                "UPDATE sessions SET updated_at = ? WHERE id = ?",
                (_utcnow_iso(), session_id),
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    async def load_messages(self, session_id: str) -> list[Message]:
        """Load a session's messages in sequence order."""
        db = await self._ensure_db()
        async with db.execute(
            "SELECT payload FROM messages WHERE session_id = ? ORDER BY sequence",
            (session_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [Message.from_dict(json.loads(row[0])) for row in rows]

    async def record_compaction(
        self,
        session_id: str,
        compaction_id: str,
        summary: str,
        original_tokens: int,
        compacted_tokens: int,
        messages_pruned: int,
    ) -> None:
        db = await self._ensure_db()
        await db.execute(
            """
            INSERT INTO compactions
                (id, session_id, summary, original_tokens, compacted_tokens, messages_pruned, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                compaction_id,
                session_id,
                summary,
                original_tokens,
                compacted_tokens,
                messages_pruned,
                _utcnow_iso(),
            ),
        )
        await db.commit()

    async def get_compaction_history(self, session_id: str) -> list[CompactionRecord]:
        db = await self._ensure_db()
        async with db.execute(
            """
            SELECT id, session_id, summary, original_tokens, compacted_tokens, messages_pruned, created_at
            FROM compactions
            WHERE session_id = ?
            ORDER BY created_at, rowid
            """,
            (session_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [CompactionRecord(*row) for row in rows]

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
