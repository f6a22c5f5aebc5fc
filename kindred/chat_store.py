"""
SQLite-backed chat history for Kindred.

Contract:
- A session is a conversation timeline. Exactly one session is active;
  superseded sessions are archived, never deleted.
- Messages are append-only. Display text never carries control tags;
  raw_text keeps the untouched model output for re-parsing.
- observe() yields the latest `limit` messages now and again after every
  append to that session.
"""

import asyncio
import logging
import sqlite3
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import AsyncIterator, List, Optional

from kindred.errors import PersistenceError
from kindred.events import Broadcast
from kindred.models import ChatMessage, Role, Session

logger = logging.getLogger(__name__)

DB_PATH = Path("data") / "chat.db"


class PersistenceGateway(ABC):
    """Session and message storage used by the turn orchestrator."""

    @abstractmethod
    async def get_or_create_active_session(self) -> int:
        pass

    @abstractmethod
    async def create_session(self) -> int:
        pass

    @abstractmethod
    async def archive_session(self, session_id: int) -> None:
        pass

    @abstractmethod
    async def append(
        self,
        session_id: int,
        role: Role,
        text: str,
        raw_text: Optional[str] = None,
        image_ref: Optional[str] = None,
        video_ref: Optional[str] = None,
    ) -> ChatMessage:
        pass

    @abstractmethod
    async def recent(self, session_id: int, limit: int) -> List[ChatMessage]:
        """Newest `limit` messages, oldest first."""
        pass

    @abstractmethod
    def observe(self, session_id: int, limit: int) -> AsyncIterator[List[ChatMessage]]:
        pass


class SqliteChatStore(PersistenceGateway):
    def __init__(self, db_path: Path = DB_PATH, clock=time.time):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._changes: Broadcast[int] = Broadcast(name="chat_changes")
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _init_db(self) -> None:
        conn = self._connect()
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                created_at REAL NOT NULL,
                archived INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id INTEGER NOT NULL REFERENCES sessions(id),
                role TEXT NOT NULL,
                text TEXT NOT NULL,
                raw_text TEXT NULL,
                image_ref TEXT NULL,
                video_ref TEXT NULL,
                timestamp REAL NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, id)")
        conn.commit()
        conn.close()

    # ------------------------------------------------------------------
    # Sync core (runs in a worker thread)
    # ------------------------------------------------------------------

    def _create_session_sync(self) -> int:
        conn = self._connect()
        try:
            cur = conn.execute("INSERT INTO sessions(created_at, archived) VALUES(?, 0)", (self._clock(),))
            conn.commit()
            return int(cur.lastrowid)
        finally:
            conn.close()

    def _active_session_sync(self) -> Optional[int]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT id FROM sessions WHERE archived = 0 ORDER BY id DESC LIMIT 1").fetchone()
        finally:
            conn.close()
        return int(row[0]) if row else None

    def _get_or_create_sync(self) -> int:
        session_id = self._active_session_sync()
        if session_id is None:
            session_id = self._create_session_sync()
            logger.info(f"[STORE] Created session {session_id}")
        return session_id

    def _archive_sync(self, session_id: int) -> None:
        conn = self._connect()
        try:
            conn.execute("UPDATE sessions SET archived = 1 WHERE id = ?", (session_id,))
            conn.commit()
        finally:
            conn.close()

    def get_session(self, session_id: int) -> Optional[Session]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT id, created_at, archived FROM sessions WHERE id = ?", (session_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return Session(id=int(row[0]), created_at=float(row[1]), archived=bool(row[2]))

    def _append_sync(self, session_id, role, text, raw_text, image_ref, video_ref) -> ChatMessage:
        ts = self._clock()
        conn = self._connect()
        try:
            cur = conn.execute(
                "INSERT INTO messages(session_id, role, text, raw_text, image_ref, video_ref, timestamp) "
                "VALUES(?, ?, ?, ?, ?, ?, ?)",
                (session_id, role.value, text, raw_text, image_ref, video_ref, ts),
            )
            conn.commit()
            row_id = int(cur.lastrowid)
        finally:
            conn.close()
        return ChatMessage(
            id=row_id,
            session_id=session_id,
            role=role,
            text=text,
            timestamp=ts,
            raw_text=raw_text,
            image_ref=image_ref,
            video_ref=video_ref,
        )

    def _recent_sync(self, session_id: int, limit: int) -> List[ChatMessage]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT id, session_id, role, text, raw_text, image_ref, video_ref, timestamp "
                "FROM messages WHERE session_id = ? ORDER BY id DESC LIMIT ?",
                (session_id, limit),
            ).fetchall()
        finally:
            conn.close()
        return [
            ChatMessage(
                id=row[0],
                session_id=row[1],
                role=Role(row[2]),
                text=row[3],
                raw_text=row[4],
                image_ref=row[5],
                video_ref=row[6],
                timestamp=row[7],
            )
            for row in reversed(rows)
        ]

    # ------------------------------------------------------------------
    # PersistenceGateway
    # ------------------------------------------------------------------

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            raise PersistenceError(str(e)) from e

    async def get_or_create_active_session(self) -> int:
        return await self._run(self._get_or_create_sync)

    async def create_session(self) -> int:
        return await self._run(self._create_session_sync)

    async def archive_session(self, session_id: int) -> None:
        await self._run(self._archive_sync, session_id)

    async def append(self, session_id, role, text, raw_text=None, image_ref=None, video_ref=None) -> ChatMessage:
        message = await self._run(self._append_sync, session_id, role, text, raw_text, image_ref, video_ref)
        self._changes.publish(session_id)
        return message

    async def recent(self, session_id: int, limit: int) -> List[ChatMessage]:
        if limit <= 0:
            return []
        return await self._run(self._recent_sync, session_id, limit)

    async def observe(self, session_id: int, limit: int) -> AsyncIterator[List[ChatMessage]]:
        async with self._changes.subscribe() as changes:
            yield await self.recent(session_id, limit)
            async for changed in changes:
                if changed == session_id:
                    yield await self.recent(session_id, limit)
