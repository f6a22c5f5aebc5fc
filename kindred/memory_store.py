"""
SQLite-backed long-term memory for Kindred.

Contract:
- Every memory is a tagged text with an embedding and a timestamp.
- Tags: user_input, ai_output, fact (retrieval filters by an allowed set).
- Retrieval ranks by cosine similarity decayed by age (see kindred.retrieval).
- Memories newer than the exclusion window are never returned.
- SQLite is the source of truth; embeddings are stored as float32 blobs.
"""

import asyncio
import logging
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np

from kindred.embeddings import Embedder
from kindred.errors import EmbeddingError, MemoryServiceError
from kindred.models import MemoryItem
from kindred.retrieval import MemoryService, RetrievalQuery, format_context, rank_memories, tag_distribution

logger = logging.getLogger(__name__)

DB_PATH = Path("data") / "memory.db"


@dataclass
class MemoryRecord:
    id: int
    session_id: int
    text: str
    tag: str
    emotion: Optional[str]
    timestamp: float


class SqliteMemoryService(MemoryService):
    def __init__(self, embedder: Embedder, db_path: Path = DB_PATH, clock=time.time):
        self.embedder = embedder
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    def _init_db(self) -> None:
        conn = self._connect()
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS memories (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id INTEGER NOT NULL,
                text TEXT NOT NULL,
                tag TEXT NOT NULL,
                emotion TEXT NULL,
                timestamp REAL NOT NULL,
                embedding BLOB NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_memories_tag ON memories(tag)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_memories_timestamp ON memories(timestamp)")
        conn.commit()
        conn.close()

    # ------------------------------------------------------------------
    # Sync core (runs in a worker thread)
    # ------------------------------------------------------------------

    def add_memory(self, text: str, tag: str, session_id: int, emotion: Optional[str] = None,
                   timestamp: Optional[float] = None) -> int:
        vector = self.embedder.embed(text).astype(np.float32)
        ts = self._clock() if timestamp is None else timestamp
        conn = self._connect()
        try:
            cur = conn.execute(
                "INSERT INTO memories(session_id, text, tag, emotion, timestamp, embedding) VALUES(?, ?, ?, ?, ?, ?)",
                (session_id, text, tag, emotion, ts, vector.tobytes()),
            )
            conn.commit()
            return int(cur.lastrowid)
        finally:
            conn.close()

    def list_memory(self, tag: Optional[str] = None) -> List[MemoryRecord]:
        conn = self._connect()
        query = "SELECT id, session_id, text, tag, emotion, timestamp FROM memories"
        params: list = []
        if tag:
            query += " WHERE tag = ?"
            params.append(tag)
        query += " ORDER BY id DESC"
        rows = conn.execute(query, params).fetchall()
        conn.close()
        return [MemoryRecord(*row) for row in rows]

    def clear_all(self) -> int:
        conn = self._connect()
        cur = conn.execute("DELETE FROM memories")
        conn.commit()
        count = int(cur.rowcount)
        conn.close()
        return count

    def _where(self, request: RetrievalQuery) -> Tuple[str, list]:
        placeholders = ", ".join("?" for _ in request.tags)
        clause = f"tag IN ({placeholders})"
        params: list = list(request.tags)
        if request.exclude_after is not None:
            clause += " AND timestamp < ?"
            params.append(request.exclude_after)
        return clause, params

    def count_candidates(self, request: RetrievalQuery) -> int:
        if not request.tags:
            return 0
        clause, params = self._where(request)
        conn = self._connect()
        try:
            row = conn.execute(f"SELECT COUNT(*) FROM memories WHERE {clause}", params).fetchone()
        finally:
            conn.close()
        return int(row[0])

    def _load_candidates(self, request: RetrievalQuery, limit: Optional[int]) -> List[tuple]:
        if not request.tags:
            return []
        clause, params = self._where(request)
        sql = f"SELECT text, tag, emotion, timestamp, embedding FROM memories WHERE {clause} ORDER BY timestamp DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        conn = self._connect()
        try:
            return conn.execute(sql, params).fetchall()
        finally:
            conn.close()

    def _score(self, query: str, rows: List[tuple], top_k: int) -> List[MemoryItem]:
        if not rows:
            return []
        query_vec = self.embedder.embed(query).astype(np.float32)
        matrix = np.stack([np.frombuffer(row[4], dtype=np.float32) for row in rows])
        if matrix.shape[1] != query_vec.shape[0]:
            raise MemoryServiceError(
                f"embedding dimension mismatch: stored {matrix.shape[1]}, query {query_vec.shape[0]}"
            )
        similarities = matrix @ query_vec
        order = np.argsort(-similarities)[:max(1, top_k)]
        return [
            MemoryItem(
                text=rows[i][0],
                tag=rows[i][1],
                emotion=rows[i][2],
                timestamp=float(rows[i][3]),
                similarity=float(similarities[i]),
            )
            for i in order
        ]

    def _retrieve(self, request: RetrievalQuery, limit: Optional[int]) -> str:
        rows = self._load_candidates(request, limit)
        candidates = self._score(request.query, rows, request.top_k)
        ranked = rank_memories(
            candidates,
            min_similarity=request.min_similarity,
            half_life_days=request.half_life_days,
            max_items=request.max_items,
            now=self._clock(),
        )
        if candidates:
            logger.debug(
                f"[RAG] candidates={len(candidates)} kept={len(ranked)} "
                f"top_similarity={candidates[0].similarity:.3f} tags={tag_distribution(ranked)}"
            )
        return format_context(ranked)

    def retrieve_fast_sync(self, request: RetrievalQuery) -> str:
        if self.count_candidates(request) == 0:
            return ""
        return self._retrieve(request, limit=request.candidate_limit)

    def retrieve_full_sync(self, request: RetrievalQuery) -> str:
        return self._retrieve(request, limit=None)

    # ------------------------------------------------------------------
    # MemoryService
    # ------------------------------------------------------------------

    async def retrieve_fast(self, request: RetrievalQuery) -> str:
        return await self._run(self.retrieve_fast_sync, request)

    async def retrieve_full(self, request: RetrievalQuery) -> str:
        return await self._run(self.retrieve_full_sync, request)

    async def save(self, text: str, tag: str, session_id: int, emotion: Optional[str] = None) -> None:
        await self._run(self.add_memory, text, tag, session_id, emotion)

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except (sqlite3.Error, EmbeddingError) as e:
            raise MemoryServiceError(str(e)) from e
