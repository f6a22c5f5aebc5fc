"""
SQLite-backed anniversaries (birthdays, first-meeting days, ...).

The model declares them inline; the orchestrator forwards every parsed
declaration here. Duplicates (same type, name, month and day) are ignored.
"""

import asyncio
import calendar
import logging
import sqlite3
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Iterable, List, Optional

from kindred.models import Anniversary

logger = logging.getLogger(__name__)

DB_PATH = Path("data") / "chat.db"


@dataclass
class UpcomingAnniversary:
    anniversary: Anniversary
    next_date: date
    days_until: int


def next_occurrence(month: int, day: int, today: date) -> date:
    """Next date (today included) this month-day falls on. Feb 29 maps to Feb 28 in common years."""
    for year in (today.year, today.year + 1):
        actual_day = day
        if month == 2 and day == 29 and not calendar.isleap(year):
            actual_day = 28
        candidate = date(year, month, actual_day)
        if candidate >= today:
            return candidate
    raise ValueError(f"no occurrence for {month}-{day}")


class AnniversaryCollaborator(ABC):
    @abstractmethod
    async def record(self, anniversaries: Iterable[Anniversary]) -> int:
        """Store new declarations. Returns how many were new."""
        pass


class SqliteAnniversaryStore(AnniversaryCollaborator):
    def __init__(self, db_path: Path = DB_PATH, clock=time.time):
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
            CREATE TABLE IF NOT EXISTS anniversaries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                type TEXT NOT NULL,
                name TEXT NOT NULL,
                month INTEGER NOT NULL,
                day INTEGER NOT NULL,
                year INTEGER NULL,
                created_by_ai INTEGER NOT NULL DEFAULT 1,
                timestamp REAL NOT NULL,
                UNIQUE(type, name, month, day)
            )
            """
        )
        conn.commit()
        conn.close()

    def add(self, anniversary: Anniversary) -> bool:
        conn = self._connect()
        try:
            cur = conn.execute(
                "INSERT OR IGNORE INTO anniversaries(type, name, month, day, year, created_by_ai, timestamp) "
                "VALUES(?, ?, ?, ?, ?, ?, ?)",
                (
                    anniversary.type,
                    anniversary.name,
                    anniversary.month,
                    anniversary.day,
                    anniversary.year,
                    int(anniversary.created_by_ai),
                    self._clock(),
                ),
            )
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    def list_all(self) -> List[Anniversary]:
        conn = self._connect()
        rows = conn.execute(
            "SELECT type, name, month, day, year, created_by_ai FROM anniversaries ORDER BY month, day"
        ).fetchall()
        conn.close()
        return [
            Anniversary(type=r[0], name=r[1], month=r[2], day=r[3], year=r[4], created_by_ai=bool(r[5]))
            for r in rows
        ]

    def upcoming(self, within_days: int = 30, today: Optional[date] = None) -> List[UpcomingAnniversary]:
        today = today or date.today()
        found = []
        for item in self.list_all():
            when = next_occurrence(item.month, item.day, today)
            days = (when - today).days
            if days <= within_days:
                found.append(UpcomingAnniversary(item, when, days))
        found.sort(key=lambda u: u.days_until)
        return found

    def today(self, today: Optional[date] = None) -> List[Anniversary]:
        return [u.anniversary for u in self.upcoming(0, today)]

    async def record(self, anniversaries: Iterable[Anniversary]) -> int:
        items = list(anniversaries)
        if not items:
            return 0
        added = 0
        for item in items:
            if await asyncio.to_thread(self.add, item):
                added += 1
                logger.info(f"[ANNIV] Saved {item.type} on {item.month}-{item.day}")
        return added
