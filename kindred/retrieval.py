"""
Memory Retrieval Module (RAG)

Responsibility: Produce a best-effort "memory context" block for one turn.
Never raises past its boundary.

Strategy:
1. Fast path  - narrow lookup that returns "" quickly when nothing could match
2. Full path  - broad ranked lookup (only if the fast path failed)
3. Degrade    - empty context plus a recorded reason

Ranking contract (used by memory services):
    keep     similarity >= min_similarity
    weight = similarity * 0.5 ** (age_days / half_life_days)
    sort by weight desc, truncate to max_items

Exclusion window: memories newer than the oldest of the last 2 x exclude_rounds
history messages are already in the prompt, so retrieval skips them.

Privacy: logs counts and scores only, never memory text.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from kindred.config import FeatureFlags, RetrievalConfig
from kindred.instrumentation import StageTimer
from kindred.models import ChatMessage, MemoryItem, MemoryTag
from kindred.policy import RETRIEVAL_WARN_SECONDS, WARNING_MEMORY_DEGRADED

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0
CONTEXT_HEADER = "Relevant memories:"


# ============================================================================
# PURE HELPERS
# ============================================================================

def compute_exclude_window(history: Sequence[ChatMessage], exclude_rounds: int) -> Optional[float]:
    """Oldest timestamp among the last min(len(history), 2 * exclude_rounds) messages."""
    if exclude_rounds <= 0 or not history:
        return None
    tail = history[-(2 * exclude_rounds):]
    return min(m.timestamp for m in tail)


def allowed_tags(include_ai_output: bool) -> tuple:
    if include_ai_output:
        return MemoryTag.DEFAULT_ALLOWED + (MemoryTag.AI_OUTPUT,)
    return MemoryTag.DEFAULT_ALLOWED


def decay_weight(similarity: float, age_days: float, half_life_days: float) -> float:
    if half_life_days <= 0:
        return similarity
    return similarity * 0.5 ** (max(0.0, age_days) / half_life_days)


def rank_memories(
    items: Iterable[MemoryItem],
    min_similarity: float,
    half_life_days: float,
    max_items: int,
    now: Optional[float] = None,
) -> List[MemoryItem]:
    now = time.time() if now is None else now
    kept = []
    for item in items:
        if item.similarity < min_similarity:
            continue
        age_days = (now - item.timestamp) / SECONDS_PER_DAY
        item.weight = decay_weight(item.similarity, age_days, half_life_days)
        kept.append(item)
    kept.sort(key=lambda m: m.weight, reverse=True)
    return kept[:max(0, max_items)]


def format_context(items: Sequence[MemoryItem]) -> str:
    if not items:
        return ""
    lines = [CONTEXT_HEADER]
    for item in items:
        stamp = datetime.fromtimestamp(item.timestamp).strftime("%Y-%m-%d %H:%M")
        lines.append(f"- [{stamp}] {item.text}")
    return "\n".join(lines)


def tag_distribution(items: Iterable[MemoryItem]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for item in items:
        counts[item.tag] = counts.get(item.tag, 0) + 1
    return counts


# ============================================================================
# MEMORY SERVICE INTERFACE
# ============================================================================

@dataclass(frozen=True)
class RetrievalQuery:
    query: str
    session_id: int
    exclude_after: Optional[float]
    tags: tuple
    top_k: int
    max_items: int
    min_similarity: float
    half_life_days: float
    candidate_limit: int = 200


class MemoryService(ABC):
    """Long-term memory store: tagged texts, ranked retrieval."""

    @abstractmethod
    async def retrieve_fast(self, request: RetrievalQuery) -> str:
        """Cheap lookup. Returns "" without embedding when no candidate exists."""
        pass

    @abstractmethod
    async def retrieve_full(self, request: RetrievalQuery) -> str:
        pass

    @abstractmethod
    async def save(self, text: str, tag: str, session_id: int, emotion: Optional[str] = None) -> None:
        pass


# ============================================================================
# COORDINATOR
# ============================================================================

@dataclass
class RetrievalOutcome:
    context: str = ""
    path: str = "none"  # fast | full | degraded | none
    failure_reason: Optional[str] = None
    exclude_after: Optional[float] = None
    elapsed_seconds: float = 0.0

    @property
    def degraded(self) -> bool:
        return self.failure_reason is not None


class MemoryRetrievalCoordinator:
    """
    Wraps the memory service with the fast -> full -> empty cascade.

    `history_source(session_id, limit)` is an awaitable returning recent
    ChatMessages; it is used to compute the exclusion window.
    """

    def __init__(
        self,
        service: MemoryService,
        config: Optional[RetrievalConfig] = None,
        flags: Optional[FeatureFlags] = None,
        history_source=None,
    ):
        self.service = service
        self.config = config or RetrievalConfig()
        self.flags = flags or FeatureFlags()
        self._history_source = history_source
        self._warned_sessions = set()

    def build_query(self, query: str, session_id: int, exclude_after: Optional[float]) -> RetrievalQuery:
        cfg = self.config
        return RetrievalQuery(
            query=query,
            session_id=session_id,
            exclude_after=exclude_after,
            tags=allowed_tags(cfg.include_ai_output),
            top_k=cfg.top_k_candidates,
            max_items=cfg.max_items,
            min_similarity=cfg.min_similarity,
            half_life_days=cfg.half_life_days,
            candidate_limit=cfg.fast_candidate_limit,
        )

    async def exclude_window_for(self, session_id: int) -> Optional[float]:
        if self._history_source is None or self.config.exclude_rounds <= 0:
            return None
        recent = await self._history_source(session_id, 2 * self.config.exclude_rounds)
        return compute_exclude_window(recent, self.config.exclude_rounds)

    async def retrieve(
        self,
        query: str,
        session_id: int,
        history: Optional[Sequence[ChatMessage]] = None,
        request_id: Optional[int] = None,
    ) -> RetrievalOutcome:
        """
        Never raises. History (when given) replaces the narrow history read.
        """
        outcome = RetrievalOutcome()
        with StageTimer("retrieval", RETRIEVAL_WARN_SECONDS, request_id) as timer:
            try:
                if history is not None:
                    outcome.exclude_after = compute_exclude_window(history, self.config.exclude_rounds)
                else:
                    outcome.exclude_after = await self.exclude_window_for(session_id)
            except Exception as e:
                # Without a window we may double-count recent lines; still better than no memory
                logger.warning(f"[RAG] Exclusion window unavailable: {type(e).__name__}")
                outcome.exclude_after = None

            request = self.build_query(query, session_id, outcome.exclude_after)
            await self._cascade(request, outcome)
        outcome.elapsed_seconds = timer.elapsed_seconds

        logger.info(
            f"[RAG] path={outcome.path} chars={len(outcome.context)} "
            f"exclude_after={outcome.exclude_after} elapsed={outcome.elapsed_seconds * 1000:.0f}ms"
        )
        return outcome

    async def _cascade(self, request: RetrievalQuery, outcome: RetrievalOutcome) -> None:
        if self.flags.fast_retrieval_path:
            try:
                outcome.context = await self.service.retrieve_fast(request)
                outcome.path = "fast"
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.info(f"[RAG] Fast path failed ({type(e).__name__}), falling back to full path")

        try:
            outcome.context = await self.service.retrieve_full(request)
            outcome.path = "full"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[RAG] Full path failed, continuing without memory: {type(e).__name__}: {e}")
            outcome.context = ""
            outcome.path = "degraded"
            outcome.failure_reason = f"{type(e).__name__}: {e}"

    def warning_for(self, outcome: RetrievalOutcome, session_id: int, history_length: int) -> Optional[str]:
        """
        One non-blocking warning per session, and none before the session
        has enough history for memory to matter.
        """
        if not outcome.degraded:
            return None
        if history_length < self.config.warning_min_history:
            return None
        if session_id in self._warned_sessions:
            return None
        self._warned_sessions.add(session_id)
        return WARNING_MEMORY_DEGRADED

    async def save(self, text: str, tag: str, session_id: int, emotion: Optional[str] = None) -> bool:
        """Best-effort write. Returns False on failure, never raises."""
        if not text or not text.strip():
            return False
        try:
            await self.service.save(text, tag, session_id, emotion)
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"[RAG] Memory save skipped ({tag}): {type(e).__name__}")
            return False
