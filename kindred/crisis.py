"""
Crisis Monitor Module

Responsibility: Watch the user's messages for wellbeing signals and make sure
a human hears about real danger.

Per message (from the SignalReport, no I/O):
    score = -10 per crisis keyword, -3 per warning keyword, +2 per positive
    clamped to [-10, 10], kept in a window of the last 10 scored messages

Status:
    CRISIS   crisis keyword in this message
    WARNING  3+ of the last 5 scores <= -3, or window average < -5
    CAUTION  window average < -2
    NORMAL   otherwise

Crisis levels: LOW 1 (record) / MEDIUM 2 (notify) / HIGH 3 (notify + resources)
/ CRITICAL 4 (notify + resources + professional help). Notifiers are called
for MEDIUM and above; delivery failures are logged, never raised.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Deque, List, Optional

import requests

from kindred.signals import SignalReport

logger = logging.getLogger(__name__)

CRISIS_SCORE = -10
WARNING_SCORE = -3
POSITIVE_SCORE = 2
WINDOW_SIZE = 10
TRIGGER_EXCERPT_CHARS = 200
MAX_EVENTS = 100


class WatchStatus(Enum):
    NORMAL = "NORMAL"
    CAUTION = "CAUTION"
    WARNING = "WARNING"
    CRISIS = "CRISIS"


class CrisisLevel(IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        return {1: "low concern", 2: "needs attention", 3: "high alert", 4: "urgent"}[self.value]


@dataclass(frozen=True)
class CrisisResource:
    name: str
    type: str
    contact: str
    description: str


CRISIS_RESOURCES = (
    CrisisResource("988 Suicide & Crisis Lifeline", "hotline", "988", "24/7 call or text (US)"),
    CrisisResource("Crisis Text Line", "text", "Text HOME to 741741", "24/7 text support (US, UK, CA, IE)"),
    CrisisResource("全国心理援助热线", "hotline", "400-161-9995", "24小时免费心理援助热线"),
    CrisisResource("北京心理危机研究与干预中心", "hotline", "010-82951332", "24小时心理危机干预热线"),
    CrisisResource("Find A Helpline", "website", "https://findahelpline.com", "Free helplines by country"),
)

PROFESSIONAL_HELP_MESSAGE = (
    "Serious distress signals were detected. Please reach out to a mental health professional "
    "or a crisis line now."
)


@dataclass
class CrisisEvent:
    level: CrisisLevel
    keywords: List[str]
    trigger_excerpt: str
    status: WatchStatus
    timestamp: float = field(default_factory=time.time)
    handled: bool = False
    resources: List[CrisisResource] = field(default_factory=list)
    recommendation: Optional[str] = None

    def summary(self) -> str:
        stamp = datetime.fromtimestamp(self.timestamp).strftime("%H:%M")
        keywords = ", ".join(self.keywords[:3])
        return (
            f"[Kindred watch: {self.level.label}] {stamp} signals that need attention were detected. "
            f"Keywords: {keywords}. Please check in with them soon."
        )

    def to_dict(self) -> dict:
        return {
            "level": int(self.level),
            "level_label": self.level.label,
            "status": self.status.value,
            "keywords": list(self.keywords),
            "trigger_excerpt": self.trigger_excerpt,
            "timestamp": self.timestamp,
            "message": self.summary(),
        }


# ============================================================================
# NOTIFIERS
# ============================================================================

class CrisisNotifier(ABC):
    @abstractmethod
    async def notify(self, event: CrisisEvent) -> None:
        pass


class LoggingCrisisNotifier(CrisisNotifier):
    async def notify(self, event: CrisisEvent) -> None:
        logger.warning(f"[CRISIS] {event.summary()}")


class WebhookCrisisNotifier(CrisisNotifier):
    """POSTs the event as JSON to a guardian / on-call webhook."""

    def __init__(self, url: str, timeout_seconds: float = 10.0):
        self.url = url
        self.timeout_seconds = timeout_seconds

    def _post(self, payload: dict) -> None:
        response = requests.post(self.url, json=payload, timeout=self.timeout_seconds)
        response.raise_for_status()

    async def notify(self, event: CrisisEvent) -> None:
        await asyncio.to_thread(self._post, event.to_dict())
        logger.info(f"[CRISIS] Webhook delivered (level {int(event.level)})")


def build_crisis_notifiers(config) -> List[CrisisNotifier]:
    notifiers: List[CrisisNotifier] = [LoggingCrisisNotifier()]
    url = config.get("crisis.webhook_url")
    if url:
        notifiers.append(WebhookCrisisNotifier(url, float(config.get("crisis.timeout_seconds", 10))))
    return notifiers


# ============================================================================
# MONITOR
# ============================================================================

def message_score(report: SignalReport) -> int:
    raw = (
        len(report.crisis_keywords) * CRISIS_SCORE
        + len(report.warning_keywords) * WARNING_SCORE
        + len(report.positive_keywords) * POSITIVE_SCORE
    )
    return max(-10, min(10, raw))


class CrisisMonitor:
    def __init__(self, notifiers: Optional[List[CrisisNotifier]] = None, enabled: bool = True):
        self.notifiers = notifiers if notifiers is not None else [LoggingCrisisNotifier()]
        self.enabled = enabled
        self.status = WatchStatus.NORMAL
        self.events: Deque[CrisisEvent] = deque(maxlen=MAX_EVENTS)
        self._scores: Deque[int] = deque(maxlen=WINDOW_SIZE)

    @property
    def in_crisis(self) -> bool:
        return any(not e.handled and e.level >= CrisisLevel.MEDIUM for e in self.events)

    def _recalculate(self) -> WatchStatus:
        if not self._scores:
            return WatchStatus.NORMAL
        scores = list(self._scores)
        average = sum(scores) / len(scores)
        recent_warnings = sum(1 for s in scores[-5:] if s <= WARNING_SCORE)
        if recent_warnings >= 3 or average < -5:
            return WatchStatus.WARNING
        if average < -2:
            return WatchStatus.CAUTION
        return WatchStatus.NORMAL

    def _level_for(self, report: SignalReport) -> Optional[CrisisLevel]:
        if len(report.crisis_keywords) >= 2:
            return CrisisLevel.CRITICAL
        if report.crisis_keywords:
            return CrisisLevel.HIGH
        if report.warning_keywords and self.status is WatchStatus.WARNING:
            return CrisisLevel.MEDIUM
        if report.warning_keywords:
            return CrisisLevel.LOW
        return None

    def assess(self, text: str, report: SignalReport) -> Optional[CrisisEvent]:
        """Update status from one message. Pure bookkeeping; returns an event worth recording."""
        if not self.enabled:
            return None

        score = message_score(report)
        if score != 0 or report.crisis_keywords or report.warning_keywords:
            self._scores.append(score)

        old = self.status
        self.status = WatchStatus.CRISIS if report.crisis_keywords else self._recalculate()
        if old is not self.status:
            logger.info(f"[CRISIS] Status {old.value} -> {self.status.value}")

        level = self._level_for(report)
        if level is None:
            return None

        event = CrisisEvent(
            level=level,
            keywords=report.crisis_keywords + report.warning_keywords,
            trigger_excerpt=text[:TRIGGER_EXCERPT_CHARS],
            status=self.status,
        )
        if level >= CrisisLevel.HIGH:
            event.resources = list(CRISIS_RESOURCES)
        if level is CrisisLevel.CRITICAL:
            event.recommendation = PROFESSIONAL_HELP_MESSAGE
        self.events.append(event)
        logger.warning(f"[CRISIS] Event recorded: level={int(level)} keywords={len(event.keywords)}")
        return event

    async def deliver(self, event: CrisisEvent) -> int:
        """Send to every notifier. Returns how many succeeded."""
        if event.level < CrisisLevel.MEDIUM:
            return 0
        delivered = 0
        for notifier in self.notifiers:
            try:
                await notifier.notify(event)
                delivered += 1
            except Exception as e:
                logger.error(f"[CRISIS] {type(notifier).__name__} failed: {e}")
        return delivered

    def mark_handled(self, index: int) -> None:
        self.events[index].handled = True

    def reset(self) -> None:
        self.events.clear()
        self._scores.clear()
        self.status = WatchStatus.NORMAL
