"""
Signal Processor Module

Responsibility: Score one user message for relationship and wellbeing signals.

Two bounded scores, both owned here:
- Affinity (0..100, default 60): the punishment axis. Rudeness and premature
  intimacy cost points; an apology recovers a few, at most once per cooldown.
- Intimacy (0..1000): the growth axis. Tiers 1..4 (stranger, friend, crush, lover)
  gate how the persona speaks.

Per message, at most ONE negative adjustment is applied. Only a message with no
negative signal grows intimacy (and may recover affinity after an apology).

Crisis / warning / positive keywords are detected here and reported; delivery is
the crisis monitor's job.

Does NOT:
- Persist anything (scores live for the lifetime of the process)
- Call external services
"""

import logging
import re
import time
import unicodedata
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


# ============================================================================
# KEYWORDS
# ============================================================================

RUDE_KEYWORDS = (
    "傻逼", "傻b", "sb", "滚", "废物", "垃圾", "去死", "脑残",
    "蠢", "走开", "闭嘴", "有病", "他妈", "你妈", "nmsl", "tmd", "妈的",
    "操你妈", "草泥马", "艹", "fuck", "fxxk", "shit", "bitch", "idiot", "stupid",
    "shut up", "get lost",
)

APOLOGY_KEYWORDS = (
    "对不起", "抱歉", "我错了", "别生气", "原谅", "不好意思",
    "sorry", "apologize", "my bad", "forgive me",
)

# Group A: emotional expression, small intimacy bonus at any tier
EMOTIONAL_KEYWORDS = (
    "心情", "难过", "开心", "快乐", "伤心", "感动", "幸福", "温暖",
    "焦虑", "低落", "失落", "委屈", "害怕", "紧张", "压力", "疲惫",
    "feel", "happy", "sad", "anxious", "stressed", "tired", "lonely",
)

# Group B: declarations of affection, rewarded from tier 2, penalized at tier 1
STRONG_INTIMACY_KEYWORDS = (
    "爱你", "喜欢你", "想你", "想念", "宝贝", "亲爱的", "老公", "老婆",
    "抱抱", "亲亲", "么么", "比心", "mua", "❤", "💕", "😘",
    "好想", "很想", "特别想", "一直想",
    "love you", "miss you", "kiss", "babe", "honey", "sweetheart",
)

CRISIS_KEYWORDS = (
    "自杀", "不想活", "跳楼", "割腕", "活不下去",
    "suicide", "kill myself", "end it all", "want to die",
)

WARNING_KEYWORDS = (
    "抑郁", "绝望", "没意思", "活着累", "讨厌自己", "没人爱我",
    "孤独", "害怕", "焦虑", "失眠", "噩梦", "心情不好", "心情差", "不开心", "难过", "沮丧",
    "depressed", "hopeless", "lonely", "anxiety", "nightmare", "unhappy", "upset",
)

POSITIVE_KEYWORDS = (
    "开心", "快乐", "感谢", "幸福", "希望", "期待", "好起来", "变好", "阳光", "微笑",
    "grateful", "hopeful", "better", "smile", "thank",
)


def normalize(text: str) -> str:
    """Lowercase and drop punctuation, symbols and whitespace ("s.b" -> "sb")."""
    return "".join(
        ch for ch in text.lower()
        if not ch.isspace() and unicodedata.category(ch)[0] not in ("P", "S")
    )


def find_keywords(text: str, keywords) -> List[str]:
    lowered = text.lower()
    return [k for k in keywords if k in lowered]


_WORD_RE = re.compile(r"[a-z0-9]+")


def spelled_words(text: str) -> str:
    """
    ASCII words of `text`, lowercased and single-spaced, with spelled-out
    letters joined back together ("F-U-C-K  you" -> "fuck you").
    """
    words: List[str] = []
    letters: List[str] = []
    for token in _WORD_RE.findall(text.lower()):
        if len(token) == 1:
            letters.append(token)
            continue
        if letters:
            words.append("".join(letters))
            letters = []
        words.append(token)
    if letters:
        words.append("".join(letters))
    return " ".join(words)


_ASCII_RUDE = tuple(spelled_words(k) for k in RUDE_KEYWORDS if k.isascii())
_OTHER_RUDE = tuple(normalize(k) for k in RUDE_KEYWORDS if not k.isascii())
_ASCII_RUDE_RE = re.compile(r"\b(?:" + "|".join(re.escape(k) for k in _ASCII_RUDE) + r")\b")


def is_rude(text: str) -> bool:
    """
    English keywords match whole words after separators are dropped
    ("s b", "f.u.c.k", "shut  up"); matching inside a word is avoided so
    "its been" is not "sb". CJK keywords match anywhere in the normalized text.
    """
    if _ASCII_RUDE_RE.search(spelled_words(text)):
        return True
    normalized = normalize(text)
    return any(k in normalized for k in _OTHER_RUDE)


def is_apology(text: str) -> bool:
    return bool(find_keywords(text, APOLOGY_KEYWORDS))


def has_strong_intimacy(text: str) -> bool:
    return bool(find_keywords(text, STRONG_INTIMACY_KEYWORDS))


def has_emotional(text: str) -> bool:
    return bool(find_keywords(text, EMOTIONAL_KEYWORDS))


# ============================================================================
# AFFINITY
# ============================================================================

class AffinityLevel(Enum):
    LOVE = "LOVE"
    NORMAL = "NORMAL"
    COLD = "COLD"


class AffinityTracker:
    DEFAULT_SCORE = 60
    MIN_SCORE = 0
    MAX_SCORE = 100
    THRESHOLD_LOVE = 80
    THRESHOLD_COLD = 50

    DEDUCT_RUDE = -5
    DEDUCT_BOUNDARY = -3
    RECOVER_APOLOGY = 3
    RECOVER_COOLDOWN_SECONDS = 10 * 60

    def __init__(self, score: int = DEFAULT_SCORE, clock: Callable[[], float] = time.monotonic):
        self._score = max(self.MIN_SCORE, min(self.MAX_SCORE, score))
        self._clock = clock
        self._last_recovery_at: Optional[float] = None

    @property
    def score(self) -> int:
        return self._score

    @property
    def level(self) -> AffinityLevel:
        if self._score >= self.THRESHOLD_LOVE:
            return AffinityLevel.LOVE
        if self._score >= self.THRESHOLD_COLD:
            return AffinityLevel.NORMAL
        return AffinityLevel.COLD

    @property
    def is_cold_war(self) -> bool:
        return self._score < self.THRESHOLD_COLD

    def adjust(self, delta: int) -> int:
        old = self._score
        self._score = max(self.MIN_SCORE, min(self.MAX_SCORE, old + delta))
        logger.debug(f"[SIGNAL] Affinity {old} -> {self._score} (delta {delta})")
        if old >= self.THRESHOLD_COLD > self._score:
            logger.warning(f"[SIGNAL] Cold war: affinity dropped below {self.THRESHOLD_COLD}")
        return self._score - old

    def deduct_for_rudeness(self) -> int:
        return self.adjust(self.DEDUCT_RUDE)

    def deduct_for_boundary_crossing(self) -> int:
        return self.adjust(self.DEDUCT_BOUNDARY)

    def recover_with_cooldown(self) -> int:
        """Apology recovery; returns 0 while the cooldown is running."""
        now = self._clock()
        if self._last_recovery_at is not None and now - self._last_recovery_at < self.RECOVER_COOLDOWN_SECONDS:
            return 0
        self._last_recovery_at = now
        return self.adjust(self.RECOVER_APOLOGY)


# ============================================================================
# INTIMACY
# ============================================================================

class IntimacyTracker:
    MAX_SCORE = 1000
    POINTS_PER_CHAT = 1
    POINTS_EMOTIONAL_LOW = 2
    POINTS_EMOTIONAL_HIGH = 5
    THRESHOLD_FRIEND = 200
    THRESHOLD_CRUSH = 500
    THRESHOLD_LOVER = 800
    BASE_GAIN_COOLDOWN_SECONDS = 60
    EMOTIONAL_GAIN_COOLDOWN_SECONDS = 10 * 60

    LEVEL_NAMES = {1: "stranger", 2: "friend", 3: "crush", 4: "lover"}

    def __init__(self, score: int = 0, clock: Callable[[], float] = time.monotonic):
        self._score = max(0, min(self.MAX_SCORE, score))
        self._clock = clock
        self._last_base_gain_at: Optional[float] = None
        self._last_emotional_gain_at: Optional[float] = None

    @property
    def score(self) -> int:
        return self._score

    @property
    def level(self) -> int:
        if self._score >= self.THRESHOLD_LOVER:
            return 4
        if self._score >= self.THRESHOLD_CRUSH:
            return 3
        if self._score >= self.THRESHOLD_FRIEND:
            return 2
        return 1

    @property
    def level_name(self) -> str:
        return self.LEVEL_NAMES[self.level]

    def _cooled(self, last: Optional[float], now: float, cooldown: float) -> bool:
        return last is None or now - last >= cooldown

    def process_interaction(self, text: str) -> int:
        """Grow the score for one friendly message. Returns points gained."""
        now = self._clock()
        points = 0

        if self._cooled(self._last_base_gain_at, now, self.BASE_GAIN_COOLDOWN_SECONDS):
            points += self.POINTS_PER_CHAT
            self._last_base_gain_at = now

        if self._cooled(self._last_emotional_gain_at, now, self.EMOTIONAL_GAIN_COOLDOWN_SECONDS):
            if has_strong_intimacy(text) and self.level >= 2:
                points += self.POINTS_EMOTIONAL_HIGH
                self._last_emotional_gain_at = now
            elif has_emotional(text):
                points += self.POINTS_EMOTIONAL_LOW
                self._last_emotional_gain_at = now

        if points:
            self._score = min(self.MAX_SCORE, self._score + points)
        return points


# ============================================================================
# PROCESSOR
# ============================================================================

@dataclass
class SignalReport:
    """What one message did to the relationship scores."""
    rude: bool = False
    apology: bool = False
    boundary_crossing: bool = False
    affinity_delta: int = 0
    intimacy_delta: int = 0
    affinity: int = AffinityTracker.DEFAULT_SCORE
    intimacy: int = 0
    intimacy_level: int = 1
    crisis_keywords: List[str] = field(default_factory=list)
    warning_keywords: List[str] = field(default_factory=list)
    positive_keywords: List[str] = field(default_factory=list)

    @property
    def negative(self) -> bool:
        return self.rude or self.boundary_crossing


class SignalProcessor:
    """Applies one message's signals to the affinity and intimacy trackers."""

    def __init__(
        self,
        affinity: Optional[AffinityTracker] = None,
        intimacy: Optional[IntimacyTracker] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.affinity = affinity or AffinityTracker(clock=clock)
        self.intimacy = intimacy or IntimacyTracker(clock=clock)

    def analyze(self, text: str) -> SignalReport:
        report = SignalReport(
            rude=is_rude(text),
            apology=is_apology(text),
            boundary_crossing=self.intimacy.level == 1 and has_strong_intimacy(text),
            crisis_keywords=find_keywords(text, CRISIS_KEYWORDS),
            warning_keywords=find_keywords(text, WARNING_KEYWORDS),
            positive_keywords=find_keywords(text, POSITIVE_KEYWORDS),
        )

        # Rudeness outranks boundary crossing; never both in one message
        if report.rude:
            report.affinity_delta = self.affinity.deduct_for_rudeness()
        elif report.boundary_crossing:
            report.affinity_delta = self.affinity.deduct_for_boundary_crossing()
        else:
            report.intimacy_delta = self.intimacy.process_interaction(text)
            if report.apology:
                report.affinity_delta = self.affinity.recover_with_cooldown()

        report.affinity = self.affinity.score
        report.intimacy = self.intimacy.score
        report.intimacy_level = self.intimacy.level
        logger.info(
            f"[SIGNAL] rude={report.rude} boundary={report.boundary_crossing} apology={report.apology} "
            f"affinity={report.affinity}({report.affinity_delta:+d}) "
            f"intimacy={report.intimacy}({report.intimacy_delta:+d}) crisis={len(report.crisis_keywords)}"
        )
        return report
