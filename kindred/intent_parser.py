"""
Intent Parser Module

Responsibility: Decide whether raw user text is a direct request for a picture,
and if so pull out what the picture should show.
Nothing more.

Does NOT:
- Use LLMs or embeddings (no intelligence)
- Trigger generation (the orchestrator asks the user to confirm first)
- Maintain memory (stateless)
- Call external services (completely local)

Rule: trigger word AND target noun AND no negation.
    "帮我画一张夕阳的图片"    -> IMAGE_GENERATION, prompt "夕阳"
    "draw me a picture of a cat" -> IMAGE_GENERATION, prompt "a cat"
    "不要画图"                -> CHAT
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class IntentType(Enum):
    """Supported intent classifications."""
    IMAGE_GENERATION = "image_generation"
    CHAT = "chat"


@dataclass
class Intent:
    """
    Structured intent extracted from text.

    Fields:
    - intent_type: IMAGE_GENERATION or CHAT
    - confidence: Simple score [0.0, 1.0]
    - raw_text: Original input text (preserved for debugging)
    - prompt: Picture subject (IMAGE_GENERATION only)
    """
    intent_type: IntentType
    confidence: float
    raw_text: str
    prompt: Optional[str] = None

    def __str__(self) -> str:
        prompt_str = f", prompt='{self.prompt}'" if self.prompt else ""
        return (
            f"Intent({self.intent_type.value}, confidence={self.confidence:.2f}"
            f"{prompt_str}, text='{self.raw_text[:50]}')"
        )


class IntentParser(ABC):
    """Base class for intent parsers."""

    @abstractmethod
    def parse(self, text: str) -> Intent:
        """
        Parse text into structured intent.

        Args:
            text: Raw user input

        Returns:
            Intent object with type, confidence, and original text

        Raises:
            ValueError: If text is empty
        """
        pass


class RuleBasedIntentParser(IntentParser):
    """
    Keyword rules for direct picture requests.

    Intentionally dumb for predictability: the same sentence always gets the
    same answer, and a false negative only costs one normal chat turn.
    """

    def __init__(self):
        self.negation_keywords = {
            "不要", "别", "不需要", "不用", "不想",
            "don't", "dont", "do not", "no need",
        }
        # Words containing 别 that do not negate anything
        self.benign_compounds = ("特别", "区别", "分别", "告别", "类别", "级别", "性别", "别人", "个别")
        self.target_keywords = {
            "图", "图片", "插画", "风景图", "壁纸", "照片", "海报", "封面", "头像",
            "picture", "image", "poster", "drawing", "wallpaper",
        }
        self.trigger_keywords = {
            "生成", "画", "绘制", "做", "来一张", "来个", "给我", "帮我", "出一张", "整一张",
            "generate", "draw", "make", "create",
        }

        # Leading request phrasing, then the verb, then a quantifier
        self._zh_prefix = re.compile(
            r"^(?:请|麻烦你?|你|能不能|可以|可不可以|帮我|给我|替我|为我)*"
            r"(?:生成|绘制|画|做|来|出|整)?"
            r"(?:一张|一幅|一个|张|幅|个)?"
        )
        self._zh_suffix = re.compile(
            r"的?(?:风景图|图片|插画|壁纸|照片|海报|封面|头像|图)"
            r"[吧吗呀啊呢哦。.!！?？~\s]*$"
        )
        self._en_of = re.compile(
            r"(?:generate|draw|make|create)\s+(?:me\s+)?(?:an?\s+|the\s+)?"
            r"(?:picture|image|poster|drawing|wallpaper)\s+(?:of|showing|with)\s+(.+)",
            re.IGNORECASE,
        )
        self._en_plain = re.compile(
            r"(?:generate|draw|make|create)\s+(?:me\s+)?(?:an?\s+|the\s+)?(.+?)"
            r"\s+(?:picture|image|poster|drawing|wallpaper)\b",
            re.IGNORECASE,
        )

    def parse(self, text: str) -> Intent:
        if not text or not text.strip():
            raise ValueError("text must not be empty")

        raw = text.strip()
        lowered = raw.lower()

        unnegated = lowered
        for word in self.benign_compounds:
            unnegated = unnegated.replace(word, "")
        if any(k in unnegated for k in self.negation_keywords):
            return Intent(IntentType.CHAT, 1.0, raw)

        has_target = any(k in lowered for k in self.target_keywords)
        has_trigger = any(k in lowered for k in self.trigger_keywords)
        if not (has_target and has_trigger):
            return Intent(IntentType.CHAT, 1.0, raw)

        prompt = self.extract_prompt(raw)
        return Intent(IntentType.IMAGE_GENERATION, 0.8, raw, prompt=prompt)

    def extract_prompt(self, text: str) -> str:
        """Strip the request phrasing and keep the subject. Falls back to the whole text."""
        for pattern in (self._en_of, self._en_plain):
            match = pattern.search(text)
            if match:
                subject = match.group(1).strip(" .!?")
                if subject:
                    return subject

        subject = self._zh_prefix.sub("", text, count=1)
        subject = self._zh_suffix.sub("", subject, count=1)
        subject = subject.strip(" ，,。.!！?？")
        return subject or text
