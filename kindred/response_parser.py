"""
Response Parser Module

Responsibility: Turn one raw model reply into display text plus control data.

Expected model output:
    [EMOTION:happy] [GESTURE:wave] Good to see you!

Recognized control markup:
- [EMOTION:<word>] / [GESTURE:<word>]      first match wins, unknown words fall back
- [Inner]: ... [Reply]: ...               inner monologue is dropped, reply kept
- [ANNIVERSARY:type|name|M-D|YYYY]        zero or more, year optional
- {"tool": "generate_image", ...}         structured image command
- [GENERATE_IMAGE: prompt] / [生成图片：prompt]   shorthand image command

Does NOT:
- Call anything (pure function)
- Raise (worst case: whole input as text, default emotion/gesture)
"""

import json
import logging
import re
from typing import List, Optional

from kindred.models import Anniversary, ImageGenCommand, ParsedResponse
from kindred.policy import DEFAULT_IMAGE_SIZE

logger = logging.getLogger(__name__)

DEFAULT_EMOTION = "neutral"
DEFAULT_GESTURE = "nod"

EMOTIONS = frozenset({"happy", "sad", "angry", "surprised", "neutral", "loving", "worried", "excited"})
GESTURES = frozenset({"nod", "shake_head", "wave", "think", "shrug", "bow", "clap", "heart"})

_EMOTION_RE = re.compile(r"\[EMOTION:(\w+)\]", re.IGNORECASE)
_GESTURE_RE = re.compile(r"\[GESTURE:(\w+)\]", re.IGNORECASE)
_INNER_RE = re.compile(r"\[Inner\]:\s*.*?(?=\[Reply\]|$)", re.IGNORECASE | re.DOTALL)
_REPLY_MARKER_RE = re.compile(r"\[Reply\]:\s*", re.IGNORECASE)

_ANNIVERSARY_RE = re.compile(r"\[ANNIVERSARY:([^|\]]+)\|([^|\]]+)\|(\d{1,2})-(\d{1,2})\|?(\d{4})?\]")
_ANNIVERSARY_TAG_RE = re.compile(r"\[ANNIVERSARY:[^\]]*\]")

_IMAGE_JSON_RE = re.compile(r"\{[^{}]*\"tool\"\s*:\s*\"generate_image\"[^{}]*\}")
_IMAGE_SHORTHAND_RE = re.compile(r"\[(?:生成图片|GENERATE_IMAGE)\s*[：:]\s*(.+?)\]", re.IGNORECASE)
_SPACE_RUN_RE = re.compile(r"[ \t]{2,}")
_SIZE_RE = re.compile(r"^\d{2,5}x\d{2,5}$")

# Days per month in a leap year, so 2-29 is accepted without a year
_MAX_DAY = {1: 31, 2: 29, 3: 31, 4: 30, 5: 31, 6: 30, 7: 31, 8: 31, 9: 30, 10: 31, 11: 30, 12: 31}


class ResponseParser:
    """Stateless parser for model replies."""

    def parse(self, raw: Optional[str]) -> ParsedResponse:
        raw = raw or ""
        try:
            return ParsedResponse(
                emotion=self.extract_emotion(raw),
                gesture=self.extract_gesture(raw),
                text=self.clean_text(raw),
                image_command=self.extract_image_command(raw),
                anniversaries=self.extract_anniversaries(raw),
            )
        except Exception as e:
            logger.warning(f"[PARSER] Falling back to raw text: {e}")
            return ParsedResponse(emotion=DEFAULT_EMOTION, gesture=DEFAULT_GESTURE, text=raw)

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    @staticmethod
    def extract_emotion(raw: str) -> str:
        match = _EMOTION_RE.search(raw)
        if match:
            value = match.group(1).lower()
            if value in EMOTIONS:
                return value
        return DEFAULT_EMOTION

    @staticmethod
    def extract_gesture(raw: str) -> str:
        match = _GESTURE_RE.search(raw)
        if match:
            value = match.group(1).lower()
            if value in GESTURES:
                return value
        return DEFAULT_GESTURE

    @staticmethod
    def extract_anniversaries(raw: str) -> List[Anniversary]:
        found = []
        for match in _ANNIVERSARY_RE.finditer(raw):
            kind, name, month_s, day_s, year_s = match.groups()
            month, day = int(month_s), int(day_s)
            if month not in _MAX_DAY or not 1 <= day <= _MAX_DAY[month]:
                logger.debug(f"[PARSER] Skipping anniversary with bad date {month_s}-{day_s}")
                continue
            if not kind.strip() or not name.strip():
                continue
            found.append(
                Anniversary(
                    type=kind.strip(),
                    name=name.strip(),
                    month=month,
                    day=day,
                    year=int(year_s) if year_s else None,
                )
            )
        return found

    @staticmethod
    def extract_image_command(raw: str) -> Optional[ImageGenCommand]:
        for match in _IMAGE_JSON_RE.finditer(raw):
            try:
                payload = json.loads(match.group(0))
            except ValueError:
                continue
            prompt = payload.get("prompt")
            if not isinstance(prompt, str) or not prompt.strip():
                continue
            size = payload.get("size")
            if not isinstance(size, str) or not _SIZE_RE.match(size.strip()):
                size = DEFAULT_IMAGE_SIZE
            return ImageGenCommand(prompt=prompt.strip(), size=size.strip())

        for match in _IMAGE_SHORTHAND_RE.finditer(raw):
            prompt = match.group(1).strip()
            if prompt:
                return ImageGenCommand(prompt=prompt)
        return None

    # ------------------------------------------------------------------
    # Display text
    # ------------------------------------------------------------------

    @staticmethod
    def clean_text(raw: str) -> str:
        text = _INNER_RE.sub("", raw)
        text = _REPLY_MARKER_RE.sub("", text)
        text = _EMOTION_RE.sub("", text)
        text = _GESTURE_RE.sub("", text)
        text = _ANNIVERSARY_TAG_RE.sub("", text)
        text = _IMAGE_JSON_RE.sub("", text)
        text = _IMAGE_SHORTHAND_RE.sub("", text)
        return _SPACE_RUN_RE.sub(" ", text).strip()
