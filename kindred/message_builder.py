"""
Message Builder Module

Responsibility: Deterministic assembly of the prompt sent to the language model.

Order (fixed, never reordered):
1. system: persona for the current affinity / intimacy
2. system: gender binding + warmth (tone only)
3. system: memory context (omitted when empty)
4. history, oldest first (minus the just-persisted copy of the current input)
5. user: current input, plain text or text + image parts

Output also says whether any image is present, which selects the vision route.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Union

from kindred.models import ChatMessage, Role
from kindred.persona import PersonaConfig, build_gender_binding, build_persona_prompt


class RouteHint(Enum):
    TEXT = "text"
    VISION = "vision"


@dataclass(frozen=True)
class TextPart:
    text: str

    def to_dict(self) -> dict:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ImagePart:
    url: str
    detail: str = "auto"

    def to_dict(self) -> dict:
        return {"type": "image_url", "image_url": {"url": self.url, "detail": self.detail}}


Content = Union[str, List[Union[TextPart, ImagePart]]]


@dataclass
class Message:
    role: str
    content: Content

    @property
    def is_multimodal(self) -> bool:
        return not isinstance(self.content, str)

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "\n".join(p.text for p in self.content if isinstance(p, TextPart))

    @property
    def image_urls(self) -> List[str]:
        if isinstance(self.content, str):
            return []
        return [p.url for p in self.content if isinstance(p, ImagePart)]

    def to_dict(self) -> dict:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": [p.to_dict() for p in self.content]}


@dataclass
class BuiltPrompt:
    messages: List[Message] = field(default_factory=list)
    has_image: bool = False

    @property
    def route(self) -> RouteHint:
        return RouteHint.VISION if self.has_image else RouteHint.TEXT


def frame_instruction(count: int) -> str:
    return f"The following are {count} key frames extracted from the video, in temporal order."


class MessageBuilder:
    def __init__(self, persona: Optional[PersonaConfig] = None, vision_detail: str = "auto"):
        self.persona = persona or PersonaConfig()
        self.vision_detail = vision_detail if vision_detail in ("low", "high", "auto") else "auto"

    def build(
        self,
        context: str,
        history: Sequence[ChatMessage],
        text: str,
        images: Sequence[str] = (),
        affinity: int = 60,
        intimacy: int = 0,
        image_detail: Optional[str] = None,
    ) -> BuiltPrompt:
        messages = [
            Message("system", build_persona_prompt(self.persona, affinity, intimacy)),
            Message("system", build_gender_binding(self.persona)),
        ]

        if context and context.strip():
            messages.append(Message("system", context))

        for entry in self._dedupe_history(history, text):
            role = "assistant" if entry.role is Role.ASSISTANT else "user"
            messages.append(Message(role, entry.text))

        if images:
            detail = image_detail or self.vision_detail
            parts: List[Union[TextPart, ImagePart]] = []
            if len(images) > 1:
                parts.append(TextPart(frame_instruction(len(images))))
            if text.strip():
                parts.append(TextPart(text))
            parts.extend(ImagePart(url, detail) for url in images)
            messages.append(Message("user", parts))
        else:
            messages.append(Message("user", text))

        return BuiltPrompt(messages=messages, has_image=bool(images))

    @staticmethod
    def _dedupe_history(history: Sequence[ChatMessage], text: str) -> List[ChatMessage]:
        """Drop the newest entry when it is the current input, already persisted."""
        entries = [m for m in history if m.role in (Role.USER, Role.ASSISTANT)]
        if entries and entries[-1].role is Role.USER and entries[-1].text == text:
            return entries[:-1]
        return entries
