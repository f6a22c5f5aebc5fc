"""
Data model for Kindred.

Persisted:  Session, ChatMessage
Retrieved:  MemoryItem (owned by the memory service)
Per turn:   TurnContext, ParsedResponse, ImageGenCommand, Anniversary
UI state:   ChatState (immutable snapshots, replaced on every change)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from kindred.policy import DEFAULT_IMAGE_SIZE


class Role(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MemoryTag:
    """Tags attached to long-term memories."""
    USER_INPUT = "user_input"
    AI_OUTPUT = "ai_output"
    FACT = "fact"

    DEFAULT_ALLOWED = (USER_INPUT, FACT)


@dataclass
class Session:
    id: int
    created_at: float
    archived: bool = False


@dataclass
class ChatMessage:
    """
    One persisted chat line.

    text is display text (never contains control tags).
    raw_text, when present, is the untouched model output.
    """
    id: int
    session_id: int
    role: Role
    text: str
    timestamp: float
    raw_text: Optional[str] = None
    image_ref: Optional[str] = None
    video_ref: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "role": self.role.value,
            "text": self.text,
            "timestamp": self.timestamp,
            "image_ref": self.image_ref,
            "video_ref": self.video_ref,
        }


@dataclass
class MemoryItem:
    text: str
    tag: str
    similarity: float
    timestamp: float
    emotion: Optional[str] = None
    weight: float = 0.0


@dataclass(frozen=True)
class ImageGenCommand:
    prompt: str
    size: str = DEFAULT_IMAGE_SIZE

    def to_dict(self) -> dict:
        return {"prompt": self.prompt, "size": self.size}


@dataclass(frozen=True)
class Anniversary:
    type: str
    name: str
    month: int
    day: int
    year: Optional[int] = None
    created_by_ai: bool = True


@dataclass
class ParsedResponse:
    emotion: str
    gesture: str
    text: str
    image_command: Optional[ImageGenCommand] = None
    anniversaries: List[Anniversary] = field(default_factory=list)


class AttachmentKind(Enum):
    IMAGE = "image"
    VIDEO = "video"


@dataclass(frozen=True)
class Attachment:
    kind: AttachmentKind
    uri: str
    max_frames: int = 6


# ============================================================================
# TURN LIFECYCLE
# ============================================================================

class TurnState(Enum):
    SUBMITTED = "SUBMITTED"
    PERSISTED = "PERSISTED"
    RETRIEVING = "RETRIEVING"
    GENERATING = "GENERATING"
    COMPLETING = "COMPLETING"
    DONE = "DONE"
    ABORTED = "ABORTED"


TERMINAL_STATES = {TurnState.DONE, TurnState.ABORTED}

# ABORTED is reachable from every non-terminal state; listed transitions are the rest.
ALLOWED_TURN_TRANSITIONS: Dict[TurnState, set] = {
    TurnState.SUBMITTED: {TurnState.PERSISTED},
    # PERSISTED -> DONE is the direct image-intent short-circuit
    TurnState.PERSISTED: {TurnState.RETRIEVING, TurnState.DONE},
    TurnState.RETRIEVING: {TurnState.GENERATING},
    TurnState.GENERATING: {TurnState.COMPLETING},
    TurnState.COMPLETING: {TurnState.DONE},
    TurnState.DONE: set(),
    TurnState.ABORTED: set(),
}


@dataclass
class TurnContext:
    """Ephemeral per-turn state. Exactly one is current at any time."""
    request_id: int
    text: str
    attachment: Optional[Attachment] = None
    accumulated: str = ""
    cancelled: bool = False
    state: TurnState = TurnState.SUBMITTED
    history: List[Tuple[TurnState, TurnState]] = field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, new_state: TurnState) -> None:
        """
        Move to new_state.

        Raises:
            RuntimeError: on a transition the lifecycle does not allow
        """
        old = self.state
        if old in TERMINAL_STATES:
            raise RuntimeError(f"turn {self.request_id} already {old.value}")
        if new_state is not TurnState.ABORTED and new_state not in ALLOWED_TURN_TRANSITIONS[old]:
            raise RuntimeError(f"illegal turn transition {old.value} -> {new_state.value}")
        self.state = new_state
        self.history.append((old, new_state))


# ============================================================================
# OBSERVABLE UI STATE
# ============================================================================

@dataclass(frozen=True)
class ChatState:
    messages: Tuple[ChatMessage, ...] = ()
    is_loading: bool = False
    current_stream: str = ""
    error: Optional[str] = None
    warning: Optional[str] = None
    pending_image_gen: Optional[ImageGenCommand] = None
    voice_input_text: str = ""
    voice_input_active: bool = False

    def to_dict(self) -> dict:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "is_loading": self.is_loading,
            "current_stream": self.current_stream,
            "error": self.error,
            "warning": self.warning,
            "pending_image_gen": self.pending_image_gen.to_dict() if self.pending_image_gen else None,
            "voice_input_text": self.voice_input_text,
            "voice_input_active": self.voice_input_active,
        }
