"""
Exception types shared across Kindred.

The orchestrator maps every one of these to a user-safe message;
raw exception text never reaches the UI.
"""


class KindredError(Exception):
    """Base class for all Kindred errors."""


class LLMGatewayError(KindredError):
    """
    The language model could not be reached or failed mid-stream.

    kind is one of network, timeout, service.
    """

    def __init__(self, message: str, kind: str = "service"):
        super().__init__(message)
        self.kind = kind


class EmbeddingError(KindredError):
    """The embedding backend failed."""


class MemoryServiceError(KindredError):
    """The long-term memory service failed."""


class PersistenceError(KindredError):
    """Chat history storage failed."""


class AttachmentError(KindredError):
    """An image or video could not be prepared for the model."""


class ImageGenError(KindredError):
    """Picture generation failed or is not configured."""


class TurnSuperseded(KindredError):
    """
    Raised inside a turn task when a newer turn became current.

    Internal only: the turn unwinds quietly and nothing is surfaced.
    """

    def __init__(self, request_id: int, current_id: int):
        super().__init__(f"request {request_id} superseded by {current_id}")
        self.request_id = request_id
        self.current_id = current_id
