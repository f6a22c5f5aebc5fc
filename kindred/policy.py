"""
Policy Module (Centralized Limits & User-Facing Messages)

Constants only. No side effects. No imports from other kindred modules.
"""

# Stream throttle: update the visible stream at most every N ms
# unless the text grew by at least M characters.
STREAM_UPDATE_INTERVAL_MS = 200
STREAM_MIN_CHARS_DELTA = 3

# Stage thresholds (logged by StageTimer, never enforced)
LLM_STREAM_WARN_SECONDS = 35
RETRIEVAL_WARN_SECONDS = 5

# Avatar / ASR busy-state retry delay
COLLABORATOR_RETRY_DELAY_SECONDS = 0.2

# Image generation
DEFAULT_IMAGE_SIZE = "1920x1920"

# Video understanding
DEFAULT_MAX_VIDEO_FRAMES = 6

# Text used when the user sends only an attachment
DEFAULT_IMAGE_QUESTION = "What is in this picture?"
DEFAULT_VIDEO_QUESTION = "Please describe what happens in this video."

# Spoken / persisted acknowledgements
IMAGE_INTENT_ACK = "I can make that picture for you. Shall I go ahead?"
IMAGE_COMMAND_ACK = "Sure, let me draw that for you. One moment..."
IMAGE_READY_ACK = "Your picture is ready. What do you think?"
IMAGE_READY_MESSAGE = "Here is the picture I made for you."

# Warnings (non-blocking banners)
WARNING_MEMORY_DEGRADED = "Memory is temporarily unavailable; this reply was made without long-term memory."
WARNING_IMAGE_DEGRADED = "The picture could not be processed, so this turn was sent as text only."
WARNING_VIDEO_DEGRADED = "The video could not be processed, so this turn was sent as text only."
WARNING_UNSUPPORTED_IMAGE = "That picture format is not supported, so this turn was sent as text only."
WARNING_IMAGE_GEN_FAILED = "Picture generation failed. Please try again later."
WARNING_IMAGE_GEN_UNCONFIGURED = "Picture generation is not configured."

# Errors (the only texts a user ever sees for a failed turn)
USER_MESSAGES = {
    "network": "Can't connect right now. Please check your network.",
    "timeout": "The request timed out. Please try again.",
    "memory": "The memory service is temporarily unavailable. Please try again later.",
    "service": "The service is temporarily unavailable. Please try again.",
    "empty": "I didn't get a reply this time. Please try again.",
    "generic": "Something went wrong. Please try again.",
}
