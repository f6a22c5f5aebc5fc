"""
Kindred: companion chat core.

One conversational turn = user input -> memory retrieval -> LLM stream ->
response parsing -> avatar speech/emotion -> persistence -> relationship signals.

The orchestrator owns the turn. Everything else is a collaborator behind a
narrow interface (LLM, persistence, memory service, avatar, speech, attachments).
"""

__version__ = "0.4.0"

__all__ = ["__version__"]
