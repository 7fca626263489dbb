"""
Error taxonomy for chatservice.

Every failure surfaced by the completion flow is a ChatServiceError that
carries the phase it happened in, so callers can branch on type and phase
without parsing message text.
"""

from __future__ import annotations

from enum import Enum


class Phase(str, Enum):
    """Stage of a completion round where an error occurred."""
    RESOLVE = "resolve"
    APPEND = "append"
    GENERATE = "generate"
    FINALIZE = "finalize"
    PERSIST = "persist"


class ChatServiceError(Exception):
    """Base class for every error raised to callers."""

    def __init__(self, message: str, phase: Phase | None = None):
        super().__init__(message)
        self.phase = phase

    def __str__(self) -> str:
        msg = super().__str__()
        if self.phase is not None:
            return f"[{self.phase.value}] {msg}"
        return msg


class ValidationError(ChatServiceError):
    """Malformed configuration or input. Never retried."""


class ConversationEnded(ChatServiceError):
    """Mutation attempted on a conversation whose status is ended."""


class ConversationLookupError(ChatServiceError):
    """Store failure while loading a conversation (distinct from not-found)."""


class StreamError(ChatServiceError):
    """Provider failure before or during generation. Partial output is discarded."""


class TokenCountError(ChatServiceError):
    """The token counter failed on a message (tokenizer missing or broken)."""


class CompletionTimeout(ChatServiceError):
    """
    The round did not reach its save within its time budget. The user turn
    and the partial reply were not persisted.
    """


class PersistenceError(ChatServiceError):
    """
    Store failure while creating or saving a conversation.

    When raised after generation succeeded, `output` holds the reply that
    was generated but not durably recorded.
    """

    def __init__(self, message: str, phase: Phase | None = None, output=None):
        super().__init__(message, phase)
        self.output = output


class ConcurrentUpdateError(PersistenceError):
    """Stored version moved on since the conversation was loaded."""


class ConversationNotFound(Exception):
    """Raised by stores when no conversation has the requested id."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id
