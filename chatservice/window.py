"""
Token-budgeted conversation window.

FIFO sliding window: admitting a message evicts the oldest evictable
active messages until the new one fits under the model's ceiling.
Evicted messages move to the erased list; they stay in memory for history
but are no longer sent to the provider or counted in usage.

A pinned message (the initial system prompt) is never an eviction
candidate. When nothing evictable is left, the incoming message is
admitted even if it alone exceeds the budget.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from chatservice.models import Message

logger = logging.getLogger(__name__)


class ConversationWindow:

    def __init__(
        self,
        max_tokens: int,
        pinned: Message | None = None,
        active: list[Message] | None = None,
        erased: list[Message] | None = None,
    ):
        self.max_tokens = max_tokens
        self.pinned = pinned
        self._active: list[Message] = list(active or [])
        self._erased: list[Message] = list(erased or [])
        self.token_usage = 0
        self.recompute_usage()

    def recompute_usage(self) -> int:
        """Refresh token_usage from the active list."""
        self.token_usage = sum(m.token_count for m in self._active)
        return self.token_usage

    def _first_evictable(self) -> int | None:
        start = 0
        if self.pinned is not None and self._active and self._active[0].id == self.pinned.id:
            start = 1
        return start if start < len(self._active) else None

    def append(self, message: Message) -> list[Message]:
        """Admit a message, evicting oldest-first as needed. Returns what was evicted."""
        incoming = message.token_count
        evicted: list[Message] = []

        while self.max_tokens < incoming + self.token_usage:
            idx = self._first_evictable()
            if idx is None:
                logger.debug(
                    "Admitting %d-token message over budget (usage=%d, max=%d)",
                    incoming, self.token_usage, self.max_tokens,
                )
                break
            oldest = self._active.pop(idx)
            self._erased.append(oldest)
            evicted.append(oldest)
            self.recompute_usage()

        self._active.append(message)
        self.recompute_usage()

        if evicted:
            logger.debug(
                "Evicted %d message(s) to admit %d tokens (usage=%d/%d)",
                len(evicted), incoming, self.token_usage, self.max_tokens,
            )
        return evicted

    def active_messages(self) -> tuple[Message, ...]:
        return tuple(self._active)

    def erased_messages(self) -> tuple[Message, ...]:
        return tuple(self._erased)

    def active_count(self) -> int:
        return len(self._active)

    def __repr__(self) -> str:
        return (
            f"<ConversationWindow active={len(self._active)} erased={len(self._erased)} "
            f"usage={self.token_usage}/{self.max_tokens}>"
        )
