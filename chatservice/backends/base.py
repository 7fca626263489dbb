"""
Base backend abstraction.
All backends implement this interface so the router and the completion
orchestrator can treat them uniformly.
"""

from __future__ import annotations

import abc
import logging
from typing import TYPE_CHECKING, AsyncIterator, Sequence

if TYPE_CHECKING:
    from chatservice.models import ConversationConfig, Message

logger = logging.getLogger(__name__)


class BackendStreamError(Exception):
    """Provider refused or broke a streaming request."""

    def __init__(self, message: str, status_code: int = 0, backend_name: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.backend_name = backend_name


class BaseBackend(abc.ABC):
    """
    Abstract base for LLM backends.
    Each backend knows how to stream a completion and report health.
    """

    def __init__(
        self,
        name: str,
        url: str,
        timeout: int = 120,
        priority: int = 1,
        api_key: str = "",
    ):
        self.name = name
        self.url = url.rstrip("/")
        self.timeout = timeout
        self.priority = priority
        self.api_key = api_key

    @staticmethod
    def build_body(messages: Sequence[Message], config: ConversationConfig) -> dict:
        """OpenAI-format streaming request body for the conversation."""
        body = {
            "model": config.model.name,
            "messages": [m.to_openai_format() for m in messages],
            "temperature": config.temperature,
            "top_p": config.top_p,
            "n": config.n,
            "presence_penalty": config.presence_penalty,
            "frequency_penalty": config.frequency_penalty,
            "stream": True,
        }
        if config.max_tokens:
            body["max_tokens"] = config.max_tokens
        if config.stop:
            body["stop"] = list(config.stop)
        return body

    @abc.abstractmethod
    def forward_stream(
        self, messages: Sequence[Message], config: ConversationConfig
    ) -> AsyncIterator[str]:
        """
        Stream a chat completion.
        Yields content fragments in arrival order; raises on failure.
        """
        ...

    @abc.abstractmethod
    async def health_check(self) -> bool:
        """Check if this backend is reachable and responsive."""
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} url={self.url!r} priority={self.priority}>"
