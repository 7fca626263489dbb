"""
Shared fakes for chatservice tests.
"""

import pytest

from chatservice.models import ConversationConfig, Message, MessageRole, ModelProfile


class WordCounter:
    """One token per whitespace-separated word. Deterministic, no tokenizer."""

    def count(self, model: str, text: str) -> int:
        return len(text.split())


class ScriptedBackend:
    """
    Backend that replays a fixed list of fragments.
    If `fail_after` is set, raises `error` after that many fragments.
    """

    def __init__(self, fragments, fail_after=None, error=None):
        self.name = "scripted"
        self.fragments = list(fragments)
        self.fail_after = fail_after
        self.error = error or ConnectionError("connection reset by peer")
        self.calls = []
        self.closed = False

    async def forward_stream(self, messages, config):
        self.calls.append([m.to_openai_format() for m in messages])
        try:
            for i, fragment in enumerate(self.fragments):
                if self.fail_after is not None and i >= self.fail_after:
                    raise self.error
                yield fragment
            if self.fail_after is not None and self.fail_after >= len(self.fragments):
                raise self.error
        finally:
            self.closed = True

    async def health_check(self) -> bool:
        return True


@pytest.fixture
def counter():
    return WordCounter()


@pytest.fixture
def make_message(counter):
    """Build a message whose token count equals its word count."""
    profile = ModelProfile("test-model", 100)

    def _make(content: str, role: MessageRole = MessageRole.USER) -> Message:
        return Message.create(role, content, profile, counter)

    return _make


@pytest.fixture
def config():
    return ConversationConfig(model=ModelProfile("test-model", 20), temperature=0.5)
