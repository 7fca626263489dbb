"""
Token counting for budget accounting.

Two counters share the same `count(model, text)` call:
  - TiktokenCounter: BPE token counts via tiktoken, per-model encoding
  - EstimateCounter: ~4 chars per token, no tokenizer needed
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol

import tiktoken

logger = logging.getLogger(__name__)

DEFAULT_ENCODING = "cl100k_base"
CHARS_PER_TOKEN = 4


class TokenCounter(Protocol):
    def count(self, model: str, text: str) -> int: ...


class TiktokenCounter:
    """Counts tokens with the encoding tiktoken associates with the model."""

    def __init__(self, default_encoding: str = DEFAULT_ENCODING):
        self.default_encoding = default_encoding
        self._encoders: dict[str, tiktoken.Encoding] = {}
        self._lock = threading.Lock()

    def _encoder_for(self, model: str) -> tiktoken.Encoding:
        with self._lock:
            enc = self._encoders.get(model)
            if enc is not None:
                return enc
            try:
                enc = tiktoken.encoding_for_model(model)
            except KeyError:
                # Unknown to tiktoken (local models, aliases)
                logger.debug(
                    "No tiktoken encoding for model '%s', using %s",
                    model, self.default_encoding,
                )
                enc = tiktoken.get_encoding(self.default_encoding)
            self._encoders[model] = enc
            return enc

    def count(self, model: str, text: str) -> int:
        return len(self._encoder_for(model).encode(text))


class EstimateCounter:
    """Rough token estimate: ~4 chars per token for English text."""

    def count(self, model: str, text: str) -> int:
        return max(1, len(text) // CHARS_PER_TOKEN)


_COUNTERS: dict[str, type] = {
    "tiktoken": TiktokenCounter,
    "estimate": EstimateCounter,
}


def make_token_counter(name: str = "tiktoken") -> TokenCounter:
    """
    Instantiate a token counter by name.

    Raises:
        ValueError: If the counter name is not registered.
    """
    cls = _COUNTERS.get(name)
    if cls is None:
        available = ", ".join(_COUNTERS)
        raise ValueError(f"Unknown token counter: '{name}'. Available: {available}")
    return cls()
