"""
Retry wrapper for backends with exponential backoff.

Retries a stream only while it has not produced any fragment yet:
connection errors, timeouts and transient HTTP statuses before the first
fragment are retried. Once content has been yielded, a failure propagates
so the caller never sees duplicated or spliced output.

Retried statuses:
- 429: Rate limited
- 5xx: Server errors

Non-retried (permanent):
- 400, 401, 403, 404 and other 4xx
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from typing import AsyncIterator

import httpx

from chatservice.backends.base import BaseBackend, BackendStreamError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = (429, 500, 502, 503, 504)


class RetryableBackendWrapper:
    """
    Wraps any backend with exponential backoff retry logic.
    Exposes the same interface as BaseBackend.
    """

    def __init__(
        self,
        backend: BaseBackend,
        max_retries: int = 2,
        backoff_base: float = 1.5,
        backoff_max: float = 10.0,
    ):
        self.backend = backend
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

        self.name = backend.name
        self.url = backend.url
        self.timeout = backend.timeout
        self.priority = backend.priority

    def _is_retryable(self, exc: Exception) -> bool:
        if isinstance(exc, BackendStreamError):
            return exc.status_code in RETRYABLE_STATUS
        return isinstance(exc, httpx.TransportError)

    def _backoff_seconds(self, attempt: int) -> float:
        """Calculate backoff time for attempt N (exponential)."""
        delay = self.backoff_base ** attempt
        return min(delay, self.backoff_max)

    async def forward_stream(self, messages, config) -> AsyncIterator[str]:
        """Stream with retry on failures that happen before the first fragment."""
        model = config.model.name

        for attempt in range(self.max_retries + 1):
            started = False
            try:
                async with aclosing(self.backend.forward_stream(messages, config)) as stream:
                    async for fragment in stream:
                        started = True
                        yield fragment
                return
            except (httpx.HTTPError, BackendStreamError) as e:
                if started or not self._is_retryable(e) or attempt >= self.max_retries:
                    if not started and attempt:
                        logger.error(
                            "Backend '%s' stream exhausted retries for '%s': %s",
                            self.name, model, e,
                        )
                    raise

                backoff = self._backoff_seconds(attempt + 1)
                logger.warning(
                    "Backend '%s' stream error for '%s', retry in %.1fs (%d/%d): %s",
                    self.name, model, backoff, attempt + 1, self.max_retries, e,
                )
                await asyncio.sleep(backoff)

    async def health_check(self) -> bool:
        """Delegate to wrapped backend."""
        return await self.backend.health_check()

    def __repr__(self) -> str:
        return f"<RetryableBackendWrapper {self.backend!r} max_retries={self.max_retries}>"
