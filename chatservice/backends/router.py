"""
Multi-Backend Router — priority-based routing with fallback.

When backends_enabled is true, completions are streamed through this
router instead of a single backend. Backends are tried in priority order;
the router falls through to the next one only if the current backend
fails before producing its first fragment.
"""

from __future__ import annotations

import logging
from contextlib import aclosing
from typing import AsyncIterator

import httpx

from chatservice.backends.base import BaseBackend, BackendStreamError
from chatservice.backends.openai_compat import OpenAICompatibleBackend
from chatservice.backends.retry_wrapper import RetryableBackendWrapper

logger = logging.getLogger(__name__)

# Provider name → backend class
PROVIDERS: dict[str, type[BaseBackend]] = {
    "openai_compat": OpenAICompatibleBackend,
}


class MultiBackendRouter:
    """
    Routes requests across multiple backends by priority.
    Lower priority number = tried first.
    """

    def __init__(self, backends_config: list[dict]):
        self.name = "router"
        self.backends: list[RetryableBackendWrapper] = []
        for cfg in backends_config:
            backend = self._create_backend(cfg)
            if backend:
                self.backends.append(RetryableBackendWrapper(
                    backend,
                    max_retries=cfg.get("max_retries", 2),
                    backoff_base=cfg.get("backoff_base", 1.5),
                    backoff_max=cfg.get("backoff_max", 10.0),
                ))

        # Sort by priority (lower = first)
        self.backends.sort(key=lambda b: b.priority)

        names = [f"{b.name}(p{b.priority})" for b in self.backends]
        logger.info("Multi-backend router initialized: %s", " → ".join(names))

    @staticmethod
    def _create_backend(cfg: dict) -> BaseBackend | None:
        """Instantiate a backend from config dict."""
        provider = cfg.get("provider", "openai_compat")
        cls = PROVIDERS.get(provider)
        if not cls:
            logger.warning("Unknown backend provider '%s', skipping", provider)
            return None

        name = cfg.get("name", provider)
        url = cfg.get("url", "")
        if not url:
            logger.warning("Backend '%s' has no url, skipping", name)
            return None

        return cls(
            name=name,
            url=url,
            timeout=cfg.get("timeout", 120),
            priority=cfg.get("priority", 99),
            api_key=cfg.get("api_key", ""),
        )

    def get_backend(self, name: str) -> RetryableBackendWrapper | None:
        """Get a specific backend by name."""
        for b in self.backends:
            if b.name == name:
                return b
        return None

    async def forward_stream(self, messages, config) -> AsyncIterator[str]:
        """
        Stream from the first backend that starts producing output.
        A failure after the first fragment is not failed over.
        """
        model = config.model.name
        errors: list[str] = []

        for backend in self.backends:
            started = False
            try:
                async with aclosing(backend.forward_stream(messages, config)) as stream:
                    async for fragment in stream:
                        if not started:
                            started = True
                            logger.info("Backend '%s' streaming model '%s'", backend.name, model)
                        yield fragment
                return
            except (httpx.HTTPError, BackendStreamError) as e:
                if started:
                    raise
                errors.append(f"{backend.name}: {e}")
                logger.warning(
                    "Backend '%s' failed for '%s', trying next: %s",
                    backend.name, model, e,
                )

        raise BackendStreamError(
            f"All backends failed: {'; '.join(errors) or 'no backends configured'}",
            status_code=503,
        )

    async def health_check(self) -> bool:
        """Healthy if any backend answers."""
        for backend in self.backends:
            if await backend.health_check():
                return True
        return False
