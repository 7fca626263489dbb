"""
LLM provider backends for chatservice.
Single OpenAI-compatible endpoint, or priority-based routing with fallback.
"""
from chatservice.backends.base import BaseBackend, BackendStreamError
from chatservice.backends.openai_compat import OpenAICompatibleBackend
from chatservice.backends.retry_wrapper import RetryableBackendWrapper
from chatservice.backends.router import MultiBackendRouter


def make_backend(cfg: dict):
    """Build the provider backend described by the loaded config."""
    if cfg.get("backends_enabled", False):
        return MultiBackendRouter(cfg.get("backends", []))

    b_cfg = cfg["backend"]
    backend = OpenAICompatibleBackend(
        name=b_cfg.get("name", "default"),
        url=b_cfg["url"],
        timeout=b_cfg.get("timeout", 120),
        api_key=b_cfg.get("api_key", ""),
    )
    return RetryableBackendWrapper(
        backend,
        max_retries=b_cfg.get("max_retries", 2),
        backoff_base=b_cfg.get("backoff_base", 1.5),
        backoff_max=b_cfg.get("backoff_max", 10.0),
    )


__all__ = [
    "BaseBackend",
    "BackendStreamError",
    "OpenAICompatibleBackend",
    "RetryableBackendWrapper",
    "MultiBackendRouter",
    "make_backend",
]
