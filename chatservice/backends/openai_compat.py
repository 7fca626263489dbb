"""
Generic OpenAI-compatible backend.

Supports any endpoint that speaks the OpenAI chat completions API with
server-sent events:
- OpenAI, OpenRouter
- llama.cpp server, vLLM, LocalAI
- Ollama (via its /v1 compatibility layer)
"""

from __future__ import annotations

import json
import logging

import httpx

from chatservice.backends.base import BaseBackend, BackendStreamError

logger = logging.getLogger(__name__)

SSE_PREFIX = "data:"
SSE_DONE = "[DONE]"


def parse_sse_line(line: str) -> tuple[bool, str]:
    """
    Parse one SSE line from a streaming completion.

    Returns (done, fragment). Non-data lines and chunks without content
    give an empty fragment. An error payload raises BackendStreamError.
    """
    if not line.startswith(SSE_PREFIX):
        return False, ""
    data_str = line[len(SSE_PREFIX):].strip()
    if data_str == SSE_DONE:
        return True, ""
    try:
        chunk = json.loads(data_str)
    except json.JSONDecodeError as e:
        raise BackendStreamError(f"Malformed stream chunk: {data_str[:200]}") from e

    if "error" in chunk:
        err = chunk["error"]
        message = err.get("message", str(err)) if isinstance(err, dict) else str(err)
        raise BackendStreamError(f"Provider error mid-stream: {message}")

    choices = chunk.get("choices") or [{}]
    delta = choices[0].get("delta") or {}
    return False, delta.get("content") or ""


class OpenAICompatibleBackend(BaseBackend):
    """
    Generic backend for OpenAI-compatible endpoints.

    Works with any service that implements /v1/chat/completions and /v1/models.
    """

    def _headers(self) -> dict:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def forward_stream(self, messages, config):
        """Stream a completion, yielding content fragments."""
        body = self.build_body(messages, config)

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                async with client.stream(
                    "POST",
                    f"{self.url}/v1/chat/completions",
                    json=body,
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code >= 400:
                        text = (await resp.aread()).decode("utf-8", errors="replace")
                        raise BackendStreamError(
                            f"HTTP {resp.status_code}: {text[:200]}",
                            status_code=resp.status_code,
                            backend_name=self.name,
                        )
                    async for line in resp.aiter_lines():
                        if not line:
                            continue
                        done, fragment = parse_sse_line(line)
                        if done:
                            return
                        if fragment:
                            yield fragment
        except httpx.TimeoutException:
            logger.warning(
                "OpenAI-compatible backend '%s' stream timed out", self.name
            )
            raise
        except (httpx.HTTPError, BackendStreamError) as e:
            logger.warning(
                "OpenAI-compatible backend '%s' stream failed: %s", self.name, e
            )
            raise

    async def health_check(self) -> bool:
        """Check endpoint is reachable."""
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                resp = await client.get(
                    f"{self.url}/v1/models",
                    headers=self._headers(),
                )
                return resp.status_code == 200
        except httpx.HTTPError:
            return False
