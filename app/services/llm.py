"""
LLM client: the one boundary to the chat-completion provider.

Features:
  - Retry with exponential backoff + jitter (handles 429, 500, 502, 503, 504)
  - OpenAI-compatible endpoint (direct OpenAI or a LiteLLM proxy)
  - Reusable client (connection pooling)
  - Structured logging

Callers in this service treat every failure here as soft: they catch
LLMError and keep whatever state they had before the call.
"""

import asyncio
import logging
import random
import time
from typing import Any, Optional

import httpx

from ..core.config import get_settings
from ..core.flags import get_flags

logger = logging.getLogger(__name__)


class LLMError(Exception):
    """Provider unreachable, rejected the request, or returned nothing usable."""


# ── Reusable client (connection pool) ────────────────────────────────

_client: Optional[httpx.AsyncClient] = None


def _get_client() -> httpx.AsyncClient:
    global _client
    if _client is None or _client.is_closed:
        _client = httpx.AsyncClient(
            timeout=httpx.Timeout(connect=10, read=120, write=30, pool=10),
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
        )
    return _client


async def close_client():
    """Close the shared HTTP client. Call on app shutdown."""
    global _client
    if _client and not _client.is_closed:
        await _client.aclose()
        _client = None


def _get_provider_config() -> tuple[str, str]:
    """Returns (base_url, api_key) for the configured provider."""
    settings = get_settings()
    if get_flags().llm_provider.lower() == "litellm":
        return settings.litellm_base_url, settings.litellm_api_key
    return settings.openai_base_url, settings.openai_api_key


# ── Retry logic ──────────────────────────────────────────────────────

RETRYABLE_STATUS = {429, 500, 502, 503, 504}
MAX_RETRIES = 3
BASE_DELAY = 1.0
MAX_DELAY = 16.0


def _backoff(attempt: int) -> float:
    return min(MAX_DELAY, BASE_DELAY * (2 ** attempt) + random.uniform(0, 1))


async def _post_with_retry(client: httpx.AsyncClient, url: str, **kwargs) -> httpx.Response:
    """POST with exponential backoff + jitter. Non-retryable 4xx raise immediately."""
    last_exc: Optional[Exception] = None

    for attempt in range(MAX_RETRIES + 1):
        try:
            resp = await client.post(url, **kwargs)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            last_exc = e
            if attempt == MAX_RETRIES:
                break
            delay = _backoff(attempt)
            logger.warning(
                "LLM transport error (attempt %d/%d): %s, retrying in %.1fs",
                attempt + 1, MAX_RETRIES + 1, e, delay,
            )
            await asyncio.sleep(delay)
            continue

        if resp.status_code not in RETRYABLE_STATUS:
            if resp.status_code >= 400:
                logger.error("LLM API error %d: %s", resp.status_code, resp.text[:500])
            resp.raise_for_status()
            return resp

        last_exc = httpx.HTTPStatusError(
            f"{resp.status_code}", request=resp.request, response=resp
        )
        if attempt == MAX_RETRIES:
            break
        retry_after = resp.headers.get("retry-after")
        delay = float(retry_after) if retry_after else _backoff(attempt)
        logger.warning(
            "LLM %d (attempt %d/%d), retrying in %.1fs",
            resp.status_code, attempt + 1, MAX_RETRIES + 1, delay,
        )
        await asyncio.sleep(delay)

    raise last_exc or RuntimeError("LLM request failed after retries")


# ── Chat completion ──────────────────────────────────────────────────

async def chat(
    messages: list[dict],
    model: Optional[str] = None,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
) -> dict:
    """
    Chat completion. Returns the full API response as dict.
    Raises LLMError on any failure.
    """
    settings = get_settings()
    base_url, api_key = _get_provider_config()

    if not api_key:
        raise LLMError(
            f"No API key for LLM provider '{get_flags().llm_provider}'. "
            "Set OPENAI_API_KEY or LITELLM_API_KEY."
        )

    payload: dict[str, Any] = {
        "model": model or settings.default_llm_model,
        "messages": messages,
        "temperature": temperature if temperature is not None else settings.default_llm_temperature,
        "max_tokens": max_tokens or settings.default_llm_max_tokens,
    }
    url = f"{base_url.rstrip('/')}/chat/completions"
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }

    start = time.monotonic()
    try:
        resp = await _post_with_retry(_get_client(), url, json=payload, headers=headers)
        data = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.error("LLM failed after %.1fs: %s", time.monotonic() - start, e)
        raise LLMError(str(e)) from e

    usage = data.get("usage") or {}
    logger.info(
        "LLM chat: %dms | in=%d out=%d tokens | model=%s",
        int((time.monotonic() - start) * 1000),
        usage.get("prompt_tokens", 0),
        usage.get("completion_tokens", 0),
        payload["model"],
    )
    return data


def completion_text(response: dict) -> str:
    """Pull the assistant text out of a completion response."""
    try:
        content = response["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as e:
        raise LLMError(f"Malformed completion response: {e}") from e
    return (content or "").strip()


async def chat_simple(
    prompt: str,
    system: str = "",
    model: Optional[str] = None,
    temperature: float = 0.3,
    max_tokens: int = 1000,
) -> str:
    """Send a prompt, get a string back."""
    messages = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})

    response = await chat(
        messages=messages, model=model,
        temperature=temperature, max_tokens=max_tokens,
    )
    return completion_text(response)
