from __future__ import annotations

import asyncio
import json
import logging
import random
import re
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

logger = logging.getLogger(__name__)

USER_AGENT = "feedwatch-bot/1.0"
RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}
BODY_SNIPPET_CHARS = 300
JITTER_SECONDS = 0.25
_RETRYABLE_NETWORK_RE = re.compile(
    r"reset|refused|timed? ?out|timeout|broken pipe|eai_again|getaddrinfo|name or service not known|"
    r"temporary failure in name resolution|nodename nor servname|network is unreachable",
    re.IGNORECASE,
)


class FeedFetchError(Exception):
    """Raised when a feed cannot be fetched or parsed."""

    def __init__(
        self,
        message: str,
        *,
        url: str,
        status_code: int | None = None,
        retryable: bool = False,
        attempts: int = 1,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.retryable = retryable
        self.attempts = attempts


def backoff_delay_seconds(attempt: int, *, base_seconds: float, rng: Callable[[], float] = random.random) -> float:
    return base_seconds * (2**attempt) + rng() * JITTER_SECONDS


def _is_retryable_transport_error(exc: httpx.TransportError) -> bool:
    if isinstance(exc, (httpx.TimeoutException, httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError)):
        return True
    # ConnectError covers DNS, refused and TLS failures alike; only the transient ones retry.
    return bool(_RETRYABLE_NETWORK_RE.search(str(exc) or type(exc).__name__))


async def _fetch_once(client: httpx.AsyncClient, url: str, timeout_seconds: float) -> Any:
    try:
        response = await asyncio.wait_for(
            client.get(
                url,
                headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
                timeout=httpx.Timeout(timeout_seconds),
            ),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError as exc:
        raise FeedFetchError(
            f"timed out after {timeout_seconds:g}s for {url}",
            url=url,
            retryable=True,
        ) from exc
    except httpx.TransportError as exc:
        raise FeedFetchError(
            f"network error for {url}: {type(exc).__name__}: {exc}",
            url=url,
            retryable=_is_retryable_transport_error(exc),
        ) from exc

    if response.status_code >= 400:
        snippet = response.text[:BODY_SNIPPET_CHARS]
        raise FeedFetchError(
            f"HTTP {response.status_code} {response.reason_phrase} for {url}: {snippet}",
            url=url,
            status_code=response.status_code,
            retryable=response.status_code in RETRYABLE_STATUS_CODES,
        )

    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise FeedFetchError(f"invalid JSON from {url}: {exc}", url=url, status_code=response.status_code) from exc


async def fetch_json(
    url: str,
    *,
    client: httpx.AsyncClient | None = None,
    timeout_seconds: float = 15.0,
    max_retries: int = 2,
    backoff_base_seconds: float = 0.5,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> Any:
    """GET ``url`` and decode JSON, retrying transient failures with exponential backoff."""
    if client is None:
        async with httpx.AsyncClient(follow_redirects=True, timeout=timeout_seconds) as temp_client:
            return await fetch_json(
                url,
                client=temp_client,
                timeout_seconds=timeout_seconds,
                max_retries=max_retries,
                backoff_base_seconds=backoff_base_seconds,
                sleep=sleep,
                rng=rng,
            )

    attempts = max(0, max_retries) + 1
    last_error: FeedFetchError | None = None
    for attempt in range(attempts):
        try:
            return await _fetch_once(client, url, timeout_seconds)
        except FeedFetchError as exc:
            exc.attempts = attempt + 1
            if not exc.retryable:
                raise
            last_error = exc
            if attempt + 1 >= attempts:
                break
            delay = backoff_delay_seconds(attempt, base_seconds=backoff_base_seconds, rng=rng)
            logger.info("retrying feed fetch url=%s attempt=%s delay=%.2fs cause=%s", url, attempt + 1, delay, exc)
            await sleep(delay)

    assert last_error is not None
    raise FeedFetchError(
        f"giving up after {attempts} attempts: {last_error}",
        url=url,
        status_code=last_error.status_code,
        retryable=False,
        attempts=attempts,
    ) from last_error
