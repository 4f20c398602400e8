"""
Shared async HTTP client with timeout logic.

Callers own retry policy: the indexer fetcher never retries and the Discord
notifier retries exactly once on 429, so nothing here loops.
"""
from __future__ import annotations

import logging

import httpx

log = logging.getLogger(__name__)

# Default timeouts (seconds)
_CONNECT_TIMEOUT = 10.0
_READ_TIMEOUT = 15.0

# Fallback wait when a 429 carries no usable hint
DEFAULT_RETRY_AFTER = 5.0


def _build_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(connect=_CONNECT_TIMEOUT, read=_READ_TIMEOUT, write=10.0, pool=5.0),
        follow_redirects=True,
        headers={"User-Agent": "belt-userop-monitor/1.0"},
    )


# Module-level shared client (initialised lazily per async context)
_client: httpx.AsyncClient | None = None


async def get_client() -> httpx.AsyncClient:
    global _client
    if _client is None or _client.is_closed:
        _client = _build_client()
    return _client


async def close_client() -> None:
    global _client
    if _client and not _client.is_closed:
        await _client.aclose()
        _client = None


async def post(url: str, payload: dict) -> httpx.Response:
    """POST *payload* as JSON and return the raw response without checking its status."""
    client = await get_client()
    return await client.post(url, json=payload)


async def post_json(url: str, payload: dict) -> dict | list:
    """
    POST *payload* as JSON and return the parsed JSON response.

    Raises httpx.HTTPStatusError for non-2xx responses, httpx.TransportError on
    network failure and ValueError if the body is not JSON.
    """
    response = await post(url, payload)
    response.raise_for_status()
    return response.json()


def retry_after_seconds(response: httpx.Response, default: float = DEFAULT_RETRY_AFTER) -> float:
    """
    Read the wait requested by a 429 response.

    Checks the Retry-After header first, then Discord's JSON ``retry_after``
    body field, then falls back to *default*.
    """
    header = response.headers.get("Retry-After")
    if header:
        try:
            return max(0.0, float(header))
        except ValueError:
            log.debug("Unparseable Retry-After header: %r", header)
    try:
        body = response.json()
    except ValueError:
        return default
    if isinstance(body, dict) and isinstance(body.get("retry_after"), (int, float)):
        return max(0.0, float(body["retry_after"]))
    return default
