"""Shared utilities for retrieving external API responses."""

from __future__ import annotations

from typing import Any, Mapping

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

DEFAULT_TIMEOUT_SECONDS: float | None = None
DEFAULT_MAX_ATTEMPTS = 1
_DEFAULT_WAIT = wait_exponential(min=1, max=16)


Headers = Mapping[str, str] | None
Params = Mapping[str, Any] | None


async def fetch_json(
    url: str,
    *,
    headers: Headers = None,
    params: Params = None,
    method: str = "GET",
    timeout: float | None = DEFAULT_TIMEOUT_SECONDS,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Any:
    """Execute an HTTP request and return the decoded JSON payload.

    Non-2xx responses raise ``httpx.HTTPStatusError`` immediately. Transport
    failures are retried with exponential backoff up to ``max_attempts``
    attempts; the default of one attempt means no retry at all, so a failed
    Census call surfaces to the caller and the next request retries implicitly.
    ``timeout=None`` leaves the request bounded only by the remote service.
    """

    request_method = method.upper()
    async for attempt in AsyncRetrying(
        retry=retry_if_exception_type(httpx.TransportError),
        wait=_DEFAULT_WAIT,
        stop=stop_after_attempt(max(1, max_attempts)),
        reraise=True,
    ):
        with attempt:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.request(
                    request_method,
                    url,
                    headers=headers,
                    params=params,
                )

    response.raise_for_status()
    return response.json()


__all__ = ["fetch_json", "DEFAULT_TIMEOUT_SECONDS", "DEFAULT_MAX_ATTEMPTS"]
