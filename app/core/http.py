from __future__ import annotations

import asyncio

import httpx
import structlog

from app.core.config import Settings

logger = structlog.get_logger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
MAX_RETRY_AFTER_SECONDS = 5.0


def create_http_client(settings: Settings) -> httpx.AsyncClient:
    limits = httpx.Limits(max_keepalive_connections=20, max_connections=50)
    timeout = httpx.Timeout(settings.http_timeout_seconds)
    return httpx.AsyncClient(
        timeout=timeout,
        limits=limits,
        headers={"User-Agent": "socialconnect-api/0.1"},
        follow_redirects=False,
    )


def _retry_delay(resp: httpx.Response | None, backoff_seconds: float, attempt: int) -> float:
    delay = backoff_seconds * (2**attempt)
    retry_after = resp.headers.get("Retry-After") if resp is not None else None
    if retry_after and retry_after.isdigit():
        delay = max(delay, min(float(retry_after), MAX_RETRY_AFTER_SECONDS))
    return delay


async def request_with_retries(
    client: httpx.AsyncClient,
    *,
    method: str,
    url: str,
    retries: int,
    backoff_seconds: float,
    **kwargs,
) -> httpx.Response:
    """Send an idempotent request, retrying transient failures with backoff.

    Token grants must not go through here: codes are single-use and refresh
    tokens may rotate.
    """
    # Query strings can carry tokens; only host and path are logged.
    target = httpx.URL(url)
    log = logger.bind(method=method, host=target.host, path=target.path)

    attempt = 0
    while True:
        resp: httpx.Response | None = None
        try:
            resp = await client.request(method, url, **kwargs)
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            if attempt >= retries:
                raise
            log.info("http.retrying", attempt=attempt + 1, error=type(exc).__name__)
        else:
            if resp.status_code not in RETRYABLE_STATUS_CODES or attempt >= retries:
                return resp
            log.info("http.retrying", attempt=attempt + 1, status_code=resp.status_code)
        await asyncio.sleep(_retry_delay(resp, backoff_seconds, attempt))
        attempt += 1
