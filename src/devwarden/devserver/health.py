"""HTTP health check for a restarted dev server."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

logger = logging.getLogger(__name__)


@dataclass
class HealthCheckResult:
    healthy: bool
    url: str
    status_code: int | None = None
    latency: float = 0.0
    error: str | None = None


async def ping(url: str, timeout: float = 5.0) -> HealthCheckResult:
    """One HTTP GET. Any 2xx or 3xx counts as healthy (dev servers redirect)."""
    start = time.monotonic()
    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=False) as client:
            response = await client.get(url)
    except httpx.TimeoutException:
        return HealthCheckResult(
            healthy=False, url=url, latency=time.monotonic() - start, error="timeout"
        )
    except httpx.HTTPError as e:
        return HealthCheckResult(
            healthy=False, url=url, latency=time.monotonic() - start, error=str(e)
        )
    code = response.status_code
    return HealthCheckResult(
        healthy=200 <= code < 400,
        url=url,
        status_code=code,
        latency=time.monotonic() - start,
    )


async def check_health(
    url: str,
    timeout: float = 5.0,
    retries: int = 3,
    retry_delay: float = 1.0,
) -> HealthCheckResult:
    """Ping ``url`` until healthy or ``retries`` attempts are used up.

    Returns the first healthy ping, or the last failed one.
    """
    retrying = AsyncRetrying(
        retry=retry_if_result(lambda r: not r.healthy),
        stop=stop_after_attempt(max(1, retries)),
        wait=wait_fixed(retry_delay),
        before_sleep=before_sleep_log(logger, logging.DEBUG),
        retry_error_callback=lambda state: state.outcome.result(),
    )
    return await retrying(ping, url, timeout)
