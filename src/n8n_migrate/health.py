"""Bounded health polling for the n8n instance."""

from __future__ import annotations

import time
from typing import Callable

import httpx
import structlog

from .errors import HealthCheckTimeout

logger = structlog.get_logger("health")


def http_health_check(url: str, *, timeout: float = 5.0) -> bool:
    """Return True when the health endpoint answers 200."""
    try:
        response = httpx.get(url, timeout=timeout)
    except httpx.HTTPError as exc:
        logger.debug("health_check_error", url=url, error=str(exc))
        return False
    return response.status_code == 200


def wait_for_healthy(
    check: Callable[[], bool],
    *,
    attempts: int,
    delay: float,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Poll ``check`` up to ``attempts`` times, ``delay`` seconds apart.

    Returns the attempt number that succeeded. Raises ``HealthCheckTimeout``
    once the budget is spent so a stuck instance fails the run instead of
    hanging it.
    """
    for attempt in range(1, attempts + 1):
        if check():
            logger.info("health_check_passed", attempt=attempt)
            return attempt
        logger.info("health_check_waiting", attempt=attempt, attempts=attempts)
        if attempt < attempts:
            sleep(delay)
    raise HealthCheckTimeout(f"Instance not healthy after {attempts} attempts ({delay}s apart).")
