"""Shared async HTTP helpers used by the registry client and downloader.

Encapsulates timeout, retry and backoff handling so callers only deal with
a status code and a body, or a classified NetworkFailure once every attempt
has been spent.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional, Tuple

import aiohttp

from constants import DefaultNetwork
from common.errors import NetworkFailure
from common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer

logger = logging.getLogger(__name__)

# Statuses worth another attempt; everything else is returned to the caller.
RETRYABLE_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Exponential backoff for the given zero-based attempt number."""
    return base_delay * (2 ** attempt)


async def robust_get(
    session: aiohttp.ClientSession,
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = float(DefaultNetwork.TIMEOUT_SEC.value),
    retries: int = DefaultNetwork.RETRIES.value,
    base_delay: float = DefaultNetwork.RETRY_BASE_DELAY_SEC.value,
    context: str = "http",
) -> Tuple[int, Dict[str, str], bytes]:
    """GET ``url`` with a per-attempt timeout and exponential backoff.

    Args:
        session: Open aiohttp session.
        url: Target URL (credentials are never logged).
        headers: Extra request headers.
        timeout: Seconds allowed for each attempt.
        retries: Additional attempts after the first one.
        base_delay: Backoff base in seconds.
        context: Short label used in log records.

    Returns:
        Tuple of (status code, response headers, body bytes) for the first
        non-retryable response.

    Raises:
        NetworkFailure: Every attempt failed or returned a retryable status.
    """
    safe_target = safe_url(url)
    attempts = retries + 1
    last_reason = "no attempt made"
    client_timeout = aiohttp.ClientTimeout(total=timeout)

    for attempt in range(attempts):
        with Timer() as t:
            if is_debug_enabled(logger):
                logger.debug(
                    "HTTP request",
                    extra=extra_context(
                        event="http_request",
                        component="http_client",
                        action="GET",
                        target=safe_target,
                        attempt=attempt + 1,
                        context=context,
                    ),
                )
            try:
                async with session.get(url, headers=headers, timeout=client_timeout) as response:
                    body = await response.read()
                    status = response.status
                    response_headers = dict(response.headers)
            except asyncio.TimeoutError:
                last_reason = f"timed out after {timeout} seconds"
                status = None
            except aiohttp.ClientError as exc:
                last_reason = f"connection error: {exc}"
                status = None

            if status is not None and status not in RETRYABLE_STATUSES:
                if is_debug_enabled(logger):
                    logger.debug(
                        "HTTP response",
                        extra=extra_context(
                            event="http_response",
                            component="http_client",
                            action="GET",
                            outcome="success" if status < 400 else "client_error",
                            status_code=status,
                            duration_ms=t.duration_ms(),
                            target=safe_target,
                            context=context,
                        ),
                    )
                return status, response_headers, body
            if status is not None:
                last_reason = f"HTTP {status}"

        if attempt + 1 < attempts:
            delay = backoff_delay(attempt, base_delay)
            logger.warning(
                "%s request to %s failed (%s); retrying in %.2fs",
                context,
                safe_target,
                last_reason,
                delay,
                extra=extra_context(
                    event="http_retry",
                    component="http_client",
                    action="GET",
                    outcome="retry",
                    attempt=attempt + 1,
                    target=safe_target,
                ),
            )
            await asyncio.sleep(delay)

    logger.error(
        "%s request to %s failed after %d attempt(s): %s",
        context,
        safe_target,
        attempts,
        last_reason,
        extra=extra_context(
            event="http_failure",
            component="http_client",
            action="GET",
            outcome="failed",
            target=safe_target,
        ),
    )
    raise NetworkFailure(safe_target, last_reason, attempts)
