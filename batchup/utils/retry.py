"""Exponential backoff for network operations."""
import asyncio
import logging
import random
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, Optional, TypeVar

from ..errors import is_retryable
from ..models import RetryOptions

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.25


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds or as an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def compute_delay(
    attempt: int,
    options: RetryOptions,
    retry_after: Optional[float] = None,
    rng: Callable[[], float] = random.random,
) -> float:
    """
    Delay in seconds before retry number ``attempt`` (0 = first retry).

    A server-supplied ``retry_after`` (seconds) replaces the exponential
    estimate. Both are capped at ``options.max_delay``; jitter then moves
    the result uniformly within +/-25%.
    """
    if retry_after is not None and retry_after >= 0:
        delay = min(float(retry_after), options.max_delay)
    else:
        delay = min(options.initial_delay * (2 ** attempt), options.max_delay)

    if options.jitter:
        spread = delay * JITTER_RATIO
        delay = delay + (rng() * spread * 2 - spread)

    return max(delay, 0.0)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    options: Optional[RetryOptions] = None,
    *,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> T:
    """
    Run ``operation`` until it succeeds or retries are exhausted.

    The last error is re-raised unchanged, so callers see the tagged error
    of the final attempt.
    """
    options = options or RetryOptions()
    should_retry = options.should_retry or is_retryable

    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            if attempt >= options.max_retries or not should_retry(exc):
                raise

            delay = compute_delay(attempt, options, getattr(exc, "retry_after", None), rng)
            logger.warning(
                "%s failed (attempt %d/%d): %s - retrying in %.2fs",
                label, attempt + 1, options.max_retries + 1, exc, delay,
            )
            await sleep(delay)
            attempt += 1
