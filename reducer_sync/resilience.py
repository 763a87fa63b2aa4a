"""Retry with exponential backoff for backend calls.

Snapshot reads, event log appends, reducer record reads and reloadable
initial values all go through :func:`retry_with_backoff`. Only transient
failures are retried: connection errors, timeouts, throttling (429) and
server errors. Everything else, including Cosmos DB conflicts (409) and
failed preconditions (412), propagates on the first attempt so callers can
react to it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

THROTTLED = 429


@dataclass
class RetryConfig:
    """Backoff policy.

    ``max_retries`` counts retries after the first attempt, so 0 disables
    retrying entirely.
    """

    max_retries: int = 3
    backoff_base: float = 0.5  # seconds
    backoff_max: float = 30.0
    backoff_multiplier: float = 2.0
    retryable_status_codes: tuple[int, ...] = (408, 429, 500, 502, 503, 504)
    retryable_exceptions: tuple[type[Exception], ...] = (
        ConnectionError,
        TimeoutError,
        OSError,
    )

    def delay_for(self, attempt: int) -> float:
        """Backoff delay before retry number ``attempt`` (0-indexed)."""
        return min(self.backoff_base * self.backoff_multiplier**attempt, self.backoff_max)


def _status_of(exc: Exception) -> int | None:
    # CosmosHttpResponseError carries status_code; other azure-core errors
    # only have it on the response
    for source in (exc, getattr(exc, "response", None)):
        code = getattr(source, "status_code", None)
        if code is not None:
            return int(code)
    return None


def _get_retry_after(exc: Exception) -> float | None:
    """Seconds the server asked us to wait, if it said."""
    headers = getattr(getattr(exc, "response", None), "headers", None)
    if not headers:
        return None

    for name, scale in (("x-ms-retry-after-ms", 1000.0), ("Retry-After", 1.0), ("retry-after", 1.0)):
        raw = headers.get(name)
        if raw is None:
            continue
        try:
            return float(raw) / scale
        except (TypeError, ValueError):
            return None
    return None


def is_retryable(exc: Exception, config: RetryConfig) -> bool:
    """Whether ``exc`` is a transient failure worth retrying."""
    if isinstance(exc, config.retryable_exceptions):
        return True
    return _status_of(exc) in config.retryable_status_codes


async def retry_with_backoff(
    fn: Callable[..., Coroutine[Any, Any, T]],
    *args: Any,
    config: RetryConfig | None = None,
    context_msg: str = "",
    **kwargs: Any,
) -> T:
    """Await ``fn(*args, **kwargs)``, retrying transient failures.

    Args:
        fn: Async callable to execute
        config: Backoff policy (defaults if None)
        context_msg: Added to log lines, typically the channel name

    Returns:
        Result of fn

    Raises:
        Exception: The first permanent failure, or the last transient one
            once retries are used up
    """
    cfg = config or RetryConfig()
    where = f" [{context_msg}]" if context_msg else ""
    attempts = cfg.max_retries + 1
    attempt = 0

    while True:
        try:
            result = await fn(*args, **kwargs)
        except Exception as exc:
            status = _status_of(exc)
            if not is_retryable(exc, cfg):
                logger.debug(f"Permanent failure status={status}{where}: {exc}")
                raise
            attempt += 1
            if attempt >= attempts:
                logger.error(f"Giving up after {attempts} attempts status={status}{where}: {exc}")
                raise

            retry_after = _get_retry_after(exc)
            delay = cfg.delay_for(attempt - 1) if retry_after is None else min(retry_after, cfg.backoff_max)
            if status == THROTTLED:
                logger.warning(f"Throttled, retrying in {delay:.2f}s ({attempt}/{cfg.max_retries}){where}")
            else:
                logger.warning(
                    f"Transient failure status={status}, retrying in {delay:.2f}s "
                    f"({attempt}/{cfg.max_retries}){where}: {exc}"
                )
            await asyncio.sleep(delay)
        else:
            if attempt:
                logger.info(f"Recovered after {attempt} retries{where}")
            return result
