"""
Retry policy with exponential backoff and jitter.

``with_retry`` never raises: the outcome is an ``Ok``/``Err`` value. Retries
stop on the first non-retryable classification or once ``max_attempts``
invocations have been made.
"""
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from okito.core.errors import ClassifiedError, classify_error
from okito.core.result import Err, Ok, Result, err
from okito.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Конфигурация retry (seconds)"""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 5.0
    backoff_factor: float = 2.0
    jitter: float = 0.1


def compute_delay(attempt: int, config: RetryConfig, rng: Callable[[], float] = random.random) -> float:
    """
    Delay before attempt ``attempt + 1``.

    ``min(base * factor^(attempt-1), max)`` scaled by a symmetric
    ``±jitter`` factor.
    """
    delay = min(config.base_delay * (config.backoff_factor ** (attempt - 1)), config.max_delay)
    if config.jitter:
        delay += delay * config.jitter * (2 * rng() - 1)
    return max(0.0, delay)


async def with_retry(
    action: Callable[[], Awaitable[Any]],
    config: Optional[RetryConfig] = None,
    *,
    max_attempts: Optional[int] = None,
    classifier: Callable[[Any], ClassifiedError] = classify_error,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    retry_if: Optional[Callable[[ClassifiedError], bool]] = None,
    on_retry: Optional[Callable[[int, ClassifiedError, float], None]] = None,
    rng: Callable[[], float] = random.random,
    name: str = "operation",
) -> Result[T]:
    """
    Run ``action`` until it succeeds, fails terminally or runs out of attempts.

    ``action`` may return a plain value, an ``Ok``/``Err`` or raise; raised
    exceptions are classified with ``classifier``. ``retry_if`` can veto a
    retry for an otherwise retryable error.
    """
    config = config or RetryConfig()
    attempts = max(1, max_attempts if max_attempts is not None else config.max_attempts)
    last: Optional[Err] = None

    for attempt in range(1, attempts + 1):
        try:
            outcome = await action()
        except Exception as e:
            outcome = Err(classifier(e))

        if isinstance(outcome, Err):
            last = outcome
        elif isinstance(outcome, Ok):
            return outcome
        else:
            return Ok(outcome)

        error = last.error
        if not error.retryable:
            logger.debug(f"{name}: non-retryable {error.code.value}, giving up after attempt {attempt}")
            return last
        if retry_if is not None and not retry_if(error):
            return last
        if attempt == attempts:
            logger.warning(f"{name}: all {attempts} attempts failed: {error.message}")
            return last

        delay = compute_delay(attempt, config, rng)
        logger.warning(f"{name}: attempt {attempt} failed ({error.code.value}): {error.message}. "
                       f"Retrying in {delay:.2f}s...")
        if on_retry is not None:
            on_retry(attempt, error, delay)
        await sleep(delay)

    return last if last is not None else err(RuntimeError("retry loop exited without outcome"))


async def retry_with_backoff(action: Callable[[], Awaitable[T]], config: Optional[RetryConfig] = None, **kwargs) -> T:
    """
    Exception-style wrapper around ``with_retry``.

    On failure the original exception is re-raised unchanged.
    """
    result = await with_retry(action, config, **kwargs)
    return result.unwrap()
