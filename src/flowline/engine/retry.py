# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Retry with backoff for step invocations."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from flowline.config.schema import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryCallback = Callable[[int, float, BaseException], None]
"""Called before sleeping with ``(next_attempt, delay, error)``."""


def calculate_delay(
    config: RetryConfig,
    attempt: int,
    *,
    rng: Callable[[], float] = random.random,
) -> float:
    """Compute the delay before the attempt after ``attempt``.

    Uses constant (``delay``), linear (``delay * attempt``) or exponential
    (``delay * 2^(attempt-1)``) growth, clamps to ``max_delay`` and, with
    jitter enabled, multiplies by a random factor in [0.5, 1.5).

    Args:
        config: The retry policy.
        attempt: The 1-based attempt that just failed.
        rng: Source of random numbers in [0, 1), for tests.

    Returns:
        Delay in seconds.
    """
    if config.backoff == "linear":
        delay = config.delay * attempt
    elif config.backoff == "exponential":
        delay = config.delay * (2 ** (attempt - 1))
    else:
        delay = config.delay

    if config.max_delay is not None:
        delay = min(delay, config.max_delay)

    if config.jitter:
        delay *= 0.5 + rng()

    return delay


def should_retry(
    config: RetryConfig,
    error: BaseException,
    attempt: int,
    *,
    tries: int | None = None,
) -> bool:
    """Whether ``error`` from ``attempt`` may be retried under ``config``.

    ``tries`` counts attempts in the current retry cycle and defaults to
    ``attempt``. It is checked against ``config.attempts``; ``retry_if``
    always sees ``attempt``.
    """
    if (attempt if tries is None else tries) >= config.attempts:
        return False
    if config.retry_if is None:
        return True
    return bool(config.retry_if(error, attempt))


async def run_with_retry(
    operation: Callable[[int], Awaitable[T]],
    config: RetryConfig | None,
    *,
    step_name: str,
    on_retry: RetryCallback | None = None,
    first_attempt: int = 1,
) -> T:
    """Await ``operation(attempt)`` until it succeeds or retries run out.

    Args:
        operation: Receives the 1-based attempt number.
        config: Retry policy; None means a single attempt.
        step_name: Used in log messages.
        on_retry: Optional hook called before each backoff sleep.
        first_attempt: Number of the first attempt. Attempt numbers passed
            to ``operation``, ``retry_if`` and ``on_retry`` count on from it,
            while the attempt budget and backoff count from this cycle's start.

    Returns:
        The first successful result.

    Raises:
        Exception: The last error when it is not retried.
    """
    attempt = first_attempt
    tries = 1
    while True:
        try:
            return await operation(attempt)
        except Exception as error:
            if config is None or not should_retry(config, error, attempt, tries=tries):
                raise
            delay = calculate_delay(config, tries)
            logger.warning(
                "Step '%s' failed on attempt %d/%d (%s: %s), retrying in %.2fs",
                step_name,
                tries,
                config.attempts,
                type(error).__name__,
                error,
                delay,
            )
            if on_retry is not None:
                on_retry(attempt + 1, delay, error)
            await asyncio.sleep(delay)
            attempt += 1
            tries += 1
