# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Deadline and iteration limits for workflow execution.

This module provides the per-step deadline wrapper and the IterationGuard
that enforces loop caps.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import TypeVar

from flowline.exceptions import MaxIterationsExceededError
from flowline.exceptions import TimeoutError as FlowlineTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_with_deadline(
    awaitable: Awaitable[T],
    timeout: float | None,
    *,
    step_name: str,
    kind: str = "Step",
) -> T:
    """Await ``awaitable`` with an optional deadline.

    When the deadline expires the awaited work is cancelled and a
    FlowlineTimeoutError is raised in its place. A builtin TimeoutError
    raised by the work itself passes through unchanged.

    Args:
        awaitable: The step invocation.
        timeout: Deadline in seconds, or None for no deadline.
        step_name: Step name for the error.
        kind: What is being timed, for messages (``"Step"`` or ``"Workflow"``).

    Returns:
        The awaited result.

    Raises:
        FlowlineTimeoutError: If the deadline expired.
    """
    if timeout is None:
        return await awaitable

    start = time.monotonic()
    deadline = asyncio.timeout(timeout)
    try:
        async with deadline:
            return await awaitable
    except TimeoutError:
        if not deadline.expired():
            raise
        elapsed = time.monotonic() - start
        logger.warning("%s '%s' timed out after %.2fs", kind, step_name, elapsed)
        raise FlowlineTimeoutError(
            f"{kind} '{step_name}' exceeded timeout ({timeout}s)",
            suggestion=f"Increase the {kind.lower()} timeout or make it faster",
            timeout_seconds=float(timeout),
            elapsed_seconds=elapsed,
            step_name=step_name,
        ) from None


@dataclass
class IterationGuard:
    """Enforces the iteration cap of a loop node.

    Attributes:
        name: Loop node id, for error messages.
        max_iterations: Maximum number of passes. None means unbounded.
        throw_on_max_iterations: Raise instead of stopping at the cap.
        current_iteration: Passes started so far.

    Example:
        >>> guard = IterationGuard("loop-1", max_iterations=2)
        >>> guard.allow(), guard.allow(), guard.allow()
        (True, True, False)
    """

    name: str
    max_iterations: int | None = None
    throw_on_max_iterations: bool = False
    current_iteration: int = 0

    def allow(self) -> bool:
        """Claim one more pass.

        Returns:
            True if the pass may run, False if the cap was reached.

        Raises:
            MaxIterationsExceededError: If the cap was reached and
                ``throw_on_max_iterations`` is set.
        """
        if self.max_iterations is not None and self.current_iteration >= self.max_iterations:
            if self.throw_on_max_iterations:
                raise MaxIterationsExceededError(
                    f"Loop '{self.name}' exceeded maximum iterations ({self.max_iterations})",
                    suggestion="Raise max_iterations or fix the loop condition",
                    iterations=self.current_iteration,
                    max_iterations=self.max_iterations,
                )
            logger.info(
                "Loop '%s' stopped at maximum iterations (%d)", self.name, self.max_iterations
            )
            return False
        self.current_iteration += 1
        return True
