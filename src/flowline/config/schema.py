# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Pydantic models for workflow policy and engine configuration.

This module defines the retry, loop and for-each option models used by the
workflow builder, and the EngineSettings model that can be loaded from YAML.
All durations are expressed in seconds; duration strings such as ``"250ms"``
or ``"5s"`` are accepted wherever a duration is configured.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Pattern to match "<number><unit>" duration strings
DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")

_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: float | int | str) -> float:
    """Convert a duration to seconds.

    Numbers are taken as seconds. Strings may carry a unit suffix
    (``ms``, ``s``, ``m``, ``h``); a bare numeric string is seconds.

    Args:
        value: Number of seconds or a duration string.

    Returns:
        The duration in seconds.

    Raises:
        ValueError: If the value is negative or not a recognized duration.

    Example:
        >>> parse_duration("250ms")
        0.25
        >>> parse_duration("2m")
        120.0
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, int | float):
        seconds = float(value)
    else:
        match = DURATION_PATTERN.match(value)
        if not match:
            raise ValueError(f"Invalid duration: {value!r} (expected e.g. '500ms', '5s', '2m')")
        seconds = float(match.group(1)) * _UNIT_SECONDS[match.group(2) or "s"]
    if seconds < 0:
        raise ValueError(f"Duration must not be negative: {value!r}")
    return seconds


class RetryConfig(BaseModel):
    """Retry policy for a step or for a whole workflow.

    Attributes:
        attempts: Maximum number of attempts, including the first one.
        backoff: Delay growth between attempts.
        delay: Base delay in seconds.
        max_delay: Optional cap on the computed delay, in seconds.
        jitter: Whether to randomize each delay.
        retry_if: Optional ``(error, attempt) -> bool`` predicate. When it
            returns False the error is not retried.
    """

    model_config = ConfigDict(frozen=True)

    attempts: int = Field(default=3, ge=1)
    backoff: Literal["constant", "linear", "exponential"] = "constant"
    delay: float = Field(default=0.1, ge=0)
    max_delay: float | None = Field(default=None, ge=0)
    jitter: bool = False
    retry_if: Callable[[BaseException, int], bool] | None = None

    @field_validator("delay", "max_delay", mode="before")
    @classmethod
    def coerce_duration(cls, v: Any) -> Any:
        """Accept duration strings for delay fields."""
        if isinstance(v, str):
            return parse_duration(v)
        return v


class LoopOptions(BaseModel):
    """Options for ``WorkflowBuilder.loop``."""

    model_config = ConfigDict(frozen=True)

    max_iterations: int | None = Field(default=None, ge=1)
    """Maximum number of body passes. None means unbounded."""

    throw_on_max_iterations: bool = False
    """Raise MaxIterationsExceededError instead of stopping silently."""


class ForEachOptions(BaseModel):
    """Options for ``WorkflowBuilder.for_each``."""

    model_config = ConfigDict(frozen=True)

    concurrency: int | None = Field(default=None, ge=1)
    """Maximum number of items processed at once. None or 1 is sequential."""

    result_key: str = Field(default="for_each_results", min_length=1)
    """Context key under which the ordered results are stored."""


class EngineSettings(BaseModel):
    """Engine-wide settings.

    Example:
        ```yaml
        engine:
          default_timeout: 30s
          max_handler_restarts: 10
          default_retry:
            attempts: 3
            backoff: exponential
            delay: 200ms
        ```
    """

    default_retry: RetryConfig | None = None
    """Retry policy for steps whose workflow declares none."""

    default_timeout: float | None = Field(default=None, gt=0)
    """Per-step deadline for steps whose workflow declares none."""

    max_handler_restarts: int = Field(default=100, ge=1)
    """Upper bound on ``ctx.retry()`` restarts for a single step."""

    checkpoint_steps: bool = True
    """Persist per-step checkpoints when a state adapter is attached."""

    verbose: bool = False
    """Print step progress through the console reporter."""

    @field_validator("default_timeout", mode="before")
    @classmethod
    def coerce_timeout(cls, v: Any) -> Any:
        """Accept duration strings for the default timeout."""
        if isinstance(v, str):
            return parse_duration(v)
        return v
