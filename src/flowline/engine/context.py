# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Step context and error-handler control signals.

Every step body, predicate and error handler receives a StepContext: the
original run input, a snapshot of the accumulated context, the current step
name and attempt number. Inside error handlers the context also exposes
``retry()``, ``skip(value)`` and ``abort(error)``.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Literal, NoReturn

from flowline.exceptions import ExecutionError, WorkflowAbortedError
from flowline.tracing.cascade import CascadeContext

HandlerAction = Literal["retry", "skip"]


class AbortWorkflow(BaseException):
    """Raised by ``StepContext.abort()`` to stop the run.

    Derives from BaseException so that retry loops, handler chains and
    parallel groups let it through untouched; the engine unwraps it and
    raises ``error`` out of ``run()``.
    """

    def __init__(self, error: BaseException) -> None:
        self.error = error
        super().__init__(str(error))


@dataclass
class StepContext:
    """Per-invocation view passed to step bodies, predicates and handlers.

    Attributes:
        input: The original run input.
        result: Snapshot of the accumulated context when the step started.
        current_step: Name of the step or node id being executed.
        attempt: 1-based attempt number (counts handler restarts too).
        cascade: Cascade context of the scope the step runs in.
        error: The error being handled (error handlers only).
    """

    input: Any
    result: dict[str, Any]
    current_step: str
    attempt: int = 1
    cascade: CascadeContext | None = None
    error: BaseException | None = None

    in_handler: bool = field(default=False, repr=False)
    action: HandlerAction | None = field(default=None, repr=False)
    skip_value: Any = field(default=None, repr=False)

    def _require_handler(self, method: str) -> None:
        if not self.in_handler:
            raise ExecutionError(
                f"ctx.{method}() can only be called inside an error handler",
                suggestion="Register the function with WorkflowBuilder.on_error()",
            )

    def retry(self) -> HandlerAction:
        """Restart the failing step once this handler returns."""
        self._require_handler("retry")
        self.action = "retry"
        return "retry"

    def skip(self, value: Any = None) -> HandlerAction:
        """Continue the run with ``value`` as the step output."""
        self._require_handler("skip")
        self.action = "skip"
        self.skip_value = value
        return "skip"

    def abort(self, error: BaseException | str | None = None) -> NoReturn:
        """Stop the run immediately, skipping any remaining handlers.

        Args:
            error: Exception to raise out of the run. A string or None
                becomes a WorkflowAbortedError.
        """
        self._require_handler("abort")
        if not isinstance(error, BaseException):
            error = WorkflowAbortedError(
                error or f"Workflow aborted by error handler at '{self.current_step}'"
            )
        raise AbortWorkflow(error)


def _positional_capacity(fn: Any) -> int | None:
    """How many positional arguments ``fn`` takes, or None for "any"."""
    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        return None
    count = 0
    for parameter in signature.parameters.values():
        if parameter.kind is inspect.Parameter.VAR_POSITIONAL:
            return None
        if parameter.kind in (
            inspect.Parameter.POSITIONAL_ONLY,
            inspect.Parameter.POSITIONAL_OR_KEYWORD,
        ):
            count += 1
    return count


async def call_user_fn(fn: Any, *args: Any) -> Any:
    """Call a sync or async user callable with as many leading args as it accepts.

    Example:
        >>> await call_user_fn(lambda data: data["x"], {"x": 1}, ctx)
        1
    """
    capacity = _positional_capacity(fn)
    if capacity is not None:
        args = args[:capacity]
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result
