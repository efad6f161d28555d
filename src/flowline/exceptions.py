# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Exception hierarchy for Flowline.

This module defines all custom exceptions used throughout the package.
All exceptions inherit from FlowlineError and support an optional
suggestion to help users resolve issues.

Exceptions raised by step bodies are never wrapped: they propagate out of
``WorkflowEngine.run()`` unchanged once retries and handlers are exhausted.
"""

from __future__ import annotations

from typing import Any


class FlowlineError(Exception):
    """Base exception for all Flowline errors.

    Supports an optional suggestion message to help users resolve the issue.

    Attributes:
        suggestion: Optional actionable advice for resolving the error.
    """

    def __init__(self, message: str, suggestion: str | None = None) -> None:
        """Initialize a FlowlineError.

        Args:
            message: The error message describing what went wrong.
            suggestion: Optional advice for resolving the error.
        """
        self.suggestion = suggestion
        super().__init__(message)

    def __str__(self) -> str:
        """Format the error message with optional suggestion."""
        msg = super().__str__()
        if self.suggestion:
            msg += f"\n\n💡 Suggestion: {self.suggestion}"
        return msg

    @property
    def error_type(self) -> str:
        """Return the type name for display purposes."""
        return self.__class__.__name__


class BuildError(FlowlineError):
    """Raised when a workflow definition is invalid at build time.

    This includes an empty workflow name, duplicate or empty step names,
    misplaced ``else_`` calls, and invalid policy options.
    """

    pass


class ConfigurationError(FlowlineError):
    """Raised when engine settings cannot be loaded or validated.

    Attributes:
        field_path: Optional dotted path to the invalid field.
    """

    def __init__(
        self,
        message: str,
        suggestion: str | None = None,
        field_path: str | None = None,
    ) -> None:
        self.field_path = field_path
        super().__init__(message, suggestion)

    def __str__(self) -> str:
        """Format the error message with field path and suggestion."""
        msg = self.args[0] if self.args else ""
        if self.field_path:
            msg += f"\n\n📋 Field: {self.field_path}"
        if self.suggestion:
            msg += f"\n\n💡 Suggestion: {self.suggestion}"
        return msg


class ValidationError(FlowlineError):
    """Raised when externally supplied text is malformed.

    Covers cron expressions, schedule descriptions and W3C trace headers.

    Attributes:
        value: The offending input, if available.
    """

    def __init__(
        self,
        message: str,
        suggestion: str | None = None,
        value: str | None = None,
    ) -> None:
        self.value = value
        super().__init__(message, suggestion)


class ExecutionError(FlowlineError):
    """Raised when workflow execution fails.

    Base class for execution-related errors. More specific execution
    errors inherit from this class.
    """

    pass


class StepError(ExecutionError):
    """Raised when a step or a group of steps fails inside the engine.

    Attributes:
        step_name: Name of the step or node that failed.
    """

    def __init__(
        self,
        message: str,
        *,
        step_name: str | None = None,
        suggestion: str | None = None,
    ) -> None:
        self.step_name = step_name
        super().__init__(message, suggestion)


class ParallelExecutionError(StepError):
    """Raised after every member of a parallel group or for-each has settled
    and at least one of them failed.

    Attributes:
        errors: Failed member name (or item index) mapped to its exception.
        outputs: Outputs of the members that succeeded.
    """

    def __init__(
        self,
        message: str,
        *,
        step_name: str | None = None,
        errors: dict[str, BaseException] | None = None,
        outputs: dict[str, Any] | None = None,
        suggestion: str | None = None,
    ) -> None:
        self.errors = errors or {}
        self.outputs = outputs or {}
        super().__init__(message, step_name=step_name, suggestion=suggestion)


class TimeoutError(ExecutionError):
    """Raised when a step exceeds its deadline.

    Attributes:
        step_name: The step that was executing when the deadline expired.
        timeout_seconds: The configured deadline.
        elapsed_seconds: Time spent before the deadline fired.
    """

    def __init__(
        self,
        message: str,
        *,
        timeout_seconds: float,
        elapsed_seconds: float,
        step_name: str | None = None,
        suggestion: str | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.elapsed_seconds = elapsed_seconds
        self.step_name = step_name
        super().__init__(message, suggestion)


class MaxIterationsExceededError(ExecutionError):
    """Raised when a loop hits its iteration cap with
    ``throw_on_max_iterations`` enabled.

    Attributes:
        iterations: The number of iterations that were executed.
        max_iterations: The configured maximum number of iterations.
    """

    def __init__(
        self,
        message: str,
        *,
        iterations: int,
        max_iterations: int,
        suggestion: str | None = None,
    ) -> None:
        self.iterations = iterations
        self.max_iterations = max_iterations
        super().__init__(message, suggestion)


class WorkflowAbortedError(ExecutionError):
    """Raised when an error handler calls ``ctx.abort()`` without an exception."""

    pass


class StateError(FlowlineError):
    """Base class for state adapter errors."""

    pass


class ConstructionError(StateError):
    """Raised when the state adapter is created without a storage backend."""

    pass


class StateNotFoundError(StateError):
    """Raised when an operation requires a workflow state that does not exist.

    Attributes:
        workflow_id: The missing workflow identifier.
    """

    def __init__(self, workflow_id: str, suggestion: str | None = None) -> None:
        self.workflow_id = workflow_id
        super().__init__(f'Workflow "{workflow_id}" not found', suggestion)


class SnapshotError(StateError):
    """Raised when a snapshot is missing or belongs to another workflow."""

    pass


class OptimisticLockError(StateError):
    """Raised by ``WorkflowStateAdapter.mutate`` when every compare-and-swap
    attempt lost to a concurrent writer.

    ``update_with_version`` itself never raises this; it returns ``False``.

    Attributes:
        workflow_id: The contended workflow identifier.
        attempts: Number of compare-and-swap attempts made.
    """

    def __init__(self, workflow_id: str, attempts: int) -> None:
        self.workflow_id = workflow_id
        self.attempts = attempts
        super().__init__(
            f'Could not update workflow "{workflow_id}" after {attempts} attempts',
            suggestion="Another writer keeps updating this workflow; reload and retry later",
        )
