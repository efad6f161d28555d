# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Cascade context: correlation ids and timed steps for workflow execution.

A cascade context carries a correlation id that stays stable across a whole
trace tree, a span id unique to each context, and a ledger of timed steps.
Child contexts link to their parent's span and inherit its correlation id,
so nested workflow scopes can be stitched back together.

Example:
    >>> root = create_cascade_context(name="order")
    >>> step = record_step(root, "validate", {"actor": "api"})
    >>> step.complete()
    >>> child = create_cascade_context(parent=root, name="charge")
    >>> child.correlation_id == root.correlation_id
    True
"""

from __future__ import annotations

import inspect
import secrets
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal, TypeVar

from flowline.exceptions import ValidationError
from flowline.tracing.traceparent import (
    TraceContext,
    format_traceparent,
    parse_traceparent,
    trace_id_to_correlation_id,
)

T = TypeVar("T")

StepStatus = Literal["running", "completed", "failed"]

_STATUS_MARKERS = {"completed": "[OK]", "failed": "[FAIL]", "running": "[...]"}


def generate_correlation_id() -> str:
    """Generate a new correlation id (UUID4 text)."""
    return str(uuid.uuid4())


def generate_span_id() -> str:
    """Generate a new span id (16 lowercase hex characters)."""
    return secrets.token_hex(8)


@dataclass
class FiveWHEvent:
    """Audit event describing who did what, when, where, why and how."""

    who: str
    what: str
    when: float
    where: str
    how: dict[str, Any]
    why: str | None = None


@dataclass(eq=False)
class CascadeStep:
    """A timed step recorded in a cascade context.

    ``complete()`` and ``fail()`` are terminal: only the first call has any
    effect, later calls are ignored.
    """

    name: str
    started_at: float
    status: StepStatus = "running"
    completed_at: float | None = None
    duration: float | None = None
    error: BaseException | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    where: str = "cascade"
    """Name of the context the step was recorded in."""

    @property
    def is_finished(self) -> bool:
        """True once the step has completed or failed."""
        return self.status != "running"

    def complete(self) -> None:
        """Mark the step as completed."""
        self._finish("completed")

    def fail(self, error: BaseException) -> None:
        """Mark the step as failed with ``error``."""
        if self._finish("failed"):
            self.error = error

    def _finish(self, status: StepStatus) -> bool:
        if self.is_finished:
            return False
        self.completed_at = time.time()
        self.duration = self.completed_at - self.started_at
        self.status = status
        return True

    def add_metadata(self, data: Mapping[str, Any] | None = None, **kwargs: Any) -> None:
        """Merge ``data`` and keyword arguments into the step metadata."""
        self.metadata = {**self.metadata, **(data or {}), **kwargs}

    def to_5wh_event(self) -> FiveWHEvent:
        """Project the step into a 5W+H audit event.

        ``who``, ``what`` and ``why`` come from the ``actor``, ``action`` and
        ``reason`` metadata keys, falling back to ``"system"`` and the step
        name. ``how`` carries the duration, status and metadata.
        """
        how: dict[str, Any] = {"duration": self.duration, "status": self.status}
        if self.metadata:
            how["metadata"] = dict(self.metadata)
        reason = self.metadata.get("reason")
        return FiveWHEvent(
            who=str(self.metadata.get("actor") or "system"),
            what=str(self.metadata.get("action") or self.name),
            when=self.started_at,
            where=self.where,
            how=how,
            why=str(reason) if reason is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Return a transport-safe representation of the step."""
        data: dict[str, Any] = {
            "name": self.name,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration": self.duration,
            "status": self.status,
            "metadata": dict(self.metadata),
        }
        if self.error is not None:
            data["error"] = f"{type(self.error).__name__}: {self.error}"
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], where: str = "cascade") -> CascadeStep:
        """Rebuild a step from ``to_dict`` output.

        The error, if any, only survives as text in ``metadata["error"]``.
        """
        metadata = dict(data.get("metadata") or {})
        if data.get("error") is not None:
            metadata.setdefault("error", data["error"])
        return cls(
            name=data["name"],
            started_at=data["started_at"],
            status=data.get("status", "running"),
            completed_at=data.get("completed_at"),
            duration=data.get("duration"),
            metadata=metadata,
            where=where,
        )


@dataclass(eq=False)
class CascadeContext:
    """Trace-scoped context with a stable correlation id and a step ledger.

    Attributes:
        correlation_id: Shared by every context in one trace tree.
        span_id: Unique to this context.
        parent_id: Span id of the nearest ancestor, None at the root.
        depth: 0 for a root context, parent depth + 1 for children.
        name: Optional human-readable name.
        steps: Steps recorded at this level, in order.
        path: Names of the steps recorded at this level.
        created_at: Creation time (seconds since the epoch).
        parent: The parent context object, when created in-process.
    """

    correlation_id: str
    span_id: str
    depth: int = 0
    parent_id: str | None = None
    name: str | None = None
    steps: list[CascadeStep] = field(default_factory=list)
    path: list[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    parent: CascadeContext | None = field(default=None, repr=False)

    @property
    def full_path(self) -> list[str]:
        """Every ancestor's path, oldest first, followed by this path."""
        if self.parent is not None:
            return [*self.parent.full_path, *self.path]
        return list(self.path)

    def record_step(self, name: str, metadata: Mapping[str, Any] | None = None) -> CascadeStep:
        """Record a running step. See :func:`record_step`."""
        return record_step(self, name, metadata)

    def child(self, name: str | None = None) -> CascadeContext:
        """Create a child context of this one."""
        return create_cascade_context(parent=self, name=name)

    def serialize(self) -> dict[str, Any]:
        """Return a transport-safe representation of this context."""
        return {
            "correlation_id": self.correlation_id,
            "span_id": self.span_id,
            "parent_id": self.parent_id,
            "name": self.name,
            "depth": self.depth,
            "steps": [step.to_dict() for step in self.steps],
            "path": list(self.path),
            "created_at": self.created_at,
        }

    def to_trace_context(self) -> TraceContext:
        """Render this context as a W3C trace context header."""
        return TraceContext(traceparent=format_traceparent(self.correlation_id, self.span_id))

    def format(self) -> str:
        """Format the context as a readable multi-line string."""
        lines = [
            f"Cascade: {self.name or 'unnamed'}",
            f"  Correlation ID: {self.correlation_id}",
            f"  Span ID: {self.span_id}",
        ]
        if self.parent_id:
            lines.append(f"  Parent ID: {self.parent_id}")
        lines.append(f"  Depth: {self.depth}")
        lines.append("  Steps:")
        lines.extend(f"    {_format_step(step)}" for step in self.steps)
        return "\n".join(lines)

    def format_tree(self) -> str:
        """Format this context and its in-process ancestors as an indented tree."""
        chain: list[CascadeContext] = []
        current: CascadeContext | None = self
        while current is not None:
            chain.insert(0, current)
            current = current.parent

        lines: list[str] = []
        for level, context in enumerate(chain):
            indent = "  " * level
            lines.append(f"{indent}{context.name or 'cascade'} (depth: {context.depth})")
            lines.extend(f"{indent}  {_format_step(step)}" for step in context.steps)
        return "\n".join(lines)


def _format_step(step: CascadeStep) -> str:
    duration = f" ({step.duration * 1000:.0f}ms)" if step.duration else ""
    return f"{_STATUS_MARKERS[step.status]} {step.name}{duration}"


def create_cascade_context(
    *,
    correlation_id: str | None = None,
    parent: CascadeContext | None = None,
    name: str | None = None,
    from_serialized: Mapping[str, Any] | None = None,
    from_trace_context: TraceContext | Mapping[str, Any] | str | None = None,
) -> CascadeContext:
    """Create a cascade context.

    Args:
        correlation_id: Correlation id for a new root. Ignored when a parent
            is given, since children always inherit the parent's id.
        parent: Parent context for a nested scope.
        name: Name for the new context.
        from_serialized: Output of ``CascadeContext.serialize()`` to restore.
        from_trace_context: Incoming W3C trace context (object, mapping with
            a ``traceparent`` key, or the header string). The new context
            keeps the trace's correlation id and treats the encoded span as
            its parent.

    Returns:
        The new context.

    Raises:
        ValidationError: If the serialized data or trace header is malformed.
    """
    if from_serialized is not None:
        return _restore_context(from_serialized)

    if from_trace_context is not None:
        if isinstance(from_trace_context, str):
            header = from_trace_context
        elif isinstance(from_trace_context, TraceContext):
            header = from_trace_context.traceparent
        else:
            header = str(from_trace_context.get("traceparent", ""))
        trace_id, remote_span_id = parse_traceparent(header)
        return CascadeContext(
            correlation_id=trace_id_to_correlation_id(trace_id),
            span_id=generate_span_id(),
            parent_id=remote_span_id,
            depth=1,
            name=name,
        )

    if parent is not None:
        return CascadeContext(
            correlation_id=parent.correlation_id,
            span_id=generate_span_id(),
            parent_id=parent.span_id,
            depth=parent.depth + 1,
            name=name,
            parent=parent,
        )

    return CascadeContext(
        correlation_id=correlation_id or generate_correlation_id(),
        span_id=generate_span_id(),
        name=name,
    )


def _restore_context(data: Mapping[str, Any]) -> CascadeContext:
    try:
        correlation_id = data["correlation_id"]
        span_id = data["span_id"]
    except KeyError as e:
        raise ValidationError(
            f"Serialized cascade context is missing {e.args[0]!r}",
            suggestion="Pass the dict returned by CascadeContext.serialize()",
        ) from e

    name = data.get("name")
    where = name or "cascade"
    steps = [CascadeStep.from_dict(step, where=where) for step in data.get("steps") or []]
    return CascadeContext(
        correlation_id=correlation_id,
        span_id=span_id,
        parent_id=data.get("parent_id"),
        depth=data.get("depth", 0),
        name=name,
        steps=steps,
        path=list(data.get("path") or [step.name for step in steps]),
        created_at=data.get("created_at", time.time()),
    )


def record_step(
    ctx: CascadeContext,
    name: str,
    metadata: Mapping[str, Any] | None = None,
) -> CascadeStep:
    """Record a running step in ``ctx``.

    The step is appended to both ``ctx.steps`` and ``ctx.path``.

    Args:
        ctx: Context to record into.
        name: Step name.
        metadata: Optional metadata (``actor``, ``action`` and ``reason``
            feed the 5W+H projection).

    Returns:
        The running step handle.
    """
    step = CascadeStep(
        name=name,
        started_at=time.time(),
        metadata=dict(metadata or {}),
        where=ctx.name or "cascade",
    )
    ctx.steps.append(step)
    ctx.path.append(name)
    return step


async def with_cascade_context(
    fn: Callable[[CascadeContext], Awaitable[T] | T],
    **options: Any,
) -> T:
    """Run ``fn`` with a new (possibly child) cascade context.

    Keyword arguments are passed to :func:`create_cascade_context`. Whatever
    ``fn`` returns or raises is passed through unchanged.
    """
    ctx = create_cascade_context(**options)
    result = fn(ctx)
    if inspect.isawaitable(result):
        return await result
    return result
