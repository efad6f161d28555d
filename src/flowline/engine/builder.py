# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Fluent DSL for assembling workflows.

Example:
    >>> wf = (
    ...     workflow("checkout")
    ...     .step("validate", validate)
    ...     .retry(attempts=3, backoff="exponential", delay="100ms")
    ...     .parallel([("charge", charge), ("reserve", reserve)])
    ...     .when(lambda ctx: ctx.result["express"])
    ...     .then(ship_express)
    ...     .else_(ship_standard)
    ...     .on_error(notify_support)
    ...     .build()
    ... )
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Union

import pydantic

from flowline.config.schema import ForEachOptions, LoopOptions, RetryConfig, parse_duration
from flowline.engine.plan import (
    BuiltWorkflow,
    ConditionalNode,
    ErrorHandler,
    ForEachNode,
    ItemsSelector,
    LoopNode,
    Node,
    ParallelNode,
    Predicate,
    StepFn,
    StepNode,
)
from flowline.exceptions import BuildError

Branch = Union["WorkflowBuilder", BuiltWorkflow, StepFn]
"""A nested workflow: a builder, a built workflow, or a single step function."""

ParallelMember = Union[Mapping[str, Any], tuple[str, StepFn]]


def _format_validation_error(e: pydantic.ValidationError) -> str:
    parts = []
    for error in e.errors():
        loc = ".".join(str(item) for item in error["loc"])
        parts.append(f"{loc}: {error['msg']}" if loc else error["msg"])
    return "; ".join(parts)


@dataclass
class _Draft:
    """Mutable node record kept by the builder until build()."""

    kind: str
    node_id: str
    fields: dict[str, Any]
    retry: RetryConfig | None = None
    timeout: float | None = None
    error_handlers: list[ErrorHandler] = field(default_factory=list)


class ConditionalChain:
    """Returned by ``WorkflowBuilder.when()``; call ``then()`` to finish it."""

    def __init__(self, builder: WorkflowBuilder, predicate: Predicate) -> None:
        self._builder = builder
        self._predicate = predicate

    def then(self, branch: Branch) -> WorkflowBuilder:
        """Set the branch to run when the predicate is true."""
        return self._builder._append(
            "when", {"predicate": self._predicate, "then": branch, "else": None}
        )


class WorkflowBuilder:
    """Accumulates plan nodes and policies, then compiles a BuiltWorkflow.

    ``retry()`` and ``timeout()`` apply to the node added just before them.
    Before any node, ``retry()`` sets the default step policy and
    ``timeout()`` sets a deadline for the whole run.
    ``on_error()`` handlers attach to the preceding node once another node
    follows them; handlers still pending at ``build()`` (or declared before
    any node) form the workflow-level fallback chain.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._drafts: list[_Draft] = []
        self._default_retry: RetryConfig | None = None
        self._timeout: float | None = None
        self._workflow_handlers: list[ErrorHandler] = []
        self._pending_handlers: list[ErrorHandler] = []
        self._errors: list[str] = []

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _append(self, kind: str, fields: dict[str, Any]) -> WorkflowBuilder:
        if self._pending_handlers and self._drafts:
            self._drafts[-1].error_handlers.extend(self._pending_handlers)
            self._pending_handlers = []
        node_id = fields["name"] if kind == "step" else f"{kind}-{len(self._drafts) + 1}"
        self._drafts.append(_Draft(kind=kind, node_id=node_id, fields=fields))
        return self

    def step(self, name: str, fn: StepFn) -> WorkflowBuilder:
        """Append a sequential step."""
        return self._append("step", {"name": name, "fn": fn})

    def parallel(self, steps: Iterable[ParallelMember]) -> WorkflowBuilder:
        """Append a group of steps that run concurrently.

        Args:
            steps: ``{"name": ..., "fn": ...}`` mappings (optionally with
                ``retry`` and ``timeout``) or ``(name, fn)`` tuples.
        """
        members = []
        for member in steps:
            if isinstance(member, Mapping):
                members.append(dict(member))
            else:
                name, fn = member
                members.append({"name": name, "fn": fn})
        if not members:
            self._errors.append("parallel() needs at least one step")
        return self._append("parallel", {"members": members})

    def when(self, predicate: Predicate) -> ConditionalChain:
        """Start a conditional; finish it with ``.then(branch)``."""
        return ConditionalChain(self, predicate)

    def else_(self, branch: Branch) -> WorkflowBuilder:
        """Set the else branch of the conditional added just before."""
        last = self._drafts[-1] if self._drafts else None
        if last is None or last.kind != "when":
            self._errors.append("else_() must directly follow when(...).then(...)")
        elif last.fields["else"] is not None:
            self._errors.append(f"Conditional '{last.node_id}' already has an else branch")
        else:
            last.fields["else"] = branch
        return self

    def loop(
        self,
        predicate: Predicate,
        body: Branch,
        *,
        max_iterations: int | None = None,
        throw_on_max_iterations: bool = False,
        options: LoopOptions | None = None,
    ) -> WorkflowBuilder:
        """Append a loop that runs ``body`` while ``predicate`` holds.

        The predicate is checked before every pass, the first included.
        Each pass receives the previous pass's output.
        """
        if options is None:
            options = self._validate(
                LoopOptions,
                max_iterations=max_iterations,
                throw_on_max_iterations=throw_on_max_iterations,
            )
        return self._append("loop", {"predicate": predicate, "body": body, "options": options})

    def for_each(
        self,
        items_selector: ItemsSelector,
        body: Branch,
        *,
        concurrency: int | None = None,
        result_key: str | None = None,
        options: ForEachOptions | None = None,
    ) -> WorkflowBuilder:
        """Append a node that runs ``body`` once per selected item.

        The body input is the current context plus ``item`` and ``index``.
        Results are stored in item order under ``options.result_key``.
        """
        if options is None:
            values: dict[str, Any] = {"concurrency": concurrency}
            if result_key is not None:
                values["result_key"] = result_key
            options = self._validate(ForEachOptions, **values)
        return self._append(
            "for_each",
            {"items_selector": items_selector, "body": body, "options": options},
        )

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def _validate(self, model: type[pydantic.BaseModel], **values: Any) -> Any:
        try:
            return model(**values)
        except pydantic.ValidationError as e:
            raise BuildError(
                f"Invalid {model.__name__} for workflow '{self.name}': "
                f"{_format_validation_error(e)}",
                suggestion="Check the option values passed to the builder",
            ) from e

    def retry(
        self,
        config: RetryConfig | Mapping[str, Any] | None = None,
        **fields: Any,
    ) -> WorkflowBuilder:
        """Attach a retry policy to the preceding node (or the workflow).

        Example:
            >>> builder.step("fetch", fetch).retry(attempts=5, backoff="linear")
        """
        if isinstance(config, RetryConfig):
            config = config.model_dump()
        policy = self._validate(RetryConfig, **{**(config or {}), **fields})
        if self._drafts:
            self._drafts[-1].retry = policy
        else:
            self._default_retry = policy
        return self

    def timeout(self, duration: float | str) -> WorkflowBuilder:
        """Attach a deadline to the preceding node (or to the whole run).

        Args:
            duration: Seconds, or a string such as ``"500ms"`` or ``"5s"``.
        """
        try:
            seconds = parse_duration(duration)
        except (TypeError, ValueError) as e:
            raise BuildError(f"Invalid timeout {duration!r}: {e}") from e
        if seconds <= 0:
            raise BuildError(f"Timeout must be positive, got {duration!r}")
        if self._drafts:
            self._drafts[-1].timeout = seconds
        else:
            self._timeout = seconds
        return self

    def on_error(self, handler: ErrorHandler) -> WorkflowBuilder:
        """Register an error handler.

        Handlers are tried in registration order; re-raising falls through
        to the next one.
        """
        if self._drafts:
            self._pending_handlers.append(handler)
        else:
            self._workflow_handlers.append(handler)
        return self

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def build(self) -> BuiltWorkflow:
        """Validate and compile an immutable BuiltWorkflow.

        Nested builders are built now, so later changes to this builder or
        to them never affect the returned workflow.

        Raises:
            BuildError: If the definition is invalid.
        """
        if not self.name or not self.name.strip():
            raise BuildError(
                "Workflow name must not be empty",
                suggestion="Pass a descriptive name to workflow()",
            )
        if self._errors:
            raise BuildError(f"Invalid workflow '{self.name}': {self._errors[0]}")

        nodes = tuple(self._compile(draft) for draft in self._drafts)
        built = BuiltWorkflow(
            name=self.name,
            nodes=nodes,
            default_retry=self._default_retry,
            timeout=self._timeout,
            error_handlers=(*self._workflow_handlers, *self._pending_handlers),
        )
        self._check_step_names(built)
        return built

    def _check_step_names(self, built: BuiltWorkflow) -> None:
        seen: set[str] = set()
        for name in built.step_names:
            if not isinstance(name, str) or not name.strip():
                raise BuildError(
                    f"Workflow '{self.name}' has a step with an empty name",
                    suggestion="Give every step a unique, non-empty name",
                )
            if name in seen:
                raise BuildError(
                    f"Duplicate step name '{name}' in workflow '{self.name}'",
                    suggestion="Step names must be unique within a workflow, "
                    "parallel members included",
                )
            seen.add(name)

    def _compile(self, draft: _Draft) -> Node:
        policy = {
            "retry": draft.retry,
            "timeout": draft.timeout,
            "error_handlers": tuple(draft.error_handlers),
        }
        fields = draft.fields
        if draft.kind == "step":
            _require_callable(fields["fn"], f"step '{fields['name']}'")
            return StepNode(fields["name"], fields["fn"], **policy)
        if draft.kind == "parallel":
            return ParallelNode(
                draft.node_id,
                tuple(self._compile_member(member) for member in fields["members"]),
                **policy,
            )
        if draft.kind == "when":
            else_branch = fields["else"]
            return ConditionalNode(
                draft.node_id,
                fields["predicate"],
                _as_workflow(fields["then"], f"{draft.node_id}.then"),
                (
                    _as_workflow(else_branch, f"{draft.node_id}.else")
                    if else_branch is not None
                    else None
                ),
                **policy,
            )
        if draft.kind == "loop":
            return LoopNode(
                draft.node_id,
                fields["predicate"],
                _as_workflow(fields["body"], f"{draft.node_id}.body"),
                fields["options"],
                **policy,
            )
        return ForEachNode(
            draft.node_id,
            fields["items_selector"],
            _as_workflow(fields["body"], f"{draft.node_id}.body"),
            fields["options"],
            **policy,
        )

    def _compile_member(self, member: dict[str, Any]) -> StepNode:
        name = member.get("name")
        fn = member.get("fn")
        _require_callable(fn, f"parallel step '{name}'")
        retry = member.get("retry")
        if retry is not None and not isinstance(retry, RetryConfig):
            retry = self._validate(RetryConfig, **retry)
        timeout = member.get("timeout")
        if timeout is not None:
            try:
                timeout = parse_duration(timeout)
            except (TypeError, ValueError) as e:
                raise BuildError(f"Invalid timeout for parallel step '{name}': {e}") from e
        return StepNode(name, fn, retry=retry, timeout=timeout)


def _require_callable(fn: Any, what: str) -> None:
    if not callable(fn):
        raise BuildError(f"The body of {what} is not callable: {fn!r}")


def _as_workflow(branch: Branch, name: str) -> BuiltWorkflow:
    if isinstance(branch, BuiltWorkflow):
        return branch
    if isinstance(branch, WorkflowBuilder):
        return branch.build()
    if callable(branch):
        step_name = getattr(branch, "__name__", None)
        if not step_name or step_name == "<lambda>":
            step_name = name
        return BuiltWorkflow(name=name, nodes=(StepNode(step_name, branch),))
    raise BuildError(
        f"Branch '{name}' must be a WorkflowBuilder, a BuiltWorkflow or a callable, "
        f"got {type(branch).__name__}"
    )


def workflow(name: str) -> WorkflowBuilder:
    """Start a new workflow definition."""
    return WorkflowBuilder(name)
