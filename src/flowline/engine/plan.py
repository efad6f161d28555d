# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Frozen plan nodes produced by WorkflowBuilder.build().

A BuiltWorkflow is an immutable tree: sequential steps, parallel groups,
conditionals, loops and for-each nodes, each optionally carrying its own
retry, timeout and error-handler policy. The engine interprets it; nothing
here executes anything.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Union

from flowline.config.schema import ForEachOptions, LoopOptions, RetryConfig

if TYPE_CHECKING:
    from flowline.engine.context import StepContext

StepFn = Callable[..., Any]
"""Step body: ``fn(input, ctx)``, sync or async. One-argument bodies get only the input."""

Predicate = Callable[["StepContext"], Union[bool, Awaitable[bool]]]
"""Condition evaluated against a StepContext snapshot."""

ItemsSelector = Callable[["StepContext"], Union[Iterable[Any], Awaitable[Iterable[Any]]]]
"""Derives the for-each item list from the current context."""

ErrorHandler = Callable[[BaseException, "StepContext"], Any]
"""Error handler: ``handler(error, ctx)``; its return value becomes the node output."""


@dataclass(frozen=True, kw_only=True)
class PlanNode:
    """Policy shared by every node kind.

    On a step the policy applies to each invocation of the body. On a
    composite node it wraps the whole node.
    """

    retry: RetryConfig | None = None
    timeout: float | None = None
    error_handlers: tuple[ErrorHandler, ...] = ()

    @property
    def id(self) -> str:
        raise NotImplementedError


@dataclass(frozen=True)
class StepNode(PlanNode):
    """A sequential step."""

    name: str
    fn: StepFn

    @property
    def id(self) -> str:
        return self.name


@dataclass(frozen=True)
class ParallelNode(PlanNode):
    """Members run concurrently; outputs are stored under member names."""

    node_id: str
    members: tuple[StepNode, ...]

    @property
    def id(self) -> str:
        return self.node_id


@dataclass(frozen=True)
class ConditionalNode(PlanNode):
    """Runs exactly one branch, or nothing when false without an else."""

    node_id: str
    predicate: Predicate
    then_branch: BuiltWorkflow
    else_branch: BuiltWorkflow | None = None

    @property
    def id(self) -> str:
        return self.node_id


@dataclass(frozen=True)
class LoopNode(PlanNode):
    """Runs ``body`` while ``predicate`` holds, checked before every pass."""

    node_id: str
    predicate: Predicate
    body: BuiltWorkflow
    options: LoopOptions = LoopOptions()

    @property
    def id(self) -> str:
        return self.node_id


@dataclass(frozen=True)
class ForEachNode(PlanNode):
    """Runs ``body`` once per selected item, results kept in item order."""

    node_id: str
    items_selector: ItemsSelector
    body: BuiltWorkflow
    options: ForEachOptions = ForEachOptions()

    @property
    def id(self) -> str:
        return self.node_id


Node = Union[StepNode, ParallelNode, ConditionalNode, LoopNode, ForEachNode]


@dataclass(frozen=True)
class BuiltWorkflow:
    """An immutable, executable workflow plan.

    Attributes:
        name: Workflow name.
        nodes: Plan nodes in execution order.
        default_retry: Retry policy for steps that declare none.
        timeout: Deadline for the whole run of this workflow.
        error_handlers: Workflow-level fallback handler chain.
    """

    name: str
    nodes: tuple[Node, ...] = ()
    default_retry: RetryConfig | None = None
    timeout: float | None = None
    error_handlers: tuple[ErrorHandler, ...] = ()

    @property
    def step_names(self) -> list[str]:
        """Names of the steps at this level, parallel members included."""
        names: list[str] = []
        for node in self.nodes:
            if isinstance(node, StepNode):
                names.append(node.name)
            elif isinstance(node, ParallelNode):
                names.extend(member.name for member in node.members)
        return names

    async def execute(
        self,
        input: Any = None,
        *,
        run_id: str | None = None,
        **engine_options: Any,
    ) -> dict[str, Any]:
        """Run this workflow with a new WorkflowEngine.

        Keyword arguments other than ``run_id`` are passed to the engine
        (``state_adapter``, ``reporter``, ``settings``, ``cascade``).
        """
        from flowline.engine.workflow import WorkflowEngine

        engine = WorkflowEngine(self, **engine_options)
        return await engine.run(input, run_id=run_id)
