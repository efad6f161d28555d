"""Tests for the WorkflowBuilder DSL.

Tests cover:
- Node ids and step names
- Policy attachment (retry, timeout, error handlers)
- Deferred build errors
- Isolation of built workflows from later builder changes
"""

from __future__ import annotations

import pytest

from flowline.config.schema import RetryConfig
from flowline.engine.builder import WorkflowBuilder, workflow
from flowline.engine.plan import (
    BuiltWorkflow,
    ConditionalNode,
    ForEachNode,
    LoopNode,
    ParallelNode,
    StepNode,
)
from flowline.exceptions import BuildError


def noop(data: dict) -> None:
    return None


def other(data: dict) -> None:
    return None


class TestNodes:
    """Tests for node assembly."""

    def test_steps_in_order(self) -> None:
        """Test sequential steps keep declaration order."""
        built = workflow("wf").step("a", noop).step("b", noop).build()
        assert isinstance(built, BuiltWorkflow)
        assert [node.id for node in built.nodes] == ["a", "b"]
        assert all(isinstance(node, StepNode) for node in built.nodes)

    def test_composite_node_ids(self) -> None:
        """Test composite nodes are numbered by position."""
        built = (
            workflow("wf")
            .step("start", noop)
            .when(lambda ctx: True)
            .then(noop)
            .loop(lambda ctx: False, noop)
            .for_each(lambda ctx: [], noop)
            .parallel([("x", noop), ("y", other)])
            .build()
        )
        assert [node.id for node in built.nodes] == [
            "start",
            "when-2",
            "loop-3",
            "for_each-4",
            "parallel-5",
        ]
        assert isinstance(built.nodes[1], ConditionalNode)
        assert isinstance(built.nodes[2], LoopNode)
        assert isinstance(built.nodes[3], ForEachNode)
        assert isinstance(built.nodes[4], ParallelNode)

    def test_parallel_members(self) -> None:
        """Test parallel accepts tuples and mappings with their own policy."""
        built = (
            workflow("wf")
            .parallel(
                [
                    ("a", noop),
                    {"name": "b", "fn": other, "retry": {"attempts": 2}, "timeout": "1s"},
                ]
            )
            .build()
        )
        group = built.nodes[0]
        assert isinstance(group, ParallelNode)
        assert [member.name for member in group.members] == ["a", "b"]
        assert group.members[1].retry == RetryConfig(attempts=2)
        assert group.members[1].timeout == 1.0
        assert built.step_names == ["a", "b"]

    def test_callable_branch_becomes_workflow(self) -> None:
        """Test a bare function branch is wrapped in a one-step workflow."""
        built = workflow("wf").when(lambda ctx: True).then(noop).else_(lambda d: None).build()
        node = built.nodes[0]
        assert isinstance(node, ConditionalNode)
        assert node.then_branch.step_names == ["noop"]
        assert node.else_branch is not None
        assert node.else_branch.step_names == ["when-1.else"]

    def test_builder_branch_is_built(self) -> None:
        """Test a nested builder is compiled at build time."""
        body = workflow("body").step("inc", noop)
        built = workflow("wf").loop(lambda ctx: False, body, max_iterations=3).build()
        node = built.nodes[0]
        assert isinstance(node, LoopNode)
        assert node.body.name == "body"
        assert node.options.max_iterations == 3

    def test_for_each_options(self) -> None:
        """Test for-each options from keyword arguments."""
        built = (
            workflow("wf")
            .for_each(lambda ctx: [1], noop, concurrency=4, result_key="doubled")
            .build()
        )
        node = built.nodes[0]
        assert isinstance(node, ForEachNode)
        assert node.options.concurrency == 4
        assert node.options.result_key == "doubled"


class TestPolicy:
    """Tests for retry, timeout and error handler attachment."""

    def test_retry_attaches_to_previous_node(self) -> None:
        """Test retry() applies to the node declared just before it."""
        built = (
            workflow("wf")
            .step("a", noop)
            .retry(attempts=5, backoff="linear", delay="10ms")
            .step("b", noop)
            .build()
        )
        assert built.nodes[0].retry == RetryConfig(attempts=5, backoff="linear", delay=0.01)
        assert built.nodes[1].retry is None
        assert built.default_retry is None

    def test_retry_before_nodes_is_default(self) -> None:
        """Test retry() with no preceding node sets the workflow default."""
        built = workflow("wf").retry(RetryConfig(attempts=2)).step("a", noop).build()
        assert built.default_retry == RetryConfig(attempts=2)
        assert built.nodes[0].retry is None

    def test_retry_config_with_overrides(self) -> None:
        """Test keyword fields override a RetryConfig argument."""
        built = workflow("wf").step("a", noop).retry(RetryConfig(attempts=2), attempts=4).build()
        assert built.nodes[0].retry is not None
        assert built.nodes[0].retry.attempts == 4

    def test_invalid_retry_raises(self) -> None:
        """Test invalid retry options raise BuildError immediately."""
        with pytest.raises(BuildError, match="attempts"):
            workflow("wf").step("a", noop).retry(attempts=0)

    def test_timeout(self) -> None:
        """Test timeout() attaches to the previous node, or to the whole run."""
        built = workflow("wf").timeout("2s").step("a", noop).timeout(500).build()
        assert built.timeout == 2.0
        assert built.nodes[0].timeout == 500.0

    @pytest.mark.parametrize("value", [0, "soon"])
    def test_invalid_timeout(self, value: object) -> None:
        """Test zero or malformed timeouts are rejected."""
        with pytest.raises(BuildError):
            workflow("wf").step("a", noop).timeout(value)  # type: ignore[arg-type]

    def test_on_error_attaches_when_next_node_follows(self) -> None:
        """Test a handler between two nodes belongs to the first one."""

        def handler(error, ctx):
            return None

        built = workflow("wf").step("a", noop).on_error(handler).step("b", noop).build()
        assert built.nodes[0].error_handlers == (handler,)
        assert built.nodes[1].error_handlers == ()
        assert built.error_handlers == ()

    def test_trailing_and_leading_handlers_are_workflow_level(self) -> None:
        """Test handlers before any node or after the last one apply workflow-wide."""

        def first(error, ctx):
            return None

        def last(error, ctx):
            return None

        built = workflow("wf").on_error(first).step("a", noop).on_error(last).build()
        assert built.error_handlers == (first, last)
        assert built.nodes[0].error_handlers == ()


class TestBuildValidation:
    """Tests for build-time validation."""

    def test_empty_name(self) -> None:
        """Test an empty workflow name is rejected."""
        with pytest.raises(BuildError, match="name must not be empty"):
            WorkflowBuilder("  ").build()

    def test_duplicate_step_names(self) -> None:
        """Test duplicate step names are rejected."""
        with pytest.raises(BuildError, match="Duplicate step name 'a'"):
            workflow("wf").step("a", noop).step("a", other).build()

    def test_duplicate_across_parallel_members(self) -> None:
        """Test parallel member names count towards uniqueness."""
        with pytest.raises(BuildError, match="Duplicate"):
            workflow("wf").step("a", noop).parallel([("a", other)]).build()

    def test_empty_step_name(self) -> None:
        """Test empty step names are rejected."""
        with pytest.raises(BuildError, match="empty name"):
            workflow("wf").step("", noop).build()

    def test_non_callable_step(self) -> None:
        """Test a non-callable body is rejected."""
        with pytest.raises(BuildError, match="not callable"):
            workflow("wf").step("a", "nope").build()  # type: ignore[arg-type]

    def test_empty_parallel(self) -> None:
        """Test parallel() needs at least one member."""
        with pytest.raises(BuildError, match="at least one step"):
            workflow("wf").parallel([]).build()

    def test_else_without_when(self) -> None:
        """Test else_() must follow a conditional."""
        with pytest.raises(BuildError, match="else_"):
            workflow("wf").step("a", noop).else_(other).build()

    def test_double_else(self) -> None:
        """Test a conditional accepts a single else branch."""
        builder = workflow("wf").when(lambda ctx: True).then(noop).else_(other).else_(other)
        with pytest.raises(BuildError, match="already has an else branch"):
            builder.build()

    def test_invalid_loop_options(self) -> None:
        """Test loop option validation errors surface as BuildError."""
        with pytest.raises(BuildError, match="LoopOptions"):
            workflow("wf").loop(lambda ctx: False, noop, max_iterations=0)


class TestIsolation:
    """Tests that built workflows are independent of their builder."""

    def test_later_changes_do_not_leak(self) -> None:
        """Test adding steps after build() leaves the built plan unchanged."""
        builder = workflow("wf").step("a", noop)
        first = builder.build()
        builder.step("b", other)
        second = builder.build()
        assert first.step_names == ["a"]
        assert second.step_names == ["a", "b"]

    def test_nested_builder_snapshot(self) -> None:
        """Test a nested builder changed after build() does not affect the plan."""
        body = workflow("body").step("inner", noop)
        built = workflow("wf").loop(lambda ctx: False, body).build()
        body.step("extra", other)
        node = built.nodes[0]
        assert isinstance(node, LoopNode)
        assert node.body.step_names == ["inner"]

    def test_built_workflow_is_frozen(self) -> None:
        """Test BuiltWorkflow cannot be mutated."""
        built = workflow("wf").step("a", noop).build()
        with pytest.raises(AttributeError):
            built.name = "other"  # type: ignore[misc]
