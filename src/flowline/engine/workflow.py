# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Workflow execution engine for Flowline.

This module provides the WorkflowEngine class, which interprets a
BuiltWorkflow against an input. Nodes run depth-first; each node's output is
shallow-merged into an accumulating context that becomes the next node's
input.

Every step invocation is wrapped, innermost first, in a deadline, a retry
loop and the error-handler chain. With a state adapter attached, the engine
checkpoints each step and the merged context so that re-running the same
``run_id`` replays completed steps instead of invoking them again.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from flowline.config.schema import EngineSettings, RetryConfig
from flowline.engine.context import AbortWorkflow, StepContext, call_user_fn
from flowline.engine.limits import IterationGuard, run_with_deadline
from flowline.engine.plan import (
    BuiltWorkflow,
    ConditionalNode,
    ErrorHandler,
    ForEachNode,
    LoopNode,
    Node,
    ParallelNode,
    StepNode,
)
from flowline.engine.retry import run_with_retry
from flowline.exceptions import ExecutionError, ParallelExecutionError
from flowline.reporting import ConsoleReporter
from flowline.state.adapter import WorkflowStateAdapter
from flowline.state.models import HistoryEntry, StepCheckpoint, utc_now
from flowline.tracing.cascade import CascadeContext, create_cascade_context

logger = logging.getLogger(__name__)


@dataclass
class _Run:
    """State that belongs to one ``run()`` call."""

    input: dict[str, Any]
    cascade: CascadeContext
    run_id: str | None = None
    replay: dict[str, StepCheckpoint] = field(default_factory=dict)
    durable: bool = False


@dataclass
class _Scope:
    """Where a list of nodes is running: which run, workflow, cascade and checkpoint prefix."""

    run: _Run
    workflow: BuiltWorkflow
    cascade: CascadeContext
    prefix: str = ""

    def qualify(self, name: str) -> str:
        return f"{self.prefix}{name}"

    def child(self, workflow: BuiltWorkflow, label: str) -> _Scope:
        return _Scope(
            run=self.run,
            workflow=workflow,
            cascade=create_cascade_context(parent=self.cascade, name=label),
            prefix=f"{self.prefix}{label}/",
        )


@dataclass
class _Recovered:
    """An error handler produced the node output."""

    value: Any
    action: str


_RESTART = object()


def merge_output(context: dict[str, Any], name: str, output: Any) -> dict[str, Any]:
    """Shallow-merge a node output into the context.

    Mappings are merged key by key, None leaves the context unchanged and
    any other value is stored under ``name``.
    """
    if output is None:
        return context
    if isinstance(output, Mapping):
        return {**context, **output}
    return {**context, name: output}


class WorkflowEngine:
    """Interprets a BuiltWorkflow.

    Args:
        workflow: The plan to run.
        state_adapter: Optional adapter that makes runs durable.
        reporter: Optional console reporter. Defaults to one that is only
            enabled when ``settings.verbose`` is set.
        settings: Engine settings. Defaults to ``EngineSettings()``.
        cascade: Optional parent cascade context; each run gets a child of it.

    Example:
        >>> engine = WorkflowEngine(wf, state_adapter=adapter)
        >>> result = await engine.run({"value": 10}, run_id="order-42")
    """

    def __init__(
        self,
        workflow: BuiltWorkflow,
        *,
        state_adapter: WorkflowStateAdapter | None = None,
        reporter: ConsoleReporter | None = None,
        settings: EngineSettings | None = None,
        cascade: CascadeContext | None = None,
    ) -> None:
        self.workflow = workflow
        self.state_adapter = state_adapter
        self.settings = settings or EngineSettings()
        self.reporter = reporter or ConsoleReporter(enabled=self.settings.verbose)
        self.parent_cascade = cascade

        # Id and cascade context of the most recently started run
        self.cascade: CascadeContext | None = None
        self.run_id: str | None = None

    async def run(
        self,
        input: Mapping[str, Any] | None = None,
        run_id: str | None = None,
    ) -> dict[str, Any]:
        """Execute the workflow.

        Several runs may be in flight on one engine; each keeps its own run
        id, input, replay set and cascade context.

        Args:
            input: Initial context. Copied, never mutated.
            run_id: Identifier of a durable run. With a state adapter and no
                ``run_id`` a fresh one is generated.

        Returns:
            The final merged context.

        Raises:
            ExecutionError: If ``input`` is not a mapping.
            Exception: Whatever error a step raised once retries and
                handlers were exhausted, unchanged.
        """
        if input is not None and not isinstance(input, Mapping):
            raise ExecutionError(
                f"Workflow input must be a mapping, got {type(input).__name__}",
                suggestion="Pass a dict such as {'value': 10}",
            )

        run_id = run_id or (str(uuid.uuid4()) if self.state_adapter is not None else None)
        run = _Run(
            input=dict(input or {}),
            cascade=create_cascade_context(parent=self.parent_cascade, name=self.workflow.name),
            run_id=run_id,
            durable=self.state_adapter is not None and run_id is not None,
        )
        self.run_id = run.run_id
        self.cascade = run.cascade

        if run.durable:
            stored_output = await self._start_durable_run(run)
            if stored_output is not None:
                return stored_output

        logger.info("Starting workflow '%s' (run %s)", self.workflow.name, run.run_id)
        self.reporter.run_start(self.workflow.name, run.run_id)
        start = time.monotonic()
        scope = _Scope(run=run, workflow=self.workflow, cascade=run.cascade)

        try:
            result = await self._run_workflow(scope, dict(run.input), persist=True)
        except AbortWorkflow as signal:
            await self._record_failure(run, signal.error)
            raise signal.error from None
        except Exception as e:
            await self._record_failure(run, e)
            raise

        if run.durable:
            await self.state_adapter.save(
                run.run_id,
                status="completed",
                output=result,
                history=[HistoryEntry(type="transition", name="completed")],
            )
        elapsed = time.monotonic() - start
        logger.info("Workflow '%s' completed in %.2fs", self.workflow.name, elapsed)
        self.reporter.run_complete(self.workflow.name, elapsed)
        return result

    async def _start_durable_run(self, run: _Run) -> dict[str, Any] | None:
        """Load prior state for replay. Returns the stored output of a finished run."""
        existing = await self.state_adapter.load(run.run_id)
        if existing is not None and existing.status == "completed":
            logger.info("Run %s already completed; returning stored output", run.run_id)
            return dict(existing.output or {})

        if existing is not None:
            run.replay = {
                step_id: checkpoint
                for step_id, checkpoint in existing.checkpoints.items()
                if checkpoint.status == "completed"
            }
            logger.info(
                "Resuming run %s with %d completed checkpoints", run.run_id, len(run.replay)
            )

        await self.state_adapter.save(
            run.run_id,
            status="running",
            workflow_name=self.workflow.name,
            input=run.input,
            error=None,
            history=[
                HistoryEntry(
                    type="transition",
                    name="resumed" if existing is not None else "started",
                    data={"correlation_id": run.cascade.correlation_id},
                )
            ],
        )
        return None

    async def _record_failure(self, run: _Run, error: BaseException) -> None:
        logger.error(
            "Workflow '%s' failed: %s: %s", self.workflow.name, type(error).__name__, error
        )
        self.reporter.run_failed(self.workflow.name, error)
        if run.durable:
            await self.state_adapter.save(
                run.run_id,
                status="failed",
                error=f"{type(error).__name__}: {error}",
                history=[HistoryEntry(type="transition", name="failed")],
            )

    # ------------------------------------------------------------------
    # Node traversal
    # ------------------------------------------------------------------

    async def _run_workflow(
        self,
        scope: _Scope,
        context: dict[str, Any],
        *,
        persist: bool = False,
    ) -> dict[str, Any]:
        """Run the nodes of ``scope.workflow`` under its whole-run deadline."""
        return await run_with_deadline(
            self._run_nodes(scope, context, persist=persist),
            scope.workflow.timeout,
            step_name=scope.workflow.name,
            kind="Workflow",
        )

    async def _run_nodes(
        self,
        scope: _Scope,
        context: dict[str, Any],
        *,
        persist: bool = False,
    ) -> dict[str, Any]:
        for node in scope.workflow.nodes:
            output = await self._run_node(node, scope, context)
            context = merge_output(context, node.id, output)
            if persist and scope.run.durable:
                await self.state_adapter.save(
                    scope.run.run_id, context=context, current_step=node.id
                )
        return context

    async def _run_node(self, node: Node, scope: _Scope, context: dict[str, Any]) -> Any:
        handlers = (*node.error_handlers, *scope.workflow.error_handlers)

        if isinstance(node, StepNode):
            return await self._run_step(node, scope, context, handlers=handlers)

        if isinstance(node, ParallelNode):
            run_composite = self._run_parallel
        elif isinstance(node, ConditionalNode):
            run_composite = self._run_conditional
        elif isinstance(node, LoopNode):
            run_composite = self._run_loop
        else:
            run_composite = self._run_for_each

        async def invoke(attempt: int) -> Any:
            return await run_with_deadline(
                run_composite(node, scope, context), node.timeout, step_name=node.id
            )

        return await self._guard(
            node.id, scope, context, invoke, retry=node.retry, handlers=handlers
        )

    async def _run_step(
        self,
        node: StepNode,
        scope: _Scope,
        context: dict[str, Any],
        *,
        handlers: tuple[ErrorHandler, ...] = (),
        group: str | None = None,
    ) -> Any:
        """Run a leaf step with its policy, falling back to workflow and engine defaults.

        A step without a timeout uses ``settings.default_timeout``. The
        workflow timeout is a deadline for the whole run, not a step default.
        """
        step_id = scope.qualify(node.name)
        replayed = scope.run.replay.get(step_id)
        if replayed is not None:
            logger.debug("Replaying step '%s' from checkpoint", step_id)
            record = scope.cascade.record_step(
                node.name, {"node": group or node.name, "replayed": True}
            )
            record.complete()
            self.reporter.step_complete(node.name, 0.0, output=replayed.result, replayed=True)
            return replayed.result

        retry = node.retry or scope.workflow.default_retry or self.settings.default_retry
        timeout = node.timeout or self.settings.default_timeout

        async def attempt_step(attempt: int) -> Any:
            record = scope.cascade.record_step(
                node.name, {"attempt": attempt, "node": group or node.name}
            )
            started_at = utc_now()
            await self._checkpoint(
                scope.run,
                step_id,
                status="running",
                attempt=attempt,
                started_at=started_at,
                error=None,
            )
            self.reporter.step_start(node.name, attempt)
            start = time.monotonic()

            step_ctx = StepContext(
                input=scope.run.input,
                result=dict(context),
                current_step=node.name,
                attempt=attempt,
                cascade=scope.cascade,
            )
            try:
                output = await run_with_deadline(
                    call_user_fn(node.fn, dict(context), step_ctx),
                    timeout,
                    step_name=node.name,
                )
            except Exception as e:
                record.fail(e)
                self.reporter.step_failed(node.name, time.monotonic() - start, e)
                await self._checkpoint(
                    scope.run,
                    step_id,
                    status="failed",
                    attempt=attempt,
                    error=f"{type(e).__name__}: {e}",
                    completed_at=utc_now(),
                )
                raise

            record.complete()
            self.reporter.step_complete(node.name, time.monotonic() - start, output=output)
            await self._checkpoint(
                scope.run,
                step_id,
                status="completed",
                attempt=attempt,
                result=output,
                completed_at=utc_now(),
            )
            return output

        return await self._guard(
            node.name,
            scope,
            context,
            attempt_step,
            retry=retry,
            handlers=handlers,
            checkpoint_id=step_id,
        )

    async def _guard(
        self,
        name: str,
        scope: _Scope,
        context: dict[str, Any],
        invoke: Callable[[int], Awaitable[Any]],
        *,
        retry: RetryConfig | None,
        handlers: tuple[ErrorHandler, ...],
        checkpoint_id: str | None = None,
    ) -> Any:
        """Run ``invoke`` under the retry policy, then the error-handler chain.

        ``ctx.retry()`` in a handler restarts the whole retry cycle, up to
        ``settings.max_handler_restarts`` times. Attempt numbers keep
        counting across restarts, and ``retry_if`` sees the same numbers as
        ``ctx.attempt``. When a handler supplies the output of a step, that
        output is checkpointed as the step result.
        """
        attempts_made = 0
        restarts = 0

        async def numbered(attempt: int) -> Any:
            nonlocal attempts_made
            attempts_made = attempt
            return await invoke(attempt)

        def report_retry(attempt: int, delay: float, error: BaseException) -> None:
            self.reporter.retry(name, attempt, delay)

        while True:
            try:
                return await run_with_retry(
                    numbered,
                    retry,
                    step_name=name,
                    on_retry=report_retry,
                    first_attempt=attempts_made + 1,
                )
            except Exception as error:
                if not handlers:
                    raise
                failure = error
                outcome = await self._handle_error(
                    error, name, scope, context, handlers, attempts_made
                )

            if outcome is _RESTART:
                restarts += 1
                if restarts > self.settings.max_handler_restarts:
                    logger.error(
                        "Step '%s' exceeded %d handler restarts",
                        name,
                        self.settings.max_handler_restarts,
                    )
                    raise failure
                logger.info("Error handler restarted '%s' (restart %d)", name, restarts)
                self.reporter.handler_recovered(name, "retry")
                continue

            logger.info("Error handler recovered '%s' (%s)", name, outcome.action)
            self.reporter.handler_recovered(name, outcome.action)
            if checkpoint_id is not None:
                await self._checkpoint(
                    scope.run,
                    checkpoint_id,
                    status="completed",
                    result=outcome.value,
                    completed_at=utc_now(),
                )
            return outcome.value

    async def _handle_error(
        self,
        error: Exception,
        name: str,
        scope: _Scope,
        context: dict[str, Any],
        handlers: tuple[ErrorHandler, ...],
        attempt: int,
    ) -> _Recovered | object:
        """Walk the handler chain. Re-raised errors fall through to the next handler."""
        current: Exception = error
        for handler in handlers:
            handler_ctx = StepContext(
                input=scope.run.input,
                result=dict(context),
                current_step=name,
                attempt=attempt,
                cascade=scope.cascade,
                error=current,
                in_handler=True,
            )
            try:
                returned = await call_user_fn(handler, current, handler_ctx)
            except Exception as e:
                logger.debug("Error handler for '%s' re-raised %s", name, type(e).__name__)
                current = e
                continue

            if handler_ctx.action == "retry":
                return _RESTART
            if handler_ctx.action == "skip":
                return _Recovered(handler_ctx.skip_value, "skip")
            return _Recovered(returned, "handler")
        raise current

    # ------------------------------------------------------------------
    # Composite nodes
    # ------------------------------------------------------------------

    async def _run_parallel(
        self, node: ParallelNode, scope: _Scope, context: dict[str, Any]
    ) -> dict[str, Any]:
        start = time.monotonic()
        results = await asyncio.gather(
            *(self._run_step(member, scope, context, group=node.id) for member in node.members),
            return_exceptions=True,
        )

        outputs: dict[str, Any] = {}
        errors: dict[str, BaseException] = {}
        for member, result in zip(node.members, results):
            if isinstance(result, AbortWorkflow):
                raise result
            if isinstance(result, BaseException):
                errors[member.name] = result
            else:
                outputs[member.name] = result

        self.reporter.group_summary(node.id, len(outputs), len(errors), time.monotonic() - start)
        if errors:
            failed = ", ".join(f"{name} ({type(e).__name__}: {e})" for name, e in errors.items())
            raise ParallelExecutionError(
                f"Parallel group '{node.id}' failed: {len(errors)} of "
                f"{len(node.members)} steps failed: {failed}",
                step_name=node.id,
                errors=errors,
                outputs=outputs,
            )
        return outputs

    def _predicate_context(
        self, node_id: str, scope: _Scope, context: dict[str, Any]
    ) -> StepContext:
        return StepContext(
            input=scope.run.input,
            result=dict(context),
            current_step=node_id,
            cascade=scope.cascade,
        )

    async def _run_conditional(
        self, node: ConditionalNode, scope: _Scope, context: dict[str, Any]
    ) -> dict[str, Any] | None:
        condition = await call_user_fn(
            node.predicate, self._predicate_context(node.id, scope, context)
        )
        if condition:
            branch, label = node.then_branch, f"{node.id}.then"
        elif node.else_branch is not None:
            branch, label = node.else_branch, f"{node.id}.else"
        else:
            logger.debug("Conditional '%s' is false with no else branch", node.id)
            return None
        return await self._run_workflow(scope.child(branch, label), dict(context))

    async def _run_loop(
        self, node: LoopNode, scope: _Scope, context: dict[str, Any]
    ) -> dict[str, Any]:
        guard = IterationGuard(
            node.id,
            max_iterations=node.options.max_iterations,
            throw_on_max_iterations=node.options.throw_on_max_iterations,
        )
        current = dict(context)
        while await call_user_fn(node.predicate, self._predicate_context(node.id, scope, current)):
            if not guard.allow():
                break
            label = f"{node.id}[{guard.current_iteration - 1}]"
            current = await self._run_workflow(scope.child(node.body, label), current)
        logger.debug("Loop '%s' finished after %d passes", node.id, guard.current_iteration)
        return current

    async def _run_for_each(
        self, node: ForEachNode, scope: _Scope, context: dict[str, Any]
    ) -> dict[str, Any]:
        items = await call_user_fn(
            node.items_selector, self._predicate_context(node.id, scope, context)
        )
        items = list(items or [])
        semaphore = asyncio.Semaphore(node.options.concurrency or 1)
        start = time.monotonic()

        async def run_item(index: int, item: Any) -> dict[str, Any]:
            async with semaphore:
                body_input = {**context, "item": item, "index": index}
                return await self._run_workflow(
                    scope.child(node.body, f"{node.id}[{index}]"), body_input
                )

        results = await asyncio.gather(
            *(run_item(index, item) for index, item in enumerate(items)),
            return_exceptions=True,
        )

        errors: dict[str, BaseException] = {}
        for index, result in enumerate(results):
            if isinstance(result, AbortWorkflow):
                raise result
            if isinstance(result, BaseException):
                errors[str(index)] = result

        succeeded = len(results) - len(errors)
        self.reporter.group_summary(node.id, succeeded, len(errors), time.monotonic() - start)
        if errors:
            raise ParallelExecutionError(
                f"For-each '{node.id}' failed for {len(errors)} of {len(items)} items",
                step_name=node.id,
                errors=errors,
                outputs={
                    str(index): result
                    for index, result in enumerate(results)
                    if not isinstance(result, BaseException)
                },
            )
        return {node.options.result_key: list(results)}

    # ------------------------------------------------------------------
    # Durability
    # ------------------------------------------------------------------

    async def _checkpoint(self, run: _Run, step_id: str, **data: Any) -> None:
        if not run.durable or not self.settings.checkpoint_steps:
            return
        await self.state_adapter.checkpoint(run.run_id, step_id, data)
