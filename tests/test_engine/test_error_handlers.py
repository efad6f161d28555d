"""Tests for error handlers.

Tests cover:
- Handler return values as step output
- ctx.skip(), ctx.retry() and ctx.abort()
- Fall-through when a handler re-raises
- Workflow-level fallback handlers
- Restart limits
"""

from __future__ import annotations

import pytest

from flowline.config.schema import EngineSettings
from flowline.engine.builder import workflow
from flowline.exceptions import WorkflowAbortedError


def boom(data):
    raise RuntimeError("boom")


class TestHandlerOutcomes:
    """Tests for the ways a handler can recover a step."""

    @pytest.mark.asyncio
    async def test_return_value_becomes_output(self) -> None:
        """Test a handler's return value is merged like a step output."""
        wf = (
            workflow("fallback")
            .step("boom", boom)
            .on_error(lambda error, ctx: {"fallback": str(error)})
            .build()
        )
        assert await wf.execute() == {"fallback": "boom"}

    @pytest.mark.asyncio
    async def test_handler_context(self) -> None:
        """Test the handler receives the error and the failing step name."""
        seen = []

        def handler(error, ctx):
            seen.append((type(error), ctx.error is error, ctx.current_step, ctx.attempt))
            return None

        wf = workflow("ctx").step("boom", boom).retry(attempts=2, delay=0).on_error(handler)
        await wf.build().execute()
        assert seen == [(RuntimeError, True, "boom", 2)]

    @pytest.mark.asyncio
    async def test_skip(self) -> None:
        """Test ctx.skip(value) continues with value as output."""
        wf = (
            workflow("skip")
            .step("boom", boom)
            .on_error(lambda error, ctx: ctx.skip({"skipped": True}))
            .step("after", lambda data: {"after": data["skipped"]})
            .build()
        )
        assert await wf.execute() == {"skipped": True, "after": True}

    @pytest.mark.asyncio
    async def test_retry_restarts_step(self) -> None:
        """Test ctx.retry() runs the failing step again."""
        calls = 0

        def flaky(data):
            nonlocal calls
            calls += 1
            if calls < 3:
                raise RuntimeError("not yet")
            return {"calls": calls}

        def handler(error, ctx):
            return ctx.retry()

        wf = workflow("restart").step("flaky", flaky).on_error(handler).build()
        assert await wf.execute() == {"calls": 3}

    @pytest.mark.asyncio
    async def test_restart_limit(self) -> None:
        """Test ctx.retry() gives up after max_handler_restarts."""
        calls = 0

        def always(data):
            nonlocal calls
            calls += 1
            raise RuntimeError(f"call {calls}")

        wf = workflow("limit").step("always", always).on_error(lambda e, ctx: ctx.retry())
        with pytest.raises(RuntimeError, match="call 3"):
            await wf.build().execute(settings=EngineSettings(max_handler_restarts=2))
        assert calls == 3

    @pytest.mark.asyncio
    async def test_attempts_continue_across_restarts(self) -> None:
        """Test retry_if and ctx.attempt see the same numbers after ctx.retry()."""
        attempts: list[int] = []
        checked: list[int] = []

        def flaky(data, ctx):
            attempts.append(ctx.attempt)
            if ctx.attempt < 4:
                raise RuntimeError(f"attempt {ctx.attempt}")
            return {"attempt": ctx.attempt}

        def retry_if(error, attempt):
            checked.append(attempt)
            return True

        wf = (
            workflow("numbering")
            .step("flaky", flaky)
            .retry(attempts=2, delay=0, retry_if=retry_if)
            .on_error(lambda e, ctx: ctx.retry())
            .build()
        )
        assert await wf.execute() == {"attempt": 4}
        assert attempts == [1, 2, 3, 4]
        assert checked == [1, 3]

    @pytest.mark.asyncio
    async def test_abort_with_message(self) -> None:
        """Test ctx.abort() stops the run with WorkflowAbortedError."""
        after = []
        wf = (
            workflow("abort")
            .step("boom", boom)
            .on_error(lambda error, ctx: ctx.abort("giving up"))
            .on_error(lambda error, ctx: {"never": True})
            .step("after", lambda data: after.append(True))
            .build()
        )
        with pytest.raises(WorkflowAbortedError, match="giving up"):
            await wf.execute()
        assert after == []

    @pytest.mark.asyncio
    async def test_abort_with_exception(self) -> None:
        """Test ctx.abort(error) raises that error out of the run."""

        class PaymentDeclined(Exception):
            pass

        wf = (
            workflow("abort")
            .step("boom", boom)
            .on_error(lambda error, ctx: ctx.abort(PaymentDeclined("card")))
            .build()
        )
        with pytest.raises(PaymentDeclined, match="card"):
            await wf.execute()

    @pytest.mark.asyncio
    async def test_abort_from_parallel_member(self) -> None:
        """Test an abort inside a parallel group stops the whole run."""
        wf = (
            workflow("abort-parallel")
            .on_error(lambda error, ctx: ctx.abort())
            .parallel([("a", boom), ("b", lambda data: 1)])
            .build()
        )
        with pytest.raises(WorkflowAbortedError, match="aborted by error handler"):
            await wf.execute()


class TestHandlerChain:
    """Tests for chaining and workflow-level handlers."""

    @pytest.mark.asyncio
    async def test_reraise_falls_through(self) -> None:
        """Test a handler that raises passes its error to the next handler."""
        seen = []

        def first(error, ctx):
            seen.append(str(error))
            raise ValueError("translated")

        def second(error, ctx):
            seen.append(str(error))
            return {"handled": type(error).__name__}

        wf = workflow("chain").step("boom", boom).on_error(first).on_error(second).build()
        assert await wf.execute() == {"handled": "ValueError"}
        assert seen == ["boom", "translated"]

    @pytest.mark.asyncio
    async def test_chain_exhausted_raises_latest(self) -> None:
        """Test the latest error is raised when every handler re-raises."""

        def translate(error, ctx):
            raise LookupError("from handler")

        wf = workflow("chain").step("boom", boom).on_error(translate).build()
        with pytest.raises(LookupError, match="from handler"):
            await wf.execute()

    @pytest.mark.asyncio
    async def test_workflow_level_fallback(self) -> None:
        """Test workflow handlers run after the node's own handlers."""
        order = []

        def node_handler(error, ctx):
            order.append("node")
            raise error

        def workflow_handler(error, ctx):
            order.append("workflow")
            return {"rescued": ctx.current_step}

        wf = (
            workflow("fallback")
            .on_error(workflow_handler)
            .step("boom", boom)
            .on_error(node_handler)
            .step("after", lambda data: None)
            .build()
        )
        assert await wf.execute() == {"rescued": "boom"}
        assert order == ["node", "workflow"]

    @pytest.mark.asyncio
    async def test_async_handler(self) -> None:
        """Test async handlers are awaited."""

        async def handler(error, ctx):
            return {"async": True}

        wf = workflow("async").step("boom", boom).on_error(handler).build()
        assert await wf.execute() == {"async": True}

    @pytest.mark.asyncio
    async def test_handler_on_composite_node(self) -> None:
        """Test a handler attached to a loop handles errors from its body."""

        def body(data):
            raise RuntimeError("inside loop")

        wf = (
            workflow("loop-handler")
            .loop(lambda ctx: True, body, max_iterations=3)
            .on_error(lambda error, ctx: {"loop_error": str(error)})
            .step("after", lambda data: None)
            .build()
        )
        assert await wf.execute() == {"loop_error": "inside loop"}
