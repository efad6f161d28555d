"""Tests for retry policies.

Tests cover:
- Delay calculation for each backoff kind
- max_delay clamping and jitter
- retry_if predicates
- Retry inside a running workflow
"""

from __future__ import annotations

import pytest

from flowline.config.schema import EngineSettings, RetryConfig
from flowline.engine.builder import workflow
from flowline.engine.retry import calculate_delay, run_with_retry, should_retry


class TestCalculateDelay:
    """Tests for calculate_delay."""

    def test_constant(self) -> None:
        """Test constant backoff keeps the base delay."""
        config = RetryConfig(delay=0.5)
        assert [calculate_delay(config, n) for n in (1, 2, 3)] == [0.5, 0.5, 0.5]

    def test_linear(self) -> None:
        """Test linear backoff grows by the base delay."""
        config = RetryConfig(backoff="linear", delay=0.5)
        assert [calculate_delay(config, n) for n in (1, 2, 3)] == [0.5, 1.0, 1.5]

    def test_exponential(self) -> None:
        """Test exponential backoff doubles."""
        config = RetryConfig(backoff="exponential", delay=0.1)
        delays = [calculate_delay(config, n) for n in (1, 2, 3, 4)]
        assert delays == pytest.approx([0.1, 0.2, 0.4, 0.8])

    def test_max_delay_clamps(self) -> None:
        """Test the computed delay never exceeds max_delay."""
        config = RetryConfig(backoff="exponential", delay=1, max_delay=3)
        assert calculate_delay(config, 5) == 3

    def test_jitter_range(self) -> None:
        """Test jitter scales the delay between 0.5x and 1.5x."""
        config = RetryConfig(delay=2, jitter=True)
        assert calculate_delay(config, 1, rng=lambda: 0.0) == pytest.approx(1.0)
        assert calculate_delay(config, 1, rng=lambda: 0.999) == pytest.approx(2.998)

    def test_jitter_applied_after_clamp(self) -> None:
        """Test jitter is applied to the clamped delay."""
        config = RetryConfig(backoff="linear", delay=10, max_delay=4, jitter=True)
        assert calculate_delay(config, 3, rng=lambda: 0.5) == pytest.approx(4.0)


class TestShouldRetry:
    """Tests for should_retry."""

    def test_attempts_exhausted(self) -> None:
        """Test no retry once the attempt budget is spent."""
        config = RetryConfig(attempts=3)
        assert should_retry(config, ValueError(), 2) is True
        assert should_retry(config, ValueError(), 3) is False

    def test_retry_if(self) -> None:
        """Test retry_if can veto a retry."""
        config = RetryConfig(attempts=5, retry_if=lambda e, n: isinstance(e, ConnectionError))
        assert should_retry(config, ConnectionError(), 1) is True
        assert should_retry(config, ValueError(), 1) is False

    def test_tries_override_attempt_budget(self) -> None:
        """Test tries is checked against the budget while retry_if gets attempt."""
        checked: list[int] = []
        config = RetryConfig(attempts=2, retry_if=lambda e, n: checked.append(n) is None)
        assert should_retry(config, ValueError(), 7, tries=1) is True
        assert should_retry(config, ValueError(), 8, tries=2) is False
        assert checked == [7]


class TestRunWithRetry:
    """Tests for run_with_retry."""

    @pytest.mark.asyncio
    async def test_succeeds_after_failures(self) -> None:
        """Test the operation is retried until it succeeds."""
        attempts: list[int] = []
        retries: list[tuple[int, float]] = []

        async def operation(attempt: int) -> str:
            attempts.append(attempt)
            if attempt < 3:
                raise ConnectionError("flaky")
            return "ok"

        result = await run_with_retry(
            operation,
            RetryConfig(attempts=5, delay=0),
            step_name="fetch",
            on_retry=lambda n, delay, error: retries.append((n, delay)),
        )
        assert result == "ok"
        assert attempts == [1, 2, 3]
        assert retries == [(2, 0), (3, 0)]

    @pytest.mark.asyncio
    async def test_no_config_means_single_attempt(self) -> None:
        """Test a missing policy makes exactly one attempt."""
        calls = 0

        async def operation(attempt: int) -> None:
            nonlocal calls
            calls += 1
            raise ValueError("once")

        with pytest.raises(ValueError):
            await run_with_retry(operation, None, step_name="once")
        assert calls == 1

    @pytest.mark.asyncio
    async def test_last_error_raised(self) -> None:
        """Test the error of the final attempt is raised unchanged."""

        async def operation(attempt: int) -> None:
            raise ValueError(f"attempt {attempt}")

        with pytest.raises(ValueError, match="attempt 3"):
            await run_with_retry(operation, RetryConfig(attempts=3, delay=0), step_name="x")

    @pytest.mark.asyncio
    async def test_first_attempt_offsets_numbering(self) -> None:
        """Test a later cycle numbers attempts on but keeps its own budget."""
        seen: list[int] = []
        checked: list[int] = []

        async def operation(attempt: int) -> None:
            seen.append(attempt)
            raise ValueError(f"attempt {attempt}")

        config = RetryConfig(attempts=2, delay=0, retry_if=lambda e, n: checked.append(n) is None)
        with pytest.raises(ValueError, match="attempt 5"):
            await run_with_retry(operation, config, step_name="x", first_attempt=4)
        assert seen == [4, 5]
        assert checked == [4]


class TestRetryInWorkflow:
    """Tests for retry policies applied by the engine."""

    @pytest.mark.asyncio
    async def test_step_retry(self) -> None:
        """Test a step failing twice succeeds on its third invocation."""
        calls = 0

        def flaky(data):
            nonlocal calls
            calls += 1
            if calls <= 2:
                raise ConnectionError("flaky")
            return {"done": True}

        wf = workflow("retrying").step("flaky", flaky).retry(attempts=5, delay=0).build()
        assert await wf.execute() == {"done": True}
        assert calls == 3

    @pytest.mark.asyncio
    async def test_attempt_number_visible(self) -> None:
        """Test the step context reports the attempt number."""
        seen: list[int] = []

        def flaky(data, ctx):
            seen.append(ctx.attempt)
            if ctx.attempt < 2:
                raise RuntimeError("again")
            return None

        wf = workflow("attempts").step("flaky", flaky).retry(attempts=2, delay=0).build()
        await wf.execute()
        assert seen == [1, 2]

    @pytest.mark.asyncio
    async def test_exhausted_retry_raises(self) -> None:
        """Test the last error surfaces once attempts run out."""
        calls = 0

        def always(data):
            nonlocal calls
            calls += 1
            raise RuntimeError("down")

        wf = workflow("down").step("always", always).retry(attempts=3, delay=0).build()
        with pytest.raises(RuntimeError, match="down"):
            await wf.execute()
        assert calls == 3

    @pytest.mark.asyncio
    async def test_workflow_default_retry(self) -> None:
        """Test a workflow-level retry applies to steps without their own."""
        calls = 0

        def flaky(data):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("first")
            return None

        wf = workflow("defaults").retry(attempts=2, delay=0).step("flaky", flaky).build()
        await wf.execute()
        assert calls == 2

    @pytest.mark.asyncio
    async def test_engine_default_retry(self) -> None:
        """Test EngineSettings.default_retry is the last fallback."""
        calls = 0

        def flaky(data):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("first")
            return None

        wf = workflow("settings").step("flaky", flaky).build()
        settings = EngineSettings(default_retry=RetryConfig(attempts=2, delay=0))
        await wf.execute(settings=settings)
        assert calls == 2

    @pytest.mark.asyncio
    async def test_retry_if_stops_retrying(self) -> None:
        """Test retry_if prevents retrying non-transient errors."""
        calls = 0

        def invalid(data):
            nonlocal calls
            calls += 1
            raise ValueError("bad input")

        wf = (
            workflow("selective")
            .step("invalid", invalid)
            .retry(attempts=5, delay=0, retry_if=lambda e, n: not isinstance(e, ValueError))
            .build()
        )
        with pytest.raises(ValueError):
            await wf.execute()
        assert calls == 1
