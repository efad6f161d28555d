"""Tests for the Pydantic policy and settings models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from flowline.config.schema import (
    EngineSettings,
    ForEachOptions,
    LoopOptions,
    RetryConfig,
    parse_duration,
)


class TestParseDuration:
    """Tests for duration parsing."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (5, 5.0),
            (0.25, 0.25),
            ("250ms", 0.25),
            ("5s", 5.0),
            ("2m", 120.0),
            ("1h", 3600.0),
            ("1.5", 1.5),
        ],
    )
    def test_valid_durations(self, value: float | str, expected: float) -> None:
        """Test numbers and unit strings are converted to seconds."""
        assert parse_duration(value) == pytest.approx(expected)

    @pytest.mark.parametrize("value", ["soon", "5 days", "-1s", -2, True])
    def test_invalid_durations(self, value: object) -> None:
        """Test malformed or negative durations are rejected."""
        with pytest.raises(ValueError):
            parse_duration(value)  # type: ignore[arg-type]


class TestRetryConfig:
    """Tests for RetryConfig."""

    def test_defaults(self) -> None:
        """Test default retry policy."""
        config = RetryConfig()
        assert config.attempts == 3
        assert config.backoff == "constant"
        assert config.delay == 0.1
        assert config.max_delay is None
        assert config.jitter is False
        assert config.retry_if is None

    def test_duration_strings(self) -> None:
        """Test delay fields accept duration strings."""
        config = RetryConfig(delay="200ms", max_delay="2s")
        assert config.delay == pytest.approx(0.2)
        assert config.max_delay == pytest.approx(2.0)

    def test_attempts_must_be_positive(self) -> None:
        """Test attempts below one are rejected."""
        with pytest.raises(ValidationError):
            RetryConfig(attempts=0)

    def test_unknown_backoff_rejected(self) -> None:
        """Test only known backoff kinds are accepted."""
        with pytest.raises(ValidationError):
            RetryConfig(backoff="fibonacci")

    def test_retry_if_callable(self) -> None:
        """Test a retry predicate is kept as-is."""

        def only_io(error: BaseException, attempt: int) -> bool:
            return isinstance(error, OSError)

        assert RetryConfig(retry_if=only_io).retry_if is only_io

    def test_frozen(self) -> None:
        """Test the model is immutable."""
        config = RetryConfig()
        with pytest.raises(ValidationError):
            config.attempts = 10  # type: ignore[misc]


class TestNodeOptions:
    """Tests for loop and for-each options."""

    def test_loop_defaults(self) -> None:
        """Test loops are unbounded and silent by default."""
        options = LoopOptions()
        assert options.max_iterations is None
        assert options.throw_on_max_iterations is False

    def test_loop_cap_must_be_positive(self) -> None:
        """Test a zero iteration cap is rejected."""
        with pytest.raises(ValidationError):
            LoopOptions(max_iterations=0)

    def test_for_each_defaults(self) -> None:
        """Test for-each runs sequentially into the default key."""
        options = ForEachOptions()
        assert options.concurrency is None
        assert options.result_key == "for_each_results"

    def test_for_each_concurrency_must_be_positive(self) -> None:
        """Test a zero concurrency window is rejected."""
        with pytest.raises(ValidationError):
            ForEachOptions(concurrency=0)


class TestEngineSettings:
    """Tests for EngineSettings."""

    def test_defaults(self) -> None:
        """Test default engine settings."""
        settings = EngineSettings()
        assert settings.default_retry is None
        assert settings.default_timeout is None
        assert settings.max_handler_restarts == 100
        assert settings.checkpoint_steps is True
        assert settings.verbose is False

    def test_timeout_string(self) -> None:
        """Test the default timeout accepts duration strings."""
        assert EngineSettings(default_timeout="1m").default_timeout == 60.0

    def test_zero_timeout_rejected(self) -> None:
        """Test the default timeout must be positive."""
        with pytest.raises(ValidationError):
            EngineSettings(default_timeout=0)

    def test_nested_retry(self) -> None:
        """Test a nested retry mapping is parsed."""
        settings = EngineSettings(default_retry={"attempts": 4, "backoff": "linear"})
        assert settings.default_retry == RetryConfig(attempts=4, backoff="linear")
