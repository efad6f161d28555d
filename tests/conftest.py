"""Pytest configuration and shared fixtures for Flowline tests.

This module contains fixtures used across multiple test modules.
"""

from __future__ import annotations

import io
from pathlib import Path

import pytest
from rich.console import Console

from flowline.reporting import ConsoleReporter
from flowline.state import InMemoryStorage, WorkflowStateAdapter


@pytest.fixture
def storage() -> InMemoryStorage:
    """Return an empty in-memory storage backend."""
    return InMemoryStorage()


@pytest.fixture
def adapter(storage: InMemoryStorage) -> WorkflowStateAdapter:
    """Return a state adapter over the in-memory storage."""
    return WorkflowStateAdapter(storage)


@pytest.fixture
def recording_console() -> Console:
    """Return a rich console that writes into a StringIO buffer."""
    return Console(file=io.StringIO(), width=120, force_terminal=False, color_system=None)


@pytest.fixture
def reporter(recording_console: Console) -> ConsoleReporter:
    """Return an enabled reporter writing to the recording console."""
    return ConsoleReporter(recording_console)


@pytest.fixture
def sample_settings_yaml() -> str:
    """Return a minimal valid engine settings YAML."""
    return """\
engine:
  default_timeout: 30s
  max_handler_restarts: 5
  default_retry:
    attempts: 3
    backoff: exponential
    delay: 200ms
"""


@pytest.fixture
def tmp_settings_file(tmp_path: Path, sample_settings_yaml: str) -> Path:
    """Create a temporary settings YAML file."""
    settings_file = tmp_path / "flowline.yaml"
    settings_file.write_text(sample_settings_yaml)
    return settings_file
