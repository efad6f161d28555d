"""State module for Flowline.

This module persists workflow runs (state, checkpoints, history and
snapshots) behind an abstract document store.
"""

from flowline.state.adapter import WorkflowStateAdapter
from flowline.state.models import (
    HistoryEntry,
    SnapshotInfo,
    StepCheckpoint,
    WorkflowExecutionState,
)
from flowline.state.storage import InMemoryStorage, StorageBackend

__all__ = [
    # Adapter
    "WorkflowStateAdapter",
    # Storage
    "InMemoryStorage",
    "StorageBackend",
    # Models
    "HistoryEntry",
    "SnapshotInfo",
    "StepCheckpoint",
    "WorkflowExecutionState",
]
