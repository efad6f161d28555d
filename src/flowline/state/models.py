# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Pydantic models for persisted workflow execution state.

These models describe the documents the WorkflowStateAdapter stores: the
execution state of a run (with its step checkpoints nested inside), history
entries, and snapshot metadata.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

WorkflowStatus = Literal["pending", "running", "paused", "completed", "failed"]
CheckpointStatus = Literal["running", "completed", "failed"]
HistoryType = Literal["event", "schedule", "transition", "action", "checkpoint"]

# Storage document types
STATE_TYPE = "WorkflowState"
SNAPSHOT_TYPE = "WorkflowSnapshot"


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class StepCheckpoint(BaseModel):
    """Durable record of one step's latest attempt and outcome."""

    step_id: str
    status: CheckpointStatus
    result: Any = None
    error: str | None = None
    attempt: int = Field(default=1, ge=1)
    started_at: datetime | None = None
    completed_at: datetime | None = None


class HistoryEntry(BaseModel):
    """One entry of the append-only history log of a run."""

    timestamp: datetime = Field(default_factory=utc_now)
    type: HistoryType
    name: str
    data: Any = None


class WorkflowExecutionState(BaseModel):
    """Persisted state of a single workflow run.

    Attributes:
        id: Run identifier.
        workflow_name: Name of the workflow being run, if known.
        status: Lifecycle status.
        current_step: Last top-level node that finished cleanly.
        context: The merged workflow context.
        checkpoints: Step checkpoints keyed by step id.
        history: Ordered history log.
        version: Optimistic concurrency version, 1 on creation.
        input: Original run input.
        output: Final output once completed.
        error: Error text once failed.
        created_at: Set once on creation.
        updated_at: Refreshed on every write.
    """

    id: str
    workflow_name: str | None = None
    status: WorkflowStatus = "pending"
    current_step: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    checkpoints: dict[str, StepCheckpoint] = Field(default_factory=dict)
    history: list[HistoryEntry] = Field(default_factory=list)
    version: int = Field(default=1, ge=1)
    input: Any = None
    output: Any = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class SnapshotInfo(BaseModel):
    """Metadata describing a stored snapshot."""

    id: str
    workflow_id: str
    label: str | None = None
    created_at: datetime


class WorkflowSnapshot(SnapshotInfo):
    """A stored snapshot: metadata plus the full copied state."""

    state: WorkflowExecutionState

    def info(self) -> SnapshotInfo:
        """Return the metadata without the copied state."""
        return SnapshotInfo(
            id=self.id,
            workflow_id=self.workflow_id,
            label=self.label,
            created_at=self.created_at,
        )
