# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Durable workflow state on top of an abstract document store.

The WorkflowStateAdapter persists execution state and step checkpoints,
provides a single optimistic-concurrency primitive (``update_with_version``),
and supports labeled snapshots for manual rollback.

Every persisted mutation bumps ``version`` by exactly one (starting at 1 on
creation). Mutations for the same workflow id are serialized by a per-id
``asyncio.Lock`` so the version check and the write happen atomically within
this process.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import secrets
import time
import weakref
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any

import pydantic

from flowline.exceptions import (
    ConstructionError,
    OptimisticLockError,
    SnapshotError,
    StateError,
    StateNotFoundError,
)
from flowline.state.models import (
    SNAPSHOT_TYPE,
    STATE_TYPE,
    HistoryEntry,
    SnapshotInfo,
    StepCheckpoint,
    WorkflowExecutionState,
    WorkflowSnapshot,
    WorkflowStatus,
    utc_now,
)
from flowline.state.storage import StorageBackend

logger = logging.getLogger(__name__)

# Fields the adapter owns; callers cannot overwrite them through save()
_PROTECTED_FIELDS = frozenset({"id", "version", "created_at", "updated_at"})

StateChanges = Mapping[str, Any]


class WorkflowStateAdapter:
    """Persists and reconstructs workflow execution state.

    Args:
        storage: The document store to persist into.

    Raises:
        ConstructionError: If ``storage`` is None.

    Example:
        >>> adapter = WorkflowStateAdapter(InMemoryStorage())
        >>> state = await adapter.save("run-1", status="running")
        >>> state.version
        1
    """

    def __init__(self, storage: StorageBackend | None) -> None:
        if storage is None:
            raise ConstructionError(
                "WorkflowStateAdapter requires a storage backend",
                suggestion="Pass a StorageBackend implementation such as InMemoryStorage()",
            )
        self.storage = storage
        # A lock lives only while a writer holds or awaits it
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock(self, workflow_id: str) -> asyncio.Lock:
        lock = self._locks.get(workflow_id)
        if lock is None:
            lock = self._locks[workflow_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def load(self, workflow_id: str) -> WorkflowExecutionState | None:
        """Load the state of a run, or None if it does not exist."""
        document = await self.storage.get(STATE_TYPE, workflow_id)
        if document is None:
            return None
        return WorkflowExecutionState.model_validate(document)

    async def get_checkpoint(self, workflow_id: str, step_id: str) -> StepCheckpoint | None:
        """Return one step checkpoint, or None if the run or step is unknown."""
        state = await self.load(workflow_id)
        if state is None:
            return None
        return state.checkpoints.get(step_id)

    async def query_by_status(
        self, status: WorkflowStatus, limit: int | None = None
    ) -> list[WorkflowExecutionState]:
        """Return runs with the given status."""
        documents = await self.storage.list(STATE_TYPE, limit=limit, where={"status": status})
        states = [WorkflowExecutionState.model_validate(document) for document in documents]
        # Backends may ignore ``where``
        return [state for state in states if state.status == status]

    async def query_by_ids(self, workflow_ids: Iterable[str]) -> list[WorkflowExecutionState]:
        """Return the runs that exist among ``workflow_ids``, in the given order."""
        found = await asyncio.gather(*(self.load(workflow_id) for workflow_id in workflow_ids))
        return [state for state in found if state is not None]

    async def list_all(
        self, limit: int | None = None, offset: int | None = None
    ) -> list[WorkflowExecutionState]:
        """Return stored runs, paginated."""
        documents = await self.storage.list(STATE_TYPE, limit=limit, offset=offset)
        return [WorkflowExecutionState.model_validate(document) for document in documents]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def save(
        self,
        workflow_id: str,
        changes: StateChanges | None = None,
        **fields: Any,
    ) -> WorkflowExecutionState:
        """Merge changes into a run's state, creating it on first call.

        ``context`` is shallow-merged, ``checkpoints`` are upserted by step id
        and ``history`` entries are appended. Every other field is replaced.

        Args:
            workflow_id: Run identifier.
            changes: Partial state as a mapping.
            **fields: Partial state as keyword arguments (win over ``changes``).

        Returns:
            The stored state.

        Raises:
            StateError: If the merged state is invalid.
        """
        merged_changes = {**(changes or {}), **fields}
        async with self._lock(workflow_id):
            current = await self.load(workflow_id)
            state = await self._write(workflow_id, current, merged_changes)
        await self._emit_write(state, created=current is None)
        return state

    async def checkpoint(
        self,
        workflow_id: str,
        step_id: str,
        data: Mapping[str, Any] | StepCheckpoint,
    ) -> StepCheckpoint:
        """Upsert one step checkpoint.

        Fields given in ``data`` overwrite the previous checkpoint for the
        step; fields not given are kept. A running state is created if the
        run does not exist yet. A ``checkpoint`` history entry is appended.

        Returns:
            The stored checkpoint.
        """
        if isinstance(data, StepCheckpoint):
            data = data.model_dump(exclude_unset=True)

        async with self._lock(workflow_id):
            current = await self.load(workflow_id)
            previous = current.checkpoints.get(step_id) if current else None
            checkpoint_data = {
                **(previous.model_dump() if previous else {}),
                **data,
                "step_id": step_id,
            }
            changes: dict[str, Any] = {
                "checkpoints": {step_id: checkpoint_data},
                "history": [
                    HistoryEntry(
                        type="checkpoint",
                        name=step_id,
                        data={
                            "status": checkpoint_data.get("status"),
                            "attempt": checkpoint_data.get("attempt", 1),
                        },
                    )
                ],
            }
            if current is None:
                changes["status"] = "running"
            state = await self._write(workflow_id, current, changes)

        await self._emit_write(state, created=current is None)
        return state.checkpoints[step_id]

    async def update_with_version(
        self,
        workflow_id: str,
        expected_version: int,
        changes: StateChanges,
    ) -> bool:
        """Apply ``changes`` only if the stored version equals ``expected_version``.

        This is the optimistic-concurrency primitive. It never raises on a
        version mismatch or a missing run; it returns False and leaves the
        stored state untouched.

        Returns:
            True if the write happened.
        """
        async with self._lock(workflow_id):
            current = await self.load(workflow_id)
            if current is None or current.version != expected_version:
                logger.debug(
                    "Version check failed for %s: expected %s, found %s",
                    workflow_id,
                    expected_version,
                    current.version if current else None,
                )
                return False
            state = await self._write(workflow_id, current, changes)
        await self._emit_write(state, created=False)
        return True

    async def mutate(
        self,
        workflow_id: str,
        fn: Callable[[WorkflowExecutionState], StateChanges | Awaitable[StateChanges]],
        max_attempts: int = 5,
    ) -> WorkflowExecutionState:
        """Load, compute changes with ``fn`` and compare-and-swap, retrying on conflict.

        Args:
            workflow_id: Run identifier.
            fn: Receives the current state and returns partial changes.
            max_attempts: Number of compare-and-swap attempts.

        Returns:
            The state after the successful write.

        Raises:
            StateNotFoundError: If the run does not exist.
            OptimisticLockError: If every attempt lost to a concurrent writer.
        """
        for attempt in range(1, max_attempts + 1):
            state = await self.load(workflow_id)
            if state is None:
                raise StateNotFoundError(workflow_id)
            changes = fn(state)
            if inspect.isawaitable(changes):
                changes = await changes
            if await self.update_with_version(workflow_id, state.version, changes):
                updated = await self.load(workflow_id)
                if updated is None:
                    raise StateNotFoundError(workflow_id)
                return updated
            logger.debug("Conflict updating %s (attempt %d/%d)", workflow_id, attempt, max_attempts)
        raise OptimisticLockError(workflow_id, max_attempts)

    async def delete(self, workflow_id: str) -> bool:
        """Delete a run, its checkpoints and its snapshots.

        Returns:
            True if the run existed.
        """
        async with self._lock(workflow_id):
            existed = await self.storage.delete(STATE_TYPE, workflow_id)
            for snapshot in await self._snapshot_documents(workflow_id):
                await self.storage.delete(SNAPSHOT_TYPE, snapshot.id)
        if existed:
            await self._emit("WorkflowState.deleted", {"id": workflow_id})
        return existed

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def create_snapshot(self, workflow_id: str, label: str | None = None) -> str:
        """Copy the full state of a run into a new snapshot.

        Returns:
            The snapshot id.

        Raises:
            StateNotFoundError: If the run does not exist.
        """
        state = await self.load(workflow_id)
        if state is None:
            raise StateNotFoundError(
                workflow_id, suggestion="Save the workflow state before snapshotting it"
            )
        snapshot_id = f"snap-{workflow_id}-{int(time.time() * 1000)}-{secrets.token_hex(3)}"
        snapshot = WorkflowSnapshot(
            id=snapshot_id,
            workflow_id=workflow_id,
            label=label,
            created_at=utc_now(),
            state=state,
        )
        await self.storage.create(
            SNAPSHOT_TYPE, snapshot.model_dump(mode="json"), id=snapshot_id
        )
        logger.debug(
            "Created snapshot %s of %s (version %d)", snapshot_id, workflow_id, state.version
        )
        return snapshot_id

    async def get_snapshots(self, workflow_id: str) -> list[SnapshotInfo]:
        """List the snapshots of a run, oldest first."""
        snapshots = await self._snapshot_documents(workflow_id)
        return [snapshot.info() for snapshot in sorted(snapshots, key=lambda s: s.created_at)]

    async def restore_snapshot(
        self, workflow_id: str, snapshot_id: str
    ) -> WorkflowExecutionState:
        """Roll a run back to a snapshot.

        The restored state replaces the stored one completely (checkpoints
        and history included) and is written as an ordinary save, so the
        version advances past the current one.

        Raises:
            SnapshotError: If the snapshot does not exist or belongs to
                another run.
        """
        document = await self.storage.get(SNAPSHOT_TYPE, snapshot_id)
        if document is None:
            raise SnapshotError(f'Snapshot "{snapshot_id}" not found')
        snapshot = WorkflowSnapshot.model_validate(document)
        if snapshot.workflow_id != workflow_id:
            raise SnapshotError(
                f'Snapshot "{snapshot_id}" belongs to workflow "{snapshot.workflow_id}", '
                f'not "{workflow_id}"',
            )

        async with self._lock(workflow_id):
            current = await self.load(workflow_id)
            restored = snapshot.state.model_copy(
                update={
                    "version": current.version + 1 if current else 1,
                    "updated_at": utc_now(),
                }
            )
            await self._persist(restored, created=current is None)

        await self._emit(
            "WorkflowState.restored",
            {"id": workflow_id, "snapshot_id": snapshot_id, "version": restored.version},
        )
        return restored

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _snapshot_documents(self, workflow_id: str) -> list[WorkflowSnapshot]:
        documents = await self.storage.list(SNAPSHOT_TYPE, where={"workflow_id": workflow_id})
        snapshots = [WorkflowSnapshot.model_validate(document) for document in documents]
        return [snapshot for snapshot in snapshots if snapshot.workflow_id == workflow_id]

    async def _write(
        self,
        workflow_id: str,
        current: WorkflowExecutionState | None,
        changes: StateChanges,
    ) -> WorkflowExecutionState:
        """Merge and persist. Callers must hold the lock for ``workflow_id``."""
        state = _merge(workflow_id, current, changes)
        await self._persist(state, created=current is None)
        return state

    async def _persist(self, state: WorkflowExecutionState, *, created: bool) -> None:
        # Storage receives JSON-compatible documents; timestamps as ISO strings
        data = state.model_dump(mode="json")
        if created:
            await self.storage.create(STATE_TYPE, data, id=state.id)
        else:
            await self.storage.update(STATE_TYPE, state.id, data)

    async def _emit_write(self, state: WorkflowExecutionState, *, created: bool) -> None:
        event = "WorkflowState.created" if created else "WorkflowState.updated"
        await self._emit(event, {"id": state.id, "version": state.version, "status": state.status})

    async def _emit(self, event: str, data: Mapping[str, Any]) -> None:
        try:
            await self.storage.emit(event, data)
        except Exception:
            # Events are best effort; the write already happened
            logger.warning("Failed to emit %s for %s", event, data.get("id"), exc_info=True)


def _merge(
    workflow_id: str,
    current: WorkflowExecutionState | None,
    changes: StateChanges,
) -> WorkflowExecutionState:
    now = utc_now()
    if current is None:
        base: dict[str, Any] = {"id": workflow_id, "created_at": now, "version": 0}
    else:
        base = current.model_dump()

    merged = dict(base)
    for key, value in changes.items():
        if key in _PROTECTED_FIELDS:
            continue
        if key == "context":
            merged["context"] = {**base.get("context", {}), **(value or {})}
        elif key == "checkpoints":
            merged["checkpoints"] = {**base.get("checkpoints", {}), **(value or {})}
        elif key == "history":
            entries = [value] if isinstance(value, HistoryEntry | Mapping) else list(value or [])
            merged["history"] = [*base.get("history", []), *entries]
        else:
            merged[key] = value

    merged["version"] = base["version"] + 1
    merged["updated_at"] = now
    try:
        return WorkflowExecutionState.model_validate(merged)
    except pydantic.ValidationError as e:
        raise StateError(
            f'Invalid state update for workflow "{workflow_id}": {e.error_count()} error(s)\n{e}',
            suggestion="Check status values and checkpoint fields",
        ) from e
