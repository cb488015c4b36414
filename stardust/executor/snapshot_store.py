"""Durable snapshot of the whole operation queue.

The queue is re-serialized in full on every mutation (submit, delete,
progress milestone, completion) and written under one fixed key. There is
no incremental diff and no transaction: the in-memory queue is authoritative
for the lifetime of the process, and a failed write is only logged.

Restore runs once at startup, before the scheduler may start anything:
- A missing snapshot means an empty queue.
- A snapshot from another FORMAT_VERSION is discarded wholesale. Better to
  lose the queue than to load a structurally incompatible one.
- Known field renames are patched through FIELD_PATCHES.
- Operations saved while running are re-queued from the start. Nothing is
  ever resumed mid-flight.
"""

import asyncio
import logging
from typing import Any, Callable, Iterable, Optional

from pydantic import ValidationError

from stardust.cache.kv_store import ScopedCache
from stardust.executor.schemas import Operation, OperationState, Snapshot

logger = logging.getLogger(__name__)

# Increment every time fields change incompatibly in Operation (or its children)
FORMAT_VERSION = 10
SNAPSHOT_KEY = "state:backend"


def _rename_omit_star_history(operations: list[dict]) -> None:
    """omitStarHistory was renamed (and negated) into starsHistory."""
    for op in operations:
        request = op.get("request")
        if not isinstance(request, dict):
            continue
        if "omitStarHistory" in request and "starsHistory" not in request:
            request["starsHistory"] = request["omitStarHistory"] is not True
        request.pop("omitStarHistory", None)


def _assign_submission_sequence(operations: list[dict]) -> None:
    """Operations saved before seq existed get one from storage order (newest first)."""
    next_seq = max((op.get("seq") or 0 for op in operations), default=0) + 1
    for op in reversed(operations):
        if not op.get("seq"):
            op["seq"] = next_seq
            next_seq += 1


# format version -> patches for documents of that version, applied in
# ascending version order. Each patch must be idempotent.
FIELD_PATCHES: dict[int, list[Callable[[list[dict]], None]]] = {
    10: [_rename_omit_star_history, _assign_submission_sequence],
}


def apply_field_patches(operations: list[dict], format_version: int = FORMAT_VERSION) -> None:
    for version in sorted(FIELD_PATCHES):
        if version > format_version:
            break
        for patch in FIELD_PATCHES[version]:
            patch(operations)


def reset_interrupted(operation: Operation) -> bool:
    """Put an operation that was running at shutdown back in the queue.

    Returns True if the operation was reset.
    """
    if operation.progress.state != OperationState.RUNNING:
        return False
    progress = operation.progress
    progress.state = OperationState.QUEUED
    progress.started_at = 0
    progress.phase_index = 0
    progress.fraction = 0.0
    progress.error = None
    return True


class SnapshotStore:
    """Saves and restores the queue under SNAPSHOT_KEY.

    Writes go through a single writer task, one at a time. Saves arriving
    while a write is in flight replace each other, so only the newest
    snapshot is written next and an older one can never land last.
    """

    def __init__(self, cache: ScopedCache):
        self.cache = cache
        self._latest: Optional[dict[str, Any]] = None
        self._writer: Optional[asyncio.Task] = None

    def save(self, operations: Iterable[Operation]) -> None:
        """Serialize now, write in the background.

        The caller never waits for the write; failures are logged.
        """
        payload = Snapshot(
            format_version=FORMAT_VERSION,
            operations=list(operations),
        ).to_wire()

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self._write(payload))
            return

        self._latest = payload
        if self._writer is None or self._writer.done():
            self._writer = loop.create_task(self._drain(), name="snapshot-writer")

    async def flush(self) -> None:
        """Wait until the newest snapshot has been written."""
        while self._writer is not None and not self._writer.done():
            await asyncio.wait({self._writer})

    async def _drain(self) -> None:
        while self._latest is not None:
            payload, self._latest = self._latest, None
            await self._write(payload)

    async def _write(self, payload: dict[str, Any]) -> None:
        try:
            await self.cache.set_persistent_json(SNAPSHOT_KEY, payload)
        except Exception as e:
            logger.error(
                f"Snapshot write failed ({len(payload['operations'])} operations), "
                f"continuing from memory: {e}"
            )

    async def restore(self) -> list[Operation]:
        """Load the saved queue, in stored (newest first) order."""
        try:
            state = await self.cache.get_json(SNAPSHOT_KEY)
        except Exception as e:
            logger.error(f"Could not read snapshot, starting with an empty queue: {e}")
            return []

        if state is None:
            logger.info("No saved snapshot, starting with an empty queue")
            return []

        if not isinstance(state, dict) or not isinstance(state.get("operations"), list):
            logger.error("Saved snapshot is malformed. Skipped.")
            return []

        version = state.get("formatVersion")
        if version != FORMAT_VERSION:
            logger.error(
                f"Restoring snapshot from version {version} data, while we support "
                f"version {FORMAT_VERSION}. Skipped."
            )
            return []

        apply_field_patches(state["operations"], version)

        try:
            snapshot = Snapshot.model_validate(state)
        except ValidationError as e:
            logger.error(f"Saved snapshot failed validation. Skipped: {e}")
            return []

        requeued = [op.uid for op in snapshot.operations if reset_interrupted(op)]
        if requeued:
            logger.warning(f"Re-queued {len(requeued)} interrupted operation(s): {requeued}")

        logger.info(f"Restored {len(snapshot.operations)} operations from snapshot")
        return snapshot.operations
