"""The ordered collection of operations and its admission control.

Operations are kept newest-first for display. Execution order is FIFO by
submission, driven by the monotonic ``seq`` stamped on each operation at
submit time, so it never depends on list position.

Every structural change (submit, delete) persists the full snapshot and
broadcasts the list. Starting execution is the scheduler's job.
"""

import logging
import os
import uuid
from typing import Any, Optional, Union

from pydantic import ValidationError

from stardust.executor.errors import InUse, InvalidRequest, NotFound, QueueSaturated
from stardust.executor.notifier import Notifier
from stardust.executor.schemas import (
    AnalysisRequest,
    Operation,
    OperationState,
    Progress,
    unix_time_now,
)
from stardust.executor.snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)

# Max operations not yet done (queued + running) before submissions are refused
MAX_ACTIVE_OPERATIONS = int(os.environ.get("MAX_ACTIVE_OPERATIONS", "5"))


def generate_uid() -> str:
    return uuid.uuid4().hex[:20]


class OperationQueue:
    """Holds all live operations. All mutation goes through these methods."""

    def __init__(
        self,
        notifier: Notifier,
        snapshots: SnapshotStore,
        max_active: int = MAX_ACTIVE_OPERATIONS,
    ):
        self.notifier = notifier
        self.snapshots = snapshots
        self.max_active = max_active
        self._operations: list[Operation] = []
        self._next_seq = 1

    @property
    def operations(self) -> list[Operation]:
        """All operations, newest first."""
        return list(self._operations)

    def __len__(self) -> int:
        return len(self._operations)

    def in_submission_order(self) -> list[Operation]:
        return sorted(self._operations, key=lambda op: op.seq)

    def find(self, uid: str) -> Optional[Operation]:
        for op in self._operations:
            if op.uid == uid:
                return op
        return None

    def active_count(self) -> int:
        return sum(1 for op in self._operations if op.is_active)

    def is_saturated(self) -> bool:
        return self.active_count() >= self.max_active

    def eligible_for_start(self) -> Optional[Operation]:
        """The oldest queued operation, or None."""
        queued = [op for op in self._operations if op.state == OperationState.QUEUED]
        if not queued:
            return None
        return min(queued, key=lambda op: op.seq)

    def submit(
        self,
        request: Union[AnalysisRequest, dict[str, Any]],
        submitter_id: str,
        *,
        bypass_limit: bool = False,
    ) -> Operation:
        """Validate and enqueue a request.

        Args:
            request: Raw request payload or an already-validated request
            submitter_id: Connection that submitted it (echo only, never auth)
            bypass_limit: Skip the saturation check (admin reseed only)

        Raises:
            QueueSaturated: Too many operations are not done yet
            InvalidRequest: Missing fields or unknown opCode
        """
        if not bypass_limit and self.is_saturated():
            raise QueueSaturated(
                f"{self.active_count()} active operations (limit {self.max_active})"
            )

        if isinstance(request, AnalysisRequest):
            validated = request.model_copy(deep=True)
        else:
            if not isinstance(request, dict):
                raise InvalidRequest(f"request must be an object, got {type(request).__name__}")
            try:
                validated = AnalysisRequest.model_validate(request)
            except ValidationError as e:
                raise InvalidRequest(str(e)) from e

        existing = {op.uid for op in self._operations}
        uid = generate_uid()
        while uid in existing:
            uid = generate_uid()

        operation = Operation(
            uid=uid,
            seq=self._next_seq,
            request=validated,
            progress=Progress(state=OperationState.QUEUED, queued_at=unix_time_now()),
            submitter_id=submitter_id,
        )
        self._next_seq += 1
        self._operations.insert(0, operation)

        logger.info(
            f"Queued operation {uid} (seq {operation.seq}): "
            f"op={validated.op_code.name.lower()} query='{validated.op_query}'"
            + (" [limit bypassed]" if bypass_limit else "")
        )
        self._changed()
        return operation

    def delete(self, uid: str) -> Operation:
        """Remove a queued or done operation.

        Raises:
            NotFound: No operation with this uid
            InUse: The operation is running and cannot be abandoned
        """
        operation = self.find(uid)
        if operation is None:
            raise NotFound(f"Operation not found: {uid}")
        if operation.state == OperationState.RUNNING:
            raise InUse(f"Operation {uid} is running")

        self._operations.remove(operation)
        logger.info(f"Deleted operation {uid}")
        self._changed()
        return operation

    def load(self, operations: list[Operation]) -> None:
        """Replace the contents with restored operations (stored order kept)."""
        self._operations = list(operations)
        self._next_seq = max((op.seq for op in self._operations), default=0) + 1

    def persist(self) -> None:
        self.snapshots.save(self._operations)

    def _changed(self) -> None:
        self.notifier.broadcast_list(self._operations)
        self.notifier.broadcast_status(queue_full=self.is_saturated())
        self.persist()
