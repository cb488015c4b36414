"""Privileged bulk operations, built only on public queue operations."""

import logging

from stardust.executor.queue import OperationQueue
from stardust.executor.schemas import AnalysisRequest, Operation, OperationState

logger = logging.getLogger(__name__)


class AdminController:
    def __init__(self, queue: OperationQueue):
        self.queue = queue

    def reseed(self, submitter_id: str) -> list[Operation]:
        """Re-submit every operation that is not running, in submission order.

        Running operations are left untouched. The re-submissions bypass the
        saturation limit, which nothing else is allowed to do.

        Returns the new operations, oldest first.
        """
        requests: list[AnalysisRequest] = []
        for operation in self.queue.in_submission_order():
            if operation.state == OperationState.RUNNING:
                continue
            requests.append(operation.request)
            self.queue.delete(operation.uid)

        reseeded = [
            self.queue.submit(request, submitter_id, bypass_limit=True)
            for request in requests
        ]
        logger.info(f"Reseeded {len(reseeded)} operation(s)")
        return reseeded

    def run(self, name: str, submitter_id: str) -> bool:
        """Dispatch an admin operation by name. Returns False if unsupported."""
        if name == "reseed":
            self.reseed(submitter_id)
            return True

        logger.error(f"Admin operation '{name}' not supported")
        return False
