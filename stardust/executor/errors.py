"""Exceptions raised by the operation queue and scheduler.

Admission and delete errors carry a user-facing notice; the service sends
it back to the submitting client on the ``message`` channel.
"""


class OperationError(Exception):
    """Base class for operation lifecycle errors."""

    notice = "Operation error."

    def __init__(self, message: str = "", notice: str = ""):
        super().__init__(message or notice or self.notice)
        if notice:
            self.notice = notice


class AdmissionError(OperationError):
    """A submission was refused before entering the queue."""


class InvalidRequest(AdmissionError):
    notice = "Error with the request."


class QueueSaturated(AdmissionError):
    notice = "Cannot add more. Wait for the current queue to clear."


class NotFound(OperationError):
    notice = "Operation cannot be deleted. Not found."


class InUse(OperationError):
    notice = "Operation cannot be deleted. In progress."


class SchedulerInvariantError(RuntimeError):
    """start_next() was called while an operation is already running."""
