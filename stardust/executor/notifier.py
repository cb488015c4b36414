"""Fan-out of queue and status changes to connected observers.

Best effort only: a subscriber that fails to accept a message is logged and
skipped. Observers that connect later get the full state via send_state().
"""

import logging
from typing import Any, Iterable, Protocol

from stardust.executor.schemas import Operation, ServerStatus

logger = logging.getLogger(__name__)

CHANNEL_STATUS = "status"
CHANNEL_LIST = "list"
CHANNEL_OP_UPDATE = "op-update"
CHANNEL_MESSAGE = "message"


class Subscriber(Protocol):
    def send(self, channel: str, payload: Any) -> None:
        ...


class Notifier:
    """Owns the live ServerStatus and the set of subscribers."""

    def __init__(self) -> None:
        self.status = ServerStatus()
        self._subscribers: list[Subscriber] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, subscriber: Subscriber) -> None:
        if subscriber not in self._subscribers:
            self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def broadcast_list(self, operations: Iterable[Operation]) -> None:
        self._send_all(CHANNEL_LIST, [op.to_wire() for op in operations])

    def broadcast_operation(self, operation: Operation) -> None:
        self._send_all(CHANNEL_OP_UPDATE, operation.to_wire())

    def broadcast_status(self, **patch: Any) -> ServerStatus:
        """Merge a partial status (snake_case fields) and send the full object."""
        unknown = set(patch) - set(ServerStatus.model_fields)
        if unknown:
            raise ValueError(f"Unknown status fields: {sorted(unknown)}")
        self.status = self.status.model_copy(update=patch)
        self._send_all(CHANNEL_STATUS, self.status.to_wire())
        return self.status

    def send_state(self, subscriber: Subscriber, operations: Iterable[Operation]) -> None:
        """Push full status and list to one observer."""
        self._send_one(subscriber, CHANNEL_STATUS, self.status.to_wire())
        self._send_one(subscriber, CHANNEL_LIST, [op.to_wire() for op in operations])

    def _send_all(self, channel: str, payload: Any) -> None:
        for subscriber in list(self._subscribers):
            self._send_one(subscriber, channel, payload)

    def _send_one(self, subscriber: Subscriber, channel: str, payload: Any) -> None:
        try:
            subscriber.send(channel, payload)
        except Exception as e:
            logger.warning(f"Dropped '{channel}' message for {subscriber!r}: {e}")
