"""Operation service: wires queue, scheduler, persistence and fan-out.

Handles the client connection lifecycle for the transport layer:
- connect: register channel handlers, bump connectedClients, push full state
- submit / delete / admin messages, with notices on the 'message' channel
- disconnect: drop the subscriber, decrement connectedClients

Delete and admin operations require the trusted admin identity (the
client's IPv4 address equal to ADMIN_IPV4). Nothing else is authenticated.
"""

import logging
import os
from typing import Any, Callable, Optional, Protocol

from stardust.cache.artifacts import ArtifactCache
from stardust.cache.kv_store import CACHE_SCOPE, KeyValueStore, ScopedCache
from stardust.executor.admin import AdminController
from stardust.executor.analyzer import Analyzer
from stardust.executor.errors import AdmissionError, InUse, NotFound
from stardust.executor.notifier import CHANNEL_MESSAGE, Notifier
from stardust.executor.queue import MAX_ACTIVE_OPERATIONS, OperationQueue
from stardust.executor.scheduler import STRICT_INVARIANTS, Scheduler
from stardust.executor.schemas import Operation
from stardust.executor.snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)

ADMIN_IPV4 = os.environ.get("ADMIN_IPV4", "unset").strip()

CHANNEL_SUBMIT = "submit"
CHANNEL_DELETE = "delete"
CHANNEL_ADMIN = "admin"


class ClientConnection(Protocol):
    """What the service needs from one transport connection."""

    uid: str
    client_ip: str

    def on_message(self, channel: str, handler: Callable[[Any], None]) -> None:
        ...

    def send(self, channel: str, payload: Any) -> None:
        ...


class OperationService:
    """Owns the single queue state for this process."""

    def __init__(
        self,
        store: KeyValueStore,
        analyzer: Analyzer,
        *,
        scope: str = CACHE_SCOPE,
        admin_ip: str = ADMIN_IPV4,
        max_active: int = MAX_ACTIVE_OPERATIONS,
        strict: bool = STRICT_INVARIANTS,
    ):
        self.store = store
        self.cache = ScopedCache(store, scope)
        self.artifacts = ArtifactCache(self.cache)
        self.snapshots = SnapshotStore(self.cache)
        self.notifier = Notifier()
        self.queue = OperationQueue(self.notifier, self.snapshots, max_active=max_active)
        self.scheduler = Scheduler(
            self.queue, self.notifier, self.artifacts, analyzer, strict=strict
        )
        self.admin = AdminController(self.queue)
        self.admin_ip = admin_ip

    # --- Lifecycle ---

    async def start(self) -> None:
        """Restore the saved queue, then continue it if anything was pending."""
        self.queue.load(await self.snapshots.restore())
        self.notifier.broadcast_status(is_running=False, queue_full=self.queue.is_saturated())
        self.scheduler.start_next()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.snapshots.flush()
        logger.info("Operation service stopped")

    # --- Connections ---

    def client_connected(self, conn: ClientConnection) -> None:
        conn.on_message(CHANNEL_SUBMIT, lambda payload: self.submit(payload, conn))
        conn.on_message(CHANNEL_DELETE, lambda uid: self.delete(uid, conn))
        conn.on_message(CHANNEL_ADMIN, lambda name: self.run_admin(name, conn))

        self.notifier.broadcast_status(
            connected_clients=self.notifier.status.connected_clients + 1
        )
        self.notifier.subscribe(conn)
        self.notifier.send_state(conn, self.queue.operations)
        logger.info(f"Client {conn.uid} connected from {conn.client_ip}")

    def client_disconnected(self, conn: ClientConnection, reason: str = "") -> None:
        self.notifier.unsubscribe(conn)
        self.notifier.broadcast_status(
            connected_clients=max(0, self.notifier.status.connected_clients - 1)
        )
        logger.info(f"Client {conn.uid} disconnected" + (f": {reason}" if reason else ""))

    def is_admin(self, conn: ClientConnection) -> bool:
        return conn.client_ip == self.admin_ip

    # --- Client operations ---

    def submit(self, payload: Any, conn: ClientConnection) -> Optional[Operation]:
        try:
            operation = self.queue.submit(payload, conn.uid)
        except AdmissionError as e:
            logger.info(f"Refused submission from {conn.uid}: {e}")
            conn.send(CHANNEL_MESSAGE, e.notice)
            return None

        if not self.scheduler.is_running:
            self.scheduler.start_next()
        return operation

    def delete(self, uid: Any, conn: ClientConnection) -> bool:
        if not self.is_admin(conn):
            conn.send(CHANNEL_MESSAGE, "Operation cannot be deleted.")
            return False

        try:
            self.queue.delete(str(uid))
        except (NotFound, InUse) as e:
            logger.info(f"Delete of {uid} refused: {e}")
            conn.send(CHANNEL_MESSAGE, e.notice)
            return False
        return True

    def run_admin(self, name: Any, conn: ClientConnection) -> bool:
        if not self.is_admin(conn) or not self.admin.run(str(name), conn.uid):
            logger.warning(f"Admin operation '{name}' refused for {conn.uid} ({conn.client_ip})")
            conn.send(CHANNEL_MESSAGE, "Admin operation not permitted")
            return False

        if not self.scheduler.is_running:
            self.scheduler.start_next()
        return True
