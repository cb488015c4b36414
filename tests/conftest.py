"""Shared test fixtures."""

import asyncio
from typing import Any, Awaitable, Callable, Optional

import pytest

from stardust.cache.kv_store import InMemoryStore, ScopedCache
from stardust.executor.notifier import Notifier
from stardust.executor.queue import OperationQueue
from stardust.executor.snapshot_store import SnapshotStore

TEST_SCOPE = "test"


def make_request(query: str = "github/roadmap", **overrides: Any) -> dict[str, Any]:
    request = {
        "opCode": 1,
        "opQuery": query,
        "maxResults": 250,
        "limitStarsPerUser": 200,
        "increaseSNR": False,
        "starsHistory": False,
    }
    request.update(overrides)
    return request


class RecordingClient:
    """Stands in for a transport connection and records what it is sent."""

    def __init__(self, uid: str = "client-1", client_ip: str = "10.0.0.7"):
        self.uid = uid
        self.client_ip = client_ip
        self.handlers: dict[str, Callable[[Any], Any]] = {}
        self.messages: list[tuple[str, Any]] = []

    def on_message(self, channel: str, handler: Callable[[Any], Any]) -> None:
        self.handlers[channel] = handler

    def send(self, channel: str, payload: Any) -> None:
        self.messages.append((channel, payload))

    def emit(self, channel: str, payload: Any) -> Any:
        """Simulate the client sending a message to the server."""
        return self.handlers[channel](payload)

    def payloads(self, channel: str) -> list[Any]:
        return [payload for ch, payload in self.messages if ch == channel]

    def last(self, channel: str) -> Optional[Any]:
        found = self.payloads(channel)
        return found[-1] if found else None


class ScriptedAnalyzer:
    """Runs a per-query script (async callable taking hooks); records start order."""

    def __init__(self, scripts: Optional[dict[str, Callable[[Any], Awaitable[None]]]] = None):
        self.scripts = scripts or {}
        self.started: list[str] = []
        self.observed_running: list[int] = []
        self.running_counter: Optional[Callable[[], int]] = None

    async def analyze(self, request, hooks) -> None:
        self.started.append(request.op_query)
        if self.running_counter is not None:
            self.observed_running.append(self.running_counter())
        await asyncio.sleep(0)
        script = self.scripts.get(request.op_query)
        if script is not None:
            await script(hooks)


class BlockingAnalyzer:
    """Every analysis waits until release() is called."""

    def __init__(self):
        self.started: list[str] = []
        self._release: Optional[asyncio.Event] = None

    async def analyze(self, request, hooks) -> None:
        self.started.append(request.op_query)
        if self._release is None:
            self._release = asyncio.Event()
        await self._release.wait()

    def release(self) -> None:
        if self._release is None:
            self._release = asyncio.Event()
        self._release.set()


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def cache(store) -> ScopedCache:
    return ScopedCache(store, TEST_SCOPE)


@pytest.fixture()
def client() -> RecordingClient:
    return RecordingClient()


@pytest.fixture()
def notifier(client) -> Notifier:
    notifier = Notifier()
    notifier.subscribe(client)
    return notifier


@pytest.fixture()
def queue(notifier, cache) -> OperationQueue:
    return OperationQueue(notifier, SnapshotStore(cache), max_active=5)
