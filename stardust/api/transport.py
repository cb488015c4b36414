"""WebSocket transport: named message channels over one socket per client.

Frames are JSON objects ``{"channel": str, "payload": any}`` in both
directions. Outgoing frames go through a per-connection outbox drained by a
writer task, so send() can be called from synchronous code on the event loop
(broadcasts, scheduler callbacks) and still keeps message order.
"""

import asyncio
import json
import logging
import uuid
from typing import Any, Callable, Optional

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


def _client_ip(websocket: WebSocket) -> str:
    host = websocket.client.host if websocket.client else ""
    # IPv4-mapped IPv6 addresses, e.g. ::ffff:10.0.0.1
    if host.startswith("::ffff:"):
        host = host[len("::ffff:"):]
    return host


class WebSocketConnection:
    """One connected client, exposing on_message() / send()."""

    def __init__(self, websocket: WebSocket, uid: Optional[str] = None):
        self.websocket = websocket
        self.uid = uid or uuid.uuid4().hex[:20]
        self.client_ip = _client_ip(websocket)
        self._handlers: dict[str, Callable[[Any], Any]] = {}
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def __repr__(self) -> str:
        return f"WebSocketConnection({self.uid}, {self.client_ip})"

    def on_message(self, channel: str, handler: Callable[[Any], Any]) -> None:
        self._handlers[channel] = handler

    def send(self, channel: str, payload: Any) -> None:
        if self._closed:
            return
        self._outbox.put_nowait({"channel": channel, "payload": payload})

    async def serve(
        self,
        on_connect: Callable[["WebSocketConnection"], None],
        on_disconnect: Callable[["WebSocketConnection", str], None],
    ) -> None:
        """Accept the socket and pump messages until the client leaves."""
        await self.websocket.accept()
        writer = asyncio.create_task(self._write_loop(), name=f"ws-writer-{self.uid}")
        on_connect(self)

        reason = ""
        try:
            while True:
                text = await self.websocket.receive_text()
                self._dispatch(text)
        except WebSocketDisconnect as e:
            reason = f"code {e.code}"
        finally:
            self._closed = True
            on_disconnect(self, reason)
            writer.cancel()
            await asyncio.gather(writer, return_exceptions=True)

    def _dispatch(self, text: str) -> None:
        try:
            frame = json.loads(text)
        except json.JSONDecodeError:
            logger.warning(f"{self!r}: dropped malformed frame")
            return
        if not isinstance(frame, dict) or not isinstance(frame.get("channel"), str):
            logger.warning(f"{self!r}: dropped frame without a channel")
            return

        channel = frame["channel"]
        handler = self._handlers.get(channel)
        if handler is None:
            logger.warning(f"{self!r}: no handler for channel '{channel}'")
            return
        try:
            handler(frame.get("payload"))
        except Exception as e:
            logger.error(f"{self!r}: handler for '{channel}' failed: {e}", exc_info=True)

    async def _write_loop(self) -> None:
        try:
            while True:
                frame = await self._outbox.get()
                await self.websocket.send_json(frame)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._closed = True
            logger.info(f"{self!r}: stopped writing: {e}")
