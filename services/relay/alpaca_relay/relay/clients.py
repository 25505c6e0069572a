"""Subscriber connections and fan-out of upstream frames."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from .messages import Payload, greeting


logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000


@dataclass
class ClientEntry:
    """A registered subscriber connection and its outbound queue."""
    connection: Any
    address: str = "N/A"
    is_alive: bool = True
    queue: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=DEFAULT_QUEUE_SIZE))
    writer: asyncio.Task | None = None
    dropped: int = 0


class ClientRegistry:
    """
    Tracks connected subscribers and broadcasts upstream frames to them.

    Every client has a bounded queue drained by its own writer task.
    ``broadcast`` only enqueues, so a slow or half-open client never holds up
    the upstream reader or the other clients; when its queue is full, frames
    are dropped for that client alone.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._clients: dict[Any, ClientEntry] = {}

    def __contains__(self, connection: Any) -> bool:
        return connection in self._clients

    @property
    def count(self) -> int:
        return len(self._clients)

    def entries(self) -> list[ClientEntry]:
        return list(self._clients.values())

    async def accept(self, connection: Any, upstream_authenticated: bool, address: str = "N/A") -> ClientEntry:
        """
        Register a new subscriber and tell it whether the feed is ready yet.

        Args:
            connection: Accepted WebSocket connection
            upstream_authenticated: Whether the upstream session is ready
            address: Client address for logging
        """
        entry = ClientEntry(
            connection=connection,
            address=address,
            queue=asyncio.Queue(maxsize=self.queue_size),
        )
        self._clients[connection] = entry
        logger.info(f"New client connected. IP: {address}, Total: {len(self._clients)}")

        try:
            await connection.send(greeting(upstream_authenticated))
        except ConnectionClosed as e:
            logger.warning(f"Failed to greet client {address}: {e}")

        entry.writer = asyncio.create_task(self._write_loop(entry), name=f"client-writer-{address}")
        return entry

    async def _write_loop(self, entry: ClientEntry) -> None:
        while True:
            message = await entry.queue.get()
            try:
                await entry.connection.send(message)
            except (ConnectionClosed, OSError) as e:
                # The handler's close path deregisters the client
                logger.error(f"Failed to send to client {entry.address}: {e}")
                return

    def remove(self, connection: Any) -> bool:
        """Deregister a connection. Returns False if it was not registered."""
        entry = self._clients.pop(connection, None)
        if entry is None:
            return False
        if entry.writer is not None:
            entry.writer.cancel()
        logger.info(f"Client disconnected. IP: {entry.address}, Total: {len(self._clients)}")
        return True

    def mark_alive(self, connection: Any) -> None:
        entry = self._clients.get(connection)
        if entry is not None:
            entry.is_alive = True

    def broadcast(self, raw: Payload) -> int:
        """
        Queue a frame for every open subscriber without waiting on any send.

        Returns:
            Number of clients the frame was queued for
        """
        queued = 0
        for entry in list(self._clients.values()):
            if entry.connection.state is not State.OPEN:
                continue
            try:
                entry.queue.put_nowait(raw)
            except asyncio.QueueFull:
                entry.dropped += 1
                if entry.dropped == 1 or entry.dropped % 1000 == 0:
                    logger.warning(f"Client {entry.address} is not keeping up, dropped {entry.dropped} frame(s)")
                continue
            queued += 1
        logger.debug(f"Broadcast queued for {queued}/{len(self._clients)} clients")
        return queued

    async def close_all(self, code: int = 1000, reason: str = "Server shutdown") -> None:
        """Close every registered connection (used on shutdown)."""
        entries = self.entries()
        for entry in entries:
            self.remove(entry.connection)
        await asyncio.gather(
            *(entry.connection.close(code, reason) for entry in entries),
            return_exceptions=True,
        )


def terminate(connection: Any) -> None:
    """Drop a connection without a closing handshake."""
    transport = getattr(connection, "transport", None)
    if transport is not None:
        transport.abort()
