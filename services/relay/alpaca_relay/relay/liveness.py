"""Heartbeat probes for the upstream connection and every subscriber."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from websockets.exceptions import ConnectionClosed

from .clients import ClientRegistry, terminate
from .session import UpstreamSession


logger = logging.getLogger(__name__)


class LivenessMonitor:
    """
    Two independent ping loops sharing one interval.

    Clients get one interval to answer a ping with a pong before they are
    terminated. The upstream ping is fire-and-forget: losing the provider is
    detected by its close event, not by a missing pong.
    """

    def __init__(self, registry: ClientRegistry, session: UpstreamSession, interval: float):
        self.registry = registry
        self.session = session
        self.interval = interval
        self.tasks: list[asyncio.Task] = []
        self._pings: set[asyncio.Task] = set()

    def start(self) -> None:
        if self.tasks:
            logger.warning("Liveness monitor already running")
            return
        self.tasks = [
            asyncio.create_task(self._loop(self.probe_clients, "client"), name="heartbeat-clients"),
            asyncio.create_task(self._loop(self.probe_upstream, "upstream"), name="heartbeat-upstream"),
        ]
        logger.info(f"Liveness monitor started (interval {self.interval}s)")

    async def stop(self) -> None:
        for task in list(self._pings):
            task.cancel()
        for task in self.tasks:
            task.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks = []

    async def _loop(self, probe, name: str) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await probe()
            except Exception as e:
                logger.error(f"Error in {name} heartbeat: {e}", exc_info=True)

    async def probe_clients(self) -> int:
        """
        One client heartbeat tick.

        Pings are sent from their own tasks so one client with a full write
        buffer cannot delay the others or the next tick.

        Returns:
            Number of clients terminated for missing the previous pong
        """
        terminated = 0
        for entry in self.registry.entries():
            if not entry.is_alive:
                logger.warning(f"Client heartbeat timeout, terminating {entry.address}")
                terminate(entry.connection)
                self.registry.remove(entry.connection)
                terminated += 1
                continue

            entry.is_alive = False
            task = asyncio.create_task(self._ping_client(entry.connection))
            self._pings.add(task)
            task.add_done_callback(self._pings.discard)
        return terminated

    async def _ping_client(self, connection: Any) -> None:
        try:
            pong_waiter = await connection.ping()
        except ConnectionClosed:
            # The handler's close path removes it
            return
        pong_waiter.add_done_callback(self._pong_callback(connection))

    def _pong_callback(self, connection: Any):
        def on_pong(future: asyncio.Future) -> None:
            if not future.cancelled() and future.exception() is None:
                self.registry.mark_alive(connection)
        return on_pong

    async def probe_upstream(self) -> bool:
        """One upstream heartbeat tick. Returns whether a ping was sent."""
        return await self.session.ping()
