"""
Relay aggregate: owns the session, ledger, client registry and liveness monitor.

All state lives on one asyncio event loop, so mutations coming from client
handlers, the upstream reader and timers are serialized without locks.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from http import HTTPStatus
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed

from ..config import Settings
from .clients import ClientRegistry
from .errors import ProtocolParseError
from .ledger import SubscriptionLedger
from .liveness import LivenessMonitor
from .messages import Payload, decode_client, pong
from .session import Connector, UpstreamSession


logger = logging.getLogger(__name__)


def is_origin_allowed(origin: str | None, allowed: list[str] | None) -> bool:
    """None allows every origin; otherwise the Origin header must be listed."""
    if allowed is None:
        return True
    if not origin:
        return False
    return origin in allowed


def client_address(connection: Any) -> str:
    """X-Forwarded-For when behind a proxy, otherwise the socket peer."""
    request = getattr(connection, "request", None)
    if request is not None:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded
    remote = getattr(connection, "remote_address", None)
    if isinstance(remote, tuple) and remote:
        return str(remote[0])
    return str(remote) if remote else "N/A"


class Relay:
    """Single-upstream, multi-subscriber market data relay."""

    def __init__(self, settings: Settings, connector: Connector | None = None):
        self.settings = settings
        self.ledger = SubscriptionLedger()
        self.registry = ClientRegistry(settings.client_queue_size)
        self.session = UpstreamSession(settings, self.ledger, self.registry, connector=connector)
        self.monitor = LivenessMonitor(self.registry, self.session, settings.heartbeat_interval)
        self._server: Any | None = None
        self._stopped = False

    async def start(self) -> None:
        """Start serving subscribers, connect upstream and start heartbeats."""
        origins = self.settings.get_allowed_origins()
        logger.info(f"Starting relay on ws://{self.settings.host}:{self.settings.port}")
        logger.info(f"   Upstream: {self.settings.get_upstream_url()}")
        logger.info(f"   CORS: {'Restricted' if origins else 'All origins allowed'}")

        self._server = await websockets.serve(
            self.serve_client,
            self.settings.host,
            self.settings.port,
            process_request=self._check_origin,
            ping_interval=None,  # the liveness monitor pings clients
        )
        self.session.connect()
        self.monitor.start()

    async def stop(self) -> None:
        """Shut everything down. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Shutting down relay...")

        await self.monitor.stop()
        await self.session.shutdown()
        await self.registry.close_all(1000, "Server shutdown")

        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        logger.info("Relay shutdown complete")

    def _check_origin(self, connection: Any, request: Any) -> Any:
        origin = request.headers.get("Origin")
        if not is_origin_allowed(origin, self.settings.get_allowed_origins()):
            logger.warning(f"Connection rejected from origin: {origin}")
            return connection.respond(HTTPStatus.FORBIDDEN, "Forbidden: Origin not allowed\n")
        logger.info(f"Connection accepted from origin: {origin or 'N/A'}")
        return None

    async def serve_client(self, connection: Any) -> None:
        """Handler for one subscriber connection, from accept to close."""
        address = client_address(connection)
        await self.registry.accept(connection, self.session.authenticated, address=address)
        try:
            async for message in connection:
                await self.handle_client_message(connection, message)
        except ConnectionClosed as e:
            logger.error(f"Client error ({address}): {e}")
        finally:
            self.registry.remove(connection)

    async def handle_client_message(self, connection: Any, raw: Payload) -> None:
        """
        Dispatch one subscriber frame.

        Pings are answered locally and never reach the provider. Subscribe and
        unsubscribe requests update the ledger and are forwarded (or queued)
        as the raw text the client sent. Anything else is logged and dropped.
        """
        try:
            request = decode_client(raw)
        except ProtocolParseError as e:
            logger.error(f"Failed to parse client message: {e}")
            return

        if request.action == "ping":
            try:
                await connection.send(pong())
            except ConnectionClosed as e:
                logger.warning(f"Failed to answer client ping: {e}")
            return

        logger.debug(f"Client message: {raw!r}")
        self.ledger.apply_client_request(request.action, request.categories())
        await self.ledger.route_or_queue(raw, self.session)

    def status(self) -> dict[str, Any]:
        """Read-only snapshot for the health endpoint."""
        return {
            "upstreamConnected": self.session.connected,
            "authenticated": self.session.authenticated,
            "state": self.session.state.value,
            "clientCount": self.registry.count,
            "reconnectAttempts": self.session.reconnect_attempts,
            "subscriptions": self.ledger.snapshot(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
