"""Single authenticated connection to the Alpaca market data stream."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.protocol import State

from ..config import Settings
from .errors import ConfigurationError, ProtocolParseError
from .ledger import SubscriptionLedger
from .messages import (
    AuthSuccess,
    Payload,
    SubscriptionAck,
    UpstreamError,
    auth_message,
    decode_upstream,
)

if TYPE_CHECKING:
    from .clients import ClientRegistry


logger = logging.getLogger(__name__)

Connector = Callable[..., Awaitable[Any]]


class SessionState(Enum):
    """Lifecycle of the upstream connection."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"


class UpstreamSession:
    """
    Owns the one provider connection and its auth/ready/reconnect state machine.

    Every inbound frame is classified for the few control messages the relay
    cares about and then handed verbatim to the broadcaster. Disconnects that
    were not requested through ``shutdown()`` are retried forever with
    exponential backoff.
    """

    def __init__(
        self,
        settings: Settings,
        ledger: SubscriptionLedger,
        broadcaster: ClientRegistry,
        connector: Connector | None = None,
    ):
        """
        Args:
            settings: Relay settings (endpoint, credentials, backoff bounds)
            ledger: Aggregate subscription state replayed after every auth
            broadcaster: Receives every upstream frame for fan-out
            connector: Coroutine factory opening the connection; defaults to
                ``websockets.connect``
        """
        self.settings = settings
        self.ledger = ledger
        self.broadcaster = broadcaster
        self._connector = connector or websockets.connect

        self.connection: Any | None = None
        self.state = SessionState.DISCONNECTED
        self.reconnect_attempts = 0
        self.intentional_close = False

        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None

    @property
    def authenticated(self) -> bool:
        return self.state is SessionState.READY

    @property
    def connected(self) -> bool:
        return self.connection is not None and self.connection.state is State.OPEN

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Start a connection attempt unless one is already in progress or open."""
        if self.intentional_close:
            logger.info("Upstream session is shut down, not connecting.")
            return
        if self.state is not SessionState.DISCONNECTED:
            logger.info("Upstream connection already exists, skipping...")
            return

        self._cancel_reconnect()
        self.state = SessionState.CONNECTING
        self._task = asyncio.create_task(self._run(), name="upstream-session")

    async def _run(self) -> None:
        url = self.settings.get_upstream_url()
        logger.info(f"Connecting to Alpaca: {url}")

        try:
            connection = await self._connector(
                url,
                open_timeout=10,
                close_timeout=10,
                ping_interval=None,  # the liveness monitor pings upstream
            )
        except asyncio.CancelledError:
            self.state = SessionState.DISCONNECTED
            raise
        except (WebSocketException, asyncio.TimeoutError, OSError) as e:
            self.on_transport_error(e)
            self.on_close(None, f"connection attempt failed: {e}")
            return

        if self.intentional_close:
            # shutdown() ran while the handshake was in flight
            await connection.close(1000, "Server shutdown")
            self.state = SessionState.DISCONNECTED
            return

        try:
            await self.on_open(connection)
            async for message in connection:
                await self.on_message(message)
        except ConnectionClosed as e:
            self.on_transport_error(e)
        except Exception as e:
            logger.error(f"Unexpected error in upstream session: {e}", exc_info=True)
            await connection.close(1011, "Internal error")
        finally:
            if self.connection is connection:
                self.on_close(connection.close_code, connection.close_reason)

    async def on_open(self, connection: Any) -> None:
        """Transport is open: authenticate with configured credentials."""
        self.connection = connection
        self.state = SessionState.AUTHENTICATING
        self.reconnect_attempts = 0
        logger.info("Connected to Alpaca WebSocket")

        try:
            key, secret = self.settings.require_credentials()
        except ConfigurationError as e:
            # Connection stays open; the session never reaches READY
            logger.error(f"Alpaca API credentials not configured! {e}")
            return

        logger.info("Sending authentication...")
        await connection.send(auth_message(key, secret))

    async def on_message(self, raw: Payload) -> None:
        """
        Classify an upstream frame, then forward it verbatim to every client.

        Forwarding happens whatever the classification outcome, including
        frames that fail to decode.
        """
        try:
            try:
                controls = decode_upstream(raw)
            except ProtocolParseError as e:
                logger.error(f"Failed to parse upstream message: {e}")
                controls = []

            for control in controls:
                if isinstance(control, AuthSuccess):
                    await self._on_authenticated()
                elif isinstance(control, UpstreamError):
                    logger.error(f"Alpaca error: {control.msg} (code={control.code})")
                elif isinstance(control, SubscriptionAck):
                    logger.info(
                        f"Subscription confirmed: trades={control.trades} "
                        f"quotes={control.quotes} bars={control.bars}"
                    )
        finally:
            self.broadcaster.broadcast(raw)

    async def _on_authenticated(self) -> None:
        if self.connection is None:
            return

        logger.info("Alpaca authentication successful")
        self.state = SessionState.READY
        self.reconnect_attempts = 0

        queued = self.ledger.drain_pending()
        for index, payload in enumerate(queued):
            if not await self.send(payload):
                unsent = queued[index:]
                self.ledger.requeue(unsent)
                logger.warning(f"Connection lost while draining, {len(unsent)} request(s) re-queued")
                return
            logger.info(f"Sent queued message: {payload!r}")

        restore = self.ledger.build_restore_message()
        if restore is not None:
            logger.info("Restoring subscriptions after (re)connect...")
            await self.send(restore)

    def on_close(self, code: int | None, reason: str | None) -> None:
        logger.warning(f"Alpaca connection closed. Code: {code}, Reason: {reason or 'N/A'}")
        self.connection = None
        self.state = SessionState.DISCONNECTED

        if not self.intentional_close:
            self.schedule_reconnect()

    def on_transport_error(self, error: BaseException) -> None:
        # The close path that follows decides whether to reconnect
        logger.error(f"Alpaca connection error: {error}")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, payload: Payload) -> bool:
        """
        Send directly to the provider.

        Returns:
            True if the session was ready and the frame was written. Callers
            are responsible for queuing on False.
        """
        if self.state is not SessionState.READY or self.connection is None:
            return False
        try:
            await self.connection.send(payload)
        except ConnectionClosed as e:
            logger.warning(f"Failed to send to Alpaca: {e}")
            return False
        return True

    async def ping(self) -> bool:
        """Protocol-level ping while ready. The pong is not tracked."""
        if self.state is not SessionState.READY or self.connection is None:
            return False
        try:
            await self.connection.ping()
        except ConnectionClosed as e:
            logger.warning(f"Failed to ping Alpaca: {e}")
            return False
        return True

    # ------------------------------------------------------------------
    # Reconnect policy
    # ------------------------------------------------------------------

    def next_reconnect_delay(self) -> float:
        """min(initial * multiplier ** attempts, max), in seconds."""
        max_delay = self.settings.reconnect_max_delay
        try:
            delay = self.settings.reconnect_initial_delay * self.settings.reconnect_multiplier ** self.reconnect_attempts
        except OverflowError:
            return max_delay
        return min(delay, max_delay)

    def schedule_reconnect(self) -> float:
        """
        Arm the single reconnect timer, replacing any pending one.

        Returns:
            Delay in seconds before ``connect()`` is called
        """
        self._cancel_reconnect()

        delay = self.next_reconnect_delay()
        self.reconnect_attempts += 1
        logger.info(f"Scheduling reconnect in {delay:.1f}s (attempt #{self.reconnect_attempts})")

        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay, self._fire_reconnect)
        return delay

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        self.connect()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    async def shutdown(self) -> None:
        """Close for good. Safe to call more than once."""
        # Flag first so a racing close or timer cannot schedule another attempt
        self.intentional_close = True
        self._cancel_reconnect()

        connection, task = self.connection, self._task
        if connection is not None:
            await connection.close(1000, "Server shutdown")
        elif task is not None and not task.done():
            task.cancel()

        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

        self.connection = None
        self.state = SessionState.DISCONNECTED
