"""Consolidated subscription state shared by all subscribers."""

from __future__ import annotations

import logging
from collections import deque
from typing import TYPE_CHECKING, Iterable, Mapping

from .messages import CATEGORIES, Payload, subscribe_message

if TYPE_CHECKING:
    from .session import UpstreamSession


logger = logging.getLogger(__name__)


class SubscriptionLedger:
    """
    Union of every subscriber's desired symbols, plus the requests waiting for auth.

    The ledger is a plain union per category: an unsubscribe from any client
    removes the symbol for everyone. There is no per-client accounting.
    """

    def __init__(self):
        self.subscriptions: dict[str, set[str]] = {category: set() for category in CATEGORIES}
        self.pending: deque[Payload] = deque()

    def apply_client_request(self, action: str, categories: Mapping[str, Iterable[str]]) -> None:
        """
        Fold one subscribe/unsubscribe request into the aggregate sets.

        Applied regardless of upstream readiness so a later restore always
        reflects the latest desired state.

        Args:
            action: "subscribe" or "unsubscribe"
            categories: Symbols keyed by category; unknown categories are ignored
        """
        if action not in ("subscribe", "unsubscribe"):
            raise ValueError(f"Unsupported ledger action: {action!r}")

        for category, symbols in categories.items():
            target = self.subscriptions.get(category)
            if target is None:
                continue
            for symbol in symbols:
                if action == "subscribe":
                    target.add(symbol.upper())
                else:
                    target.discard(symbol.upper())

    async def route_or_queue(self, raw: Payload, session: UpstreamSession) -> bool:
        """
        Forward a raw request upstream when ready, otherwise queue it.

        Returns:
            True if the request was sent immediately, False if it was queued
        """
        if session.authenticated and await session.send(raw):
            return True

        logger.info("Queuing subscription request (waiting for auth)...")
        self.pending.append(raw)
        return False

    def drain_pending(self) -> list[Payload]:
        """Remove and return all queued requests in enqueue order."""
        drained = list(self.pending)
        self.pending.clear()
        return drained

    def requeue(self, payloads: list[Payload]) -> None:
        """Put unsent requests back at the front of the queue, order preserved."""
        self.pending.extendleft(reversed(payloads))

    def build_restore_message(self) -> str | None:
        """Single subscribe request covering every non-empty category, or None."""
        if not any(self.subscriptions.values()):
            return None
        return subscribe_message("subscribe", {
            category: sorted(symbols)
            for category, symbols in self.subscriptions.items()
        })

    def snapshot(self) -> dict[str, list[str]]:
        return {category: sorted(symbols) for category, symbols in self.subscriptions.items()}
