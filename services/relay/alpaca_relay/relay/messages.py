"""
Wire formats for the upstream provider and subscriber connections.

Upstream frames are JSON arrays of objects discriminated by the ``T`` field.
Only the control messages the session needs for its own state machine are
decoded into typed variants; everything else is carried as ``Opaque`` and the
raw frame is always forwarded to subscribers untouched.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .errors import ProtocolParseError


CATEGORIES = ("trades", "quotes", "bars")

Payload = Union[str, bytes]


@dataclass
class AuthSuccess:
    """``{"T": "success", "msg": "authenticated"}``"""
    pass


@dataclass
class UpstreamError:
    """Error reported by the provider (bad credentials, symbol limits, ...)."""
    code: int | None
    msg: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class SubscriptionAck:
    """Provider confirmation listing the subscriptions now active upstream."""
    trades: list[str] = field(default_factory=list)
    quotes: list[str] = field(default_factory=list)
    bars: list[str] = field(default_factory=list)


@dataclass
class Opaque:
    """Any element the relay does not interpret (market data, other statuses)."""
    payload: Any


ControlMessage = Union[AuthSuccess, UpstreamError, SubscriptionAck, Opaque]


def _classify(item: Any) -> ControlMessage:
    if not isinstance(item, dict):
        return Opaque(item)

    kind = item.get("T")
    if kind == "success" and item.get("msg") == "authenticated":
        return AuthSuccess()
    if kind == "error":
        return UpstreamError(code=item.get("code"), msg=str(item.get("msg", "")), payload=item)
    if kind == "subscription":
        lists = {category: item.get(category) or [] for category in CATEGORIES}
        if not all(isinstance(symbols, list) for symbols in lists.values()):
            # Malformed ack: forwarded like any other unrecognized element
            return Opaque(item)
        return SubscriptionAck(**lists)
    return Opaque(item)


def decode_upstream(raw: Payload) -> list[ControlMessage]:
    """
    Decode an upstream frame into control message variants.

    Args:
        raw: Text or binary frame as received from the provider

    Returns:
        One variant per array element. A valid JSON value that is not an
        array yields an empty list.

    Raises:
        ProtocolParseError: If the frame is not valid UTF-8 JSON
    """
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        decoded = json.loads(raw)
    except (UnicodeDecodeError, ValueError) as e:
        raise ProtocolParseError(f"Invalid upstream frame: {e}") from e

    if not isinstance(decoded, list):
        return []
    return [_classify(item) for item in decoded]


class ClientRequest(BaseModel):
    """Request sent by a subscriber connection."""

    model_config = ConfigDict(extra="ignore")

    action: Literal["ping", "subscribe", "unsubscribe"]
    trades: list[str] | None = None
    quotes: list[str] | None = None
    bars: list[str] | None = None

    @field_validator("trades", "quotes", "bars", mode="before")
    @classmethod
    def _drop_non_lists(cls, value: Any) -> Any:
        # Non-list category values are ignored rather than rejecting the request
        return value if isinstance(value, list) else None

    def categories(self) -> dict[str, list[str]]:
        """Categories present in the request, keyed by name."""
        return {
            category: symbols
            for category in CATEGORIES
            if (symbols := getattr(self, category)) is not None
        }


def decode_client(raw: Payload) -> ClientRequest:
    """
    Parse a subscriber frame.

    Raises:
        ProtocolParseError: If the frame is not JSON or has an unknown action
    """
    try:
        return ClientRequest.model_validate_json(raw)
    except ValidationError as e:
        raise ProtocolParseError(f"Invalid client request: {e.error_count()} error(s)") from e


def auth_message(key: str, secret: str) -> str:
    return json.dumps({"action": "auth", "key": key, "secret": secret})


def subscribe_message(action: str, categories: dict[str, list[str]]) -> str:
    """Build a subscribe/unsubscribe request, omitting empty categories."""
    message: dict[str, Any] = {"action": action}
    for category in CATEGORIES:
        symbols = categories.get(category)
        if symbols:
            message[category] = list(symbols)
    return json.dumps(message)


def greeting(upstream_authenticated: bool) -> str:
    """One-element status payload sent to every newly accepted subscriber."""
    return json.dumps([{
        "T": "success",
        "msg": "connected",
        "upstreamStatus": "authenticated" if upstream_authenticated else "connecting",
    }])


def pong() -> str:
    return json.dumps({"type": "pong"})
