"""
Tests for the relay hub: client message handling, origin policy and status.

Spans ledger, session and registry the way a subscriber connection does.
"""

import json

import pytest
from unittest.mock import MagicMock

from alpaca_relay.config import Settings
from alpaca_relay.relay.hub import Relay, client_address, is_origin_allowed

from fakes import FakeConnection


AUTH_OK = '[{"T": "success", "msg": "authenticated"}]'


def make_relay(**overrides):
    values = dict(alpaca_key_id="key", alpaca_secret_key="secret")
    values.update(overrides)
    return Relay(Settings(**values))


async def make_ready(relay):
    upstream = FakeConnection()
    await relay.session.on_open(upstream)
    await relay.session.on_message(AUTH_OK)
    return upstream


@pytest.mark.asyncio
async def test_ping_answered_locally():
    relay = make_relay()
    upstream = await make_ready(relay)
    sender, other = FakeConnection(), FakeConnection()
    await relay.registry.accept(sender, relay.session.authenticated)
    await relay.registry.accept(other, relay.session.authenticated)
    upstream_before = list(upstream.sent)

    await relay.handle_client_message(sender, '{"action": "ping"}')

    assert [json.loads(m) for m in sender.sent[1:]] == [{"type": "pong"}]
    assert len(other.sent) == 1  # greeting only
    assert upstream.sent == upstream_before
    assert list(relay.ledger.pending) == []


@pytest.mark.asyncio
async def test_subscribe_before_auth_is_queued_then_replayed():
    relay = make_relay()
    client = FakeConnection()
    await relay.registry.accept(client, relay.session.authenticated)
    raw = '{"action": "subscribe", "trades": ["AAPL"]}'

    await relay.handle_client_message(client, raw)
    assert list(relay.ledger.pending) == [raw]
    assert relay.ledger.snapshot()["trades"] == ["AAPL"]

    upstream = await make_ready(relay)

    assert upstream.sent[1] == raw
    assert json.loads(upstream.sent[2]) == {"action": "subscribe", "trades": ["AAPL"]}


@pytest.mark.asyncio
async def test_subscribe_when_ready_forwards_raw_text():
    relay = make_relay()
    upstream = await make_ready(relay)
    client = FakeConnection()
    raw = '{"action":"subscribe","quotes":["spy"]}'

    await relay.handle_client_message(client, raw)

    assert upstream.sent[-1] == raw
    assert relay.ledger.snapshot()["quotes"] == ["SPY"]


@pytest.mark.asyncio
async def test_two_clients_union_semantics():
    relay = make_relay()
    upstream = await make_ready(relay)
    a, b = FakeConnection(), FakeConnection()

    await relay.handle_client_message(a, '{"action": "subscribe", "trades": ["AAPL"]}')
    await relay.handle_client_message(b, '{"action": "unsubscribe", "trades": ["AAPL"]}')

    assert relay.ledger.snapshot()["trades"] == []
    assert len(upstream.sent) == 3  # auth + both requests


@pytest.mark.asyncio
async def test_malformed_and_unknown_messages_dropped():
    relay = make_relay()
    upstream = await make_ready(relay)
    client = FakeConnection()
    sent_before = list(upstream.sent)

    await relay.handle_client_message(client, "{not json")
    await relay.handle_client_message(client, '{"action": "auth", "key": "x", "secret": "y"}')
    await relay.handle_client_message(client, '["subscribe"]')

    assert upstream.sent == sent_before
    assert client.sent == []
    assert client.close_code is None


@pytest.mark.asyncio
async def test_serve_client_lifecycle():
    relay = make_relay()
    client = FakeConnection()
    client.feed('{"action": "ping"}')
    client.feed("garbage")
    client.feed('{"action": "subscribe", "bars": ["msft"]}')
    client.feed(None)

    await relay.serve_client(client)

    assert json.loads(client.sent[0])[0]["upstreamStatus"] == "connecting"
    assert json.loads(client.sent[1]) == {"type": "pong"}
    assert relay.ledger.snapshot()["bars"] == ["MSFT"]
    assert relay.registry.count == 0


@pytest.mark.asyncio
async def test_greeting_reports_authenticated_upstream():
    relay = make_relay()
    await make_ready(relay)
    client = FakeConnection()
    client.feed(None)

    await relay.serve_client(client)

    assert json.loads(client.sent[0])[0]["upstreamStatus"] == "authenticated"


@pytest.mark.asyncio
async def test_status_snapshot():
    relay = make_relay()
    await make_ready(relay)
    await relay.registry.accept(FakeConnection(), True)
    relay.ledger.apply_client_request("subscribe", {"trades": ["tsla", "AAPL"]})

    status = relay.status()

    assert status["upstreamConnected"] is True
    assert status["authenticated"] is True
    assert status["state"] == "ready"
    assert status["clientCount"] == 1
    assert status["reconnectAttempts"] == 0
    assert status["subscriptions"] == {"trades": ["AAPL", "TSLA"], "quotes": [], "bars": []}
    assert "timestamp" in status


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_closes_clients():
    relay = make_relay()
    upstream = await make_ready(relay)
    client = FakeConnection()
    await relay.registry.accept(client, True)

    await relay.stop()
    await relay.stop()

    assert upstream.close_code == 1000
    assert client.close_code == 1000
    assert relay.registry.count == 0
    assert relay.session.intentional_close is True


@pytest.mark.asyncio
async def test_origin_check_rejects_unlisted_origin():
    relay = make_relay(allowed_origins="https://a.example, https://b.example")
    connection = MagicMock()
    request = MagicMock()

    request.headers = {"Origin": "https://evil.example"}
    assert relay._check_origin(connection, request) is connection.respond.return_value
    status, body = connection.respond.call_args.args
    assert status == 403
    assert "Origin not allowed" in body

    request.headers = {"Origin": "https://b.example"}
    assert relay._check_origin(connection, request) is None


def test_is_origin_allowed():
    assert is_origin_allowed(None, None) is True
    assert is_origin_allowed("https://any.example", None) is True
    assert is_origin_allowed(None, ["https://a.example"]) is False
    assert is_origin_allowed("https://a.example", ["https://a.example"]) is True
    assert is_origin_allowed("https://c.example", ["https://a.example"]) is False


def test_client_address_prefers_forwarded_for():
    connection = MagicMock()
    connection.request.headers = {"X-Forwarded-For": "203.0.113.7"}
    assert client_address(connection) == "203.0.113.7"

    connection.request.headers = {}
    connection.remote_address = ("127.0.0.1", 50000)
    assert client_address(connection) == "127.0.0.1"


@pytest.mark.asyncio
async def test_client_queue_size_from_settings():
    relay = make_relay(client_queue_size=5)
    client = FakeConnection()

    entry = await relay.registry.accept(client, upstream_authenticated=False)

    assert entry.queue.maxsize == 5
    relay.registry.remove(client)
