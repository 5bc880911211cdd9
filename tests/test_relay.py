import asyncio
import json

import pytest

from common import protocol
from fakes import FakeSocket
from server import config
from server.relay import SignalingRelay, send_json

A, B, C = "AAAAAAAAAA", "BBBBBBBBBB", "CCCCCCCCCC"


def msg(message_type, payload):
    return json.dumps({"type": message_type, "payload": payload})


def forward(sender, target, kind="offer", body=None):
    return msg("forward", {"from": sender, "to": target, "kind": kind, "payload": body or {"sdp": "x"}})


async def registered_pair(relay):
    a, b = FakeSocket(), FakeSocket()
    for handle, identity in ((a, A), (b, B)):
        relay.on_connect(handle)
        await relay.handle_message(handle, msg("register", {"identity": identity}))
    return a, b


def test_register_acknowledges_identity():
    async def scenario():
        relay = SignalingRelay()
        ws = FakeSocket()
        relay.on_connect(ws)
        await relay.handle_message(ws, msg("register", {"identity": A}))
        return relay, ws

    relay, ws = asyncio.run(scenario())
    [ack] = ws.of_type("register-ack")
    assert ack["identity"] == A
    assert ack["serverTime"].endswith("Z")
    assert relay.registry.resolve(A) is ws


@pytest.mark.parametrize("identity", ["short", "AAAAAAAAAA1", "AAAA-AAAAA", None, 1234567890])
def test_register_rejects_malformed_identity(identity):
    relay = SignalingRelay()
    ws = FakeSocket()
    asyncio.run(relay.handle_message(ws, msg("register", {"identity": identity})))
    [error] = ws.of_type("error")
    assert error["code"] == protocol.E_INVALID_IDENTITY
    assert len(relay.registry) == 0


def test_forward_is_delivered_with_sender_and_relay_time():
    async def scenario():
        relay = SignalingRelay()
        a, b = await registered_pair(relay)
        await relay.handle_message(a, forward(A, B, "offer", {"sdp": "v=0"}))
        return a, b

    a, b = asyncio.run(scenario())
    [delivered] = b.of_type("deliver")
    assert delivered["from"] == A
    assert delivered["kind"] == "offer"
    assert delivered["payload"] == {"sdp": "v=0"}
    assert "relayTime" in delivered
    assert a.of_type("deliver") == []


def test_unknown_target_gets_exactly_one_delivery_error():
    async def scenario():
        relay = SignalingRelay()
        a, b = await registered_pair(relay)
        await relay.handle_message(a, forward(A, "ZZZZZZZZZZ"))
        return a, b

    a, b = asyncio.run(scenario())
    assert a.of_type("delivery-error") == [{"targetIdentity": "ZZZZZZZZZZ", "reason": protocol.REASON_NOT_FOUND}]
    assert b.sent[1:] == []


def test_spoofed_sender_is_never_forwarded():
    async def scenario():
        relay = SignalingRelay()
        a, b = await registered_pair(relay)
        c = FakeSocket()
        relay.on_connect(c)
        await relay.handle_message(c, msg("register", {"identity": C}))
        await relay.handle_message(c, forward(A, B))
        return b, c

    b, c = asyncio.run(scenario())
    assert b.of_type("deliver") == []
    [error] = c.of_type("error")
    assert error["code"] == protocol.E_IDENTITY_MISMATCH


def test_unregistered_sender_is_rejected():
    async def scenario():
        relay = SignalingRelay()
        a, b = await registered_pair(relay)
        stranger = FakeSocket()
        await relay.handle_message(stranger, forward(A, B))
        return b, stranger

    b, stranger = asyncio.run(scenario())
    assert b.of_type("deliver") == []
    assert stranger.of_type("error")[0]["code"] == protocol.E_NOT_REGISTERED


@pytest.mark.parametrize("raw, code", [
    ("{not json", protocol.E_INVALID_JSON),
    ("[1, 2]", protocol.E_INVALID_JSON),
    (json.dumps({"type": "forward"}), protocol.E_INVALID_ENVELOPE),
    (json.dumps({"type": "launch", "payload": {}}), protocol.E_UNKNOWN_TYPE),
    (forward(A, B, kind="bogus"), protocol.E_INVALID_ENVELOPE),
    (forward(A, "nope"), protocol.E_INVALID_ENVELOPE),
    (msg("forward", {"from": A, "to": B, "kind": "offer", "payload": "text"}), protocol.E_INVALID_ENVELOPE),
])
def test_malformed_frames_are_reported_to_sender_only(raw, code):
    async def scenario():
        relay = SignalingRelay()
        a, b = await registered_pair(relay)
        await relay.handle_message(a, raw)
        return a, b

    a, b = asyncio.run(scenario())
    assert [e["code"] for e in a.of_type("error")] == [code]
    assert b.of_type("deliver") == []


def test_accept_forward_fills_in_sender():
    async def scenario():
        relay = SignalingRelay()
        a, b = await registered_pair(relay)
        await relay.handle_message(b, msg("accept-forward", {"to": A, "payload": {"type": "answer"}}))
        return a

    a = asyncio.run(scenario())
    [delivered] = a.of_type("deliver")
    assert delivered["from"] == B
    assert delivered["kind"] == "answer"


def test_accept_forward_only_carries_answers():
    async def scenario():
        relay = SignalingRelay()
        a, b = await registered_pair(relay)
        await relay.handle_message(b, msg("accept-forward", {"to": A, "kind": "offer", "payload": {}}))
        return a, b

    a, b = asyncio.run(scenario())
    assert a.of_type("deliver") == []
    assert b.of_type("error")[0]["code"] == protocol.E_INVALID_ENVELOPE


def test_failed_send_to_target_reports_delivery_error():
    async def scenario():
        relay = SignalingRelay()
        a, b = await registered_pair(relay)
        b.fail = True
        await relay.handle_message(a, forward(A, B))
        return a

    a = asyncio.run(scenario())
    assert a.of_type("delivery-error") == [{"targetIdentity": B, "reason": protocol.REASON_NOT_FOUND}]


def test_new_registration_supersedes_old_connection():
    async def scenario():
        relay = SignalingRelay()
        a, old = await registered_pair(relay)
        new = FakeSocket()
        relay.on_connect(new)
        await relay.handle_message(new, msg("register", {"identity": B}))
        await relay.handle_message(a, forward(A, B))
        # The evicted connection going away must not announce the identity as gone.
        await relay.on_disconnect(old)
        return relay, a, old, new

    relay, a, old, new = asyncio.run(scenario())
    assert old.of_type("superseded")[0]["identity"] == B
    assert len(new.of_type("deliver")) == 1
    assert old.of_type("deliver") == []
    assert a.of_type("peer-left") == []
    assert relay.registry.resolve(B) is new


def test_disconnect_broadcasts_peer_left(monkeypatch):
    monkeypatch.setattr(config, "BROADCAST_PEER_LEFT", True)

    async def scenario():
        relay = SignalingRelay()
        a, b = await registered_pair(relay)
        watcher = FakeSocket()
        relay.on_connect(watcher)
        await relay.on_disconnect(b)
        await relay.on_disconnect(b)
        return relay, a, watcher

    relay, a, watcher = asyncio.run(scenario())
    assert a.of_type("peer-left") == [{"identity": B, "reason": protocol.REASON_DISCONNECTED}]
    assert len(watcher.of_type("peer-left")) == 1
    assert relay.registry.resolve(B) is None
    assert relay.stats() == {"activeConnections": 2, "registeredUsers": 1}


def test_peer_left_broadcast_can_be_disabled(monkeypatch):
    monkeypatch.setattr(config, "BROADCAST_PEER_LEFT", False)

    async def scenario():
        relay = SignalingRelay()
        a, b = await registered_pair(relay)
        await relay.on_disconnect(b)
        return a

    a = asyncio.run(scenario())
    assert a.of_type("peer-left") == []


def test_send_json_never_raises_on_closed_connection():
    ws = FakeSocket(fail=True)
    assert asyncio.run(send_json(ws, "deliver", {})) is False
