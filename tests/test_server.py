import asyncio
import http
import json
import signal
import sys
from types import SimpleNamespace

import pytest
from websockets.datastructures import Headers

from common import protocol
from server import config
from server import server
from server.relay import SignalingRelay


@pytest.fixture(autouse=True)
def fresh_state(monkeypatch):
    monkeypatch.setattr(server, "RELAY", SignalingRelay())
    monkeypatch.setattr(server, "CONNECTION_ATTEMPTS", {})
    monkeypatch.setattr(server, "MESSAGE_TIMESTAMPS", {})


class ScriptedSocket:
    """Server-side connection that replays a fixed list of inbound frames."""

    def __init__(self, frames, address=("10.0.0.1", 5555)):
        self.remote_address = address
        self.frames = list(frames)
        self.sent = []
        self.closed_with = None

    async def send(self, text):
        self.sent.append(json.loads(text))

    async def close(self, code=1000, reason=""):
        self.closed_with = (code, reason)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self.frames or self.closed_with is not None:
            raise StopAsyncIteration
        return self.frames.pop(0)


def test_connection_rate_limit_window(monkeypatch):
    monkeypatch.setattr(config, "MAX_CONNECTIONS_PER_IP", 3)
    monkeypatch.setattr(config, "CONNECTION_WINDOW_SECONDS", 60)
    assert all(server.allow_connection("1.2.3.4", now=100 + i) for i in range(3))
    assert not server.allow_connection("1.2.3.4", now=110)
    assert server.allow_connection("5.6.7.8", now=110)
    # Old attempts fall out of the window.
    assert server.allow_connection("1.2.3.4", now=161)


def test_message_rate_limit_window(monkeypatch):
    monkeypatch.setattr(config, "MAX_MESSAGES_PER_CONNECTION", 2)
    monkeypatch.setattr(config, "MESSAGE_WINDOW_SECONDS", 5)
    ws = object()
    assert server.allow_message(ws, now=0)
    assert server.allow_message(ws, now=1)
    assert not server.allow_message(ws, now=2)
    assert server.allow_message(ws, now=5.5)


def test_health_status_document():
    status = server.health_status()
    assert status["status"] == "healthy"
    assert status["activeConnections"] == 0
    assert status["registeredUsers"] == 0
    assert status["uptime"] >= 0
    assert status["timestamp"].endswith("Z")


def respond(status, text):
    return SimpleNamespace(status=status, body=text,
                           headers=Headers([("Content-Type", "text/plain; charset=utf-8")]))


def test_process_request_serves_health_as_json():
    connection = SimpleNamespace(respond=respond)
    response = server.process_request(connection, SimpleNamespace(path="/api/health?probe=1"))
    assert response.status == http.HTTPStatus.OK
    assert response.headers["Content-Type"] == "application/json"
    assert json.loads(response.body)["status"] == "healthy"


def test_process_request_lets_websocket_upgrades_through():
    connection = SimpleNamespace(respond=respond)
    assert server.process_request(connection, SimpleNamespace(path="/")) is None


def test_connection_handler_relays_and_cleans_up():
    frames = [json.dumps({"type": "register", "payload": {"identity": "AAAAAAAAAA"}}), "{garbage"]
    ws = ScriptedSocket(frames)
    asyncio.run(server.connection_handler(ws))
    assert [m["type"] for m in ws.sent] == ["register-ack", "error"]
    assert ws.sent[1]["payload"]["code"] == protocol.E_INVALID_JSON
    assert server.RELAY.registry.resolve("AAAAAAAAAA") is None
    assert ws not in server.MESSAGE_TIMESTAMPS
    assert server.RELAY.connections == set()


def test_connection_handler_enforces_message_rate(monkeypatch):
    monkeypatch.setattr(config, "MAX_MESSAGES_PER_CONNECTION", 3)
    frames = [json.dumps({"type": "register", "payload": {"identity": "AAAAAAAAAA"}})] * 10
    ws = ScriptedSocket(frames)
    asyncio.run(server.connection_handler(ws))
    assert [m["type"] for m in ws.sent].count("register-ack") == 3
    assert ws.sent[-1]["payload"]["code"] == protocol.E_RATE_LIMITED
    assert ws.closed_with[0] == 1008


def test_connection_handler_refuses_over_limit_ip(monkeypatch):
    monkeypatch.setattr(config, "MAX_CONNECTIONS_PER_IP", 1)
    first = ScriptedSocket([])
    second = ScriptedSocket([json.dumps({"type": "register", "payload": {"identity": "AAAAAAAAAA"}})])
    asyncio.run(server.connection_handler(first))
    asyncio.run(server.connection_handler(second))
    assert second.closed_with[0] == 1008
    assert second.sent == []


def test_ssl_disabled_means_plain_ws(monkeypatch):
    monkeypatch.setattr(config, "ENABLE_SSL", False)
    assert server.build_ssl_context() is None


def test_missing_certificates_fall_back_to_plain_ws(monkeypatch, tmp_path):
    monkeypatch.setattr(config, "ENABLE_SSL", True)
    monkeypatch.setattr(config, "CERT_FILE", str(tmp_path / "missing-cert.pem"))
    monkeypatch.setattr(config, "KEY_FILE", str(tmp_path / "missing-key.pem"))
    assert server.build_ssl_context() is None


def test_start_server_returns_when_stopped(monkeypatch):
    monkeypatch.setattr(config, "ENABLE_SSL", False)

    async def scenario():
        stop = asyncio.get_running_loop().create_future()
        asyncio.get_running_loop().call_later(0.1, stop.set_result, None)
        await asyncio.wait_for(server.start_server("127.0.0.1", 0, stop), timeout=5)

    asyncio.run(scenario())


@pytest.mark.skipif(sys.platform == "win32", reason="event loop signal handlers need a Unix loop")
def test_sigterm_shuts_the_relay_down(monkeypatch):
    monkeypatch.setattr(config, "ENABLE_SSL", False)

    async def scenario():
        asyncio.get_running_loop().call_later(0.1, signal.raise_signal, signal.SIGTERM)
        await asyncio.wait_for(server.start_server("127.0.0.1", 0), timeout=5)

    asyncio.run(scenario())
