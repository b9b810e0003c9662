import json
import queue
import socket
import threading
import time
from types import SimpleNamespace

import pytest
from websockets.exceptions import ConnectionClosed
from websockets.sync.server import serve

from relay_voice.history import ConversationHistory
from relay_voice.session import SessionManager, SessionState
from relay_voice.transport import ProviderConfig, WebSocketTransport


@pytest.fixture
def server():
    """Local WebSocket endpoint recording every JSON frame it receives"""
    received = queue.Queue()
    connections = queue.Queue()

    def handler(websocket):
        connections.put(websocket)
        try:
            for message in websocket:
                received.put(json.loads(message))
        except ConnectionClosed:
            pass

    ws_server = serve(handler, "127.0.0.1", 0)
    thread = threading.Thread(target=ws_server.serve_forever, daemon=True)
    thread.start()
    port = ws_server.socket.getsockname()[1]
    try:
        yield SimpleNamespace(
            url=f"ws://127.0.0.1:{port}",
            received=received,
            connections=connections,
        )
    finally:
        ws_server.shutdown()
        thread.join(2.0)


class CountingTransport(WebSocketTransport):
    def __init__(self):
        self.opened = []

    def open(self, config, on_message, on_close):
        connection = super().open(config, on_message, on_close)
        self.opened.append(connection)
        return connection


def _open(server, closes, messages=None, **config):
    config = ProviderConfig(url=server.url, **config)
    on_message = messages.append if messages is not None else (lambda text: None)
    return WebSocketTransport().open(config, on_message, lambda conn, reason: closes.append((conn, reason)))


def test_setup_frame_precedes_text(server):
    closes = []
    connection = _open(server, closes, instructions="Answer briefly.", language="en-GB")
    try:
        connection.send_text("hello")
        assert server.received.get(timeout=2.0) == {
            "type": "setup",
            "instructions": "Answer briefly.",
            "language": "en-GB",
        }
        assert server.received.get(timeout=2.0) == {"type": "text", "text": "hello"}
    finally:
        connection.close()


def test_no_setup_frame_without_instructions(server):
    closes = []
    connection = _open(server, closes)
    try:
        connection.send_text("hello")
        assert server.received.get(timeout=2.0) == {"type": "text", "text": "hello"}
    finally:
        connection.close()


def test_remote_messages_are_forwarded(server, wait_for):
    closes = []
    messages = []
    connection = _open(server, closes, messages)
    try:
        remote = server.connections.get(timeout=2.0)
        remote.send("welcome")
        remote.send(b"raw bytes")
        assert wait_for(lambda: messages == ["welcome", "raw bytes"])
    finally:
        connection.close()


def test_remote_close_is_reported_once(server, wait_for):
    closes = []
    connection = _open(server, closes)

    server.connections.get(timeout=2.0).close()

    assert wait_for(lambda: connection.closed)
    assert wait_for(lambda: len(closes) == 1)
    time.sleep(0.1)
    assert len(closes) == 1
    assert closes[0][0] is connection


def test_local_close_is_reported_once(server, wait_for):
    closes = []
    connection = _open(server, closes)

    connection.close()
    connection.close()

    assert wait_for(lambda: len(closes) == 1)
    time.sleep(0.1)
    assert closes == [(connection, None)]
    assert connection.closed


def test_unreachable_endpoint_raises():
    with socket.socket() as unused:
        unused.bind(("127.0.0.1", 0))
        port = unused.getsockname()[1]
    # Nothing listens on the port once the socket is closed
    config = ProviderConfig(url=f"ws://127.0.0.1:{port}", open_timeout=2.0)
    with pytest.raises(OSError):
        WebSocketTransport().open(config, lambda text: None, lambda conn, reason: None)


def test_session_close_makes_no_further_attempt(server, wait_for):
    statuses = []
    transport = CountingTransport()
    session = SessionManager(
        ProviderConfig(url=server.url), transport, on_status=statuses.append, backoff=0.05
    )

    assert session.connect()
    session.close()

    assert wait_for(lambda: transport.opened[0].closed)
    time.sleep(0.2)
    assert len(transport.opened) == 1
    assert session.state == SessionState.CLOSED
    assert [status.kind for status in statuses] == ["connecting", "connected", "closed"]


def test_session_recovers_from_server_drop(server, wait_for):
    statuses = []
    transport = CountingTransport()
    history = ConversationHistory()
    session = SessionManager(
        ProviderConfig(url=server.url),
        transport,
        on_status=statuses.append,
        backoff=0.05,
        history=history,
    )
    try:
        assert session.connect()
        session.record_turn("What's the weather?", "Sunny.")

        server.connections.get(timeout=2.0).close()

        assert wait_for(lambda: "reconnected" in [status.kind for status in statuses])
        assert session.state == SessionState.CONNECTED
        assert len(transport.opened) == 2
        context = server.received.get(timeout=2.0)
        assert context["type"] == "text"
        assert "[User]: What's the weather?\n[Assistant]: Sunny." in context["text"]
    finally:
        session.close()
