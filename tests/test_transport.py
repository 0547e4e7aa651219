"""Tests for the frame transports."""

from __future__ import annotations

import socket
import struct

import pytest
from websockets.exceptions import ConnectionClosedOK

from holochain_client.errors import HolochainConnectionError, MalformedFrameError
from holochain_client.transport import WebSocketTransport, _SocketTransport, open_transport


class StubWebSocket:
    def __init__(self, messages: list) -> None:
        self.messages = messages
        self.sent: list[bytes] = []
        self.close_code: int | None = None

    def send(self, payload: bytes) -> None:
        if self.close_code is not None:
            raise ConnectionClosedOK(None, None)
        self.sent.append(payload)

    def recv(self):
        if not self.messages:
            self.close_code = 1000
            raise ConnectionClosedOK(None, None)
        return self.messages.pop(0)

    def close(self) -> None:
        self.close_code = 1000


def test_socket_transport_length_prefixes_frames() -> None:
    left, right = socket.socketpair()
    sender, receiver = _SocketTransport(left), _SocketTransport(right)
    try:
        sender.send_frame(b"hello")
        sender.send_frame(b"")

        assert receiver.recv_frame() == b"hello"
        assert receiver.recv_frame() == b""
    finally:
        sender.close()
        receiver.close()


def test_socket_transport_reads_partial_writes() -> None:
    left, right = socket.socketpair()
    receiver = _SocketTransport(right)
    try:
        left.sendall(struct.pack(">I", 6) + b"abc")
        left.sendall(b"def")

        assert receiver.recv_frame() == b"abcdef"
    finally:
        left.close()
        receiver.close()


def test_socket_transport_reports_peer_close() -> None:
    left, right = socket.socketpair()
    receiver = _SocketTransport(right)
    left.close()

    with pytest.raises(HolochainConnectionError):
        receiver.recv_frame()
    receiver.close()
    receiver.close()


def test_websocket_transport_passes_binary_messages() -> None:
    stub = StubWebSocket([b"\x81\xa1a\x01"])
    transport = WebSocketTransport(stub)  # type: ignore[arg-type]

    transport.send_frame(b"out")

    assert stub.sent == [b"out"]
    assert transport.recv_frame() == b"\x81\xa1a\x01"


def test_websocket_transport_rejects_text_messages() -> None:
    transport = WebSocketTransport(StubWebSocket(["not binary"]))  # type: ignore[arg-type]

    with pytest.raises(MalformedFrameError):
        transport.recv_frame()


def test_websocket_transport_translates_close() -> None:
    stub = StubWebSocket([])
    transport = WebSocketTransport(stub)  # type: ignore[arg-type]

    with pytest.raises(HolochainConnectionError):
        transport.recv_frame()
    assert transport.close_code == 1000
    with pytest.raises(HolochainConnectionError):
        transport.send_frame(b"late")


def test_open_transport_rejects_unknown_scheme() -> None:
    with pytest.raises(ValueError):
        open_transport("http://localhost:1234", connect_timeout=1.0)


def test_open_transport_reports_refused_tcp_connection() -> None:
    probe = socket.socket()
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()

    with pytest.raises(HolochainConnectionError) as exc:
        open_transport(f"tcp://127.0.0.1:{port}", connect_timeout=1.0)

    assert "could not connect to holochain conductor" in str(exc.value)
