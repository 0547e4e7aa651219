"""Frame transports: websocket (the conductor's native interface) and raw TCP."""

from __future__ import annotations

import socket
import struct
import threading
from typing import Protocol
from urllib.parse import urlsplit

from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI
from websockets.sync.client import ClientConnection
from websockets.sync.client import connect as ws_connect

from .errors import HolochainConnectionError, MalformedFrameError

__all__ = ["FrameTransport", "WebSocketTransport", "open_transport"]


class FrameTransport(Protocol):
    """Abstraction for framed, bidirectional byte streams."""

    def send_frame(self, payload: bytes) -> None:  # pragma: no cover - protocol definition
        ...

    def recv_frame(self) -> bytes:  # pragma: no cover - protocol definition
        ...

    def close(self) -> None:  # pragma: no cover - protocol definition
        ...


class WebSocketTransport:
    """Binary websocket messages, one frame per message."""

    def __init__(self, connection: ClientConnection) -> None:
        self._connection = connection

    @property
    def close_code(self) -> int | None:
        return self._connection.close_code

    def send_frame(self, payload: bytes) -> None:
        try:
            self._connection.send(payload)
        except ConnectionClosed as exc:
            raise HolochainConnectionError(f"Connection closed while sending: {exc}") from exc

    def recv_frame(self) -> bytes:
        try:
            message = self._connection.recv()
        except ConnectionClosed as exc:
            raise HolochainConnectionError(f"Connection closed: {exc}") from exc
        if isinstance(message, str):
            raise MalformedFrameError("websocket client: unknown message format (text frame)")
        return message

    def close(self) -> None:
        self._connection.close()


class _SocketTransport:
    """Length-prefixed framing over a raw TCP socket."""

    def __init__(self, sock: socket.socket) -> None:
        self._socket = sock
        self._closed = threading.Event()

    @property
    def close_code(self) -> int | None:
        return None

    def send_frame(self, payload: bytes) -> None:
        header = struct.pack(">I", len(payload))
        try:
            self._socket.sendall(header + payload)
        except OSError as exc:
            raise HolochainConnectionError(f"Connection closed while sending: {exc}") from exc

    def recv_frame(self) -> bytes:
        size_data = self._recv_exact(4)
        (size,) = struct.unpack(">I", size_data)
        return self._recv_exact(size)

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self._socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._socket.close()

    def _recv_exact(self, size: int) -> bytes:
        data = bytearray()
        remaining = size
        while remaining > 0:
            try:
                chunk = self._socket.recv(remaining)
            except OSError as exc:
                raise HolochainConnectionError(f"Connection closed while reading from socket: {exc}") from exc
            if not chunk:
                raise HolochainConnectionError("Connection closed while reading from socket")
            data.extend(chunk)
            remaining -= len(chunk)
        return bytes(data)


def open_transport(
    url: str,
    *,
    connect_timeout: float,
    origin: str | None = None,
) -> WebSocketTransport | _SocketTransport:
    """Open a transport for ``url``; ``ws``/``wss`` and ``tcp`` schemes are supported."""

    parts = urlsplit(url)
    failure = (
        f"could not connect to holochain conductor, please check that a conductor "
        f"service is running and available at {url}"
    )

    if parts.scheme in ("ws", "wss"):
        try:
            connection = ws_connect(
                url,
                open_timeout=connect_timeout,
                origin=origin,
                max_size=None,
            )
        except (OSError, TimeoutError, InvalidHandshake, InvalidURI) as exc:
            raise HolochainConnectionError(failure) from exc
        return WebSocketTransport(connection)

    if parts.scheme == "tcp":
        if not parts.hostname or parts.port is None:
            raise ValueError(f"tcp url must include a host and port: {url}")
        try:
            sock = socket.create_connection((parts.hostname, parts.port), timeout=connect_timeout)
        except OSError as exc:
            raise HolochainConnectionError(failure) from exc
        # Reads block until a frame or close; request timeouts are enforced per call.
        sock.settimeout(None)
        return _SocketTransport(sock)

    raise ValueError(f"unsupported url scheme {parts.scheme!r}; expected ws, wss or tcp")
