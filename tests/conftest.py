"""Shared fakes for the connection tests."""

from __future__ import annotations

import queue
import threading
from typing import Any, Callable

import pytest

from holochain_client.codec import Frame, FrameKind, decode_frame, decode_payload, encode_frame, encode_payload
from holochain_client.connection import Connection
from holochain_client.errors import HolochainConnectionError

_CLOSED = object()

Responder = Callable[[Frame, Any], Any]


class FakeTransport:
    """In-memory frame transport; tests push the frames the conductor would send."""

    def __init__(self) -> None:
        self.sent_frames: list[bytes] = []
        self.closed = False
        self.fail_sends = False
        self._incoming: "queue.Queue[Any]" = queue.Queue()
        self._sent = threading.Condition()

    # FrameTransport --------------------------------------------------------

    def send_frame(self, payload: bytes) -> None:
        if self.closed or self.fail_sends:
            raise HolochainConnectionError("simulated transport failure")
        with self._sent:
            self.sent_frames.append(payload)
            self._sent.notify_all()

    def recv_frame(self) -> bytes:
        item = self._incoming.get()
        if item is _CLOSED:
            raise HolochainConnectionError("Connection closed")
        if isinstance(item, BaseException):
            raise item
        return item

    def close(self) -> None:
        self.closed = True
        self._incoming.put(_CLOSED)

    # Test helpers ----------------------------------------------------------

    def push(self, data: bytes) -> None:
        self._incoming.put(data)

    def push_response(self, request_id: int, value: Any) -> None:
        self.push(encode_frame(Frame.response(request_id, encode_payload(value))))

    def push_signal(self, value: Any) -> None:
        self.push(encode_frame(Frame.event(encode_payload(value))))

    def drop(self) -> None:
        """Simulate the conductor closing the socket."""

        self._incoming.put(_CLOSED)

    def sent(self) -> list[Frame]:
        with self._sent:
            return [decode_frame(data) for data in self.sent_frames]

    def wait_for_frames(self, count: int, timeout: float = 2.0) -> list[Frame]:
        with self._sent:
            if not self._sent.wait_for(lambda: len(self.sent_frames) >= count, timeout=timeout):
                raise AssertionError(f"expected {count} frames, got {len(self.sent_frames)}")
        return self.sent()


class PeerTransport(FakeTransport):
    """Fake conductor that answers each request frame through ``responder``.

    ``responder`` receives the request frame and its decoded inner envelope and
    returns the inner response envelope. ``delay`` postpones the answer.
    """

    def __init__(self, responder: Responder, *, delay: float = 0.0) -> None:
        super().__init__()
        self.responder = responder
        self.delay = delay
        self.requests: list[Any] = []

    def send_frame(self, payload: bytes) -> None:
        super().send_frame(payload)
        frame = decode_frame(payload)
        if frame.kind is not FrameKind.REQUEST:
            return
        request = decode_payload(frame.payload)
        self.requests.append(request)
        reply = self.responder(frame, request)
        if self.delay > 0:
            timer = threading.Timer(self.delay, self.push_response, args=(frame.id, reply))
            timer.daemon = True
            timer.start()
        else:
            self.push_response(frame.id, reply)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def connection(transport: FakeTransport):
    conn = Connection(transport)
    yield conn
    conn.close()


@pytest.fixture
def make_peer() -> type[PeerTransport]:
    return PeerTransport
