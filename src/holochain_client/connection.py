"""Request multiplexer for a single conductor connection."""

from __future__ import annotations

import heapq
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator, Mapping, Optional, TypeVar

from .codec import Frame, FrameKind, decode_frame, decode_payload, encode_frame, encode_payload, tagged, untag
from .errors import (
    ClientClosedWithPendingRequestsError,
    HolochainConnectionError,
    MalformedFrameError,
    RequestTimeoutError,
    ResponseCanceledError,
    SocketNotOpenError,
    classify_response,
)
from .events import EventChannel, Listener
from .transport import FrameTransport, open_transport

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0
DEFAULT_CONNECT_TIMEOUT = 5.0
SIGNAL_EVENT = "signal"

__all__ = [
    "Connection",
    "ConnectionOptions",
    "RetryOptions",
    "RequestState",
    "DEFAULT_TIMEOUT",
    "DEFAULT_CONNECT_TIMEOUT",
    "SIGNAL_EVENT",
    "connect",
]


T = TypeVar("T")


def _config_value(config: Mapping[str, Any], key: str, default: Any) -> Any:
    """Look up ``key`` in snake_case first, then in its camelCase spelling."""

    value = config.get(key)
    if value is None:
        head, *rest = key.split("_")
        value = config.get(head + "".join(part.title() for part in rest))
    return default if value is None else value


@dataclass(slots=True)
class RetryOptions:
    """How often, and how patiently, to retry opening the transport.

    Only the connection attempt is retried. Requests never are, since the
    conductor may already have acted on one that timed out.
    """

    attempts: int = 1
    initial_delay_ms: int = 100
    max_delay_ms: int = 1_000

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("retry attempts must be at least 1")
        if min(self.initial_delay_ms, self.max_delay_ms) < 0:
            raise ValueError("retry delays cannot be negative")

    @classmethod
    def from_config(cls, config: RetryOptions | Mapping[str, Any] | None) -> "RetryOptions":
        if config is None:
            return cls()
        if isinstance(config, RetryOptions):
            return cls(config.attempts, config.initial_delay_ms, config.max_delay_ms)
        return cls(
            attempts=int(_config_value(config, "attempts", 1)),
            initial_delay_ms=int(_config_value(config, "initial_delay_ms", 100)),
            max_delay_ms=int(_config_value(config, "max_delay_ms", 1_000)),
        )

    def delays(self) -> Iterator[float]:
        """Seconds to wait before each retry: doubling, capped at ``max_delay_ms``."""

        delay_ms = min(self.initial_delay_ms, self.max_delay_ms)
        for _ in range(self.attempts - 1):
            yield delay_ms / 1000.0
            delay_ms = min(delay_ms * 2, self.max_delay_ms)


@dataclass(slots=True)
class ConnectionOptions:
    """Connection-wide settings. Durations are in seconds."""

    default_timeout: float = DEFAULT_TIMEOUT
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    origin: str | None = None
    retry: RetryOptions = field(default_factory=RetryOptions)

    def __post_init__(self) -> None:
        if self.default_timeout <= 0:
            raise ValueError("default_timeout must be greater than zero")
        if self.connect_timeout <= 0:
            raise ValueError("connect_timeout must be greater than zero")

    @classmethod
    def from_config(cls, config: ConnectionOptions | Mapping[str, Any] | None) -> "ConnectionOptions":
        if config is None:
            return cls()
        if isinstance(config, ConnectionOptions):
            return cls(
                default_timeout=config.default_timeout,
                connect_timeout=config.connect_timeout,
                origin=config.origin,
                retry=RetryOptions.from_config(config.retry),
            )
        return cls(
            default_timeout=float(_config_value(config, "default_timeout", DEFAULT_TIMEOUT)),
            connect_timeout=float(_config_value(config, "connect_timeout", DEFAULT_CONNECT_TIMEOUT)),
            origin=config.get("origin"),
            retry=RetryOptions.from_config(config.get("retry")),
        )


class RequestState(str, Enum):
    SENT = "sent"
    RESOLVED = "resolved"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class _PendingRequest:
    request_id: int
    tag: str | None
    timeout: float
    future: Future
    state: RequestState = RequestState.SENT

    def settle(self, state: RequestState, *, result: Any = None, error: BaseException | None = None) -> None:
        self.state = state
        if error is not None:
            self.future.set_exception(error)
        else:
            self.future.set_result(result)


class _DeadlineScheduler:
    """One thread firing ``callback(key)`` for each key whose deadline passes.

    Deadlines live in a heap; ``cancel`` forgets a key and its heap entry is
    skipped when it surfaces.
    """

    def __init__(self, callback: Callable[[int], None], *, name: str) -> None:
        self._callback = callback
        self._heap: list[tuple[float, int]] = []
        self._deadlines: dict[int, float] = {}
        self._condition = threading.Condition()
        self._stopped = False
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    def schedule(self, key: int, delay: float) -> None:
        deadline = time.monotonic() + delay
        with self._condition:
            if self._stopped:
                return
            self._deadlines[key] = deadline
            heapq.heappush(self._heap, (deadline, key))
            if self._heap[0][1] == key:
                self._condition.notify()

    def cancel(self, key: int) -> None:
        with self._condition:
            self._deadlines.pop(key, None)

    def stop(self) -> None:
        with self._condition:
            self._stopped = True
            self._heap.clear()
            self._deadlines.clear()
            self._condition.notify()

    def _next_due(self) -> int | None:
        with self._condition:
            while not self._stopped:
                if not self._heap:
                    self._condition.wait()
                    continue
                deadline, key = self._heap[0]
                if self._deadlines.get(key) != deadline:
                    heapq.heappop(self._heap)
                    continue
                remaining = deadline - time.monotonic()
                if remaining > 0:
                    self._condition.wait(remaining)
                    continue
                heapq.heappop(self._heap)
                del self._deadlines[key]
                return key
            return None

    def _run(self) -> None:
        while True:
            key = self._next_due()
            if key is None:
                return
            try:
                self._callback(key)
            except Exception:
                logger.exception("Deadline callback for %s raised", key)


class Connection:
    """Correlates concurrent requests with responses over one frame transport.

    Frames are read on a background thread. Responses are matched to their
    request by id, and every request still pending when the transport closes
    is failed. Push messages are handed to a single dispatcher thread so a
    listener never holds up the reader.
    """

    def __init__(
        self,
        transport: FrameTransport,
        *,
        options: ConnectionOptions | Mapping[str, Any] | None = None,
    ) -> None:
        self._transport = transport
        self._options = ConnectionOptions.from_config(options)
        self._lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._pending: dict[int, _PendingRequest] = {}
        self._next_id = 0
        self._closed = False
        self._close_reason: str | None = None
        self._events = EventChannel(decode=decode_payload)
        # One worker keeps signals in arrival order.
        self._dispatcher = ThreadPoolExecutor(max_workers=1, thread_name_prefix="holochain-client-events")
        self._deadlines = _DeadlineScheduler(self._expire, name="holochain-client-timeouts")
        self._reader = threading.Thread(target=self._read_loop, name="holochain-client-reader", daemon=True)
        self._reader.start()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def options(self) -> ConnectionOptions:
        return self._options

    @property
    def is_open(self) -> bool:
        return not self._closed

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def on(self, name: str, listener: Listener) -> Callable[[], None]:
        """Subscribe to push messages; ``"signal"`` carries every decoded signal frame.

        Listeners are called one at a time, in arrival order, on the
        connection's event thread. They may issue requests on this connection.
        """

        return self._events.on(name, listener)

    def send(self, payload: Any, *, timeout: float | None = None) -> Future:
        """Send ``payload`` as a request and return a future for the decoded response.

        The future fails with ``RequestTimeoutError`` after ``timeout`` seconds
        (the connection default when omitted) and with
        ``ClientClosedWithPendingRequestsError`` if the connection closes first.
        """

        if timeout is None:
            timeout = self._options.default_timeout
        if timeout <= 0:
            raise ValueError("timeout must be greater than zero")
        tag = payload.get("type") if isinstance(payload, Mapping) else None
        data = encode_payload(payload)

        with self._lock:
            if self._closed:
                raise SocketNotOpenError()
            request_id = self._next_id
            self._next_id += 1
            future: Future = Future()
            # Callers cannot cancel; the request settles via response, timeout or close.
            future.set_running_or_notify_cancel()
            pending = _PendingRequest(request_id=request_id, tag=tag, timeout=timeout, future=future)
            self._pending[request_id] = pending

        self._deadlines.schedule(request_id, timeout)
        try:
            self._write(encode_frame(Frame.request(request_id, data)))
        except SocketNotOpenError:
            with self._lock:
                self._pending.pop(request_id, None)
            self._deadlines.cancel(request_id)
            raise
        return pending.future

    def request(self, tag: str, value: Any = None, *, timeout: float | None = None) -> Any:
        """Issue the ``tag`` operation and return its response value.

        Errors reported by the conductor are raised as ``HolochainError``.
        """

        response = self.send(tagged(tag, value), timeout=timeout).result()
        return classify_response(untag(response))

    def emit_signal(self, data: Any) -> None:
        """Send a signal to the conductor; there is no response."""

        self._ensure_open()
        self._write(encode_frame(Frame.event(encode_payload(data))))

    def authenticate(self, token: bytes | list[int]) -> None:
        """Present an app authentication token; must be the first frame sent."""

        self._ensure_open()
        payload = encode_payload({"token": bytes(token)})
        self._write(encode_frame(Frame(kind=FrameKind.AUTHENTICATE, payload=payload)))

    def close(self) -> None:
        self._shutdown("Connection closed by client")
        self._transport.close()
        if threading.current_thread() is not self._reader:
            self._reader.join(timeout=1.0)
        # Signals already queued are still delivered.
        self._dispatcher.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._closed:
            raise SocketNotOpenError()

    def _write(self, data: bytes) -> None:
        try:
            with self._send_lock:
                self._transport.send_frame(data)
        except HolochainConnectionError as exc:
            raise SocketNotOpenError(str(exc)) from exc

    def _expire(self, request_id: int) -> None:
        with self._lock:
            pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        logger.debug("Request %s (%s) timed out after %ss", request_id, pending.tag, pending.timeout)
        pending.settle(RequestState.TIMED_OUT, error=RequestTimeoutError(pending.tag, pending.timeout))

    def _read_loop(self) -> None:
        reason = "Connection closed by conductor"
        try:
            while not self._closed:
                try:
                    data = self._transport.recv_frame()
                except MalformedFrameError:
                    logger.warning("Discarding undecodable message", exc_info=True)
                    continue
                except (HolochainConnectionError, OSError) as exc:
                    reason = str(exc) or reason
                    break

                try:
                    frame = decode_frame(data)
                except MalformedFrameError:
                    logger.warning("Discarding malformed frame", exc_info=True)
                    continue

                if frame.kind is FrameKind.RESPONSE:
                    self._handle_response(frame)
                elif frame.kind is FrameKind.EVENT:
                    self._handle_event(frame)
                else:
                    logger.warning("Got unexpected %s frame from conductor", frame.kind.value)
        finally:
            code = getattr(self._transport, "close_code", None)
            if code is not None:
                reason = f"{reason}. Close event code: {code}"
            self._shutdown(reason)
            self._dispatcher.shutdown(wait=False)

    def _handle_response(self, frame: Frame) -> None:
        with self._lock:
            pending = self._pending.pop(frame.id, None)
        if pending is None:
            logger.warning("Got response with no matching request. id=%s", frame.id)
            return
        self._deadlines.cancel(pending.request_id)

        if not frame.payload:
            pending.settle(RequestState.CANCELLED, error=ResponseCanceledError(pending.request_id))
            return
        try:
            value = decode_payload(frame.payload)
        except MalformedFrameError as exc:
            pending.settle(RequestState.RESOLVED, error=exc)
            return
        pending.settle(RequestState.RESOLVED, result=value)

    def _handle_event(self, frame: Frame) -> None:
        if frame.payload is None:
            logger.warning("Received a signal without data")
            return
        try:
            self._dispatcher.submit(self._events.emit, SIGNAL_EVENT, frame.payload)
        except RuntimeError:
            logger.debug("Dropping signal received after close")

    def _shutdown(self, reason: str) -> None:
        with self._lock:
            already_closed = self._closed
            self._closed = True
            if self._close_reason is None:
                self._close_reason = reason
            pending, self._pending = self._pending, {}
        self._deadlines.stop()
        if not already_closed:
            logger.debug("Connection closed: %s", reason)
        for request in sorted(pending.values(), key=lambda item: item.request_id):
            request.settle(
                RequestState.CANCELLED,
                error=ClientClosedWithPendingRequestsError(request.request_id, self._close_reason),
            )


def _run_with_retry(
    operation: Callable[[], T],
    retry: RetryOptions,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation``, retrying ``HolochainConnectionError`` per ``retry``."""

    for attempt, delay in enumerate(retry.delays(), start=1):
        try:
            return operation()
        except HolochainConnectionError as exc:
            logger.debug("Connection attempt %s/%s failed: %s", attempt, retry.attempts, exc)
        if delay > 0:
            sleep(delay)
    return operation()


def connect(
    url: str,
    options: ConnectionOptions | Mapping[str, Any] | None = None,
    *,
    opener: Optional[Callable[..., FrameTransport]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Connection:
    """Open a connection to the conductor interface at ``url``."""

    resolved = ConnectionOptions.from_config(options)
    open_fn = opener or open_transport

    def open_once() -> FrameTransport:
        return open_fn(url, connect_timeout=resolved.connect_timeout, origin=resolved.origin)

    transport = _run_with_retry(open_once, resolved.retry, sleep=sleep)
    logger.debug("Connected to %s", url)
    return Connection(transport, options=resolved)
