"""App interface wrapper: authentication, signed zome calls and app signals."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from .codec import decode_payload
from .connection import Connection, ConnectionOptions, SIGNAL_EVENT, connect
from .errors import (
    AuthenticationError,
    ClientClosedWithPendingRequestsError,
    MalformedFrameError,
    SocketNotOpenError,
)
from .events import EventChannel
from .signing import NONCE_EXPIRY_WINDOW, CallZomeRequest, CellId, SigningCredentialsStore, sign_zome_call

logger = logging.getLogger(__name__)

APP_SIGNAL_EVENT = "app_signal"

__all__ = ["APP_SIGNAL_EVENT", "AppClient", "AppSignal", "decode_app_signal"]


@dataclass(frozen=True, slots=True)
class AppSignal:
    cell_id: CellId
    zome_name: str
    payload: Any


def decode_app_signal(signal: Any) -> AppSignal | None:
    """Decode an app signal, returning ``None`` for system signals."""

    if not isinstance(signal, Mapping):
        raise MalformedFrameError(f"unknown signal format: {signal!r}")
    if "System" in signal:
        return None
    encoded = signal.get("App")
    if not isinstance(encoded, Mapping):
        raise MalformedFrameError(f"unknown signal format: {signal!r}")
    cell_id = encoded["cell_id"]
    return AppSignal(
        cell_id=(bytes(cell_id[0]), bytes(cell_id[1])),
        zome_name=encoded["zome_name"],
        payload=decode_payload(encoded["signal"]),
    )


class AppClient:
    """Client for a conductor app interface.

    Zome calls are signed with the credentials held in ``signing_store``,
    which is usually shared with the ``AdminClient`` that authorized them.
    """

    def __init__(
        self,
        connection: Connection,
        *,
        signing_store: SigningCredentialsStore | None = None,
        expiry_window: float = NONCE_EXPIRY_WINDOW,
    ) -> None:
        self._connection = connection
        self.signing_store = signing_store if signing_store is not None else SigningCredentialsStore()
        self._expiry_window = expiry_window
        self._signals = EventChannel()
        self._unsubscribe = connection.on(SIGNAL_EVENT, self._handle_signal)

    @classmethod
    def connect(
        cls,
        url: str,
        token: bytes | list[int],
        options: ConnectionOptions | Mapping[str, Any] | None = None,
        *,
        signing_store: SigningCredentialsStore | None = None,
    ) -> "AppClient":
        """Connect and authenticate with ``token``.

        The conductor closes the socket when it rejects a token, so the
        connection is probed with ``app_info`` before it is handed out.
        """

        connection = connect(url, options)
        client = cls(connection, signing_store=signing_store)
        try:
            connection.authenticate(token)
            client.app_info()
        except (ClientClosedWithPendingRequestsError, SocketNotOpenError) as exc:
            connection.close()
            raise AuthenticationError(f"Conductor rejected the app authentication token: {exc}") from exc
        except Exception:
            connection.close()
            raise
        return client

    @property
    def connection(self) -> Connection:
        return self._connection

    def close(self) -> None:
        self._unsubscribe()
        self._connection.close()

    def __enter__(self) -> "AppClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def on_signal(self, listener: Callable[[AppSignal], None]) -> Callable[[], None]:
        return self._signals.on(APP_SIGNAL_EVENT, listener)

    def app_info(self, *, timeout: float | None = None) -> Any:
        return self._connection.request("app_info", None, timeout=timeout)

    def call_zome(self, request: CallZomeRequest, *, timeout: float | None = None) -> Any:
        """Sign ``request``, send it, and return the decoded zome function result."""

        signed = sign_zome_call(request, self.signing_store, expiry_window=self._expiry_window)
        result = self._connection.request("call_zome", signed.to_wire(), timeout=timeout)
        if not isinstance(result, (bytes, bytearray)):
            raise MalformedFrameError("Unexpected response type for call_zome")
        return decode_payload(bytes(result))

    def _handle_signal(self, signal: Any) -> None:
        app_signal = decode_app_signal(signal)
        if app_signal is None:
            return
        self._signals.emit(APP_SIGNAL_EVENT, app_signal)
