"""Exception types raised by the Holochain client and the response classifier."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

ERROR_TAG = "error"

__all__ = [
    "ERROR_TAG",
    "HolochainClientError",
    "HolochainConnectionError",
    "SocketNotOpenError",
    "ClientClosedWithPendingRequestsError",
    "RequestTimeoutError",
    "AuthenticationError",
    "ResponseCanceledError",
    "MalformedFrameError",
    "UnknownFrameKindError",
    "HolochainError",
    "SigningError",
    "NoSigningCredentialsError",
    "RandomnessUnavailableError",
    "SigningWindowExpiredError",
    "classify_response",
]


class HolochainClientError(RuntimeError):
    """Base class for every error raised by this package."""


class HolochainConnectionError(HolochainClientError):
    """Raised when the connection to the conductor is disrupted."""


class SocketNotOpenError(HolochainConnectionError):
    """Raised when a request is issued on a connection that is not open."""

    def __init__(self, message: str = "Socket is not open") -> None:
        super().__init__(message)


class ClientClosedWithPendingRequestsError(HolochainConnectionError):
    """Raised for every in-flight request when the connection goes away."""

    def __init__(self, request_id: int, reason: str | None = None) -> None:
        self.request_id = request_id
        self.reason = reason
        message = f"Websocket closed with pending requests. Request id: {request_id}"
        if reason:
            message = f"{message}. {reason}"
        super().__init__(message)


class RequestTimeoutError(HolochainConnectionError):
    """Raised when no response arrives within the configured duration."""

    def __init__(self, tag: str | None, timeout: float) -> None:
        self.tag = tag
        self.timeout = timeout
        super().__init__(f"Timed out in {timeout * 1000:.0f}ms: {tag or 'request'}")


class AuthenticationError(HolochainConnectionError):
    """Raised when the conductor drops a connection after authentication."""

    name = "InvalidTokenError"

    def __init__(self, message: str = "Authentication token was rejected") -> None:
        super().__init__(message)


class ResponseCanceledError(HolochainClientError):
    """Raised when the responder answers a request with no data."""

    def __init__(self, request_id: int) -> None:
        self.request_id = request_id
        super().__init__(f"Response canceled by responder. Request id: {request_id}")


class MalformedFrameError(HolochainClientError):
    """Raised when bytes do not decode to a well-formed envelope."""


class UnknownFrameKindError(MalformedFrameError):
    """Raised when an envelope carries a kind tag this client does not know."""

    def __init__(self, kind: Any) -> None:
        self.kind = kind
        super().__init__(f"Unknown frame kind: {kind!r}")


@dataclass(slots=True)
class HolochainError(HolochainClientError):
    """Represents errors reported by the conductor in a response."""

    name: str
    message: str

    def __str__(self) -> str:  # pragma: no cover - trivial repr
        return f"{self.name}: {self.message}"


class SigningError(HolochainClientError):
    """Raised when a zome call cannot be signed; no I/O has happened yet."""


class NoSigningCredentialsError(SigningError):
    def __init__(self, cell_id: Any) -> None:
        self.cell_id = cell_id
        super().__init__("No signing credentials have been authorized for the provided cell id")


class RandomnessUnavailableError(SigningError):
    """Raised when the platform offers no cryptographic random source."""


class SigningWindowExpiredError(SigningError):
    """Raised when the computed expiry is not in the future."""


def classify_response(response: Mapping[str, Any]) -> Any:
    """Return the value of a tagged response or raise the error it carries."""

    if response.get("type") != ERROR_TAG:
        return response.get("value")

    error = response.get("value")
    if isinstance(error, Mapping):
        if "type" in error:
            name = error["type"]
            message = error.get("value")
        else:
            name = error.get("name", ERROR_TAG)
            message = error.get("message")
    else:
        name, message = ERROR_TAG, error

    if message is None:
        message = ""
    elif not isinstance(message, str):
        message = str(message)
    raise HolochainError(name=str(name), message=message)
