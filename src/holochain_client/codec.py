"""msgpack framing for the conductor websocket protocol.

Every message on the socket is a two-layer encoding: an outer envelope
``{"id": int, "type": str, "data": bytes}`` whose ``data`` is itself a msgpack
encoded ``{"type": tag, "value": data}`` operation envelope.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

import msgpack

from .errors import MalformedFrameError, UnknownFrameKindError

__all__ = [
    "Frame",
    "FrameKind",
    "encode_frame",
    "decode_frame",
    "encode_payload",
    "decode_payload",
    "tagged",
    "untag",
]


class FrameKind(str, Enum):
    REQUEST = "request"
    RESPONSE = "response"
    EVENT = "signal"
    AUTHENTICATE = "authenticate"


_ID_REQUIRED = frozenset({FrameKind.REQUEST, FrameKind.RESPONSE})
_ID_FORBIDDEN = frozenset({FrameKind.EVENT, FrameKind.AUTHENTICATE})


@dataclass(frozen=True, slots=True)
class Frame:
    kind: FrameKind
    payload: bytes | None
    id: int | None = None

    def __post_init__(self) -> None:
        if self.kind in _ID_REQUIRED and self.id is None:
            raise MalformedFrameError(f"{self.kind.value} frames must carry an id")
        if self.kind in _ID_FORBIDDEN and self.id is not None:
            raise MalformedFrameError(f"{self.kind.value} frames cannot carry an id")
        if self.id is not None and (isinstance(self.id, bool) or not isinstance(self.id, int) or self.id < 0):
            raise MalformedFrameError(f"frame id must be an unsigned integer, got {self.id!r}")

    @classmethod
    def request(cls, request_id: int, payload: bytes) -> "Frame":
        return cls(kind=FrameKind.REQUEST, payload=payload, id=request_id)

    @classmethod
    def response(cls, request_id: int, payload: bytes | None) -> "Frame":
        return cls(kind=FrameKind.RESPONSE, payload=payload, id=request_id)

    @classmethod
    def event(cls, payload: bytes | None) -> "Frame":
        return cls(kind=FrameKind.EVENT, payload=payload)


def encode_payload(value: Any) -> bytes:
    """Serialize a value with the canonical msgpack settings used on the wire."""

    return msgpack.packb(value, use_bin_type=True)


def decode_payload(data: bytes) -> Any:
    try:
        return msgpack.unpackb(data, raw=False)
    except (msgpack.UnpackException, ValueError, TypeError) as exc:
        raise MalformedFrameError(f"payload is not valid msgpack: {exc}") from exc


def encode_frame(frame: Frame) -> bytes:
    message: dict[str, Any] = {}
    if frame.id is not None:
        message["id"] = frame.id
    message["type"] = frame.kind.value
    message["data"] = frame.payload
    return encode_payload(message)


def decode_frame(data: bytes) -> Frame:
    """Decode an outer envelope, validating its shape and kind tag."""

    message = decode_payload(data)
    if not isinstance(message, Mapping) or "type" not in message or "data" not in message:
        raise MalformedFrameError(f"unknown message format: {message!r}")

    try:
        kind = FrameKind(message["type"])
    except ValueError:
        raise UnknownFrameKindError(message["type"]) from None

    payload = message["data"]
    if payload is not None and not isinstance(payload, (bytes, bytearray)):
        raise MalformedFrameError("frame data must be binary or nil")

    return Frame(
        kind=kind,
        payload=bytes(payload) if payload is not None else None,
        id=message.get("id"),
    )


def tagged(tag: str, value: Any = None) -> dict[str, Any]:
    """Build the inner operation envelope for ``tag``."""

    if not tag:
        raise ValueError("operation tag must be provided")
    return {"type": tag, "value": value}


def untag(message: Any) -> dict[str, Any]:
    if not isinstance(message, Mapping) or not isinstance(message.get("type"), str):
        raise MalformedFrameError(f"unknown operation envelope: {message!r}")
    return {"type": message["type"], "value": message.get("value")}
