"""Tests for the two-layer msgpack frame codec."""

from __future__ import annotations

import msgpack
import pytest

from holochain_client.codec import (
    Frame,
    FrameKind,
    decode_frame,
    decode_payload,
    encode_frame,
    encode_payload,
    tagged,
    untag,
)
from holochain_client.errors import MalformedFrameError, UnknownFrameKindError


@pytest.mark.parametrize(
    "frame",
    [
        Frame.request(0, encode_payload({"type": "app_info", "value": None})),
        Frame.response(7, encode_payload({"type": "app_info", "value": {"installed_app_id": "app"}})),
        Frame.response(3, None),
        Frame.event(encode_payload({"App": {"zome_name": "foo"}})),
        Frame(kind=FrameKind.AUTHENTICATE, payload=encode_payload({"token": b"\x01\x02"})),
    ],
)
def test_decode_inverts_encode(frame: Frame) -> None:
    assert decode_frame(encode_frame(frame)) == frame


def test_request_frame_matches_wire_layout() -> None:
    inner = encode_payload({"type": "list_apps", "value": {}})

    encoded = encode_frame(Frame.request(12, inner))

    assert encoded == msgpack.packb({"id": 12, "type": "request", "data": inner}, use_bin_type=True)


def test_event_frame_omits_id() -> None:
    encoded = encode_frame(Frame.event(b"\x90"))

    assert msgpack.unpackb(encoded, raw=False) == {"type": "signal", "data": b"\x90"}


def test_decode_rejects_unknown_kind() -> None:
    data = msgpack.packb({"id": 1, "type": "gossip", "data": b""}, use_bin_type=True)

    with pytest.raises(UnknownFrameKindError) as exc:
        decode_frame(data)

    assert exc.value.kind == "gossip"
    assert isinstance(exc.value, MalformedFrameError)


@pytest.mark.parametrize(
    "message",
    [
        [1, "response", b""],
        {"id": 1, "data": b""},
        {"id": 1, "type": "response"},
        {"type": "response", "data": b""},
        {"id": 1, "type": "signal", "data": b""},
        {"id": -1, "type": "response", "data": b""},
        {"id": 1, "type": "response", "data": "text"},
    ],
)
def test_decode_rejects_malformed_envelopes(message: object) -> None:
    with pytest.raises(MalformedFrameError):
        decode_frame(msgpack.packb(message, use_bin_type=True))


def test_decode_rejects_garbage_bytes() -> None:
    with pytest.raises(MalformedFrameError):
        decode_frame(b"\xc1\xff\x00")


def test_frame_validates_id_presence() -> None:
    with pytest.raises(MalformedFrameError):
        Frame(kind=FrameKind.REQUEST, payload=b"")
    with pytest.raises(MalformedFrameError):
        Frame(kind=FrameKind.EVENT, payload=b"", id=4)


def test_payload_encoding_is_deterministic() -> None:
    value = {"b": [1, 2, b"\x00"], "a": {"nested": True}}

    assert encode_payload(value) == encode_payload(dict(value))
    assert decode_payload(encode_payload(value)) == value


def test_tagged_and_untag() -> None:
    assert tagged("app_info") == {"type": "app_info", "value": None}
    assert untag({"type": "app_info", "value": 1, "extra": True}) == {"type": "app_info", "value": 1}

    with pytest.raises(ValueError):
        tagged("")
    with pytest.raises(MalformedFrameError):
        untag({"value": 1})
    with pytest.raises(MalformedFrameError):
        untag(["app_info", 1])
