from __future__ import annotations

from .codec import decode, encode
from .constants import (
    B_HELLO_DEVICE,
    B_HELLO_ID,
    B_PEER_DEVICE,
    B_PEER_ID,
    B_REJECT_MESSAGE,
    B_REJECT_REASON,
    K_BODY,
    K_SRC,
    K_T,
    K_V,
    PROTOCOL_VERSION,
    T_DATA,
    T_HELLO,
    T_PING,
    T_REJECT,
    T_ROSTER,
)


def make_frame(frame_type: int, *, src: str | None = None, body=None) -> dict:
    frame: dict[int, object] = {
        K_V: PROTOCOL_VERSION,
        K_T: int(frame_type),
    }
    if src is not None:
        frame[K_SRC] = src
    if body is not None:
        frame[K_BODY] = body
    return frame


def validate_frame(frame: dict) -> None:
    if not isinstance(frame, dict):
        raise TypeError("frame must be a CBOR map (dict)")

    for k in frame.keys():
        if not isinstance(k, int):
            raise TypeError("frame keys must be integers")
        if k < 0:
            raise ValueError("frame keys must be unsigned integers")

    for k in (K_V, K_T):
        if k not in frame:
            raise ValueError(f"missing frame key {k}")

    v = frame[K_V]
    if not isinstance(v, int):
        raise TypeError("protocol version must be an integer")
    if v != PROTOCOL_VERSION:
        raise ValueError(f"unsupported version {v}")

    t = frame[K_T]
    if not isinstance(t, int):
        raise TypeError("frame type must be an integer")

    if K_SRC in frame:
        src = frame[K_SRC]
        if not isinstance(src, str):
            raise TypeError("sender identity must be a string")
        if src == "":
            raise ValueError("sender identity must not be empty")

    if t == T_DATA:
        if K_SRC not in frame:
            raise ValueError("data frame without sender identity")
        if not isinstance(frame.get(K_BODY), (bytes, bytearray)):
            raise TypeError("data frame body must be bytes")
    elif t == T_HELLO:
        body = frame.get(K_BODY)
        if not isinstance(body, dict):
            raise TypeError("hello body must be a map")
        if not isinstance(body.get(B_HELLO_ID), str) or not body.get(B_HELLO_ID):
            raise ValueError("hello without identity")
    elif t == T_ROSTER:
        if not isinstance(frame.get(K_BODY), list):
            raise TypeError("roster body must be a list")


def decode_frame(data: bytes) -> dict:
    """Decode and validate one frame; raises TypeError/ValueError on junk."""
    try:
        frame = decode(data)
    except Exception as e:
        raise ValueError(f"undecodable frame: {e}") from e
    validate_frame(frame)
    return frame


def ping_frame() -> bytes:
    return encode(make_frame(T_PING))


def hello_frame(identity: str, device: str) -> bytes:
    return encode(
        make_frame(
            T_HELLO,
            src=identity,
            body={B_HELLO_ID: identity, B_HELLO_DEVICE: device},
        )
    )


def reject_frame(reason: str, message: str) -> bytes:
    return encode(
        make_frame(T_REJECT, body={B_REJECT_REASON: reason, B_REJECT_MESSAGE: message})
    )


def roster_frame(entries: list[tuple[str, str]]) -> bytes:
    body = [{B_PEER_ID: ident, B_PEER_DEVICE: device} for ident, device in entries]
    return encode(make_frame(T_ROSTER, body=body))


def data_frame(src: str, envelope: bytes) -> bytes:
    return encode(make_frame(T_DATA, src=src, body=bytes(envelope)))
