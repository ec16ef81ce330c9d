import pytest

from vaultp2p.codec import decode, encode
from vaultp2p.constants import (
    B_HELLO_DEVICE,
    B_HELLO_ID,
    B_PEER_DEVICE,
    B_PEER_ID,
    B_REJECT_REASON,
    CONTROL_TYPES,
    K_BODY,
    K_SRC,
    K_T,
    K_V,
    PROTOCOL_VERSION,
    REJECT_ROOM_FULL,
    T_DATA,
    T_HELLO,
    T_PING,
    T_REJECT,
    T_ROSTER,
)
from vaultp2p.frames import (
    data_frame,
    decode_frame,
    hello_frame,
    make_frame,
    ping_frame,
    reject_frame,
    roster_frame,
    validate_frame,
)


def test_validate_accepts_make_frame() -> None:
    frame = make_frame(T_HELLO, src="peer", body={B_HELLO_ID: "peer"})
    validate_frame(frame)


def test_control_frames_decode() -> None:
    assert decode_frame(ping_frame())[K_T] == T_PING

    hello = decode_frame(hello_frame("abcd1234", "laptop"))
    assert hello[K_T] == T_HELLO
    assert hello[K_BODY] == {B_HELLO_ID: "abcd1234", B_HELLO_DEVICE: "laptop"}

    reject = decode_frame(reject_frame(REJECT_ROOM_FULL, "Room is full."))
    assert reject[K_T] == T_REJECT
    assert reject[K_BODY][B_REJECT_REASON] == REJECT_ROOM_FULL

    roster = decode_frame(roster_frame([("host0001", "desktop"), ("join0001", "mobile")]))
    assert roster[K_T] == T_ROSTER
    assert roster[K_BODY] == [
        {B_PEER_ID: "host0001", B_PEER_DEVICE: "desktop"},
        {B_PEER_ID: "join0001", B_PEER_DEVICE: "mobile"},
    ]

    assert {T_PING, T_HELLO, T_REJECT, T_ROSTER} == set(CONTROL_TYPES)


def test_data_frame_carries_sender_and_opaque_body() -> None:
    frame = decode_frame(data_frame("abcd1234", b"\x01" * 30))
    assert frame[K_SRC] == "abcd1234"
    assert frame[K_BODY] == b"\x01" * 30


def test_validate_rejects_missing_required_key() -> None:
    frame = make_frame(T_PING)
    frame.pop(K_T)
    with pytest.raises(ValueError):
        validate_frame(frame)


def test_validate_rejects_wrong_version() -> None:
    frame = make_frame(T_PING)
    frame[K_V] = PROTOCOL_VERSION + 1
    with pytest.raises(ValueError):
        validate_frame(frame)


def test_validate_rejects_non_integer_keys() -> None:
    frame = make_frame(T_PING)
    frame["1"] = frame.pop(K_T)
    with pytest.raises(TypeError):
        validate_frame(frame)


def test_validate_allows_unknown_extension_keys() -> None:
    frame = make_frame(T_PING)
    frame[64] = {"future": True}
    validate_frame(frame)


def test_validate_rejects_data_without_sender_or_bytes() -> None:
    frame = make_frame(T_DATA, body=b"x" * 40)
    with pytest.raises(ValueError):
        validate_frame(frame)

    frame = make_frame(T_DATA, src="peer", body="not-bytes")
    with pytest.raises(TypeError):
        validate_frame(frame)


def test_validate_rejects_wrong_field_types() -> None:
    frame = make_frame(T_HELLO, src="peer", body={B_HELLO_ID: "peer"})
    frame[K_SRC] = b"not-str"
    with pytest.raises(TypeError):
        validate_frame(frame)

    frame = make_frame(T_HELLO, src="peer", body="not-a-map")
    with pytest.raises(TypeError):
        validate_frame(frame)

    frame = make_frame(T_ROSTER, body={"not": "a list"})
    with pytest.raises(TypeError):
        validate_frame(frame)


def test_decode_frame_wraps_garbage() -> None:
    with pytest.raises(ValueError):
        decode_frame(b"\xff\xff\xff")
    with pytest.raises(TypeError):
        decode_frame(encode([1, 2, 3]))


def test_hello_without_identity_is_rejected() -> None:
    data = encode(make_frame(T_HELLO, body={B_HELLO_DEVICE: "desktop"}))
    with pytest.raises(ValueError):
        decode_frame(data)
    assert decode(data)[K_T] == T_HELLO
