from vaultp2p.codec import decode, encode
from vaultp2p.constants import T_DATA
from vaultp2p.frames import make_frame, validate_frame


def test_codec_round_trip() -> None:
    frame = make_frame(T_DATA, src="a1b2c3d4", body=b"\x00" * 40)
    data = encode(frame)
    decoded = decode(data)
    assert decoded == frame
    validate_frame(decoded)
