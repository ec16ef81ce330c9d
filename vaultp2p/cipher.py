"""Room cipher: AES-256-GCM over opaque payloads."""

from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .constants import KEY_LEN, NONCE_LEN, TAG_LEN
from .errors import DecryptionError


@dataclass(frozen=True)
class Envelope:
    """Nonce plus authenticated ciphertext, the only wire form of a payload."""

    nonce: bytes
    ciphertext: bytes

    def to_bytes(self) -> bytes:
        return self.nonce + self.ciphertext

    @classmethod
    def from_bytes(cls, data: bytes) -> Envelope:
        data = bytes(data)
        if len(data) < NONCE_LEN + TAG_LEN:
            raise DecryptionError(f"envelope too short ({len(data)} bytes)")
        return cls(nonce=data[:NONCE_LEN], ciphertext=data[NONCE_LEN:])


def _b64decode(text: str) -> bytes:
    s = "".join(str(text).split())
    s = s.replace("-", "+").replace("_", "/")
    s += "=" * (-len(s) % 4)
    return base64.b64decode(s, validate=True)


class RoomCipher:
    """One symmetric key per session.

    Key material is exchanged out-of-band as URL-safe base64 without padding.
    Standard base64 (as produced by browsers' btoa) is accepted on import.
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_LEN:
            raise ValueError(f"room key must be {KEY_LEN} bytes")
        self._key = bytes(key)
        self._aead = AESGCM(self._key)

    @classmethod
    def generate(cls) -> RoomCipher:
        return cls(AESGCM.generate_key(bit_length=KEY_LEN * 8))

    @classmethod
    def from_key_material(cls, material: str) -> RoomCipher:
        if not isinstance(material, str) or not material.strip():
            raise ValueError("key material must be a non-empty string")
        try:
            raw = _b64decode(material)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"key material is not valid base64: {e}") from e
        return cls(raw)

    @property
    def key_material(self) -> str:
        return base64.urlsafe_b64encode(self._key).decode("ascii").rstrip("=")

    def encrypt(self, plaintext: bytes, aad: bytes = b"") -> Envelope:
        nonce = os.urandom(NONCE_LEN)
        ct = self._aead.encrypt(nonce, bytes(plaintext), aad or None)
        return Envelope(nonce=nonce, ciphertext=ct)

    def decrypt(self, envelope: Envelope | bytes, aad: bytes = b"") -> bytes:
        if not isinstance(envelope, Envelope):
            envelope = Envelope.from_bytes(envelope)
        try:
            return self._aead.decrypt(envelope.nonce, envelope.ciphertext, aad or None)
        except InvalidTag as e:
            raise DecryptionError("authentication failed") from e
