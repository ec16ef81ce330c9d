"""Error taxonomy for vaultp2p sessions."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    CAPACITY_EXCEEDED = "capacity-exceeded"
    PEER_UNAVAILABLE = "peer-unavailable"
    TIMEOUT = "timeout"
    SIGNALING_DISCONNECTED = "signaling-disconnected"
    DECRYPTION = "decryption-error"
    MALFORMED_METADATA = "malformed-metadata"
    INTEGRITY = "integrity"


class VaultError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind | None = None
    fatal = False


class PeerUnavailableError(VaultError):
    kind = ErrorKind.PEER_UNAVAILABLE
    fatal = True


class TransportTimeoutError(VaultError):
    kind = ErrorKind.TIMEOUT
    fatal = True


class DecryptionError(VaultError):
    kind = ErrorKind.DECRYPTION


class MalformedMetadataError(VaultError):
    kind = ErrorKind.MALFORMED_METADATA


class IdentityTakenError(VaultError):
    """Raised by a signaling primitive when the requested identity is in use."""


class SessionClosedError(VaultError):
    """Raised when an operation is attempted on a destroyed session."""


class EmptySourceError(VaultError, ValueError):
    """Raised for zero-byte send requests, before any network activity."""
