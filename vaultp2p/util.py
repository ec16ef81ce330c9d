from __future__ import annotations

import os
import uuid

from .constants import DEVICE_DESKTOP, DEVICE_MAX_CHARS, NAME_MAX_CHARS


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def random_identity() -> str:
    return uuid.uuid4().hex[:8]


def fmt_identity(identity, *, prefix: int = 12) -> str:
    if isinstance(identity, str) and identity:
        return identity if prefix <= 0 else identity[: min(prefix, len(identity))]
    return "-"


def normalize_device(value) -> str:
    if not isinstance(value, str):
        return DEVICE_DESKTOP

    s = value.strip().lower()
    if not s or len(s) > DEVICE_MAX_CHARS:
        return DEVICE_DESKTOP

    if "\n" in s or "\r" in s or "\x00" in s:
        return DEVICE_DESKTOP

    return s


def normalize_file_name(value) -> str | None:
    if not isinstance(value, str):
        return None

    # Only the final component; peers must not be able to steer paths.
    s = value.replace("\\", "/").split("/")[-1].strip()
    if not s or s in (".", ".."):
        return None

    if len(s) > NAME_MAX_CHARS:
        return None

    if "\x00" in s or "\n" in s or "\r" in s:
        return None

    return s
