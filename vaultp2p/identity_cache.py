"""Local cache of an initiator's room identity and key.

Lets an initiator come back to the same room after an accidental restart.
Starting a new room on purpose must call ``clear()`` first.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .codec import decode, encode
from .paths import ensure_private_dir
from .util import expand_path

_K_IDENTITY = 0
_K_KEY = 1


@dataclass(frozen=True)
class CachedRoom:
    identity: str
    key_material: str


class IdentityCache:
    def __init__(self, path: str) -> None:
        self.path = Path(expand_path(path))
        self.log = logging.getLogger("vaultp2p.identity_cache")

    def load(self) -> CachedRoom | None:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            self.log.warning("Cannot read identity cache path=%s err=%s", self.path, e)
            return None

        try:
            data = decode(raw)
        except Exception as e:
            self.log.warning("Discarding corrupt identity cache path=%s err=%s", self.path, e)
            return None

        if not isinstance(data, dict):
            return None
        identity = data.get(_K_IDENTITY)
        key = data.get(_K_KEY)
        if not isinstance(identity, str) or not identity:
            return None
        if not isinstance(key, str) or not key:
            return None
        return CachedRoom(identity=identity, key_material=key)

    def store(self, identity: str, key_material: str) -> None:
        if self.path.parent:
            ensure_private_dir(self.path.parent)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(encode({_K_IDENTITY: identity, _K_KEY: key_material}))
        os.replace(tmp, self.path)
        self.log.debug("Cached room identity=%s path=%s", identity, self.path)

    def clear(self) -> None:
        try:
            self.path.unlink()
            self.log.debug("Cleared identity cache path=%s", self.path)
        except FileNotFoundError:
            pass
