from __future__ import annotations

import os
from pathlib import Path


def default_vault_dir() -> Path:
    override = os.environ.get("VAULTP2P_HOME")
    if override:
        return Path(override)
    return Path.home() / ".vaultp2p"


def default_config_path() -> Path:
    return default_vault_dir() / "vaultp2p.toml"


def default_identity_cache_path() -> Path:
    return default_vault_dir() / "identity_cache"


def default_rns_identity_dir() -> Path:
    return default_vault_dir() / "rns_identities"


def default_download_dir() -> Path:
    return default_vault_dir() / "downloads"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        # Best-effort tightening; may fail on some filesystems.
        os.chmod(path, 0o700)
    except OSError:
        pass
