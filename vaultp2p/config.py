from __future__ import annotations

from dataclasses import asdict, dataclass, replace

from .constants import (
    CHUNK_SIZE,
    DEVICE_DESKTOP,
    DIRECT_TIMEOUT_S,
    KEEPALIVE_INTERVAL_S,
    RECONNECT_DELAY_S,
    TOTAL_TIMEOUT_S,
)
from .retry import RetryPolicy


@dataclass(frozen=True)
class VaultConfig:
    config_path: str | None = None
    identity_cache_path: str | None = None
    download_dir: str | None = None
    invite_base_url: str = "https://vault.invalid/"
    capacity: int | None = None
    device_class: str = DEVICE_DESKTOP
    chunk_size: int = CHUNK_SIZE
    direct_timeout_s: float = DIRECT_TIMEOUT_S
    total_timeout_s: float = TOTAL_TIMEOUT_S
    keepalive_interval_s: float = KEEPALIVE_INTERVAL_S
    keepalive_timeout_s: float = 0.0
    reject_grace_s: float = 0.5
    reconnect_delay_s: float = RECONNECT_DELAY_S
    reconnect_attempts: int = 5
    reconnect_max_delay_s: float = 30.0
    lookup_attempts: int = 4
    lookup_backoff_s: float = 1.0
    register_attempts: int = 5
    reregister_backoff_s: float = 1.0
    rns_configdir: str | None = None
    rns_identity_dir: str | None = None
    rns_dest_name: str = "vaultp2p.room"
    rns_announce_period_s: float = 300.0
    rns_path_timeout_s: float = 15.0
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    log_datefmt: str | None = None

    def lookup_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max(1, int(self.lookup_attempts)),
            base_delay_s=float(self.lookup_backoff_s),
            max_delay_s=max(float(self.lookup_backoff_s), 8.0),
        )

    def reconnect_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max(1, int(self.reconnect_attempts)),
            base_delay_s=float(self.reconnect_delay_s),
            max_delay_s=max(float(self.reconnect_delay_s), float(self.reconnect_max_delay_s)),
            jitter=0.25,
        )

    def reregister_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max(1, int(self.register_attempts)),
            base_delay_s=float(self.reregister_backoff_s),
        )


_PATH_FIELDS = (
    "identity_cache_path",
    "download_dir",
    "rns_configdir",
    "rns_identity_dir",
    "log_file",
    "log_datefmt",
)


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        return tomllib.load(f)


def apply_config_data(cfg: VaultConfig, data: dict) -> VaultConfig:
    """Overlay a parsed TOML document onto ``cfg``.

    Top-level keys and the ``[session]`` table map onto fields directly; the
    ``[logging]`` table uses short names. Unknown keys are ignored.
    """
    if not isinstance(data, dict):
        return cfg

    session = data.get("session")
    if isinstance(session, dict):
        data = {**data, **session}

    log_table = data.get("logging")
    if isinstance(log_table, dict):
        mapped: dict[str, object] = {}
        for short, long in (
            ("level", "log_level"),
            ("rns_level", "log_rns_level"),
            ("console", "log_console"),
            ("file", "log_file"),
            ("format", "log_format"),
            ("datefmt", "log_datefmt"),
        ):
            if short in log_table:
                mapped[long] = log_table.get(short)
        data = {**data, **mapped}

    allowed = set(asdict(cfg).keys())
    # This identifies where the file came from; do not let the file override it.
    allowed.discard("config_path")
    updates = {k: v for k, v in data.items() if k in allowed}

    for key in _PATH_FIELDS:
        if key in updates and updates[key] == "":
            updates[key] = None
    if "capacity" in updates and updates["capacity"] in (0, "", None):
        updates["capacity"] = None

    return replace(cfg, **updates) if updates else cfg
