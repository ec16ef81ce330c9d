"""Logging setup for the vaultp2p command line.

Handlers installed here are tagged, so a later ``configure_logging`` call
swaps exactly those and leaves handlers installed by anyone else alone.
Reticulum does not log through :mod:`logging`; its level is applied by the
RNS adapter from ``log_rns_level`` (see ``rns_transport.rns_loglevel``).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from .config import VaultConfig
from .util import expand_path

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_TAG = "_vaultp2p_owned"


def parse_level(value: Any, default: int) -> int:
    """Accept ``"debug"``, ``"WARN"``, ``"10"`` or ``10``; junk gives ``default``."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    text = str(value or "").strip().upper()
    if not text:
        return default
    if text == "WARN":
        text = "WARNING"
    names = logging.getLevelNamesMapping()
    if text in names:
        return names[text]
    if text.isdigit():
        return int(text)
    return default


def _file_handler(path_text: str) -> logging.Handler:
    path = Path(expand_path(path_text))
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    path.chmod(0o600)
    return handler


def _installed() -> list[logging.Handler]:
    return [h for h in logging.getLogger().handlers if getattr(h, _TAG, False)]


def configure_logging(
    cfg: VaultConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Install console/file handlers for a CLI run.

    ``override_file=""`` disables file logging even when the config names a
    file; ``None`` keeps the configured one.
    """
    level = parse_level(override_level or cfg.log_level, logging.INFO)
    if override_file is None:
        log_file = cfg.log_file
    else:
        log_file = override_file.strip() or None

    handlers: list[logging.Handler] = []
    if cfg.log_console:
        handlers.append(logging.StreamHandler())
    if log_file:
        handlers.append(_file_handler(log_file))

    formatter = logging.Formatter(
        fmt=(cfg.log_format or "").strip() or DEFAULT_FORMAT,
        datefmt=cfg.log_datefmt or None,
    )

    root = logging.getLogger()
    for old in _installed():
        root.removeHandler(old)
        old.close()
    for handler in handlers:
        handler.setFormatter(formatter)
        setattr(handler, _TAG, True)
        root.addHandler(handler)
    root.setLevel(level)

    # Adapter chatter follows the Reticulum level rather than the app level.
    rns_level = parse_level(cfg.log_rns_level, logging.WARNING)
    logging.getLogger("vaultp2p.rns").setLevel(max(level, rns_level))
    logging.getLogger("asyncio").setLevel(max(level, logging.WARNING))

    logging.captureWarnings(True)
