import logging
import os
import stat

import pytest

from vaultp2p.config import VaultConfig
from vaultp2p.logging_config import configure_logging, parse_level


@pytest.fixture
def root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    for h in list(root.handlers):
        if h not in handlers:
            root.removeHandler(h)
            h.close()
    root.setLevel(level)
    logging.getLogger("vaultp2p.rns").setLevel(logging.NOTSET)
    logging.getLogger("asyncio").setLevel(logging.NOTSET)
    logging.captureWarnings(False)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("debug", logging.DEBUG),
        ("WARN", logging.WARNING),
        ("15", 15),
        (30, 30),
        ("", logging.INFO),
        (None, logging.INFO),
        ("loud", logging.INFO),
    ],
)
def test_parse_level(value, expected) -> None:
    assert parse_level(value, logging.INFO) == expected


def test_repeated_configuration_replaces_only_own_handlers(root_logger) -> None:
    foreign = logging.NullHandler()
    root_logger.addHandler(foreign)
    try:
        cfg = VaultConfig(log_console=True)
        configure_logging(cfg)
        configure_logging(cfg, override_level="DEBUG")

        streams = [h for h in root_logger.handlers if type(h) is logging.StreamHandler]
        assert len(streams) == 1
        assert foreign in root_logger.handlers
        assert root_logger.level == logging.DEBUG
    finally:
        root_logger.removeHandler(foreign)


def test_file_logging_is_private_and_overridable(tmp_path, root_logger) -> None:
    path = tmp_path / "logs" / "vault.log"
    configure_logging(VaultConfig(log_console=False, log_file=str(path)))
    assert path.exists()
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    configure_logging(VaultConfig(log_console=False, log_file=str(path)), override_file="")
    assert not [h for h in root_logger.handlers if isinstance(h, logging.FileHandler)]


def test_adapter_logger_follows_reticulum_level(root_logger) -> None:
    configure_logging(VaultConfig(log_console=False, log_level="DEBUG", log_rns_level="ERROR"))
    assert logging.getLogger("vaultp2p.rns").level == logging.ERROR


def test_reticulum_level_mapping() -> None:
    RNS = pytest.importorskip("RNS")
    from vaultp2p.rns_transport import rns_loglevel

    assert rns_loglevel(logging.ERROR) == RNS.LOG_ERROR
    assert rns_loglevel(logging.WARNING) == RNS.LOG_WARNING
    assert rns_loglevel(logging.INFO) == RNS.LOG_INFO
    assert rns_loglevel(logging.DEBUG) == RNS.LOG_DEBUG
