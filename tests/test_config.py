from vaultp2p.config import VaultConfig, apply_config_data, load_toml
from vaultp2p.constants import CHUNK_SIZE, DIRECT_TIMEOUT_S, TOTAL_TIMEOUT_S


def test_defaults() -> None:
    cfg = VaultConfig()
    assert cfg.chunk_size == CHUNK_SIZE == 16384
    assert cfg.direct_timeout_s == DIRECT_TIMEOUT_S == 7.0
    assert cfg.total_timeout_s == TOTAL_TIMEOUT_S == 25.0
    assert cfg.capacity is None


def test_apply_session_and_logging_tables(tmp_path) -> None:
    path = tmp_path / "vaultp2p.toml"
    path.write_text(
        """
config_path = "/ignored"

[session]
capacity = 3
device_class = "tablet"
chunk_size = 4096
rns_configdir = ""
unknown_key = 1

[logging]
level = "DEBUG"
file = ""
""",
        encoding="utf-8",
    )

    cfg = apply_config_data(VaultConfig(config_path=str(path)), load_toml(str(path)))
    assert cfg.config_path == str(path)
    assert cfg.capacity == 3
    assert cfg.device_class == "tablet"
    assert cfg.chunk_size == 4096
    assert cfg.rns_configdir is None
    assert cfg.log_level == "DEBUG"
    assert cfg.log_file is None


def test_zero_capacity_means_unlimited() -> None:
    cfg = apply_config_data(VaultConfig(capacity=2), {"session": {"capacity": 0}})
    assert cfg.capacity is None


def test_policies_follow_config() -> None:
    cfg = VaultConfig(reconnect_attempts=7, reconnect_delay_s=0.5, lookup_attempts=2)
    assert cfg.reconnect_policy().max_attempts == 7
    assert cfg.reconnect_policy().base_delay_s == 0.5
    assert cfg.lookup_policy().max_attempts == 2
