from pathlib import Path

import pytest

from pnode_monitor.config.settings import SettingsLoader
from pnode_monitor.errors import ConfigError


def test_default_config_roundtrip(tmp_path: Path) -> None:
    cfg = tmp_path / "conf" / "pnode_monitor.yaml"
    SettingsLoader.dump_default(cfg)
    loaded = SettingsLoader.load(cfg)
    assert loaded.app_name == "pNode Monitor"
    assert loaded.rpc.method == "getClusterNodes"
    assert loaded.analytics.max_history == 50
    assert loaded.analytics.max_network_history == 200
    assert loaded.polling.alert_dedup_window_s == 3600


def test_partial_config_keeps_defaults(tmp_path: Path) -> None:
    cfg = tmp_path / "partial.yaml"
    cfg.write_text("log_level: DEBUG\nrpc:\n  endpoint: http://10.0.0.2:6000\n", encoding="utf-8")
    loaded = SettingsLoader.load(cfg)
    assert loaded.log_level == "DEBUG"
    assert loaded.rpc.endpoint == "http://10.0.0.2:6000"
    assert loaded.rpc.timeout_s == 10
    assert loaded.storage.sqlite_path == "data/pnode_monitor.db"


def test_unknown_keys_are_rejected(tmp_path: Path) -> None:
    cfg = tmp_path / "bad.yaml"
    cfg.write_text("rpc:\n  endpont: http://typo\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="endpont"):
        SettingsLoader.load(cfg)


def test_malformed_yaml_is_a_config_error(tmp_path: Path) -> None:
    cfg = tmp_path / "broken.yaml"
    cfg.write_text("rpc: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        SettingsLoader.load(cfg)

    cfg.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        SettingsLoader.load(cfg)

    cfg.write_text("storage: nope\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        SettingsLoader.load(cfg)
