import copy

import pytest

from spreadbot.config import DEFAULTS, load_config, substitute_env_vars, validate
from spreadbot.exceptions import ConfigError


def test_substitute_env_vars(monkeypatch):
    monkeypatch.setenv("SB_TEST_KEY", "abc")
    monkeypatch.delenv("SB_TEST_MISSING", raising=False)
    assert substitute_env_vars("key: ${SB_TEST_KEY}") == "key: abc"
    assert substitute_env_vars("key: ${SB_TEST_MISSING:fallback}") == "key: fallback"
    assert substitute_env_vars("key: ${SB_TEST_MISSING}") == "key: "


def test_yaml_overrides_are_merged_onto_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("BINANCE_API_KEY", "k")
    monkeypatch.setenv("BINANCE_API_SECRET", "s")
    path = tmp_path / "config.yaml"
    path.write_text(
        "strategy:\n"
        "  target_delta: 0.5\n"
        "execution:\n"
        "  exit_order_type: MARKET\n"
    )
    config = load_config(str(path), env_file=str(tmp_path / "missing.env"))
    assert config['strategy']['target_delta'] == 0.5
    assert config['strategy']['symbols'] == ['BTCUSD', 'BTCBUSD']
    assert config['execution']['exit_order_type'] == 'MARKET'
    assert config['execution']['partial_fill_threshold'] == 0.5
    assert config['venue']['api_key'] == 'k'
    assert config['venue']['api_secret'] == 's'


def test_missing_explicit_config_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "nope.yaml"))


@pytest.mark.parametrize("section,key,value", [
    ("strategy", "mode", "grid"),
    ("strategy", "symbols", ["BTCUSD"]),
    ("strategy", "trade_notional", 0),
    ("execution", "partial_fill_threshold", 0),
    ("execution", "partial_fill_threshold", 1.5),
    ("execution", "exit_order_type", "STOP"),
    ("execution", "entry_poll_interval_ms", 0),
    ("execution", "exit_max_wait_s", -1),
    ("execution", "post_retry_attempts", -1),
])
def test_invalid_settings_are_rejected(section, key, value):
    config = copy.deepcopy(DEFAULTS)
    config[section][key] = value
    with pytest.raises(ConfigError):
        validate(config)


def test_momentum_needs_exit_spread():
    config = copy.deepcopy(DEFAULTS)
    config['strategy']['mode'] = 'momentum'
    with pytest.raises(ConfigError):
        validate(config)
    config['strategy']['exit_spread'] = 1.5
    assert validate(config) is config
