"""Configuration loading and address resolution tests."""

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dp832_config import (
    Config,
    ConfigError,
    load_config_file,
    load_settings,
    parse_config,
    user_config_path,
)


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Point the user config directory at an empty temp dir."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    return tmp_path


def write(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


class TestParseConfig:

    def test_empty_document(self):
        assert parse_config(None) == Config()

    def test_defaults(self):
        config = Config()
        assert config.channel_count == 3
        assert config.tick_interval == 0.25
        assert config.sample_timeout == 0.25
        assert config.sample_attempts == 3
        assert config.settle_delay == 0.05
        assert config.read_timeout == 1.0

    def test_values(self):
        config = parse_config({"address": "10.0.0.2:5555", "channel_count": 2, "tick_interval": 1})
        assert config.address == "10.0.0.2:5555"
        assert config.channel_count == 2
        assert config.tick_interval == 1

    def test_not_a_mapping(self):
        with pytest.raises(ConfigError):
            parse_config(["10.0.0.2"])

    def test_unknown_key(self):
        with pytest.raises(ConfigError, match="Unknown"):
            parse_config({"adress": "10.0.0.2"})

    def test_wrong_type(self):
        with pytest.raises(ConfigError):
            parse_config({"channel_count": "three"})

    def test_bool_is_not_a_number(self):
        with pytest.raises(ConfigError):
            parse_config({"sample_attempts": True})

    @pytest.mark.parametrize("data", [
        {"channel_count": 0},
        {"sample_attempts": 0},
        {"tick_interval": 0},
        {"read_timeout": -1.0},
    ])
    def test_invalid_ranges(self, data):
        with pytest.raises(ConfigError):
            parse_config(data)


class TestConfigFile:

    def test_load(self, tmp_path):
        path = write(tmp_path / "bench.yaml", "address: 192.168.1.10:5555\nsettle_delay: 0.1\n")
        config = load_config_file(path)
        assert config.address == "192.168.1.10:5555"
        assert config.settle_delay == 0.1

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Failed to open"):
            load_config_file(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = write(tmp_path / "bad.yaml", "address: [unclosed\n")
        with pytest.raises(ConfigError, match="Failed to load"):
            load_config_file(path)

    def test_user_config_path(self, isolated_home):
        assert user_config_path() == isolated_home / "xdg" / "dp832-tui.yaml"

    def test_user_config_path_without_xdg(self, monkeypatch, tmp_path):
        monkeypatch.delenv("XDG_CONFIG_HOME")
        monkeypatch.setenv("HOME", str(tmp_path))
        assert user_config_path() == tmp_path / ".config" / "dp832-tui.yaml"


class TestLoadSettings:

    def test_address_flag_only(self):
        assert load_settings(address="10.0.0.2:5555").address == "10.0.0.2:5555"

    def test_no_address(self):
        with pytest.raises(ConfigError, match="address not provided"):
            load_settings()

    def test_user_file(self, isolated_home):
        write(isolated_home / "xdg" / "dp832-tui.yaml", "address: 10.0.0.3\n")
        assert load_settings().address == "10.0.0.3"

    def test_flag_overrides_file(self, isolated_home):
        write(isolated_home / "xdg" / "dp832-tui.yaml", "address: 10.0.0.3\nchannel_count: 2\n")
        config = load_settings(address="10.0.0.4")
        assert config.address == "10.0.0.4"
        assert config.channel_count == 2

    def test_explicit_file_replaces_user_file(self, isolated_home):
        write(isolated_home / "xdg" / "dp832-tui.yaml", "address: 10.0.0.3\n")
        other = write(isolated_home / "other.yaml", "address: 10.0.0.5\n")
        assert load_settings(other).address == "10.0.0.5"

    def test_explicit_file_must_exist(self, isolated_home):
        with pytest.raises(ConfigError):
            load_settings(isolated_home / "missing.yaml", address="10.0.0.4")
