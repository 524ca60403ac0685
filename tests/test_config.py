"""Tests for configuration loading (TOML file, environment, defaults)."""

import pytest

from duo_rtc.config import (
    DEFAULT_NEGOTIATION_TIMEOUT,
    Config,
    IceServerConfig,
    get_config,
    reload_config,
)

CONFIG_TOML = """
[server]
host = "0.0.0.0"
port = 9000

[[server.ice_servers]]
urls = "stun:stun.example.org:3478"

[[server.ice_servers]]
urls = ["turn:turn.example.org:3478"]
username = "user"
credential = "secret"

[peer]
signaling_websocket = "ws://signal.example.org"
ice_servers_url = "https://signal.example.org/turn"
negotiation_timeout = 45

[environments.development]
signaling_websocket = "ws://localhost:8765"
negotiation_timeout = 0
"""


def load():
    config = Config()
    config.load()
    return config


class TestDefaults:
    def test_defaults_without_file(self, isolated_config):
        config = load()

        assert config.host == "localhost"
        assert config.port == 8080
        assert config.environment == "production"
        assert config.config_file is None
        assert config.server_ice_servers == []
        assert config.ice_servers_url is None
        assert config.negotiation_timeout == DEFAULT_NEGOTIATION_TIMEOUT
        assert config.get_websocket_url() == "ws://localhost:8080"

    def test_invalid_environment_falls_back_to_production(self, isolated_config, monkeypatch):
        monkeypatch.setenv("DUO_RTC_ENV", "qa")
        assert load().environment == "production"


class TestConfigFile:
    def test_cwd_file(self, isolated_config):
        (isolated_config / "duo-rtc.toml").write_text(CONFIG_TOML)

        config = load()

        assert config.config_file == isolated_config / "duo-rtc.toml"
        assert config.host == "0.0.0.0"
        assert config.port == 9000
        assert config.ice_servers_url == "https://signal.example.org/turn"
        assert config.negotiation_timeout == 45.0
        assert config.get_websocket_url() == "ws://signal.example.org:8080"
        assert [s.to_dict() for s in config.server_ice_servers] == [
            {"urls": "stun:stun.example.org:3478"},
            {"urls": ["turn:turn.example.org:3478"], "username": "user", "credential": "secret"},
        ]

    def test_home_file(self, isolated_config, tmp_path):
        home_dir = tmp_path / "home" / ".duo-rtc"
        home_dir.mkdir()
        (home_dir / "config.toml").write_text('[server]\nport = 7000\n')

        assert load().port == 7000

    def test_environment_section_overrides(self, isolated_config, monkeypatch):
        (isolated_config / "duo-rtc.toml").write_text(CONFIG_TOML)
        monkeypatch.setenv("DUO_RTC_ENV", "development")

        config = load()

        assert config.environment == "development"
        assert config.signaling_websocket == "ws://localhost:8765"
        assert config.negotiation_timeout is None

    def test_malformed_file_uses_defaults(self, isolated_config):
        (isolated_config / "duo-rtc.toml").write_text("[server\nport = ")

        config = load()

        assert config.config_file is None
        assert config.port == 8080

    def test_bad_values_keep_defaults(self, isolated_config):
        (isolated_config / "duo-rtc.toml").write_text(
            '[server]\nport = "http"\nice_servers = [{urls = ""}, "stun:x", {url = "stun:y"}]\n'
        )

        config = load()

        assert config.port == 8080
        assert [s.urls for s in config.server_ice_servers] == ["stun:y"]


class TestEnvOverrides:
    def test_env_beats_file(self, isolated_config, monkeypatch):
        (isolated_config / "duo-rtc.toml").write_text(CONFIG_TOML)
        monkeypatch.setenv("DUO_RTC_SIGNALING_WS", "wss://other.example.org:443")
        monkeypatch.setenv("DUO_RTC_HOST", "127.0.0.1")
        monkeypatch.setenv("DUO_RTC_PORT", "9100")
        monkeypatch.setenv("DUO_RTC_ICE_SERVERS_URL", "https://creds.example.org")
        monkeypatch.setenv("DUO_RTC_NEGOTIATION_TIMEOUT", "12.5")

        config = load()

        assert config.get_websocket_url() == "wss://other.example.org:443"
        assert config.host == "127.0.0.1"
        assert config.port == 9100
        assert config.ice_servers_url == "https://creds.example.org"
        assert config.negotiation_timeout == 12.5

    def test_zero_timeout_disables_deadline(self, isolated_config, monkeypatch):
        monkeypatch.setenv("DUO_RTC_NEGOTIATION_TIMEOUT", "0")
        assert load().negotiation_timeout is None


class TestGlobalConfig:
    def test_get_config_is_cached(self, isolated_config):
        assert get_config() is get_config()

    def test_reload_config(self, isolated_config, monkeypatch):
        first = get_config()
        monkeypatch.setenv("DUO_RTC_PORT", "9200")

        reloaded = reload_config()

        assert reloaded is not first
        assert reloaded.port == 9200
        assert get_config() is reloaded


class TestIceServerConfig:
    def test_empty_urls_rejected(self):
        with pytest.raises(ValueError):
            IceServerConfig(urls="")

    def test_legacy_url_key(self):
        server = IceServerConfig.from_dict({"url": "stun:a", "username": "u"})
        assert server.to_dict() == {"urls": "stun:a", "username": "u"}

    def test_as_dict(self, isolated_config):
        data = load().as_dict()
        assert data["server"]["port"] == 8080
        assert data["peer"]["signaling_websocket"] == "ws://localhost:8080"
