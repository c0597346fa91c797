"""Tests for layered configuration (defaults, TOML file, environment)."""

import pytest

from cradle_rtc.config import (
    DEFAULT_ICE_SERVERS,
    DEFAULT_SIGNALING_WEBSOCKET,
    Config,
    MediaSessionConfig,
    get_config,
    parse_ice_servers,
    reload_config,
)

ENV_VARS = ["CRADLE_RTC_ENV", "CRADLE_RTC_SIGNALING_WS", "CRADLE_RTC_HOST", "PORT"]

SAMPLE_TOML = """
[environments.production]
signaling_websocket = "wss://pairing.example.org"
server_port = 9000
heartbeat_interval = 10
max_reconnect_attempts = 3

[environments.development]
signaling_websocket = "ws://localhost:9999"
reconnect_delay = 0.5

[media]
audio_device = "hw:1"
audio_format = "alsa"
audio_options = { channels = 1 }

[[media.ice_servers]]
urls = "stun:stun.example.org:3478"

[[media.ice_servers]]
urls = ["turn:turn.example.org:3478"]
username = "cradle"
credential = "secret"

[[media.ice_servers]]
username = "no-urls"
"""


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    """Run with an empty working directory and home, and no overrides set."""
    home = tmp_path / "home"
    home.mkdir()
    work = tmp_path / "work"
    work.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(work)
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return work


def load():
    config = Config()
    config.load()
    return config


class TestDefaults:
    def test_defaults_without_file(self, isolated):
        config = load()
        assert config.signaling_websocket == DEFAULT_SIGNALING_WEBSOCKET
        assert config.server_host == "0.0.0.0"
        assert config.server_port == 8080
        assert config.heartbeat_interval == 5.0
        assert config.max_reconnect_attempts == 5
        assert config.environment == "production"

    def test_default_media(self, isolated):
        media = load().get_media_session_config()
        assert media.ice_servers == DEFAULT_ICE_SERVERS
        assert media.echo_cancellation is False
        assert media.auto_gain_control is False
        assert media.noise_suppression is False


class TestConfigFile:
    def test_production_section(self, isolated):
        (isolated / "cradle-rtc.toml").write_text(SAMPLE_TOML)
        config = load()
        assert config.signaling_websocket == "wss://pairing.example.org"
        assert config.server_port == 9000
        assert config.heartbeat_interval == 10.0
        assert config.max_reconnect_attempts == 3

    def test_environment_selects_section(self, isolated, monkeypatch):
        (isolated / "cradle-rtc.toml").write_text(SAMPLE_TOML)
        monkeypatch.setenv("CRADLE_RTC_ENV", "development")
        config = load()
        assert config.environment == "development"
        assert config.signaling_websocket == "ws://localhost:9999"
        assert config.reconnect_delay == 0.5
        assert config.server_port == 8080

    def test_invalid_environment_falls_back(self, isolated, monkeypatch):
        monkeypatch.setenv("CRADLE_RTC_ENV", "moon")
        assert load().environment == "production"

    def test_home_config_is_used(self, isolated, tmp_path):
        home_dir = tmp_path / "home" / ".cradle-rtc"
        home_dir.mkdir()
        (home_dir / "config.toml").write_text(SAMPLE_TOML)
        assert load().signaling_websocket == "wss://pairing.example.org"

    def test_broken_file_uses_defaults(self, isolated):
        (isolated / "cradle-rtc.toml").write_text("this is [not toml")
        assert load().signaling_websocket == DEFAULT_SIGNALING_WEBSOCKET

    def test_media_section(self, isolated):
        (isolated / "cradle-rtc.toml").write_text(SAMPLE_TOML)
        media = load().get_media_session_config()
        assert media.audio_device == "hw:1"
        assert media.audio_format == "alsa"
        assert media.audio_options == {"channels": "1"}
        assert media.ice_servers == [
            {"urls": "stun:stun.example.org:3478"},
            {
                "urls": ["turn:turn.example.org:3478"],
                "username": "cradle",
                "credential": "secret",
            },
        ]


class TestEnvOverrides:
    def test_env_beats_file(self, isolated, monkeypatch):
        (isolated / "cradle-rtc.toml").write_text(SAMPLE_TOML)
        monkeypatch.setenv("CRADLE_RTC_SIGNALING_WS", "ws://override:1234")
        monkeypatch.setenv("PORT", "7000")
        monkeypatch.setenv("CRADLE_RTC_HOST", "127.0.0.1")
        config = load()
        assert config.signaling_websocket == "ws://override:1234"
        assert config.server_port == 7000
        assert config.server_host == "127.0.0.1"

    def test_non_numeric_port_is_ignored(self, isolated, monkeypatch):
        monkeypatch.setenv("PORT", "eighty")
        assert load().server_port == 8080


class TestGlobalConfig:
    def test_get_config_is_cached(self, isolated):
        assert get_config() is get_config()

    def test_reload_picks_up_changes(self, isolated, monkeypatch):
        reload_config()
        monkeypatch.setenv("CRADLE_RTC_SIGNALING_WS", "ws://fresh:1")
        assert reload_config().signaling_websocket == "ws://fresh:1"


def test_parse_ice_servers_skips_invalid():
    assert parse_ice_servers([{"urls": "stun:a"}, "stun:b", {"username": "x"}]) == [
        {"urls": "stun:a"}
    ]


def test_media_from_empty_dict():
    media = MediaSessionConfig.from_dict({})
    assert media.ice_servers == DEFAULT_ICE_SERVERS
