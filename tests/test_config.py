"""
Tests for environment and command-line configuration.
"""

import pytest

from config import ServerConfig
from server import load_config


class TestServerConfig:
    def test_defaults(self):
        config = ServerConfig.from_env({})
        assert config.host == "0.0.0.0"
        assert config.port == 2024
        assert config.sweep_interval == 6 * 60 * 60
        assert config.idle_threshold == 24 * 60 * 60
        assert (config.public_cap, config.thread_cap, config.replay_cap) == (1000, 500, 50)

    def test_environment_overrides(self):
        config = ServerConfig.from_env({
            "CHAT_HOST": "127.0.0.1",
            "CHAT_PORT": "9001",
            "CHAT_LOG_LEVEL": "debug",
            "CHAT_IDLE_THRESHOLD": "60",
            "CHAT_PUBLIC_CAP": "10",
        })
        assert config.host == "127.0.0.1"
        assert config.port == 9001
        assert config.log_level == "DEBUG"
        assert config.idle_threshold == 60.0
        assert config.public_cap == 10

    def test_bad_integer_is_fatal(self):
        with pytest.raises(ValueError):
            ServerConfig.from_env({"CHAT_PORT": "http"})

    @pytest.mark.parametrize("var", ["CHAT_PUBLIC_CAP", "CHAT_THREAD_CAP", "CHAT_REPLAY_CAP"])
    def test_zero_cap_is_fatal(self, var):
        with pytest.raises(ValueError):
            ServerConfig.from_env({var: "0"})

    def test_command_line_wins_over_environment(self, monkeypatch):
        monkeypatch.setenv("CHAT_PORT", "9001")
        monkeypatch.setenv("CHAT_HOST", "10.0.0.1")

        config = load_config(["--port", "9100", "--log-level", "warning"])

        assert config.port == 9100
        assert config.host == "10.0.0.1"
        assert config.log_level == "WARNING"
