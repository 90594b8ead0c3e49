import json

import pytest
from pydantic import ValidationError

from hourglass import config as config_module
from hourglass.config import Config, get_config, load_user_settings, save_user_settings
from hourglass.notifiers.models import NotifierConfig
from hourglass.session.machine import SessionSettings
from hourglass.session.models import AutoRestart


@pytest.fixture
def settings_path(tmp_path, monkeypatch):
    path = tmp_path / "settings.json"
    monkeypatch.setattr(config_module, "HOURGLASS_DIR", tmp_path)
    monkeypatch.setattr(config_module, "SETTINGS_PATH", path)
    return path


class TestDefaults:
    def test_defaults(self):
        config = Config()
        assert config.command == "claude"
        assert config.target_duration == 18_000
        assert config.command_interval == 3_600
        assert config.max_retry_attempts == 5
        assert config.circuit_failure_threshold == 3
        assert config.crash_recovery_window == 300
        assert config.checksum_algorithm == "sha256"
        assert config.auto_restart is AutoRestart.OFF

    def test_paths_live_under_state_dir(self, tmp_path):
        config = Config(state_dir=tmp_path)
        assert config.snapshot_path == tmp_path / "session.json"
        assert config.diagnostics_db_path == tmp_path / "diagnostics.db"
        assert config.log_path == tmp_path / "hourglass.log"


class TestEnvironment:
    def test_prefixed_env_vars(self, monkeypatch):
        monkeypatch.setenv("HOURGLASS_TARGET_DURATION", "600")
        monkeypatch.setenv("HOURGLASS_AUTO_RESTART", "immediate")
        config = Config()
        assert config.target_duration == 600
        assert config.auto_restart is AutoRestart.IMMEDIATE

    def test_command_args_are_shell_split(self, monkeypatch):
        monkeypatch.setenv("HOURGLASS_COMMAND_ARGS", "--print 'hello world'")
        assert Config().command_args == ["--print", "hello world"]

    def test_endpoints_are_comma_separated(self, monkeypatch):
        monkeypatch.setenv("HOURGLASS_NETWORK_ENDPOINTS", "example.com:443, 1.1.1.1:53")
        assert Config().network_endpoints == ["example.com:443", "1.1.1.1:53"]

    def test_telegram_token_uses_standard_name(self, monkeypatch):
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
        assert Config().telegram_bot_token == "123:abc"


class TestValidation:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"command": "   "},
            {"target_duration": 0},
            {"command_interval": -1},
            {"max_retry_attempts": 11},
            {"circuit_failure_threshold": 0},
            {"checksum_algorithm": "crc32"},
            {"network_endpoints": ["no-port"]},
            {"log_level": "chatty"},
            {"tick_interval": 60, "low_power_interval": 30},
        ],
    )
    def test_rejects_invalid(self, overrides):
        with pytest.raises(ValidationError):
            Config(**overrides)

    def test_log_level_normalized(self):
        assert Config(log_level=" debug ").log_level == "DEBUG"

    def test_assignment_is_validated(self):
        config = Config()
        with pytest.raises(ValidationError):
            config.target_duration = -5

    def test_notifiers(self):
        config = Config(notifiers=[{"name": "phone", "type": "telegram", "config": {"user_id": 42}}])
        assert config.notifiers == [NotifierConfig(name="phone", type="telegram", config={"user_id": 42})]
        assert config.notifiers[0].events == ["completed", "failed", "paused"]


class TestUserSettings:
    def test_missing_file(self, settings_path):
        assert load_user_settings() == {}

    def test_unreadable_file(self, settings_path):
        settings_path.write_text("{broken")
        assert load_user_settings() == {}

    def test_round_trip(self, settings_path):
        save_user_settings({"command": "codex"})
        assert json.loads(settings_path.read_text()) == {"command": "codex"}
        assert load_user_settings() == {"command": "codex"}

    def test_settings_file_beats_env(self, settings_path, monkeypatch):
        monkeypatch.setenv("HOURGLASS_COMMAND", "from-env")
        monkeypatch.setenv("HOURGLASS_TARGET_DURATION", "1200")
        save_user_settings({"command": "from-file", "tick_interval": 99})

        config = get_config()

        assert config.command == "from-file"
        assert config.target_duration == 1200
        # Only whitelisted keys are taken from the file
        assert config.tick_interval == 1.0


class TestSessionSettings:
    def test_from_config(self):
        config = Config(command="codex", command_args=["exec", "ping"], target_duration=900, auto_restart="after_delay")
        settings = SessionSettings.from_config(config)
        assert settings.command == "codex"
        assert settings.command_args == ("exec", "ping")
        assert settings.target_duration == 900
        assert settings.auto_restart is AutoRestart.AFTER_DELAY
