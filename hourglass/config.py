import hashlib
import json
import shlex
from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from hourglass import constants
from hourglass.logging import get_logger
from hourglass.notifiers.models import NotifierConfig
from hourglass.session.models import AutoRestart

HOURGLASS_DIR = Path.home() / ".hourglass"
SETTINGS_PATH = HOURGLASS_DIR / "settings.json"

_logger = get_logger(__name__)


def load_user_settings() -> dict:
    if not SETTINGS_PATH.exists():
        return {}
    try:
        return json.loads(SETTINGS_PATH.read_text())
    except (json.JSONDecodeError, OSError):
        _logger.warning("Failed to load user settings", exc_info=True)
        return {}


def save_user_settings(settings: dict) -> None:
    HOURGLASS_DIR.mkdir(exist_ok=True)
    SETTINGS_PATH.write_text(json.dumps(settings, indent=2))


class Config(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="HOURGLASS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        validate_assignment=True,
        populate_by_name=True,
    )

    # Command being re-invoked
    command: str = "claude"
    command_args: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["-p", "ping"])
    command_timeout: float = constants.COMMAND_TIMEOUT
    command_interval: float = constants.DEFAULT_COMMAND_INTERVAL

    # Session
    target_duration: float = constants.DEFAULT_TARGET_DURATION
    completion_display_delay: float = constants.COMPLETION_DISPLAY_DELAY
    auto_restart: AutoRestart = AutoRestart.OFF

    # Retry & circuit breaker
    max_retry_attempts: int = constants.MAX_RETRY_ATTEMPTS
    retry_base_delay: float = constants.RETRY_BASE_DELAY
    retry_max_delay: float = constants.RETRY_MAX_DELAY
    circuit_failure_threshold: int = constants.CIRCUIT_FAILURE_THRESHOLD
    circuit_cooldown: float = constants.CIRCUIT_COOLDOWN

    # Persistence
    state_dir: Path = HOURGLASS_DIR
    crash_recovery_window: float = constants.CRASH_RECOVERY_WINDOW
    autosave_interval: float = constants.AUTOSAVE_INTERVAL
    checksum_algorithm: str = constants.CHECKSUM_ALGORITHM

    # Timing
    tick_interval: float = constants.TICK_INTERVAL
    low_power_interval: float = constants.LOW_POWER_TICK_INTERVAL
    max_drift: float = constants.MAX_TIMING_DRIFT

    # Health monitoring
    health_interval: float = constants.HEALTH_INTERVAL
    network_endpoints: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["api.anthropic.com:443"])
    error_history_size: int = constants.ERROR_HISTORY_SIZE

    notifiers: list[NotifierConfig] = Field(default_factory=list)

    # Telegram bot token (optional) - no prefix, standard env var
    telegram_bot_token: str | None = Field(default=None, alias="TELEGRAM_BOT_TOKEN")

    log_level: str = "INFO"

    @field_validator("command")
    @classmethod
    def _validate_command(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("command must not be empty")
        return v

    @field_validator("command_args", mode="before")
    @classmethod
    def _split_command_args(cls, v):
        if isinstance(v, str):
            return shlex.split(v)
        return v

    @field_validator("network_endpoints", mode="before")
    @classmethod
    def _split_endpoints(cls, v):
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return v

    @field_validator("network_endpoints")
    @classmethod
    def _validate_endpoints(cls, v: list[str]) -> list[str]:
        for endpoint in v:
            host, sep, port = endpoint.rpartition(":")
            if not sep or not host or not port.isdigit():
                raise ValueError(f"Network endpoint must be host:port, got {endpoint!r}")
        return v

    @field_validator(
        "target_duration",
        "command_timeout",
        "command_interval",
        "tick_interval",
        "low_power_interval",
        "health_interval",
        "autosave_interval",
        "max_drift",
    )
    @classmethod
    def _validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"must be > 0, got {v}")
        return v

    @field_validator("max_retry_attempts")
    @classmethod
    def _validate_retry_attempts(cls, v: int) -> int:
        if not 0 <= v <= 10:
            raise ValueError(f"max_retry_attempts must be 0-10, got {v}")
        return v

    @field_validator("circuit_failure_threshold", "error_history_size")
    @classmethod
    def _validate_at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be >= 1, got {v}")
        return v

    @field_validator("checksum_algorithm")
    @classmethod
    def _validate_checksum_algorithm(cls, v: str) -> str:
        if v not in hashlib.algorithms_guaranteed:
            raise ValueError(f"Unsupported checksum algorithm: {v}")
        return v

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, v: str) -> str:
        normalized = v.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError("log_level must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG")
        return normalized

    @model_validator(mode="after")
    def _check_cadence(self) -> "Config":
        if self.low_power_interval < self.tick_interval:
            raise ValueError(
                f"low_power_interval ({self.low_power_interval}s) must not be below "
                f"tick_interval ({self.tick_interval}s)"
            )
        return self

    @property
    def snapshot_path(self) -> Path:
        return self.state_dir / constants.SNAPSHOT_FILENAME

    @property
    def diagnostics_db_path(self) -> Path:
        return self.state_dir / constants.DIAGNOSTICS_DB_FILENAME

    @property
    def log_path(self) -> Path:
        return self.state_dir / constants.LOG_FILENAME


PERSIST_KEYS = frozenset(
    {
        "command",
        "command_args",
        "command_timeout",
        "target_duration",
        "auto_restart",
        "max_retry_attempts",
        "retry_base_delay",
        "circuit_failure_threshold",
        "circuit_cooldown",
        "crash_recovery_window",
        "network_endpoints",
        "notifiers",
    }
)


def get_config() -> Config:
    settings = load_user_settings()
    # Build config: init args (settings.json) > env vars > defaults
    overrides = {k: settings[k] for k in PERSIST_KEYS if k in settings}
    return Config(**overrides)  # type: ignore - pydantic handles validation
