import json
from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from agentbridge.constants import (
    DEFAULT_AGENT_PATH,
    DEFAULT_HOST,
    DEFAULT_MAX_TURNS,
    DEFAULT_PORT,
    SPAWN_GRACE_SECONDS,
    STOP_TIMEOUT_SECONDS,
)
from agentbridge.logging import get_logger

BRIDGE_DIR = Path.home() / ".agentbridge"
SETTINGS_PATH = BRIDGE_DIR / "settings.json"

_logger = get_logger(__name__)


def load_user_settings() -> dict:
    if not SETTINGS_PATH.exists():
        return {}
    try:
        return json.loads(SETTINGS_PATH.read_text())
    except (json.JSONDecodeError, OSError):
        _logger.warning("Failed to load user settings", path=str(SETTINGS_PATH), exc_info=True)
        return {}


class Config(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="AGENTBRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        validate_assignment=True,
        populate_by_name=True,
    )

    # Agent executable - standard env var, no prefix
    claude_path: str = Field(default=DEFAULT_AGENT_PATH, alias="CLAUDE_PATH")

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT

    # API authentication (optional, required when exposed to network)
    api_key: str | None = None
    cors_origins: Annotated[list[str], NoDecode] = Field(default_factory=list)

    # Agent turns
    max_turns: int = DEFAULT_MAX_TURNS
    spawn_grace_seconds: float = SPAWN_GRACE_SECONDS
    stop_timeout_seconds: float = STOP_TIMEOUT_SECONDS
    # Echo accepted messages as `user` entries; off when the UI renders them optimistically
    echo_user_messages: bool = True

    # 0 disables the periodic sweep; POST /web-chats/cleanup still works
    cleanup_interval_seconds: float = 0

    # Where the agent writes its JSONL transcripts
    projects_dir: Path = Path.home() / ".claude" / "projects"

    log_level: str = "INFO"
    json_logs: bool = False

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _split_origins(cls, v: str | list[str] | None) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("max_turns")
    @classmethod
    def _validate_max_turns(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_turns must be >= 1, got {v}")
        return v

    @field_validator("spawn_grace_seconds", "stop_timeout_seconds", "cleanup_interval_seconds")
    @classmethod
    def _validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"must be >= 0, got {v}")
        return v

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
            raise ValueError(f"Unsupported log level: {v}")
        return level

    @field_validator("projects_dir", mode="before")
    @classmethod
    def _expand_projects_dir(cls, v: str | Path) -> Path:
        return Path(v).expanduser()


PERSIST_KEYS = frozenset(
    {
        "claude_path",
        "max_turns",
        "spawn_grace_seconds",
        "projects_dir",
    }
)


def get_config() -> Config:
    settings = load_user_settings()

    # Build config: init args (settings.json) > env vars > defaults
    overrides = {k: settings[k] for k in PERSIST_KEYS if k in settings}
    return Config(**overrides)  # type: ignore - pydantic handles validation
