"""Configuration management for Skipper."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.skipper/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.skipper/sessions.db").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"

DEFAULT_SYSTEM_PROMPT = (
    "You are Skipper, a coding assistant working inside the user's project. "
    "Use the available tools to inspect and change files, keep the todo list "
    "current for multi-step work, and finish with a short summary of what you did."
)


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "ollama"
    model: str = "llama3.2"
    temperature: float = 0.7
    max_tokens: int = 4096
    api_key: str = ""
    base_url: str = ""


class AgentConfig(BaseModel):
    """Turn loop configuration."""

    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    working_directory: str = "."
    # None exposes every registered tool to the model.
    tools: list[str] | None = None
    max_iterations: int = 200
    loop_detection_window: int = 5


class PermissionConfig(BaseModel):
    """Tool permission policy."""

    allow_all: bool = False
    default_mode: Literal["allow", "deny", "ask"] = "ask"
    always_allow: list[str] = Field(default_factory=list)
    always_deny: list[str] = Field(default_factory=list)


class CompactionConfig(BaseModel):
    """Context compaction configuration."""

    enabled: bool = True
    token_threshold: float = 0.8
    message_threshold: int | None = None
    inception_count: int = 4
    working_window_count: int = 10
    summary_max_tokens: int = 2000
    model: str | None = None
    auto_compact: bool = True
    allow_summary_edit: bool = True

    @field_validator("token_threshold")
    @classmethod
    def _check_fraction(cls, value: float) -> float:
        if not 0 < value <= 1:
            raise ValueError("token_threshold must be in (0, 1]")
        return value

    @field_validator("inception_count", "working_window_count")
    @classmethod
    def _check_window(cls, value: int) -> int:
        if value < 0:
            raise ValueError("window sizes cannot be negative")
        return value


class SessionConfig(BaseModel):
    """Session configuration."""

    path: str = str(DEFAULT_DB_PATH)


class TitleConfig(BaseModel):
    """Session title generation."""

    enabled: bool = True
    model: str | None = None
    temperature: float = 0.5
    max_tokens: int = 60


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Skipper."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    permissions: PermissionConfig = Field(default_factory=PermissionConfig)
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    title: TitleConfig = Field(default_factory=TitleConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="SKIPPER_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from YAML; env vars are applied by pydantic-settings."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_working_directory(self, runtime_base: Path | str | None = None) -> Path:
        """Resolve the agent working directory, anchoring relative paths to cwd."""
        raw = Path(self.agent.working_directory).expanduser()
        if raw.is_absolute():
            return raw.resolve()
        anchor = Path(runtime_base).expanduser().resolve() if runtime_base is not None else Path.cwd().resolve()
        return (anchor / raw).resolve()


# Global config instance, used by entry points only.
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
