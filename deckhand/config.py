"""Configuration management for Deckhand."""

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.deckhand/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.deckhand/conversations.db").expanduser()
LOCAL_CONFIG_FILENAME = "deckhand.yaml"


class ModelOption(BaseModel):
    """Model entry offered in the model selection menu."""

    name: str
    model_id: str


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "ollama"
    model: str = "qwen3-coder:30b"
    temperature: float = 0.2
    max_tokens: int = 8192
    api_key: str = ""
    base_url: str = ""
    options: list[ModelOption] = Field(
        default_factory=lambda: [
            ModelOption(name="qwen3-coder-30b", model_id="qwen3-coder:30b"),
            ModelOption(name="gpt-oss-20b", model_id="gpt-oss:20b"),
        ]
    )


class ChatConfig(BaseModel):
    """Chat loop behavior."""

    greeting_enabled: bool = True
    disable_auto_compaction: bool = False
    enable_notifications: bool = False
    aws_actions_double_check: bool = False
    response_timeout: float = 300.0
    prompts: dict[str, str] = Field(default_factory=dict)


class ContextConfig(BaseModel):
    """Context window budget configuration (measured in characters)."""

    max_chars: int = 600_000
    warning_ratio: float = 0.9
    compact_max_message_length: int = 25_000
    default_max_message_length: int = 500_000
    max_tool_response_size: int = 800_000


class ToolsConfig(BaseModel):
    """Tools configuration and default trust policy."""

    trusted: list[str] = ["fs_read"]
    denied: list[str] = []
    settings: dict[str, dict[str, Any]] = Field(default_factory=dict)
    shell_timeout: int = 300
    readonly_commands: list[str] = [
        "ls",
        "cat",
        "echo",
        "pwd",
        "which",
        "head",
        "tail",
        "find",
        "grep",
    ]


class AgentConfig(BaseModel):
    """Named tool policy selectable with ``--agent``."""

    allowed_tools: list[str] = Field(default_factory=list)
    denied_tools: list[str] = Field(default_factory=list)
    tools_settings: dict[str, dict[str, Any]] = Field(default_factory=dict)


class SessionConfig(BaseModel):
    """Conversation persistence configuration."""

    path: str = str(DEFAULT_DB_PATH)
    auto_save: bool = True


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "WARNING"
    format: Literal["console", "json"] = "console"
    file: str = ""


class Config(BaseSettings):
    """Main configuration for Deckhand."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    agents: dict[str, AgentConfig] = Field(default_factory=dict)
    session: SessionConfig = Field(default_factory=SessionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="DECKHAND_",
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
        """Load configuration from the default YAML location."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def model_option(self, model_id: str | None) -> ModelOption | None:
        """Return the menu entry for a model id, if one exists."""
        for option in self.model.options:
            if option.model_id == model_id:
                return option
        return None


# Global config instance
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
