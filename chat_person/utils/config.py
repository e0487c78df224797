"""Configuration management for chat-person using pydantic-settings."""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Ensure .env is loaded so ${VAR} expansion and os.environ lookups work
load_dotenv(dotenv_path=Path(".") / ".env", override=False)


class PersonaConfig(BaseModel):
    """Who the bot pretends to be."""

    name: str = "Xiaoming"
    age: int = 18
    gender: str = "male"
    personality: str = "cheerful, warm, optimistic"
    profession: str = "student"
    hobbies: list[str] = Field(default_factory=list)
    hates: list[str] = Field(default_factory=list)
    # Channel ids the persona listens to; empty means every channel
    allowed_channels: list[str] = Field(default_factory=list)


class LLMConfig(BaseModel):
    """OpenAI-compatible chat completion endpoint."""

    base_url: str = "https://api.siliconflow.cn/v1"
    model: str = "deepseek-ai/DeepSeek-V3"
    temperature: float = 0.7
    max_tokens: int = 2048
    timeout: int = 120
    max_tool_iterations: int = 8  # Tool-call rounds per generation attempt
    max_retries: int = 3


class TriggerConfig(BaseModel):
    """Reply probability controller."""

    baseline: float = 0.3
    decay_step: float = 0.1
    reengage_threshold: float = 0.5


class ContextConfig(BaseModel):
    """Rolling prompt window, counted in messages."""

    max_context: int = 20
    fit_context: int = 10


class DebounceConfig(BaseModel):
    """Settle window for message edits."""

    delay_seconds: float = 1.0


class IdentityConfig(BaseModel):
    """Placeholders used when a name cannot be resolved."""

    unknown_user: str = "anonymous user"
    unknown_channel: str = "unknown channel"
    unknown_guild: str = "unknown server"
    cache_size: int = 1024  # Resolved names kept, least recently used evicted first


class AbbreviationConfig(BaseModel):
    """Abbreviation lookup (nbnhhsh) configuration."""

    enabled: bool = True
    api_url: str = "https://lab.magiconch.com/api/nbnhhsh/guess"
    timeout: float = 10.0
    cache_size: int = 512


class SlackChannelConfig(BaseModel):
    """Slack channel configuration."""

    enabled: bool = False
    bot_token: str = ""
    app_token: str = ""


class DiscordChannelConfig(BaseModel):
    """Discord channel configuration."""

    enabled: bool = False
    token: str = ""
    message_content_intent: bool = True


class ChannelsConfig(BaseModel):
    """All channels configuration."""

    slack: SlackChannelConfig = Field(default_factory=SlackChannelConfig)
    discord: DiscordChannelConfig = Field(default_factory=DiscordChannelConfig)


class DatabaseConfig(BaseModel):
    """Database configuration."""

    url: str = "sqlite+aiosqlite:///./data/chat_person.db"
    echo: bool = False


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"
    file: str = "./data/logs/chat_person.log"
    max_size_mb: int = 100
    backup_count: int = 5
    audit_file: str = "./data/logs/audit.log"


class Settings(BaseSettings):
    """Main settings class that loads from YAML and environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CHAT_PERSON_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    persona: PersonaConfig = Field(default_factory=PersonaConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    trigger: TriggerConfig = Field(default_factory=TriggerConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    debounce: DebounceConfig = Field(default_factory=DebounceConfig)
    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    abbreviation: AbbreviationConfig = Field(default_factory=AbbreviationConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # API keys from environment
    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    slack_bot_token: str = Field(default="", alias="SLACK_BOT_TOKEN")
    slack_app_token: str = Field(default="", alias="SLACK_APP_TOKEN")
    discord_token: str = Field(default="", alias="DISCORD_TOKEN")

    @classmethod
    def from_yaml(cls, config_path: str | Path | None = None) -> "Settings":
        """Load settings from YAML file with environment variable overrides."""
        if config_path is None:
            config_path = os.environ.get("CHAT_PERSON_CONFIG") or None
        if config_path is None:
            possible_paths = [
                Path("config/settings.yaml"),
                Path("config/settings.local.yaml"),
                Path.home() / ".config/chat-person/settings.yaml",
            ]
            for path in possible_paths:
                if path.exists():
                    config_path = path
                    break

        config_data: dict[str, Any] = {}
        if config_path and Path(config_path).exists():
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}

        config_data = cls._expand_env_vars(config_data)

        # Inject secrets from environment so clients get keys after .env is loaded
        env_keys = [
            ("openai_api_key", "OPENAI_API_KEY"),
            ("slack_bot_token", "SLACK_BOT_TOKEN"),
            ("slack_app_token", "SLACK_APP_TOKEN"),
            ("discord_token", "DISCORD_TOKEN"),
        ]
        for field_name, env_var in env_keys:
            if field_name not in config_data:
                config_data[env_var] = os.environ.get(env_var, "")
            else:
                config_data[env_var] = config_data.pop(field_name)

        try:
            instance = cls(**config_data)
        except Exception as e:
            raise ValueError(f"Invalid config: {e}") from e
        instance.validate()
        return instance

    def validate(self) -> None:
        """Validate critical config. Raises ValueError on failure."""
        errors: list[str] = []
        if not self.persona.name.strip():
            errors.append("persona.name must be a non-empty string")
        if not 0 < self.context.fit_context < self.context.max_context:
            errors.append("context.fit_context must be between 0 and context.max_context (exclusive)")
        if not 0.0 <= self.trigger.baseline <= 1.0:
            errors.append("trigger.baseline must be within [0, 1]")
        if self.trigger.decay_step < 0:
            errors.append("trigger.decay_step must not be negative")
        if self.identity.cache_size < 1 or self.abbreviation.cache_size < 1:
            errors.append("identity.cache_size and abbreviation.cache_size must be at least 1")
        if self.debounce.delay_seconds < 0:
            errors.append("debounce.delay_seconds must not be negative")
        if errors:
            raise ValueError("Config validation failed: " + "; ".join(errors))

    @classmethod
    def _expand_env_vars(cls, data: Any) -> Any:
        """Recursively expand environment variables in config values."""
        if isinstance(data, dict):
            return {k: cls._expand_env_vars(v) for k, v in data.items()}
        elif isinstance(data, list):
            return [cls._expand_env_vars(item) for item in data]
        elif isinstance(data, str):
            # Expand ${VAR} patterns
            if data.startswith("${") and data.endswith("}"):
                env_var = data[2:-1]
                return os.environ.get(env_var, "")
            return data
        return data

    def ensure_directories(self) -> None:
        """Ensure log and database directories exist."""
        dirs_to_create = [
            Path(self.logging.file).parent,
            Path(self.logging.audit_file).parent,
        ]
        if "sqlite" in self.database.url:
            dirs_to_create.append(Path(self.database.url.split("///")[-1]).parent)
        for dir_path in dirs_to_create:
            Path(dir_path).expanduser().mkdir(parents=True, exist_ok=True)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings.from_yaml()


def reload_settings() -> Settings:
    """Reload settings (clears cache)."""
    get_settings.cache_clear()
    return get_settings()
