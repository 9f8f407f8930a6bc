"""Pydantic models for parley configuration validation."""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from parley.core import constants

# Supported provider types
ProviderType = Literal["openai", "groq", "deepseek", "openrouter", "gemini", "offline"]


class AuthMethod(str, Enum):
    """Authentication method for API requests."""

    BEARER = "bearer"  # Authorization: Bearer <key>
    API_KEY = "api-key"  # api-key: <key>
    X_API_KEY = "x-api-key"  # x-api-key: <key>
    X_GOOG_API_KEY = "x-goog-api-key"  # Gemini
    NONE = "none"


class ProviderConfig(BaseModel):
    """Configuration for one LLM vendor endpoint.

    Example in config.json:
        "providers": {
            "groq": {
                "type": "groq",
                "api_key_env": "GROQ_API_KEY",
                "base_url": "https://api.groq.com/openai/v1"
            }
        }
    """

    model_config = ConfigDict(extra="forbid")

    type: ProviderType = "openai"
    """Wire protocol family: openai-compatible variants, gemini, or offline."""

    api_key_env: str = "OPENAI_API_KEY"
    """Environment variable containing the API key."""

    base_url: str = "https://api.openai.com/v1"
    """Base URL for API requests."""

    auth_method: AuthMethod = AuthMethod.BEARER
    """How to send the API key."""

    extra_headers: dict[str, str] = {}
    """Additional headers to include in API requests."""

    request_timeout: float = Field(default=120.0, gt=0)
    """Timeout in seconds for API requests."""

    max_retries: int = Field(default=3, ge=0, le=10)
    """Maximum number of retry attempts before the stream starts."""

    retry_backoff: float = Field(default=1.5, ge=1.0, le=5.0)
    """Exponential backoff multiplier between retries."""

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class ProfileConfig(BaseModel):
    """A named assistant profile: which model to talk to and how.

    Example in config.json:
        "profiles": {
            "developer": {
                "provider": "openai",
                "model": "gpt-4o-mini",
                "system_prompt": "You are an experienced programmer..."
            }
        }
    """

    model_config = ConfigDict(extra="forbid")

    provider: str
    """Key into Config.providers."""

    model: str
    """Model identifier sent to the API."""

    display_name: str | None = None
    system_prompt: str = "You are a helpful assistant. Answer clearly and briefly."
    welcome_message: str | None = None
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0)

    tools_enabled: bool = True
    """Offer the registered tools to the model."""


class CompactionConfig(BaseModel):
    """Configuration for conversation summarization."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    """Whether background summarization is enabled."""

    threshold: int = Field(default=constants.SUMMARY_THRESHOLD, ge=1)
    """New visible messages needed before (re)summarizing."""

    recent_window: int = Field(default=constants.RECENT_WINDOW, ge=1)
    """Most recent messages always sent verbatim."""

    max_summary_length: int = Field(default=constants.MAX_SUMMARY_LENGTH, ge=16)
    """Summary text is clamped to this many characters."""

    debounce_seconds: float = Field(default=constants.SUMMARY_DEBOUNCE_SECONDS, ge=0)
    """Delay after a finalized turn before summarization runs."""

    max_age_days: int = Field(default=constants.SUMMARY_MAX_AGE_DAYS, ge=1)
    """Summaries older than this are considered stale."""

    profile: str | None = None
    """Profile used for summarization. None = the conversation's profile."""


class StreamConfig(BaseModel):
    """Streaming and tool-loop limits."""

    model_config = ConfigDict(extra="forbid")

    flush_interval: float = Field(default=constants.FLUSH_INTERVAL_SECONDS, gt=0)
    """Minimum seconds between store flushes of streamed text."""

    idle_timeout: float = Field(default=constants.STREAM_IDLE_TIMEOUT_SECONDS, gt=0)
    """Seconds without a stream event before the turn fails."""

    max_tool_rounds: int = Field(default=constants.MAX_TOOL_ROUNDS, ge=1)
    """Tool rounds allowed in one turn."""


class ToolsConfig(BaseModel):
    """Tool execution limits."""

    model_config = ConfigDict(extra="forbid")

    timeout: float = Field(default=constants.TOOL_TIMEOUT_SECONDS, gt=0)
    max_concurrent: int = Field(default=constants.MAX_CONCURRENT_TOOLS, ge=1)
    disabled: list[str] = []
    """Built-in tools not to register."""

    time_format: str = "%A, %d %B %Y, %H:%M:%S"
    """strftime format used by get_current_time."""


class SearchConfig(BaseModel):
    """Web search backend (Serper)."""

    model_config = ConfigDict(extra="forbid")

    api_key_env: str = "SERPER_API_KEY"
    endpoint: str = "https://google.serper.dev/search"
    result_limit: int = Field(default=constants.SEARCH_RESULT_LIMIT, ge=1, le=20)
    timeout: float = Field(default=10.0, gt=0)


class HistorySinkConfig(BaseModel):
    """Remote turn history (Supabase REST)."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    url_env: str = "SUPABASE_URL"
    api_key_env: str = "SUPABASE_ANON_KEY"
    table: str = "conversations_history"
    timeout: float = Field(default=5.0, gt=0)


class PersistenceConfig(BaseModel):
    """Local snapshot of conversations and summaries."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    path: str | None = None
    """Snapshot file. None = ~/.parley/conversations.json."""

    attachment_content_limit: int = Field(default=constants.ATTACHMENT_CONTENT_LIMIT, ge=0)


class Config(BaseModel):
    """Root configuration model.

    Example config.json:
        {
            "default_profile": "flash",
            "providers": {
                "gemini": {"type": "gemini", "api_key_env": "GEMINI_API_KEY",
                           "base_url": "https://generativelanguage.googleapis.com/v1beta",
                           "auth_method": "x-goog-api-key"}
            },
            "profiles": {
                "flash": {"provider": "gemini", "model": "gemini-2.0-flash"}
            }
        }
    """

    model_config = ConfigDict(extra="forbid")

    default_profile: str = "local"
    providers: dict[str, ProviderConfig] = {
        "offline": ProviderConfig(type="offline", api_key_env="", base_url="",
                                  auth_method=AuthMethod.NONE),
    }
    profiles: dict[str, ProfileConfig] = {
        "local": ProfileConfig(provider="offline", model="built-in",
                               tools_enabled=False),
    }
    compaction: CompactionConfig = CompactionConfig()
    stream: StreamConfig = StreamConfig()
    tools: ToolsConfig = ToolsConfig()
    search: SearchConfig = SearchConfig()
    history: HistorySinkConfig = HistorySinkConfig()
    persistence: PersistenceConfig = PersistenceConfig()

    @model_validator(mode="after")
    def validate_profiles(self) -> "Config":
        """Ensure every profile names a known provider and the default exists."""
        for name, profile in self.profiles.items():
            if profile.provider not in self.providers:
                raise ValueError(
                    f"Profile '{name}' references unknown provider '{profile.provider}'"
                )
        if self.default_profile not in self.profiles:
            raise ValueError(f"Unknown default_profile: {self.default_profile}")
        if self.compaction.profile is not None and self.compaction.profile not in self.profiles:
            raise ValueError(f"Unknown compaction profile: {self.compaction.profile}")
        return self

    def get_profile(self, name: str | None = None) -> ProfileConfig:
        """Get a profile by name (default profile when None).

        Raises:
            KeyError: If profile name not found.
        """
        name = name or self.default_profile
        if name in self.profiles:
            return self.profiles[name]
        raise KeyError(f"Unknown profile: {name}")

    def get_provider_config(self, name: str) -> ProviderConfig:
        """Get provider configuration by name.

        Raises:
            KeyError: If provider name not found.
        """
        if name in self.providers:
            return self.providers[name]
        raise KeyError(f"Unknown provider: {name}")

    def list_profiles(self) -> list[str]:
        return list(self.profiles.keys())
