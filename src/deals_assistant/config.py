"""Configuration management using pydantic-settings."""

import warnings
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class ModelRate(BaseModel):
    """USD price per one million tokens."""

    input: float
    output: float


DEFAULT_TOKEN_COSTS: Dict[str, ModelRate] = {
    "gpt-5-nano": ModelRate(input=0.05, output=0.40),
    "gpt-4o-mini": ModelRate(input=0.15, output=0.60),
    "gpt-4o": ModelRate(input=2.50, output=10.00),
    "text-embedding-3-small": ModelRate(input=0.02, output=0.0),
}


class LLMSettings(BaseSettings):
    """LLM configuration for model routing and provider credentials."""

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False, populate_by_name=True)

    simple_model: str = Field(
        default="gpt-5-nano",
        description="Cheap model used for classification and simple answers (LiteLLM format)",
        alias="AI_MODEL_SIMPLE",
    )
    complex_model: str = Field(
        default="gpt-4o-mini",
        description="More capable model for comparisons and advice (LiteLLM format)",
        alias="AI_MODEL_COMPLEX",
    )
    embedding_model: str = Field(
        default="text-embedding-3-small",
        description="Embedding model identifier",
        alias="AI_EMBEDDING_MODEL",
    )
    request_timeout: float = Field(
        default=60.0, description="Provider call timeout in seconds", alias="AI_REQUEST_TIMEOUT"
    )
    max_retries: int = Field(
        default=3, ge=1, description="Total attempts per model call", alias="AI_MAX_RETRIES"
    )
    token_costs: Dict[str, ModelRate] = Field(
        default_factory=lambda: dict(DEFAULT_TOKEN_COSTS),
        description="Per-model USD rate table per 1M tokens",
        alias="AI_TOKEN_COSTS",
    )

    # OpenAI
    openai_api_key: Optional[str] = Field(
        default=None, description="OpenAI API key", alias="OPENAI_API_KEY"
    )
    openai_organization: Optional[str] = Field(
        default=None, description="OpenAI organization id", alias="OPENAI_ORG_ID"
    )

    # Anthropic
    anthropic_api_key: Optional[str] = Field(
        default=None, description="Anthropic API key", alias="ANTHROPIC_API_KEY"
    )

    @property
    def has_openai(self) -> bool:
        """Check if OpenAI is configured."""
        return bool(self.openai_api_key)

    @property
    def has_anthropic(self) -> bool:
        """Check if Anthropic is configured."""
        return bool(self.anthropic_api_key)


class RedisSettings(BaseSettings):
    """Redis configuration for the distributed cache tier."""

    model_config = SettingsConfigDict(env_prefix="REDIS_", case_sensitive=False, populate_by_name=True)

    url: Optional[str] = Field(
        default=None, description="Redis connection URL (unset keeps the cache in-process)"
    )
    password: Optional[str] = None
    socket_timeout: float = Field(default=5.0, description="Per-command timeout in seconds")
    socket_connect_timeout: float = 5.0
    max_connections: int = Field(default=50, description="Connection pool size")


class SupabaseSettings(BaseSettings):
    """Supabase (PostgREST) data store configuration."""

    model_config = SettingsConfigDict(env_prefix="SUPABASE_", case_sensitive=False, populate_by_name=True)

    url: str = Field(default="http://localhost:54321", description="Supabase project URL")
    service_role_key: Optional[str] = Field(
        default=None, description="Service role key used for server-side queries"
    )
    timeout: float = Field(default=10.0, description="Request timeout in seconds")

    @property
    def rest_url(self) -> str:
        return f"{self.url.rstrip('/')}/rest/v1"


class RateLimitSettings(BaseSettings):
    """Per-identity query limits."""

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False, populate_by_name=True)

    guest_per_minute: int = Field(default=10, alias="AI_RATE_LIMIT_GUEST_MIN")
    guest_per_day: int = Field(default=2, alias="AI_RATE_LIMIT_GUEST_DAY")
    user_per_minute: int = Field(default=30, alias="AI_RATE_LIMIT_USER_MIN")
    user_per_day: int = Field(default=200, alias="AI_RATE_LIMIT_USER_DAY")
    count_completed_turns: bool = Field(
        default=False,
        description="Also increment counters after each completed model turn",
        alias="AI_RATE_LIMIT_COUNT_COMPLETED_TURNS",
    )
    memory_max_keys: int = Field(
        default=100_000,
        ge=1,
        description="Counter capacity of the in-process tier (two keys per identity)",
        alias="AI_RATE_LIMIT_MEMORY_MAX_KEYS",
    )


class CacheSettings(BaseSettings):
    """Response and tool-result cache configuration."""

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False, populate_by_name=True)

    exact_ttl: int = Field(default=300, description="Exact-match TTL in seconds", alias="AI_CACHE_EXACT_TTL")
    semantic_ttl: int = Field(
        default=900, description="Semantic tier TTL (not used)", alias="AI_CACHE_SEMANTIC_TTL"
    )
    tool_ttl: int = Field(default=120, description="Tool result TTL in seconds", alias="AI_CACHE_TOOL_TTL")
    semantic_threshold: float = Field(
        default=0.92,
        description="Similarity threshold for the semantic tier (not used)",
        alias="AI_CACHE_SEMANTIC_THRESHOLD",
    )
    memory_max_entries: int = Field(
        default=1000, ge=1, description="In-process tier capacity", alias="AI_CACHE_MEMORY_MAX_ENTRIES"
    )
    key_prefix: str = Field(default="ai", alias="AI_CACHE_KEY_PREFIX")

    @field_validator("semantic_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("Semantic threshold must be between 0 and 1")
        return v


class LimitSettings(BaseSettings):
    """Hard caps on input, history and token budgets."""

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False, populate_by_name=True)

    max_input_length: int = Field(default=2000, alias="AI_MAX_INPUT_LENGTH")
    max_conversation_history: int = Field(default=10, alias="AI_MAX_CONVERSATION_HISTORY")
    max_tool_results: int = Field(default=10, alias="AI_MAX_TOOL_RESULTS")
    max_tokens_simple: int = Field(default=1500, alias="AI_MAX_TOKENS_SIMPLE")
    max_tokens_complex: int = Field(default=4000, alias="AI_MAX_TOKENS_COMPLEX")
    classification_max_tokens: int = Field(
        default=2000,
        description="Generous budget so reasoning models can think before answering",
        alias="AI_CLASSIFICATION_MAX_TOKENS",
    )


class FeatureSettings(BaseSettings):
    """Master feature flags."""

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False, populate_by_name=True)

    enabled: bool = Field(default=True, alias="AI_ENABLED")
    streaming_enabled: bool = Field(default=True, alias="AI_STREAMING_ENABLED")
    caching_enabled: bool = Field(default=True, alias="AI_CACHING_ENABLED")
    logging_enabled: bool = Field(default=True, alias="AI_LOGGING_ENABLED")


class ChatLogSettings(BaseSettings):
    """NDJSON chat log configuration."""

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False, populate_by_name=True)

    log_file: str = Field(default="logs/ai-chat.log", alias="AI_CHAT_LOG_FILE")


class ServerSettings(BaseSettings):
    """Uvicorn bind address for ``python -m deals_assistant.main``."""

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False, populate_by_name=True)

    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8001, alias="PORT")
    reload: bool = Field(default=False, alias="RELOAD")


CommaList = Annotated[List[str], NoDecode]


class CorsSettings(BaseSettings):
    """Browser access for the marketplace frontend."""

    model_config = SettingsConfigDict(env_prefix="CORS_", case_sensitive=False, populate_by_name=True)

    # CORS_ORIGINS=https://a.example,https://b.example
    origins: CommaList = Field(default_factory=lambda: ["http://localhost:3000"])
    allow_credentials: bool = True
    allow_methods: CommaList = Field(default_factory=lambda: ["GET", "POST", "DELETE", "OPTIONS"])
    allow_headers: CommaList = Field(default_factory=lambda: ["*"])
    max_age: int = Field(default=3600, description="Preflight cache lifetime in seconds")

    @field_validator("origins", "allow_methods", "allow_headers", mode="before")
    @classmethod
    def split_commas(cls, v):
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    app_name: str = Field(default="deals-assistant", description="Application name", alias="APP_NAME")
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment",
        alias="ENVIRONMENT",
    )
    debug: bool = Field(default=False, description="Enable debug mode", alias="DEBUG")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", alias="LOG_LEVEL"
    )

    # Grouped by concern; each group reads its own env aliases
    llm: LLMSettings = Field(default_factory=LLMSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    supabase: SupabaseSettings = Field(default_factory=SupabaseSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    limits: LimitSettings = Field(default_factory=LimitSettings)
    features: FeatureSettings = Field(default_factory=FeatureSettings)
    chat_log: ChatLogSettings = Field(default_factory=ChatLogSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    cors: CorsSettings = Field(default_factory=CorsSettings)

    @field_validator("environment", mode="before")
    @classmethod
    def parse_environment(cls, v):
        """Unknown environment names run as development."""
        if isinstance(v, str):
            return Environment.__members__.get(v.strip().upper(), Environment.DEVELOPMENT)
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        return v.strip().upper() if isinstance(v, str) else v

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def ai_available(self) -> bool:
        """AI features are usable when enabled and at least one provider has credentials."""
        return self.features.enabled and (self.llm.has_openai or self.llm.has_anthropic)

    def validate_llm_configuration(self) -> None:
        """Warn when no LLM provider is configured."""
        if not (self.llm.has_openai or self.llm.has_anthropic):
            warnings.warn(
                "No LLM provider is configured. Set OPENAI_API_KEY or ANTHROPIC_API_KEY "
                "to enable the assistant.",
                UserWarning,
            )

    def validate_production_settings(self) -> None:
        """Validate that production settings are secure."""
        if self.is_production:
            if self.debug:
                raise ValueError("DEBUG must be False in production")
            if not self.supabase.service_role_key:
                raise ValueError("SUPABASE_SERVICE_ROLE_KEY must be set in production")


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
