"""Configuration management using Pydantic settings."""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    # API Settings
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "AgentHub"
    VERSION: str = "1.0.0"
    ENVIRONMENT: str = Field(default="development")
    LOG_LEVEL: str = Field(default="INFO")

    # Security
    SECRET_KEY: str = Field(default="dev-secret-key-change-in-production")
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    PUBLIC_BASE_URL: str = Field(default="http://localhost:8000")

    # CORS
    BACKEND_CORS_ORIGINS: list[str] = Field(
        default=[
            "http://localhost:3000",
            "http://localhost:8000",
            "http://127.0.0.1:3000",
        ]
    )

    # Provider credentials (fallback when a tenant has no stored key)
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    ANTHROPIC_API_KEY: Optional[str] = Field(default=None)
    GOOGLE_API_KEY: Optional[str] = Field(default=None)

    # Provider endpoints
    OPENAI_BASE_URL: str = Field(default="https://api.openai.com/v1")
    ANTHROPIC_BASE_URL: str = Field(default="https://api.anthropic.com/v1")
    ANTHROPIC_VERSION: str = Field(default="2023-06-01")
    GOOGLE_BASE_URL: str = Field(default="https://generativelanguage.googleapis.com/v1beta")
    PROVIDER_HTTP_TIMEOUT_SECONDS: float = Field(default=120.0)

    # Orchestration
    DEFAULT_LLM_PROVIDER: str = Field(default="openai")
    DEFAULT_LLM_MODEL: str = Field(default="gpt-4.1-mini")
    DEFAULT_MAX_PROMPT_TOKENS: int = Field(default=25000)
    DEFAULT_MAX_OUTPUT_TOKENS: int = Field(default=4096)
    ORCHESTRATION_MAX_STEPS: int = Field(default=3)
    ORCHESTRATION_TIMEOUT_SECONDS: float = Field(default=300.0)
    ATTACHMENT_MAX_CHARS: int = Field(default=50000)
    TOOL_SET_CACHE_MAX_ENTRIES: int = Field(default=256)

    # Status broadcast
    STATUS_QUEUE_MAXSIZE: int = Field(default=1000)
    STATUS_OUTPUT_MAX_CHARS: int = Field(default=8000)

    # MCP server
    MCP_SESSION_TTL_SECONDS: int = Field(default=3600)
    MCP_PROTOCOL_VERSION: str = Field(default="2024-11-05")
    MCP_SERVER_NAME: str = Field(default="agenthub-mcp")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT.lower() in ("development", "dev", "local")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
