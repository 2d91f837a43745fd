"""Application settings and configuration.

This module defines all configuration options for the Chorus Chat sync engine.
Settings are loaded from environment variables with sensible defaults.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Engine components never read this object directly; the composition root
    passes the relevant values into their constructors. Settings can be
    overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Chorus Chat", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Database configuration
    database_url: str = Field(default="sqlite:///./chorus_chat.db", alias="DATABASE_URL")
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Which persistence adapter backs the engine
    persistence_backend: Literal["sql", "hosted"] = Field(
        default="sql",
        alias="CHAT_PERSISTENCE_BACKEND",
    )

    # Hosted backend (PostgREST-style) settings
    hosted_base_url: str | None = Field(default=None, alias="CHAT_HOSTED_BASE_URL")
    hosted_api_key: str | None = Field(default=None, alias="CHAT_HOSTED_API_KEY")
    hosted_messages_table: str = Field(default="messages", alias="CHAT_HOSTED_MESSAGES_TABLE")
    hosted_http_timeout_seconds: float = Field(
        default=10.0,
        alias="CHAT_HOSTED_HTTP_TIMEOUT_SECONDS",
    )

    # History paging
    history_page_size: int = Field(default=20, alias="CHAT_HISTORY_PAGE_SIZE")
    gap_recovery_page_size: int = Field(default=100, alias="CHAT_GAP_RECOVERY_PAGE_SIZE")
    history_fetch_max_retries: int = Field(default=3, alias="CHAT_HISTORY_FETCH_MAX_RETRIES")
    history_fetch_retry_delay_seconds: float = Field(
        default=0.5,
        alias="CHAT_HISTORY_FETCH_RETRY_DELAY_SECONDS",
    )

    # Live feed
    live_event_kinds: list[str] = Field(
        default=["insert", "update"],
        alias="CHAT_LIVE_EVENT_KINDS",
    )

    # CORS configuration for web frontend access
    cors_origins: list[str] = Field(
        default=["*"],
        alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(
        default=["*"],
        alias="CORS_ALLOW_HEADERS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def effective_database_url(self) -> str:
        """Return the database URL respecting testing overrides.

        Returns:
            The active database URL (test database if in testing mode, otherwise production)
        """
        if self.use_testing_database and self.test_database_url:
            return self.test_database_url
        return self.database_url

    @property
    def hosted_enabled(self) -> bool:
        """Return True when the hosted backend adapter is selected and configured."""
        return self.persistence_backend == "hosted" and bool(self.hosted_base_url)


settings = Settings()
