"""
Settings and configuration for the QConnect client.

Uses Pydantic Settings to manage environment variables and configuration.
"""

from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Backend API
    api_base_url: str = Field(
        default="http://localhost:8000",
        description="Base URL of the query-generation backend",
        validation_alias=AliasChoices("QCONNECT_API_BASE_URL", "API_BASE_URL"),
    )
    api_prefix: str = Field(default="/api/v1", description="API path prefix")
    request_timeout: float = Field(
        default=60.0, description="Transport timeout for backend calls, in seconds"
    )

    # Generation defaults
    default_model: str = Field(default="gemini", description="Generation model")
    default_database_type: str = Field(
        default="kdb",
        description="Target database dialect",
        validation_alias=AliasChoices("QCONNECT_DB_TYPE", "DEFAULT_DATABASE_TYPE"),
    )

    # Local durable state
    state_db_path: Path = Field(
        default=Path.home() / ".qconnect" / "state.db",
        description="SQLite file backing the local key-value store",
        validation_alias=AliasChoices("QCONNECT_STATE_DB", "STATE_DB_PATH"),
    )
    current_conversation_key: str = Field(
        default="currentConversationId",
        description="Storage key for the active conversation id",
    )
    feedback_storage_key: str = Field(
        default="queryFeedback",
        description="Storage key for the feedback ledger",
    )

    # Conversation context
    context_window_size: int = Field(
        default=5, description="Messages sent as history with each request"
    )
    summary_threshold: int = Field(
        default=3, description="Message count at which a summary is requested"
    )
    title_max_chars: int = Field(
        default=50, description="Characters of the first message used as title"
    )

    # Feature flags
    enable_fallback_responses: bool = Field(
        default=True,
        description="Synthesize a placeholder query when retry cannot reach the backend",
    )
    enable_directives: bool = Field(
        default=True, description="Enable @DIRECTIVE suggestions"
    )

    default_user_id: Optional[str] = Field(
        default=None,
        description="User id used when none is given on the command line",
        validation_alias=AliasChoices("QCONNECT_USER_ID", "DEFAULT_USER_ID"),
    )

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format (json or text)")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def api_url(self) -> str:
        """Full API URL, base plus prefix."""
        return f"{self.api_base_url.rstrip('/')}{self.api_prefix}"


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance, creating it if necessary."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
