"""
Core configuration module using Pydantic Settings.
Loads configuration from environment variables with validation.
"""
from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = "sqlite:///./chat_core.db"

    # Redis Configuration (rate limiting backend and outbound relay)
    redis_url: str = "redis://localhost:6379/0"
    redis_max_connections: int = 50

    # Security Configuration (token verification only, issuance is external)
    jwt_secret_key: str = "changeme-in-production"
    jwt_algorithm: str = "HS256"

    # Application Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"
    log_json: bool = True
    service_name: str = "chat-core"
    otel_exporter_endpoint: Optional[str] = None
    seed_default_room: bool = True

    # Message limits
    max_message_length: int = 4000
    edit_window_minutes: int = 60
    max_mentions_per_message: int = 10
    max_reactions_per_message: int = 30
    default_history_limit: int = 50
    max_history_limit: int = 100

    # Connection and presence timers (seconds)
    max_connections_per_user: int = 5
    presence_grace_seconds: float = 5.0
    typing_timeout_seconds: float = 3.0
    heartbeat_interval_seconds: float = 30.0
    heartbeat_timeout_seconds: float = 40.0
    send_timeout_seconds: float = 5.0
    persist_retry_backoff_seconds: float = 0.2

    # Rate limiting (requests per window, per user and action kind)
    rate_limit_backend: Literal["memory", "redis"] = "memory"
    rate_limit_window_seconds: float = 60.0
    message_rate_limit: int = 30
    typing_rate_limit: int = 120
    join_rate_limit: int = 10

    # Outbound pub/sub relay (interface boundary, disabled by default)
    relay_enabled: bool = False
    relay_channel_prefix: str = "room"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    def rate_limit_for(self, action_kind: str) -> int:
        """Return the per-window request budget for an action kind."""
        limits = {
            "message": self.message_rate_limit,
            "typing": self.typing_rate_limit,
            "join": self.join_rate_limit,
        }
        return limits.get(action_kind, self.message_rate_limit)


# Global settings instance
settings = Settings()
