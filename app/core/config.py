"""
Core configuration module using Pydantic Settings.
Loads configuration from environment variables with validation.
"""
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = "sqlite:///./chat.db"
    db_pool_pre_ping: bool = True

    # Security Configuration
    jwt_secret_key: str = "changeme-in-production"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24
    bcrypt_rounds: int = 12

    # Real-time Configuration
    max_connections_per_user: int = 5
    heartbeat_interval_seconds: int = 30
    heartbeat_timeout_seconds: int = 40

    # Application Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 3000
    cors_origins: List[str] = ["*"]
    log_level: str = "INFO"
    log_json: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )


# Global settings instance
settings = Settings()
