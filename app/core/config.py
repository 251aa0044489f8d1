"""
Core configuration module using Pydantic Settings.
Loads configuration from environment variables with validation.
"""
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = "sqlite:///./taskhub_realtime.db"
    db_pool_size: int = 20
    db_max_overflow: int = 10
    db_pool_recycle: int = 3600
    seed_demo_data: bool = True

    # Security Configuration
    jwt_secret_key: str = "changeme-in-production"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 15
    access_token_cookie_name: str = "accessToken"

    # Realtime Configuration
    max_connections_per_user: int = 5
    heartbeat_interval_seconds: int = 30
    heartbeat_timeout_seconds: int = 40
    message_max_length: int = 1000

    # Application Configuration
    service_name: str = "taskhub-realtime"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"
    log_json: bool = True
    cors_origins: List[str] = ["http://localhost:3000"]

    # Tracing Configuration
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://localhost:4318/v1/traces"
    environment: str = "development"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )


# Global settings instance
settings = Settings()
