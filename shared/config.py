"""
Shared configuration management for the Access Engine.
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

# Only acceptable in env=local; build_engine refuses it anywhere else.
DEFAULT_JWT_SECRET = "change-me-in-production-use-32-plus-bytes"


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # Storage
    store_backend: str = "memory"  # memory | redis
    redis_url: str = "redis://localhost:6379/0"
    store_cas_retries: int = 16

    # Tokens
    jwt_secret: str = DEFAULT_JWT_SECRET
    jwt_algorithm: str = "HS256"
    session_cookie_name: str = "access_session"
    password_scheme: str = "pbkdf2_sha256"

    # Policy (tier catalog, role defaults, endpoint map)
    policy_file: Optional[str] = None

    # Shared secret for /internal routes; unset means open in env=local, closed elsewhere
    internal_token: Optional[str] = None

    # Rate limiting
    rate_limit_window_seconds: int = 3600


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
