"""Configuration management for the mesh router."""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-level settings. Routing rules live in the routing YAML file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    # Server configuration
    HOST: str = Field(default="127.0.0.1", description="Server host")
    PORT: int = Field(default=8080, description="Server port")
    DEBUG: bool = Field(default=False, description="Debug mode")

    # Logging
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: str = Field(default="json", description="Logging format: json or text")

    # Routing configuration
    ROUTING_CONFIG_FILE: str = Field(
        default="config/routing.yaml",
        description="Path to the routing configuration file"
    )
    CONFIG_WATCH_INTERVAL: float = Field(
        default=5.0, ge=0.0, le=3600.0,
        description="Seconds between config file change checks (0 disables the watcher)"
    )
    DEFAULT_SERVICE: Optional[str] = Field(
        default=None,
        description="Service used when the Host header matches no configured service"
    )
    ADMIN_PREFIX: str = Field(default="/_router", description="Path prefix of the admin API")

    # Upstream connection pool
    MAX_CONNECTIONS: int = Field(default=200, ge=1, description="Max upstream connections")
    MAX_KEEPALIVE_CONNECTIONS: int = Field(default=50, ge=0, description="Max idle keep-alive connections")
    CONNECT_TIMEOUT: float = Field(default=2.0, gt=0, description="Upstream connect timeout in seconds")
    POOL_TIMEOUT: float = Field(default=5.0, gt=0, description="Connection pool acquire timeout in seconds")
    HTTP2_ENABLED: bool = Field(default=False, description="Negotiate HTTP/2 with upstreams")

    # Outcome events
    EVENT_BUFFER_SIZE: int = Field(default=1000, ge=1, le=100000, description="Outcome events kept in memory")

    @field_validator('LOG_LEVEL')
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level"""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @field_validator('LOG_FORMAT')
    @classmethod
    def validate_log_format(cls, v):
        """Validate log format"""
        valid_formats = ['json', 'text']
        if v.lower() not in valid_formats:
            raise ValueError(f"Log format must be one of {valid_formats}")
        return v.lower()

    @field_validator('ADMIN_PREFIX')
    @classmethod
    def validate_admin_prefix(cls, v):
        """Admin prefix must be an absolute path without a trailing slash"""
        if not v.startswith('/'):
            raise ValueError("ADMIN_PREFIX must start with '/'")
        return v.rstrip('/') or '/_router'


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings (for dependency injection)"""
    return settings
