"""
Application configuration using Pydantic Settings.

Provides centralized configuration for:
- The project configuration file and environment
- Web server settings (port, CORS, API prefix)
- JWT settings
- Database pool settings
- Logging and monitoring

Database modules and packages are described by the project configuration
file (dxconfig.json, see shared.models.dx_config). The settings below
control how the service runs and can all be overridden through environment
variables or a .env file.
"""

from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden via environment variables with the
    prefix "DX_" (e.g., DX_JWT_SECRET).
    """

    # =========================================================================
    # Application Settings
    # =========================================================================

    app_name: str = Field(
        default="dx-app",
        description="Application name, also used as the JWT issuer when dxconfig.json has none"
    )
    app_version: str = Field(
        default="0.1.0",
        description="Application version"
    )
    environment: str = Field(
        default="development",
        description="Environment name; selects the database modules in dxconfig.json"
    )
    config_path: str = Field(
        default="dx-config/dxconfig.json",
        description="Path to the project configuration file"
    )

    # =========================================================================
    # Web Server Settings
    # =========================================================================

    host: str = Field(
        default="0.0.0.0",
        description="Bind host"
    )
    web_server_port: int = Field(
        default=3000,
        description="Bind port",
        gt=0,
        lt=65536
    )
    api_prefix: str = Field(
        default="/api",
        description="URL prefix for package endpoints"
    )
    cors_allowed_list: List[str] = Field(
        default=["*"],
        description="Allowed CORS origins; '*' allows all"
    )
    powered_by: str = Field(
        default="dx",
        description="Value of the x-powered-by response header"
    )

    # =========================================================================
    # JWT Settings
    # =========================================================================

    jwt_secret: str = Field(
        default="change-this-secret-key-in-production-minimum-32-chars",
        description="Secret key for JWT signing (MUST be changed in production)",
        min_length=32
    )
    jwt_algorithm: str = Field(
        default="HS256",
        description="JWT signing algorithm"
    )
    jwt_expires_in_minutes: int = Field(
        default=0,
        description="Lifetime of issued tokens in minutes; 0 issues tokens without expiry",
        ge=0
    )

    # =========================================================================
    # Database Settings
    # =========================================================================

    database_min_pool_size: int = Field(
        default=1,
        description="Minimum connections per database module",
        ge=0
    )
    database_max_pool_size: int = Field(
        default=10,
        description="Maximum connections per database module",
        gt=0,
        le=100
    )
    database_command_timeout: int = Field(
        default=30,
        description="Statement timeout (seconds)",
        gt=0
    )
    database_sync_on_startup: bool = Field(
        default=False,
        description="Create missing tables when the service starts"
    )

    # =========================================================================
    # Logging and Monitoring
    # =========================================================================

    log_level: str = Field(
        default="INFO",
        description="Log level: DEBUG|INFO|WARNING|ERROR|CRITICAL"
    )
    log_format: str = Field(
        default="json",
        description="Log format: json|text"
    )
    debug_mode: bool = Field(
        default=False,
        description="Log every generated SQL statement"
    )
    metrics_enabled: bool = Field(
        default=True,
        description="Expose Prometheus metrics at /metrics"
    )

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the allowed values."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of {allowed}, got: {v}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        allowed = ["json", "text"]
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"log_format must be one of {allowed}, got: {v}")
        return v_lower

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Environment names are matched in lowercase."""
        v_lower = v.strip().lower()
        if not v_lower:
            raise ValueError("environment must not be empty")
        return v_lower

    @field_validator("jwt_algorithm")
    @classmethod
    def validate_jwt_algorithm(cls, v: str) -> str:
        """Only symmetric algorithms are supported with a shared secret."""
        allowed = ["HS256", "HS384", "HS512"]
        if v not in allowed:
            raise ValueError(f"jwt_algorithm must be one of {allowed}, got: {v}")
        return v

    @field_validator("api_prefix")
    @classmethod
    def validate_api_prefix(cls, v: str) -> str:
        """Prefix starts with "/" and has no trailing "/"."""
        return "/" + v.strip("/")

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def allows_all_origins(self) -> bool:
        return "*" in self.cors_allowed_list

    model_config = SettingsConfigDict(
        env_prefix="DX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        validate_default=True,
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Settings are loaded once from:
    1. Environment variables with DX_ prefix
    2. .env file in the current directory
    3. Default values

    Returns:
        Settings: Cached settings instance
    """
    return Settings()


def clear_settings_cache() -> None:
    """Forget the cached settings, e.g. after changing the environment in tests."""
    get_settings.cache_clear()
