"""
Project configuration file models.

The project configuration lives in a JSON file (dx-config/dxconfig.json by
default) that describes the database modules per environment and the
packages that make up the application:

    {
        "appName": "my-app",
        "environmentArray": {
            "development": {
                "modules": {
                    "main": {"host": "localhost", "user": "dbuser", "password": "secret",
                             "database": "my_app", "port": 5432, "ssl": false}
                }
            }
        },
        "dataModelPath": "dx-config/data-model.json",
        "packages": {
            "crm": {"packageRoot": "packages/crm", "endpoint": "packages.crm.endpoint:CrmEndpoint"}
        },
        "webConfig": {"port": 3000, "corsAllowedList": ["*"]}
    }
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator

from shared.errors import ConfigurationError

logger = structlog.get_logger(__name__)


class DatabaseConfig(BaseModel):
    """Connection settings for one database module."""

    host: str = Field("localhost", description="Database host")
    user: str = Field(..., description="Database user")
    password: str = Field("", description="Database password")
    database: str = Field(..., description="Database name")
    port: int = Field(5432, description="Database port", gt=0, lt=65536)
    ssl: bool = Field(False, description="Require SSL for the connection")

    model_config = {
        "frozen": True,
    }

    def connect_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for asyncpg.create_pool."""
        kwargs: Dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": self.database,
        }
        if self.ssl:
            kwargs["ssl"] = "require"
        return kwargs


class EnvironmentConfig(BaseModel):
    """Database modules available in one environment."""

    modules: Dict[str, DatabaseConfig] = Field(default_factory=dict)


class PackageConfig(BaseModel):
    """A package contributing entities and an endpoint to the application."""

    package_root: str = Field(..., alias="packageRoot")
    endpoint: Optional[str] = Field(
        None,
        description="Endpoint class as 'module.path:ClassName'"
    )
    options: Dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "populate_by_name": True,
    }


class WebConfig(BaseModel):
    """Web server options stored with the project."""

    port: int = Field(3000, gt=0, lt=65536)
    cors_allowed_list: List[str] = Field(default_factory=lambda: ["*"], alias="corsAllowedList")

    model_config = {
        "populate_by_name": True,
    }


class DxConfig(BaseModel):
    """Root of dxconfig.json."""

    app_name: str = Field("dx-app", alias="appName")
    environment_array: Dict[str, EnvironmentConfig] = Field(
        default_factory=dict,
        alias="environmentArray"
    )
    data_model_path: str = Field("dx-config/data-model.json", alias="dataModelPath")
    packages: Dict[str, PackageConfig] = Field(default_factory=dict)
    web_config: WebConfig = Field(default_factory=WebConfig, alias="webConfig")

    model_config = {
        "populate_by_name": True,
    }

    @field_validator("environment_array")
    @classmethod
    def validate_environment_array(cls, v: Dict[str, EnvironmentConfig]) -> Dict[str, EnvironmentConfig]:
        """Every environment needs at least one database module."""
        for name, environment in v.items():
            if not environment.modules:
                raise ValueError(f"environment '{name}' does not define any database modules")
        return v

    def get_module_configs(self, environment: str) -> Dict[str, DatabaseConfig]:
        """
        Get the database modules configured for an environment.

        Raises:
            ConfigurationError: If the environment is not configured
        """
        if environment not in self.environment_array:
            raise ConfigurationError(
                f"Environment '{environment}' is not configured. "
                f"Available: {', '.join(self.environment_array) or 'none'}"
            )
        return dict(self.environment_array[environment].modules)


def load_dx_config(path: Union[str, Path]) -> DxConfig:
    """
    Load the project configuration file.

    Args:
        path: Path to dxconfig.json

    Returns:
        Parsed configuration

    Raises:
        ConfigurationError: If the file is missing, is not JSON or is invalid
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigurationError(f"Configuration file not found: {path}")

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Configuration file {path} is not valid JSON: {e}") from e

    try:
        config = DxConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(
            f"Configuration file {path} is invalid",
            details={"errors": e.errors()},
        ) from e

    logger.debug(
        "dx_config_loaded",
        path=str(path),
        environments=list(config.environment_array.keys()),
        packages=list(config.packages.keys()),
    )
    return config
