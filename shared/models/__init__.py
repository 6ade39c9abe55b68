"""Shared Pydantic models for project configuration and data models."""

from .data_model import (
    CORE_ENTITIES,
    AttributeDefinition,
    DataModel,
    EntityDefinition,
    EntityOptions,
    get_core_data_model,
    load_data_model_file,
    merge_data_models,
    validate_data_model,
)
from .dx_config import (
    DatabaseConfig,
    DxConfig,
    EnvironmentConfig,
    PackageConfig,
    WebConfig,
    load_dx_config,
)

__all__ = [
    "CORE_ENTITIES",
    "AttributeDefinition",
    "DataModel",
    "EntityDefinition",
    "EntityOptions",
    "get_core_data_model",
    "load_data_model_file",
    "merge_data_models",
    "validate_data_model",
    "DatabaseConfig",
    "DxConfig",
    "EnvironmentConfig",
    "PackageConfig",
    "WebConfig",
    "load_dx_config",
]
