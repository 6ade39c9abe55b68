"""
Data model definitions.

A data model is a JSON object mapping entity names to entity definitions:

    {
        "account": {
            "module": "main",
            "attributes": {
                "firstName": {"type": "varchar", "lengthOrValues": 50, "default": null, "allowNull": true}
            },
            "relationships": {"organisation": ["employer"]},
            "options": {"enforceLockingConstraints": true, "isAuditEnabled": true}
        }
    }

Every package ships its own data model. They are merged with the core data
model at startup, and entity names must be unique across all of them.
"""

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import structlog
from pydantic import BaseModel, Field, ValidationError

from shared.errors import ConfigurationError, DataModelError
from shared.naming import to_camel_case

logger = structlog.get_logger(__name__)


# ============================================================================
# Entity Definition Models
# ============================================================================


class AttributeDefinition(BaseModel):
    """Single entity attribute, typed with MySQL-style type names."""

    type: str = Field(
        ...,
        description="Column type, e.g. varchar, int, enum, datetime, json"
    )
    length_or_values: Optional[Union[int, str]] = Field(
        None,
        alias="lengthOrValues",
        description="Column length or, for enums, the quoted option list"
    )
    default: Any = Field(
        None,
        description="Default value, or CURRENT_TIMESTAMP"
    )
    allow_null: bool = Field(
        True,
        alias="allowNull",
        description="Whether NULL is an accepted value"
    )

    model_config = {
        "populate_by_name": True,
    }


class EntityOptions(BaseModel):
    """Behaviour flags for an entity."""

    enforce_locking_constraints: bool = Field(
        True,
        alias="enforceLockingConstraints",
        description="Reject updates to rows modified since they were loaded"
    )
    is_audit_enabled: bool = Field(
        True,
        alias="isAuditEnabled",
        description="Write audit log entries for create, update and delete"
    )

    model_config = {
        "populate_by_name": True,
    }


class EntityDefinition(BaseModel):
    """Entity definition as declared in a data-model.json file."""

    module: str = Field(
        "main",
        description="Database module this entity is stored in"
    )
    attributes: Dict[str, AttributeDefinition] = Field(default_factory=dict)
    relationships: Dict[str, List[str]] = Field(
        default_factory=dict,
        description="Related entity name mapped to its relationship names"
    )
    indexes: List[Dict[str, Any]] = Field(default_factory=list)
    options: EntityOptions = Field(default_factory=EntityOptions)
    singular_entity_name: Optional[str] = Field(None, alias="singularEntityName")
    plural_entity_name: Optional[str] = Field(None, alias="pluralEntityName")
    package_name: Optional[str] = Field(
        None,
        alias="packageName",
        description="Package that declared the entity, set when merged"
    )

    model_config = {
        "populate_by_name": True,
    }

    def has_attribute(self, name: str) -> bool:
        return name in self.attributes


DataModel = Dict[str, EntityDefinition]


# ============================================================================
# Core Data Model
# ============================================================================

CORE_ENTITIES = ("globalIdentifier", "globalIdentifierGrouping", "auditLogEntry")

CORE_DATA_MODEL_JSON: Dict[str, Any] = {
    "globalIdentifier": {
        "module": "main",
        "attributes": {
            "uniqueIdentifier": {"type": "varchar", "lengthOrValues": 64, "allowNull": False},
            "linkedEntity": {"type": "varchar", "lengthOrValues": 100},
            "linkedEntityId": {"type": "bigint"},
            "isSuperUser": {"type": "boolean", "default": 0},
            "globalIdentifierGroupings": {"type": "json"},
            "lastUpdated": {"type": "datetime", "default": "CURRENT_TIMESTAMP"},
        },
        "relationships": {},
        "indexes": [
            {"attribute": "uniqueIdentifier", "indexName": "unique_identifier_unique", "indexChoice": "unique"}
        ],
        "options": {"enforceLockingConstraints": False, "isAuditEnabled": False},
    },
    "globalIdentifierGrouping": {
        "module": "main",
        "attributes": {
            "name": {"type": "varchar", "lengthOrValues": 50, "allowNull": False},
            "description": {"type": "text"},
            "parentGroupingId": {"type": "bigint"},
        },
        "relationships": {},
        "indexes": [
            {"attribute": "name", "indexName": "grouping_name_unique", "indexChoice": "unique"}
        ],
        "options": {"enforceLockingConstraints": False, "isAuditEnabled": True},
    },
    "auditLogEntry": {
        "module": "main",
        "attributes": {
            "entryTimeStamp": {"type": "datetime", "default": "CURRENT_TIMESTAMP"},
            "objectName": {"type": "varchar", "lengthOrValues": 50},
            "modificationType": {"type": "enum", "lengthOrValues": "'create','update','delete'"},
            "objectId": {"type": "bigint"},
            "entryDetail": {"type": "text"},
            "globalIdentifier": {"type": "varchar", "lengthOrValues": 64},
        },
        "relationships": {},
        "indexes": [],
        "options": {"enforceLockingConstraints": False, "isAuditEnabled": False},
    },
}


def parse_data_model(raw: Dict[str, Any], source: str = "<memory>") -> DataModel:
    """
    Validate a raw data model dictionary.

    Args:
        raw: Decoded data-model.json content
        source: Where the data came from, used in error messages

    Returns:
        Mapping of entity name to EntityDefinition

    Raises:
        DataModelError: If any entity definition is invalid
    """
    if not isinstance(raw, dict):
        raise DataModelError(f"Data model in {source} must be a JSON object")

    data_model: DataModel = {}
    for entity_name, definition in raw.items():
        try:
            data_model[entity_name] = EntityDefinition.model_validate(definition)
        except ValidationError as e:
            raise DataModelError(
                f"Invalid definition for entity '{entity_name}' in {source}",
                details={"errors": e.errors()},
            ) from e
    return data_model


def get_core_data_model() -> DataModel:
    """Return a fresh copy of the built-in entities."""
    return parse_data_model(CORE_DATA_MODEL_JSON, source="core")


def load_data_model_file(path: Union[str, Path]) -> DataModel:
    """
    Load and validate a data-model.json file.

    Raises:
        ConfigurationError: If the file does not exist or is not valid JSON
        DataModelError: If an entity definition is invalid
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigurationError(f"Data model file not found: {path}")

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Data model file {path} is not valid JSON: {e}") from e

    data_model = parse_data_model(raw, source=str(path))
    logger.debug("data_model_loaded", path=str(path), entities=len(data_model))
    return data_model


def merge_data_models(core: DataModel, packages: Dict[str, DataModel]) -> DataModel:
    """
    Merge package data models into the core data model.

    Packages are merged in the order given. Each merged entity is tagged with
    the name of the package that declared it.

    Args:
        core: Core entities, tagged with package name "core"
        packages: Package name mapped to its data model

    Returns:
        New merged data model

    Raises:
        DataModelError: If an entity name is declared more than once
    """
    merged: DataModel = {}

    for entity_name, entity in core.items():
        merged[entity_name] = entity.model_copy(update={"package_name": entity.package_name or "core"})

    for package_name, package_model in packages.items():
        for entity_name, entity in package_model.items():
            if entity_name in merged:
                owner = merged[entity_name].package_name
                logger.error(
                    "duplicate_entity_in_data_model",
                    entity=entity_name,
                    package=package_name,
                    existing_package=owner,
                )
                raise DataModelError(
                    f"Entity '{entity_name}' in package '{package_name}' is already "
                    f"defined by package '{owner}'",
                    details={"entity": entity_name, "packages": [owner, package_name]},
                )
            merged[entity_name] = entity.model_copy(update={"package_name": package_name})

    logger.info("data_models_merged", entities=len(merged), packages=list(packages.keys()))
    return merged


def validate_data_model(data_model: DataModel, required_entities: Iterable[str] = CORE_ENTITIES) -> None:
    """
    Check that the data model contains every required entity and that all
    relationships point at entities that exist.

    Raises:
        DataModelError: Listing every missing entity
    """
    missing = [name for name in required_entities if name not in data_model]

    for entity_name, entity in data_model.items():
        for related_entity in entity.relationships:
            if related_entity not in data_model and related_entity not in missing:
                missing.append(related_entity)

    if missing:
        raise DataModelError(
            f"Data model is missing required entities: {', '.join(missing)}",
            details={"missing": missing},
        )


# ============================================================================
# Helpers
# ============================================================================


def get_relationship_property_name(related_entity: str, relationship_name: str) -> str:
    """Property name of the foreign key column for a relationship."""
    return to_camel_case(f"{related_entity}_{relationship_name}")


def get_relationship_columns(entity: EntityDefinition) -> Dict[str, str]:
    """Map every relationship property of an entity to its related entity."""
    columns: Dict[str, str] = {}
    for related_entity, relationship_names in entity.relationships.items():
        for relationship_name in relationship_names:
            columns[get_relationship_property_name(related_entity, relationship_name)] = related_entity
    return columns


def get_module_names(data_model: DataModel) -> List[str]:
    """Distinct module names used by the data model, in first-seen order."""
    modules: List[str] = []
    for entity in data_model.values():
        if entity.module not in modules:
            modules.append(entity.module)
    return modules


def get_enum_options(attribute: AttributeDefinition) -> List[str]:
    """Parse the options of an enum attribute from its lengthOrValues string."""
    if attribute.type.lower() != "enum" or attribute.length_or_values is None:
        return []
    raw = str(attribute.length_or_values)
    return [option.strip().strip("'\"") for option in raw.split(",") if option.strip()]
