"""
Code generator.

Renders Python classes for every entity of the data model from Jinja2
templates. Two kinds of files are produced:

- Base files under {output_root}/generated_base/. They are rewritten on
  every run and must not be edited.
- Specialisation files under {packages_root}/{package}/. They subclass the
  base files, are written once and are never overwritten, so project code
  lives there.
"""

import json
import pprint
import structlog
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from jinja2 import Environment, FileSystemLoader, select_autoescape

from shared.models.data_model import (
    DataModel,
    EntityDefinition,
    get_enum_options,
    get_relationship_columns,
)
from shared.naming import get_sql_ready_name, pluralize, to_kebab_case, to_pascal_case, to_snake_case
from shared.utils import is_numeric

logger = structlog.get_logger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

GENERATED_BASE_DIR = "generated_base"
CORE_PACKAGE = "core"

SCHEMA_TYPE_MAPPING: Dict[str, str] = {
    "char": "string",
    "varchar": "string",
    "tinytext": "string",
    "text": "string",
    "mediumtext": "string",
    "longtext": "string",
    "binary": "string",
    "varbinary": "string",
    "tinyblob": "string",
    "mediumblob": "string",
    "blob": "string",
    "longblob": "string",
    "enum": "string",
    "json": "string",
    "date": "string",
    "datetime": "string",
    "timestamp": "integer",
    "year": "integer",
    "tinyint": "integer",
    "smallint": "integer",
    "mediumint": "integer",
    "int": "integer",
    "integer": "integer",
    "bigint": "integer",
    "decimal": "number",
    "float": "number",
    "double": "number",
    "real": "number",
    "bit": "integer",
    "boolean": "boolean",
    "bool": "boolean",
    "serial": "integer",
}

SCHEMA_FORMATS: Dict[str, str] = {
    "date": "date",
    "datetime": "date-time",
    "float": "float",
    "double": "double",
}

SEARCHABLE_TYPES = {"char", "varchar", "tinytext", "text", "mediumtext", "longtext", "enum"}

BASE_FILE_KINDS = ("model", "schema", "data_series", "endpoint", "controller")


def _get_schema_default(default: Any) -> Any:
    if default is None or default == "CURRENT_TIMESTAMP":
        return None
    if isinstance(default, bool):
        return default
    if is_numeric(default):
        number = float(default)
        return int(number) if number.is_integer() else number
    return str(default)


def get_entity_json_schema(entity_name: str, entity: EntityDefinition) -> Dict[str, Any]:
    """
    JSON schema of an entity: its id, attributes and relationship columns.

    Args:
        entity_name: Entity name
        entity: Entity definition

    Returns:
        JSON schema as a dictionary
    """
    properties: Dict[str, Any] = {"id": {"type": "integer", "format": "int32"}}
    required: List[str] = []

    for attribute_name, attribute in entity.attributes.items():
        attribute_type = attribute.type.lower()
        definition: Dict[str, Any] = {"type": SCHEMA_TYPE_MAPPING.get(attribute_type, "string")}

        if attribute_type in SCHEMA_FORMATS:
            definition["format"] = SCHEMA_FORMATS[attribute_type]
        if attribute_type == "enum":
            definition["enum"] = get_enum_options(attribute)

        definition["default"] = _get_schema_default(attribute.default)
        properties[attribute_name] = definition

        if not attribute.allow_null and attribute.default is None:
            required.append(attribute_name)

    for property_name in get_relationship_columns(entity):
        properties[property_name] = {"type": "integer", "format": "int32"}

    schema: Dict[str, Any] = {
        "title": entity_name,
        "type": "object",
        "properties": properties,
    }
    if required:
        schema["required"] = required
    return schema


class CodeGenerator:
    """Renders base and specialisation classes for data model entities."""

    def __init__(
        self,
        data_model: DataModel,
        output_root: Union[str, Path],
        packages_root: Union[str, Path, None] = None,
        default_allowed_access: Optional[List[str]] = None,
    ):
        """
        Initialize the generator.

        Args:
            data_model: Merged data model
            output_root: Project root; base files go to output_root/generated_base
            packages_root: Directory holding the packages; defaults to output_root/packages
            default_allowed_access: Groupings allowed to run generated CRUD operations
        """
        self.data_model = data_model
        self.output_root = Path(output_root)
        self.packages_root = Path(packages_root) if packages_root is not None else self.output_root / "packages"
        self.base_root = self.output_root / GENERATED_BASE_DIR
        self.default_allowed_access = list(default_allowed_access or ["super user"])

        self.env = Environment(
            loader=FileSystemLoader(str(TEMPLATES_DIR)),
            autoescape=select_autoescape(enabled_extensions=()),
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self.env.filters["pyrepr"] = lambda value: pprint.pformat(value, indent=4, width=100, sort_dicts=False)

    # ========================================================================
    # Entity Selection
    # ========================================================================

    def _select_entities(self, entities: Optional[Iterable[str]]) -> List[str]:
        """
        Requested entities, or every package entity when none are requested.

        Raises:
            ValueError: If a requested entity is not in the data model
        """
        if entities is None:
            return [name for name, entity in self.data_model.items() if entity.package_name != CORE_PACKAGE]

        selected = list(entities)
        unknown = [name for name in selected if name not in self.data_model]
        if unknown:
            raise ValueError(f"Unknown entities: {', '.join(unknown)}")
        return selected

    def get_entity_context(self, entity_name: str) -> Dict[str, Any]:
        """Template variables describing one entity."""
        entity = self.data_model[entity_name]
        table_name = get_sql_ready_name(entity_name)

        property_names = list(entity.attributes) + list(get_relationship_columns(entity))
        constants = [
            (get_sql_ready_name(name).upper(), f"{table_name}.{get_sql_ready_name(name)}")
            for name in property_names
        ]

        return {
            "entity_name": entity_name,
            "plural_entity_name": entity.plural_entity_name or pluralize(entity_name),
            "pascal_name": to_pascal_case(entity_name),
            "snake_name": to_snake_case(entity_name),
            "kebab_name": to_kebab_case(entity_name),
            "package_name": entity.package_name or CORE_PACKAGE,
            "module_name": entity.module,
            "constants": constants,
            "entity_schema": get_entity_json_schema(entity_name, entity),
            "search_attributes": [
                name for name, attribute in entity.attributes.items() if attribute.type.lower() in SEARCHABLE_TYPES
            ],
            "allowed_access": self.default_allowed_access,
            "is_audit_enabled": entity.options.is_audit_enabled,
        }

    # ========================================================================
    # Paths
    # ========================================================================

    def get_base_file_paths(self, entity_name: str) -> Dict[str, Path]:
        names = self.get_entity_context(entity_name)
        snake, kebab = names["snake_name"], names["kebab_name"]
        return {
            "model": self.base_root / "models" / f"{snake}_model_base.py",
            "schema": self.base_root / "schemas" / f"{kebab}.schema.json",
            "data_series": self.base_root / "data_series" / f"{snake}_data_series_base.py",
            "endpoint": self.base_root / "endpoints" / f"{snake}_endpoint_base.py",
            "controller": self.base_root / "controllers" / f"{snake}_controller_base.py",
        }

    def get_specialisation_file_paths(self, entity_name: str) -> Dict[str, Path]:
        names = self.get_entity_context(entity_name)
        package_root = self.packages_root / names["package_name"]
        snake = names["snake_name"]
        return {
            "model": package_root / "models" / f"{snake}_model.py",
            "data_series": package_root / "data_series" / f"{snake}_data_series.py",
            "endpoint": package_root / "endpoints" / f"{snake}_endpoint.py",
            "controller": package_root / "controllers" / f"{snake}_controller.py",
        }

    # ========================================================================
    # Writing
    # ========================================================================

    def render(self, template_name: str, **context: Any) -> str:
        return self.env.get_template(template_name).render(**context)

    @staticmethod
    def _ensure_package(directory: Path, stop_at: Path) -> None:
        """Create directory and an __init__.py in it and every parent up to stop_at."""
        directory.mkdir(parents=True, exist_ok=True)
        current = directory
        while True:
            init_file = current / "__init__.py"
            if not init_file.exists():
                init_file.write_text("", encoding="utf-8")
            if current == stop_at or current.parent == current:
                break
            current = current.parent

    def _write(self, path: Path, content: str, package_root: Path, force: bool) -> bool:
        if path.exists() and not force:
            logger.debug("generated_file_skipped", path=str(path))
            return False

        if path.suffix == ".py":
            self._ensure_package(path.parent, package_root)
        else:
            path.parent.mkdir(parents=True, exist_ok=True)

        path.write_text(content, encoding="utf-8")
        logger.debug("generated_file_written", path=str(path))
        return True

    def generate_base_files(self, entities: Optional[Iterable[str]] = None, force: bool = True) -> List[Path]:
        """
        Write the base model, schema, data series, endpoint and controller
        files of each entity.

        Args:
            entities: Entity names; every package entity if None
            force: Overwrite existing base files

        Returns:
            Paths of the files written
        """
        written: List[Path] = []

        for entity_name in self._select_entities(entities):
            context = self.get_entity_context(entity_name)
            paths = self.get_base_file_paths(entity_name)

            contents = {
                "model": self.render("model_base.py.j2", **context),
                "schema": json.dumps(context["entity_schema"], indent=4) + "\n",
                "data_series": self.render("data_series_base.py.j2", **context),
                "endpoint": self.render("endpoint_base.py.j2", **context),
                "controller": self.render("controller_base.py.j2", **context),
            }

            for kind in BASE_FILE_KINDS:
                if self._write(paths[kind], contents[kind], self.base_root, force):
                    written.append(paths[kind])

            logger.info("base_files_generated", entity=entity_name)

        return written

    def generate_specialisation_files(self, entities: Optional[Iterable[str]] = None) -> List[Path]:
        """
        Write specialisation classes and a package endpoint for each
        entity's package. Existing files are left untouched.

        Returns:
            Paths of the files written
        """
        written: List[Path] = []
        entities_by_package: Dict[str, List[Dict[str, Any]]] = {}

        for entity_name in self._select_entities(entities):
            context = self.get_entity_context(entity_name)
            entities_by_package.setdefault(context["package_name"], []).append(context)

            for kind, path in self.get_specialisation_file_paths(entity_name).items():
                content = self.render(f"{kind}_specialisation.py.j2", **context)
                if self._write(path, content, self.packages_root, force=False):
                    written.append(path)

        for package_name, contexts in entities_by_package.items():
            path = self.packages_root / package_name / "endpoint.py"
            content = self.render(
                "package_endpoint.py.j2",
                package_name=package_name,
                package_pascal_name=to_pascal_case(package_name),
                entities=contexts,
            )
            if self._write(path, content, self.packages_root, force=False):
                written.append(path)

        logger.info("specialisation_files_generated", files=len(written))
        return written

    def check_base_generation_complete(self, entities: Optional[Iterable[str]] = None) -> bool:
        """Check that every base file exists for the entities."""
        missing = [
            str(path)
            for entity_name in self._select_entities(entities)
            for path in self.get_base_file_paths(entity_name).values()
            if not path.is_file()
        ]
        if missing:
            logger.info("base_generation_incomplete", missing=missing)
            return False
        return True
