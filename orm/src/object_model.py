"""
ORM object base class.

An ObjectModelBase instance wraps a single row of one entity:

    account = AccountModel(data_layer, global_identifier=current_identifier)
    if await account.load(42):
        account.data["firstName"] = "Jane"
        await account.save()

save() inserts when nothing has been loaded and updates otherwise. Updates
only write the attributes that changed since the last load, respect the
entity's locking constraint and are recorded in the audit log.
"""

import copy
import structlog
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Type

from orm.src.data_layer import LOCKING_ATTRIBUTE, DataLayer, parse_datetime
from shared.errors import LockingConstraintError, ObjectValidationError
from shared.models.data_model import DataModel, get_enum_options, get_relationship_columns
from shared.naming import get_sql_ready_name, to_pascal_case

logger = structlog.get_logger(__name__)

DATE_TYPES = {"date", "datetime", "timestamp"}


class ModificationType:
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ObjectModelBase:
    """Base class for generated and runtime-built entity model classes."""

    entity_name: Optional[str] = None

    def __init__(
        self,
        data_layer: DataLayer,
        entity_name: Optional[str] = None,
        global_identifier: Any = -1,
    ):
        """
        Args:
            data_layer: Data layer for the merged data model
            entity_name: Entity this object represents; defaults to the
                class attribute set by generated subclasses
            global_identifier: Identifier of the acting user, stored in audit entries
        """
        self.data_layer = data_layer
        self.entity_name = entity_name or self.entity_name
        if not self.entity_name:
            raise ValueError("No entity name provided for object model")

        self.entity = data_layer.get_entity(self.entity_name)
        self.global_identifier = global_identifier
        self.entity_schema = self.get_entity_schema()

        self.data: Dict[str, Any] = {"id": -1}
        self.last_loaded_data: Dict[str, Any] = {}

    def reset(self) -> None:
        """Forget loaded data and start from an empty object."""
        self.data = {"id": -1}
        self.last_loaded_data = {}

    # ========================================================================
    # Schema
    # ========================================================================

    def get_entity_schema(self, must_simplify: bool = False) -> Dict[str, Any]:
        """
        Attribute definitions of the entity, including relationship columns.

        Args:
            must_simplify: Return only the type of each attribute

        Returns:
            Attribute name mapped to its definition (or type)
        """
        schema: Dict[str, Any] = {}
        for attribute_name, attribute in self.entity.attributes.items():
            definition = attribute.model_dump(by_alias=True)
            schema[attribute_name] = definition["type"] if must_simplify else definition

        for property_name in get_relationship_columns(self.entity):
            definition = {"type": "int", "lengthOrValues": None, "default": None, "allowNull": True}
            schema[property_name] = definition["type"] if must_simplify else definition

        return schema

    def get_selectable_options(self, attribute_name: str) -> List[str]:
        """Options of an enum attribute, or [] for any other attribute."""
        attribute = self.entity.attributes.get(attribute_name)
        if attribute is None:
            return []
        return get_enum_options(attribute)

    def validate_against_selectable_options(self, attribute_name: str, value: Any) -> bool:
        """Check an enum value. Non-enum attributes and None always pass."""
        attribute = self.entity.attributes.get(attribute_name)
        if attribute is None or attribute.type.lower() != "enum" or value is None:
            return True
        return value in self.get_selectable_options(attribute_name)

    # ========================================================================
    # Hooks
    # ========================================================================

    async def on_before_load(self) -> None:
        pass

    async def on_after_load(self) -> None:
        pass

    async def on_before_save(self) -> None:
        pass

    async def on_after_save(self) -> None:
        pass

    async def on_before_delete(self) -> None:
        pass

    async def on_after_delete(self) -> None:
        pass

    # ========================================================================
    # Loading
    # ========================================================================

    def _set_loaded(self, row: Optional[Dict[str, Any]]) -> bool:
        if row is None:
            self.reset()
            return False
        self.data = dict(row)
        self.last_loaded_data = copy.deepcopy(row)
        return True

    async def load(self, entity_id: int, transaction=None) -> bool:
        """
        Load a row by ID.

        Returns:
            True if found; otherwise the object is reset and False is returned
        """
        await self.on_before_load()
        found = self._set_loaded(await self.data_layer.read(self.entity_name, entity_id, transaction=transaction))
        await self.on_after_load()
        return found

    async def load_by_field(self, field: str, value: Any, transaction=None) -> bool:
        """Load the first row whose field equals value."""
        await self.on_before_load()
        found = self._set_loaded(
            await self.data_layer.read_by_field(self.entity_name, field, value, transaction=transaction)
        )
        await self.on_after_load()
        return found

    # ========================================================================
    # Saving
    # ========================================================================

    async def save(self, must_ignore_locking_constraints: bool = False, transaction=None) -> bool:
        """
        Insert or update the object.

        Args:
            must_ignore_locking_constraints: Update even if the row changed
                after it was loaded
            transaction: Connection with an open transaction, if any

        Raises:
            ObjectValidationError: If data does not match the entity schema
            LockingConstraintError: If the row changed since it was loaded
            DatabaseError: If the statement fails
        """
        await self.on_before_save()

        if not self.last_loaded_data:
            result = await self._create(transaction)
        else:
            result = await self._update(must_ignore_locking_constraints, transaction)

        await self.on_after_save()
        return result

    def _prepare_value(self, attribute_name: str, value: Any) -> Any:
        if attribute_name not in self.entity_schema and attribute_name != "id":
            raise ObjectValidationError(
                f"Invalid attribute '{attribute_name}' for entity '{self.entity_name}'"
            )

        if not self.validate_against_selectable_options(attribute_name, value):
            raise ObjectValidationError(
                f"Invalid value '{value}' for '{attribute_name}'. "
                f"Allowed options: {', '.join(self.get_selectable_options(attribute_name))}"
            )

        attribute = self.entity.attributes.get(attribute_name)
        if attribute is not None and attribute.type.lower() in DATE_TYPES and value is not None:
            try:
                parsed = parse_datetime(value)
            except (ValueError, TypeError) as e:
                raise ObjectValidationError(
                    f"Invalid date value '{value}' for '{attribute_name}'"
                ) from e
            return parsed.date() if attribute.type.lower() == "date" else parsed

        return value

    async def _create(self, transaction=None) -> bool:
        create_data = {
            name: self._prepare_value(name, value)
            for name, value in self.data.items()
            if name != "id"
        }

        new_id = await self.data_layer.create(self.entity_name, create_data, transaction=transaction)
        await self.load(new_id, transaction=transaction)

        if self.entity.options.is_audit_enabled:
            await self.add_audit_log_entry(ModificationType.CREATE, new_id, self.data, transaction)

        return True

    @staticmethod
    def _values_differ(old: Any, new: Any) -> bool:
        if isinstance(old, (date, datetime)) or isinstance(new, (date, datetime)):
            if old is None or new is None:
                return old is not new
            try:
                return parse_datetime(old).timestamp() != parse_datetime(new).timestamp()
            except (ValueError, TypeError):
                return True
        return old != new

    async def _update(self, must_ignore_locking_constraints: bool, transaction=None) -> bool:
        changed: Dict[str, Any] = {}
        for name, value in self.data.items():
            if name in ("id", LOCKING_ATTRIBUTE):
                continue
            if name not in self.last_loaded_data or self._values_differ(self.last_loaded_data[name], value):
                changed[name] = self._prepare_value(name, value)

        if not changed:
            logger.debug("object_unchanged", entity=self.entity_name, id=self.data.get("id"))
            return True

        entity_id = self.last_loaded_data["id"]

        if (
            not must_ignore_locking_constraints
            and self.entity.options.enforce_locking_constraints
            and self.entity.has_attribute(LOCKING_ATTRIBUTE)
            and await self.data_layer.check_locking_constraint_active(
                self.entity_name,
                entity_id,
                self.last_loaded_data.get(LOCKING_ATTRIBUTE),
                transaction=transaction,
            )
        ):
            raise LockingConstraintError(
                f"'{self.entity_name}' {entity_id} was modified by another user since it was loaded. "
                "Reload it and try again."
            )

        await self.data_layer.update(self.entity_name, {"id": entity_id, **changed}, transaction=transaction)
        await self.load(entity_id, transaction=transaction)

        if self.entity.options.is_audit_enabled:
            await self.add_audit_log_entry(ModificationType.UPDATE, entity_id, changed, transaction)

        return True

    # ========================================================================
    # Deleting
    # ========================================================================

    async def delete(self, transaction=None) -> bool:
        """
        Delete the loaded row and reset the object.

        Raises:
            DatabaseError: If no row was deleted
        """
        await self.on_before_delete()

        entity_id = self.data.get("id", -1)
        await self.data_layer.delete(self.entity_name, entity_id, transaction=transaction)

        if self.entity.options.is_audit_enabled:
            await self.add_audit_log_entry(ModificationType.DELETE, entity_id, self.data, transaction)

        self.reset()
        await self.on_after_delete()
        return True

    async def add_audit_log_entry(
        self,
        modification_type: str,
        object_id: int,
        entry_detail: Dict[str, Any],
        transaction=None,
    ) -> None:
        await self.data_layer.add_audit_log_entry(
            {
                "objectName": self.entity_name,
                "modificationType": modification_type,
                "objectId": object_id,
                "entryDetail": entry_detail,
                "globalIdentifier": self.global_identifier,
            },
            transaction=transaction,
        )


def build_model_class(data_model: DataModel, entity_name: str) -> Type[ObjectModelBase]:
    """
    Create an ObjectModelBase subclass for an entity at runtime.

    The class is named "<EntityName>Model" and carries an upper-case
    constant per attribute holding its qualified column name, the same
    shape the code generator writes to disk.
    """
    if entity_name not in data_model:
        raise ValueError(f"Entity '{entity_name}' is not defined in the data model")

    entity = data_model[entity_name]
    namespace: Dict[str, Any] = {"entity_name": entity_name}

    table_name = get_sql_ready_name(entity_name)
    for attribute_name in list(entity.attributes) + list(get_relationship_columns(entity)):
        namespace[get_sql_ready_name(attribute_name).upper()] = f"{table_name}.{get_sql_ready_name(attribute_name)}"

    return type(f"{to_pascal_case(entity_name)}Model", (ObjectModelBase,), namespace)
