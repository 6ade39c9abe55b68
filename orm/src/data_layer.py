"""
Data layer: CRUD operations over the merged data model.

Entity and attribute names are camelCase everywhere above this layer. The
data layer converts them to snake_case table and column names, converts
values to the Python types the driver expects, and converts result rows back
to camelCase dictionaries.
"""

import json
import structlog
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

import asyncpg

from orm.src.db_connector import DbConnector
from shared.errors import DatabaseError, DataModelError, ObjectValidationError
from shared.models.data_model import (
    CORE_ENTITIES,
    DataModel,
    EntityDefinition,
    get_relationship_columns,
    validate_data_model,
)
from shared.naming import convert_sql_name_to_property, get_sql_ready_name

logger = structlog.get_logger(__name__)

INTEGER_TYPES = {"int", "integer", "bigint", "smallint", "mediumint", "year", "serial", "bit"}
BOOLEAN_TYPES = {"boolean", "bool"}
FLOAT_TYPES = {"float", "double", "real"}
DATETIME_TYPES = {"datetime", "timestamp"}
RELATIONSHIP_TYPE = "relationship"

AUDIT_ENTITY = "auditLogEntry"
LOCKING_ATTRIBUTE = "lastUpdated"


def utc_now() -> datetime:
    """Current UTC time as a naive datetime, matching "timestamp" columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_datetime(value: Any) -> datetime:
    """
    Parse an ISO 8601 string or date into a naive UTC datetime.

    Raises:
        ValueError: If the value cannot be parsed
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"cannot convert {value!r} to a datetime")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class DataLayer:
    """CRUD access to every entity of the data model."""

    def __init__(self, connector: DbConnector, data_model: DataModel):
        """
        Initialize the data layer.

        Args:
            connector: Connector holding a pool per database module
            data_model: Merged data model
        """
        self.connector = connector
        self.data_model = data_model

    # ========================================================================
    # Naming
    # ========================================================================

    @staticmethod
    def get_sql_ready_name(name: str) -> str:
        return get_sql_ready_name(name)

    @staticmethod
    def convert_sql_name_to_property(name: str) -> str:
        return convert_sql_name_to_property(name)

    # ========================================================================
    # Data Model Access
    # ========================================================================

    def check_entity_exists_in_data_model(self, entity_name: str) -> bool:
        return entity_name in self.data_model

    def get_entity(self, entity_name: str) -> EntityDefinition:
        """
        Get the definition of an entity.

        Raises:
            DataModelError: If the entity is not part of the data model
        """
        if entity_name not in self.data_model:
            raise DataModelError(f"Entity '{entity_name}' is not defined in the data model")
        return self.data_model[entity_name]

    def get_module_name_from_entity_name(self, entity_name: str) -> str:
        return self.get_entity(entity_name).module

    def validate_data_model(self, required_entities: Iterable[str] = CORE_ENTITIES) -> None:
        validate_data_model(self.data_model, required_entities)

    def get_entity_property_types(self, entity_name: str) -> Dict[str, str]:
        """
        Map every writable property of an entity to its type.

        Relationship columns have type "relationship" and "id" has type "bigint".
        """
        entity = self.get_entity(entity_name)
        property_types: Dict[str, str] = {"id": "bigint"}
        for attribute_name, attribute in entity.attributes.items():
            attribute_type = attribute.type.lower()
            if attribute_type == "tinyint" and str(attribute.length_or_values) == "1":
                attribute_type = "boolean"
            property_types[attribute_name] = attribute_type
        for property_name in get_relationship_columns(entity):
            property_types[property_name] = RELATIONSHIP_TYPE
        return property_types

    # ========================================================================
    # Value Conversion
    # ========================================================================

    def coerce_value(self, entity_name: str, property_name: str, value: Any) -> Any:
        """
        Convert a value to the Python type expected for a column.

        Raises:
            ObjectValidationError: If the value cannot be converted
        """
        if value is None:
            return None

        property_type = self.get_entity_property_types(entity_name).get(property_name)
        if property_type is None:
            return value

        try:
            if property_type in INTEGER_TYPES or property_type in (RELATIONSHIP_TYPE, "tinyint"):
                return int(value)
            if property_type in BOOLEAN_TYPES:
                if isinstance(value, str):
                    return value.strip().lower() in ("1", "true", "yes")
                return bool(value)
            if property_type == "decimal":
                return Decimal(str(value))
            if property_type in FLOAT_TYPES:
                return float(value)
            if property_type == "date":
                if isinstance(value, datetime):
                    return value.date()
                if isinstance(value, date):
                    return value
                return parse_datetime(value).date()
            if property_type in DATETIME_TYPES:
                return parse_datetime(value)
            if property_type == "time":
                if isinstance(value, datetime):
                    return value.time()
                if isinstance(value, time):
                    return value
                return time.fromisoformat(str(value))
            if property_type == "json":
                return value if isinstance(value, str) else json.dumps(value)
        except (ValueError, TypeError, InvalidOperation) as e:
            raise ObjectValidationError(
                f"Invalid value for '{entity_name}.{property_name}': {value!r}",
                details={"type": property_type},
            ) from e

        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return str(value) if not isinstance(value, str) else value

    def row_to_properties(self, entity_name: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Convert a database row to a dictionary keyed by property name."""
        property_types = self.get_entity_property_types(entity_name)
        result: Dict[str, Any] = {}
        for column_name, value in row.items():
            property_name = convert_sql_name_to_property(column_name)
            if property_types.get(property_name) == "json" and isinstance(value, str):
                try:
                    value = json.loads(value)
                except ValueError:
                    pass
            result[property_name] = value
        return result

    def _get_column_values(self, entity_name: str, data: Dict[str, Any]) -> Dict[str, Any]:
        property_types = self.get_entity_property_types(entity_name)
        columns: Dict[str, Any] = {}
        for property_name, value in data.items():
            if property_name == "id":
                continue
            if property_name not in property_types:
                logger.debug("property_ignored", entity=entity_name, property=property_name)
                continue
            columns[get_sql_ready_name(property_name)] = self.coerce_value(entity_name, property_name, value)
        return columns

    # ========================================================================
    # CRUD
    # ========================================================================

    async def create(
        self,
        entity_name: str,
        data: Dict[str, Any],
        transaction: Optional[asyncpg.Connection] = None,
    ) -> int:
        """
        Insert a row for the entity.

        Args:
            entity_name: Entity to insert into
            data: Property values; "id" and unknown properties are ignored
            transaction: Connection with an open transaction, if any

        Returns:
            ID of the new row

        Raises:
            DataModelError: If the entity does not exist
            DatabaseError: If the insert fails
        """
        module_name = self.get_module_name_from_entity_name(entity_name)
        table_name = get_sql_ready_name(entity_name)
        columns = self._get_column_values(entity_name, data)

        if columns:
            placeholders = ", ".join("?" for _ in columns)
            sql = f"INSERT INTO {table_name} ({', '.join(columns)}) VALUES ({placeholders}) RETURNING id"
        else:
            sql = f"INSERT INTO {table_name} DEFAULT VALUES RETURNING id"

        rows = await self.connector.query(sql, list(columns.values()), module_name, connection=transaction)
        if not rows:
            raise DatabaseError("No rows were affected", details={"entity": entity_name})

        new_id = rows[0]["id"]
        logger.info("entity_created", entity=entity_name, id=new_id)
        return new_id

    async def read(
        self,
        entity_name: str,
        entity_id: int,
        transaction: Optional[asyncpg.Connection] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Load a row by ID.

        Returns:
            Row keyed by property name, or None if it does not exist
        """
        return await self.read_by_field(entity_name, "id", entity_id, transaction=transaction)

    async def read_by_field(
        self,
        entity_name: str,
        field: str,
        value: Any,
        transaction: Optional[asyncpg.Connection] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Load the first row whose field equals value.

        Raises:
            DataModelError: If the entity or field does not exist
        """
        module_name = self.get_module_name_from_entity_name(entity_name)
        if field not in self.get_entity_property_types(entity_name):
            raise DataModelError(f"Entity '{entity_name}' has no attribute '{field}'")

        table_name = get_sql_ready_name(entity_name)
        sql = f"SELECT * FROM {table_name} WHERE {get_sql_ready_name(field)} = ? LIMIT 1"
        rows = await self.connector.query(
            sql,
            [self.coerce_value(entity_name, field, value)],
            module_name,
            connection=transaction,
        )
        if not rows:
            return None
        return self.row_to_properties(entity_name, rows[0])

    async def update(
        self,
        entity_name: str,
        data: Dict[str, Any],
        transaction: Optional[asyncpg.Connection] = None,
    ) -> bool:
        """
        Update the row identified by data["id"].

        The lastUpdated attribute, when the entity has one, is set to the
        current time.

        Raises:
            DataModelError: If the entity does not exist
            DatabaseError: If no row was updated
        """
        if data.get("id") is None:
            raise DatabaseError("No id provided for update", details={"entity": entity_name})

        module_name = self.get_module_name_from_entity_name(entity_name)
        entity = self.get_entity(entity_name)
        columns = self._get_column_values(entity_name, data)

        if entity.has_attribute(LOCKING_ATTRIBUTE):
            columns[get_sql_ready_name(LOCKING_ATTRIBUTE)] = utc_now()

        if not columns:
            return True

        assignments = ", ".join(f"{column} = ?" for column in columns)
        sql = f"UPDATE {get_sql_ready_name(entity_name)} SET {assignments} WHERE id = ?"
        values = list(columns.values()) + [int(data["id"])]

        affected = await self.connector.execute(sql, values, module_name, connection=transaction)
        if affected < 1:
            logger.warning("entity_update_no_rows", entity=entity_name, id=data["id"])
            raise DatabaseError("No rows were affected", details={"entity": entity_name, "id": data["id"]})

        logger.info("entity_updated", entity=entity_name, id=data["id"], columns=list(columns.keys()))
        return True

    async def delete(
        self,
        entity_name: str,
        entity_id: int,
        transaction: Optional[asyncpg.Connection] = None,
    ) -> bool:
        """
        Delete a row by ID.

        Raises:
            DatabaseError: If no row was deleted
        """
        module_name = self.get_module_name_from_entity_name(entity_name)
        sql = f"DELETE FROM {get_sql_ready_name(entity_name)} WHERE id = ?"

        affected = await self.connector.execute(sql, [int(entity_id)], module_name, connection=transaction)
        if affected < 1:
            logger.warning("entity_delete_no_rows", entity=entity_name, id=entity_id)
            raise DatabaseError("No rows were affected", details={"entity": entity_name, "id": entity_id})

        logger.info("entity_deleted", entity=entity_name, id=entity_id)
        return True

    # ========================================================================
    # Raw Queries
    # ========================================================================

    async def execute_query(
        self,
        sql: str,
        module_name: str,
        values: Optional[List[Any]] = None,
        transaction: Optional[asyncpg.Connection] = None,
    ) -> int:
        """Run a statement that does not return rows and return the affected count."""
        return await self.connector.execute(sql, values, module_name, connection=transaction)

    async def get_array_from_database(
        self,
        sql: str,
        module_name: str,
        values: Optional[List[Any]] = None,
        transaction: Optional[asyncpg.Connection] = None,
    ) -> List[Dict[str, Any]]:
        """Run a SELECT and return rows keyed by column label, unchanged."""
        return await self.connector.query(sql, values, module_name, connection=transaction)

    # ========================================================================
    # Locking and Audit
    # ========================================================================

    async def check_locking_constraint_active(
        self,
        entity_name: str,
        entity_id: int,
        last_updated: Any,
        transaction: Optional[asyncpg.Connection] = None,
    ) -> bool:
        """
        Check whether a row was modified after the given lastUpdated value.

        Returns:
            True if the stored lastUpdated is later than last_updated
        """
        entity = self.get_entity(entity_name)
        if not entity.has_attribute(LOCKING_ATTRIBUTE) or last_updated is None:
            return False

        sql = (
            f"SELECT {get_sql_ready_name(LOCKING_ATTRIBUTE)} AS last_updated "
            f"FROM {get_sql_ready_name(entity_name)} WHERE id = ?"
        )
        rows = await self.connector.query(sql, [int(entity_id)], entity.module, connection=transaction)
        if not rows or rows[0]["last_updated"] is None:
            return False

        stored = parse_datetime(rows[0]["last_updated"])
        is_active = stored > parse_datetime(last_updated)
        if is_active:
            logger.info("locking_constraint_active", entity=entity_name, id=entity_id)
        return is_active

    async def add_audit_log_entry(
        self,
        entry: Dict[str, Any],
        transaction: Optional[asyncpg.Connection] = None,
    ) -> Optional[int]:
        """
        Record a create, update or delete in the audit log.

        Args:
            entry: objectName, modificationType, objectId, entryDetail and
                globalIdentifier
            transaction: Connection with an open transaction, if any

        Returns:
            ID of the audit log entry, or None if the data model has no audit entity
        """
        if not self.check_entity_exists_in_data_model(AUDIT_ENTITY):
            logger.warning("audit_entity_missing", entry=entry.get("objectName"))
            return None

        detail = entry.get("entryDetail")
        if not isinstance(detail, str):
            detail = json.dumps(detail, default=str)

        audit_data = {
            "entryTimeStamp": utc_now(),
            "objectName": entry.get("objectName"),
            "modificationType": entry.get("modificationType"),
            "objectId": entry.get("objectId"),
            "entryDetail": detail,
            "globalIdentifier": entry.get("globalIdentifier"),
        }
        return await self.create(AUDIT_ENTITY, audit_data, transaction=transaction)
