"""
Database schema synchronisation.

Builds SQLAlchemy table definitions from the data model and creates any
tables that are missing in the configured database modules.
"""

import structlog
from typing import Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    SmallInteger,
    String,
    Table,
    Text,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects import postgresql
from sqlalchemy.schema import AddConstraint, CreateIndex, CreateTable, Index
from sqlalchemy.sql.ddl import sort_tables_and_constraints
from sqlalchemy.types import TypeEngine

from orm.src.db_connector import DbConnector
from shared.models.data_model import (
    AttributeDefinition,
    DataModel,
    get_enum_options,
    get_relationship_columns,
)
from shared.naming import get_sql_ready_name

logger = structlog.get_logger(__name__)

TEXT_TYPES = {"text", "tinytext", "mediumtext", "longtext", "blob", "tinyblob", "mediumblob", "longblob"}
INTEGER_TYPES = {"int", "integer", "mediumint", "year", "serial"}
SMALL_INTEGER_TYPES = {"smallint", "bit"}
FLOAT_TYPES = {"float", "double", "real"}

NAMING_CONVENTION = {"fk": "fk_%(table_name)s_%(column_0_name)s"}

# PostgreSQL has no ADD CONSTRAINT IF NOT EXISTS
ADD_CONSTRAINT_ONCE = """DO $$ BEGIN
    {statement};
EXCEPTION WHEN duplicate_object THEN NULL;
END $$"""


def get_column_type(attribute: AttributeDefinition) -> TypeEngine:
    """
    Map a MySQL-style attribute type to a SQLAlchemy column type.

    Args:
        attribute: Attribute definition from the data model

    Returns:
        SQLAlchemy type instance
    """
    attribute_type = attribute.type.lower()
    length = attribute.length_or_values

    if attribute_type in ("varchar", "char"):
        return String(int(length) if length else 255)
    if attribute_type in TEXT_TYPES:
        return Text()
    if attribute_type == "enum":
        options = get_enum_options(attribute)
        return String(max((len(option) for option in options), default=50))
    if attribute_type == "tinyint":
        return Boolean() if str(length) == "1" else SmallInteger()
    if attribute_type in ("boolean", "bool"):
        return Boolean()
    if attribute_type in INTEGER_TYPES:
        return Integer()
    if attribute_type in SMALL_INTEGER_TYPES:
        return SmallInteger()
    if attribute_type == "bigint":
        return BigInteger()
    if attribute_type == "decimal":
        if length and "," in str(length):
            precision, scale = (int(part) for part in str(length).split(","))
            return Numeric(precision, scale)
        return Numeric()
    if attribute_type in FLOAT_TYPES:
        return Float()
    if attribute_type == "date":
        return Date()
    if attribute_type in ("datetime", "timestamp"):
        return DateTime()
    if attribute_type == "time":
        return Time()
    if attribute_type == "json":
        return JSON()
    return Text()


def _server_default(attribute: AttributeDefinition):
    default = attribute.default
    if default is None:
        return None
    if isinstance(default, str) and default.upper() == "CURRENT_TIMESTAMP":
        return text("CURRENT_TIMESTAMP")
    if isinstance(default, bool) or attribute.type.lower() in ("boolean", "bool"):
        return text("true" if default in (True, 1, "1", "true") else "false")
    if isinstance(default, str):
        return text("'" + default.replace("'", "''") + "'")
    return text(str(default))


def build_metadata(data_model: DataModel) -> MetaData:
    """
    Build SQLAlchemy table definitions for every entity.

    Each table gets a BigInteger "id" primary key, a column per attribute
    and a nullable foreign key column per relationship.
    """
    metadata = MetaData(naming_convention=NAMING_CONVENTION)

    for entity_name, entity in data_model.items():
        table_name = get_sql_ready_name(entity_name)
        columns: List = [Column("id", BigInteger, primary_key=True, autoincrement=True)]

        for attribute_name, attribute in entity.attributes.items():
            columns.append(
                Column(
                    get_sql_ready_name(attribute_name),
                    get_column_type(attribute),
                    nullable=attribute.allow_null,
                    server_default=_server_default(attribute),
                )
            )

        for property_name, related_entity in get_relationship_columns(entity).items():
            # Foreign keys cannot span databases
            foreign_keys = []
            if related_entity in data_model and data_model[related_entity].module == entity.module:
                foreign_keys.append(
                    ForeignKey(f"{get_sql_ready_name(related_entity)}.id", ondelete="SET NULL")
                )
            columns.append(
                Column(get_sql_ready_name(property_name), BigInteger, *foreign_keys, nullable=True)
            )

        constraints = []
        for index in entity.indexes:
            if index.get("indexChoice", "index").lower() == "unique" and index.get("attribute") in entity.attributes:
                constraints.append(
                    UniqueConstraint(
                        get_sql_ready_name(index["attribute"]),
                        name=index.get("indexName"),
                    )
                )

        table = Table(table_name, metadata, *columns, *constraints, info={"module": entity.module})

        for index in entity.indexes:
            if index.get("indexChoice", "index").lower() != "unique" and index.get("attribute") in entity.attributes:
                Index(
                    index.get("indexName") or f"ix_{table_name}_{get_sql_ready_name(index['attribute'])}",
                    table.c[get_sql_ready_name(index["attribute"])],
                )

    return metadata


def get_create_statements(data_model: DataModel, module_name: str) -> List[str]:
    """
    Compile CREATE TABLE IF NOT EXISTS statements for one module.

    Tables are ordered so that referenced tables are created first. Foreign
    keys that form a relationship cycle are added with ALTER TABLE once every
    table exists.
    """
    metadata = build_metadata(data_model)
    dialect = postgresql.dialect()
    statements: List[str] = []
    deferred_constraints = []

    for table, constraints in sort_tables_and_constraints(metadata.tables.values()):
        if table is None:
            deferred_constraints.extend(
                constraint for constraint in constraints if constraint.table.info.get("module") == module_name
            )
            continue
        if table.info.get("module") != module_name:
            continue
        create_table = CreateTable(table, include_foreign_key_constraints=list(constraints), if_not_exists=True)
        statements.append(str(create_table.compile(dialect=dialect)).strip())
        for index in sorted(table.indexes, key=lambda i: i.name):
            statements.append(str(CreateIndex(index, if_not_exists=True).compile(dialect=dialect)).strip())

    for constraint in sorted(deferred_constraints, key=lambda c: (c.table.name, c.column_keys)):
        add_constraint = str(AddConstraint(constraint).compile(dialect=dialect)).strip()
        statements.append(ADD_CONSTRAINT_ONCE.format(statement=add_constraint))

    if deferred_constraints:
        logger.debug(
            "foreign_keys_deferred",
            module=module_name,
            tables=sorted({constraint.table.name for constraint in deferred_constraints}),
        )

    return statements


async def sync_database(connector: DbConnector, data_model: DataModel) -> Dict[str, List[str]]:
    """
    Create missing tables for every module used by the data model.

    Returns:
        Module name mapped to the tables that were checked or created
    """
    synced: Dict[str, List[str]] = {}
    modules = {entity.module for entity in data_model.values()}

    for module_name in sorted(modules):
        statements = get_create_statements(data_model, module_name)
        async with connector.transaction(module_name) as conn:
            for statement in statements:
                await connector.execute(statement, module_name=module_name, connection=conn)

        synced[module_name] = [
            get_sql_ready_name(name) for name, entity in data_model.items() if entity.module == module_name
        ]
        logger.info("database_synced", module=module_name, tables=synced[module_name])

    return synced
