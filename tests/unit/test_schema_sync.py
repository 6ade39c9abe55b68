"""
Unit tests for schema synchronisation.

Tests cover:
- Attribute type mapping to SQLAlchemy types
- Table definitions with relationship columns and indexes
- CREATE TABLE statement ordering
- Running the statements per module
"""

import pytest
from sqlalchemy import JSON, BigInteger, Boolean, Date, DateTime, Float, Integer, Numeric, SmallInteger, String, Text

from orm.src.schema_sync import build_metadata, get_column_type, get_create_statements, sync_database
from shared.models.data_model import AttributeDefinition, get_core_data_model, merge_data_models, parse_data_model


# ============================================================================
# TYPE MAPPING
# ============================================================================


class TestColumnTypes:
    """Test attribute type mapping."""

    @pytest.mark.parametrize("attribute_type,length,expected", [
        ("varchar", 50, String),
        ("text", None, Text),
        ("longblob", None, Text),
        ("enum", "'a','bb'", String),
        ("int", None, Integer),
        ("bigint", None, BigInteger),
        ("smallint", None, SmallInteger),
        ("tinyint", 1, Boolean),
        ("tinyint", 4, SmallInteger),
        ("boolean", None, Boolean),
        ("decimal", "10,2", Numeric),
        ("double", None, Float),
        ("date", None, Date),
        ("datetime", None, DateTime),
        ("json", None, JSON),
        ("unknowntype", None, Text),
    ])
    def test_get_column_type(self, attribute_type, length, expected):
        """Test each attribute type maps to a SQLAlchemy type."""
        column_type = get_column_type(AttributeDefinition(type=attribute_type, length_or_values=length))
        assert isinstance(column_type, expected)

    def test_varchar_length(self):
        """Test varchar length is kept and defaults to 255."""
        assert get_column_type(AttributeDefinition(type="varchar", length_or_values=50)).length == 50
        assert get_column_type(AttributeDefinition(type="varchar")).length == 255

    def test_enum_length_fits_longest_option(self):
        """Test enum columns are long enough for every option."""
        column_type = get_column_type(AttributeDefinition(type="enum", length_or_values="'active','inactive'"))
        assert column_type.length == len("inactive")

    def test_decimal_precision(self):
        """Test decimal precision and scale."""
        column_type = get_column_type(AttributeDefinition(type="decimal", length_or_values="10,2"))
        assert (column_type.precision, column_type.scale) == (10, 2)


# ============================================================================
# TABLE DEFINITIONS
# ============================================================================


class TestBuildMetadata:
    """Test table definitions."""

    def test_tables_use_snake_case(self, data_model):
        """Test table and column names."""
        metadata = build_metadata(data_model)

        assert "global_identifier_grouping" in metadata.tables
        account = metadata.tables["account"]
        assert "first_name" in account.c
        assert account.c.id.primary_key

    def test_nullability(self, data_model):
        """Test allowNull controls nullability."""
        account = build_metadata(data_model).tables["account"]

        assert account.c.first_name.nullable is False
        assert account.c.last_name.nullable is True

    def test_relationship_column_has_foreign_key(self, data_model):
        """Test relationship columns reference the related table."""
        account = build_metadata(data_model).tables["account"]

        column = account.c.organisation_primary
        assert column.nullable is True
        assert [fk.target_fullname for fk in column.foreign_keys] == ["organisation.id"]

    def test_no_foreign_key_across_modules(self, data_model):
        """Test relationships to another module get no foreign key."""
        data_model["organisation"] = data_model["organisation"].model_copy(update={"module": "reporting"})

        account = build_metadata(data_model).tables["account"]

        assert not account.c.organisation_primary.foreign_keys

    def test_unique_index_becomes_constraint(self, data_model):
        """Test unique indexes become unique constraints."""
        table = build_metadata(data_model).tables["global_identifier"]

        constraint_names = {constraint.name for constraint in table.constraints}
        assert "unique_identifier_unique" in constraint_names


# ============================================================================
# STATEMENTS
# ============================================================================


class TestCreateStatements:
    """Test CREATE TABLE statement generation."""

    def test_statements_are_idempotent(self, data_model):
        """Test every statement uses IF NOT EXISTS."""
        statements = get_create_statements(data_model, "main")

        assert statements
        assert all("IF NOT EXISTS" in statement for statement in statements)

    def test_referenced_tables_first(self, data_model):
        """Test referenced tables are created before referencing tables."""
        statements = get_create_statements(data_model, "main")
        tables = [statement.split("IF NOT EXISTS ")[1].split(" ")[0] for statement in statements]

        assert tables.index("region") < tables.index("organisation") < tables.index("account")

    def test_relationship_cycle(self):
        """Test foreign keys of mutually related tables are added after both tables exist."""
        data_model = merge_data_models(get_core_data_model(), {"hr": parse_data_model({
            "team": {"relationships": {"person": ["lead"]}},
            "person": {"relationships": {"team": ["member"]}},
        }, "hr")})

        statements = get_create_statements(data_model, "main")

        create_tables = [
            statement for statement in statements
            if statement.startswith(("CREATE TABLE IF NOT EXISTS team ", "CREATE TABLE IF NOT EXISTS person "))
        ]
        assert len(create_tables) == 2
        assert all("REFERENCES" not in statement for statement in create_tables)

        deferred = [statement for statement in statements if statement.startswith("DO $$")]
        assert statements[-len(deferred):] == deferred
        assert any(
            "ADD CONSTRAINT fk_team_person_lead FOREIGN KEY(person_lead) REFERENCES person (id)" in statement
            for statement in deferred
        )
        assert any(
            "ADD CONSTRAINT fk_person_team_member FOREIGN KEY(team_member) REFERENCES team (id)" in statement
            for statement in deferred
        )
        assert all("EXCEPTION WHEN duplicate_object" in statement for statement in deferred)

    def test_acyclic_foreign_keys_stay_inline(self, data_model):
        statements = get_create_statements(data_model, "main")

        assert not any(statement.startswith("DO") for statement in statements)
        create_account = next(s for s in statements if s.startswith("CREATE TABLE IF NOT EXISTS account "))
        assert "REFERENCES organisation (id)" in create_account

    def test_other_module_excluded(self, data_model):
        """Test only the requested module's tables are included."""
        assert get_create_statements(data_model, "reporting") == []

    @pytest.mark.asyncio
    async def test_sync_database(self, connector, data_model):
        """Test statements run in a transaction per module."""
        synced = await sync_database(connector, data_model)

        assert list(synced) == ["main"]
        assert "account" in synced["main"]
        connector.transaction.assert_called_once_with("main")
        assert connector.execute.await_count == len(get_create_statements(data_model, "main"))
