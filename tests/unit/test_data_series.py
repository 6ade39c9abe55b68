"""
Unit tests for data series.

Tests cover:
- Automatic joins through relationships
- Search, filter, sort, limit and offset SQL
- Configuration validation
- Hook overrides and SQL resets
- Result nesting and execution against a mocked connector
"""

from typing import List, Optional

import pytest

from orm.src.data_series import DataSeriesBase, DataSeriesConfig
from orm.src.query_builder import Clause, Q
from shared.errors import DataSeriesConfigError

EXPECTED_JOINS = (
    "LEFT JOIN organisation ON account.organisation_primary = organisation.id\n"
    "LEFT JOIN region ON organisation.region_location = region.id"
)


def make_series(data_layer, **config) -> DataSeriesBase:
    return DataSeriesBase(data_layer, {"entityName": "account", **config})


# ============================================================================
# CONFIGURATION
# ============================================================================


class TestConfiguration:
    """Test configuration handling."""

    def test_config_aliases(self):
        """Test camelCase keys and snake_case names are both accepted."""
        config = DataSeriesConfig.model_validate({"entityName": "account", "searchValue": "jo"})
        assert config.entity_name == "account"
        assert config.search_value == "jo"
        assert DataSeriesConfig(entity_name="account").entity_name == "account"

    def test_defaults(self, data_layer):
        """Test default limit, offset and module."""
        series = make_series(data_layer)

        assert series.limit == DataSeriesBase.DEFAULT_LIMIT
        assert series.offset == 0
        assert series.module_name == "main"

    def test_limit_is_capped(self, data_layer):
        assert make_series(data_layer, limit=500).limit == DataSeriesBase.MAX_LIMIT
        assert make_series(data_layer, limit="25").limit == 25

    def test_accepts_model_instance(self, data_layer):
        series = DataSeriesBase(data_layer, DataSeriesConfig(entity_name="region"))
        assert series.entity_name == "region"


# ============================================================================
# VALIDATION
# ============================================================================


class TestValidation:
    """Test that every configuration problem is reported."""

    def test_missing_entity(self, data_layer):
        with pytest.raises(DataSeriesConfigError) as exc_info:
            DataSeriesBase(data_layer).get_sql()

        assert "Required attribute: 'entityName'" in exc_info.value.errors

    def test_unknown_entity(self, data_layer):
        with pytest.raises(DataSeriesConfigError) as exc_info:
            DataSeriesBase(data_layer, {"entityName": "invoice"}).get_sql()

        assert exc_info.value.errors == ["Entity 'invoice' is not defined in the data model"]

    def test_all_errors_collected(self, data_layer):
        """Test several problems are reported together."""
        series = make_series(
            data_layer,
            searchValue=5,
            limit="abc",
            sort={"firstName": "up"},
            filter={"age": {"between": "1"}, "status": {"eq": 3}},
        )

        with pytest.raises(DataSeriesConfigError) as exc_info:
            series.validate_config()

        errors = exc_info.value.errors
        assert "'searchValue' property should be of type string" in errors
        assert "'limit' property should be numeric" in errors
        assert any("Invalid 'sort' type provided for firstName" in error for error in errors)
        assert any("Invalid 'filter' type provided for age" in error for error in errors)
        assert any("Invalid 'filter' value provided for status" in error for error in errors)
        assert exc_info.value.message == errors[0]

    def test_non_object_sort_and_filter(self, data_layer):
        series = make_series(data_layer, sort="lastName", filter=["age"])

        with pytest.raises(DataSeriesConfigError) as exc_info:
            series.validate_config()

        assert "'sort' property provided is not a valid object" in exc_info.value.errors
        assert "'filter' property provided is not a valid object" in exc_info.value.errors

    def test_unknown_attribute_rejected(self, data_layer):
        """Test attributes not in the data model cannot reach the SQL."""
        series = make_series(data_layer, sort={"password; DROP TABLE account": "asc"})

        with pytest.raises(DataSeriesConfigError) as exc_info:
            series.validate_config()

        assert exc_info.value.errors[0].startswith("Unknown attribute")

    @pytest.mark.parametrize("limit", ["0", 0, "-5"])
    def test_limit_below_one_rejected(self, data_layer, limit):
        """Test a page size below one never reaches the SQL."""
        with pytest.raises(DataSeriesConfigError) as exc_info:
            make_series(data_layer, limit=limit).get_sql()

        assert exc_info.value.errors == ["'limit' property should be at least 1"]

    def test_negative_offset_rejected(self, data_layer):
        with pytest.raises(DataSeriesConfigError) as exc_info:
            make_series(data_layer, offset="-1").get_sql()

        assert exc_info.value.errors == ["'offset' property should not be negative"]

    def test_invalid_join_type(self, data_layer):
        with pytest.raises(DataSeriesConfigError):
            make_series(data_layer, joinType="CROSS").validate_config()

    def test_custom_validation_hook(self, data_layer):
        """Test subclasses can add their own errors."""

        class StrictSeries(DataSeriesBase):
            def do_custom_validation(self) -> List[str]:
                return ["Search is required"] if not self.search_value else []

        with pytest.raises(DataSeriesConfigError) as exc_info:
            StrictSeries(data_layer, {"entityName": "account"}).validate_config()

        assert exc_info.value.errors == ["Search is required"]


# ============================================================================
# SQL
# ============================================================================


class TestSql:
    """Test assembled statements."""

    def test_relationship_joins(self, data_layer):
        """Test relationships are joined recursively."""
        series = make_series(data_layer)

        assert series.join_sql == EXPECTED_JOINS
        assert series.joined_entity_names == ["organisation", "region"]
        assert series.join_parents == {"organisation": "account", "region": "organisation"}

    def test_relationship_depth_limits_joins(self, data_layer):
        series = make_series(data_layer, relationshipDepth=1)
        assert series.join_sql == EXPECTED_JOINS.split("\n")[0]

        assert make_series(data_layer, relationshipDepth=0).join_sql == ""

    def test_select_labels_columns(self, data_layer):
        """Test every column is labelled with its table."""
        select_sql = make_series(data_layer).data_series_select_sql

        assert select_sql.startswith('SELECT account.id AS "account.id", account.first_name AS "account.first_name"')
        assert 'organisation.name AS "organisation.name"' in select_sql
        assert 'region.name AS "region.name"' in select_sql

    def test_included_attributes(self, data_layer):
        series = make_series(data_layer, includedAttributes=["firstName", "organisation.name"])

        assert series.data_series_select_sql == (
            'SELECT account.first_name AS "account.first_name", organisation.name AS "organisation.name"'
        )

    def test_default_statement(self, data_layer):
        """Test the default order, limit and no offset."""
        sql, values = make_series(data_layer).get_sql()

        lines = sql.split("\n")
        assert lines[1] == "FROM account"
        assert lines[-2:] == ["ORDER BY account.id ASC", "LIMIT ?"]
        assert values == [10]

    def test_search_filter_sort_and_paging(self, data_layer):
        """Test the full statement for a typical listing request."""
        series = make_series(
            data_layer,
            searchValue="jo",
            searchAttributes=["firstName", "age"],
            filter={"status": {"eq": "active"}, "organisation.name": {"like": "acme"}},
            sort={"lastName": "desc"},
            limit=20,
            offset=40,
        )

        sql, values = series.get_sql()

        assert sql.split("\n")[1:] == [
            "FROM account",
            *EXPECTED_JOINS.split("\n"),
            "WHERE ((account.first_name ILIKE ? OR CAST(account.age AS TEXT) ILIKE ?)"
            " AND (account.status = ? AND organisation.name ILIKE ?))",
            "ORDER BY account.last_name DESC",
            "LIMIT ?",
            "OFFSET ?",
        ]
        assert values == ["%jo%", "%jo%", "active", "%acme%", 20, 40]

    def test_filter_values_are_coerced(self, data_layer):
        """Test comparison values take the column type."""
        _, values = make_series(data_layer, filter={"age": {"gte": "18", "lt": "65"}}).get_sql()

        assert values[:2] == [18, 65]

    def test_count_statement(self, data_layer):
        """Test the count has the same conditions without ordering or paging."""
        series = make_series(data_layer, filter={"age": {"gt": "30"}}, limit=5, offset=10)

        sql, values = series.get_count_sql()

        assert sql == "\n".join([
            "SELECT COUNT(*) AS count",
            "FROM account",
            EXPECTED_JOINS,
            "WHERE (account.age > ?)",
        ])
        assert values == [30]

    def test_prepare_clauses_is_idempotent(self, data_layer):
        series = make_series(data_layer, filter={"age": {"gt": "30"}})

        series.prepare_clauses()
        series.prepare_clauses()

        assert series.where_sql == "WHERE (account.age > ?)"


# ============================================================================
# HOOKS AND RESETS
# ============================================================================


class TestHooks:
    """Test subclass hooks and SQL overrides."""

    def test_additional_where_and_group_by(self, data_layer):
        """Test additional conditions and GROUP BY from hooks."""

        class ActiveAccountSeries(DataSeriesBase):
            def get_additional_where_clauses(self) -> Optional[Clause]:
                return Q.equal("account.status", "active")

            def get_group_by_clause(self) -> Optional[str]:
                return Q.group_by(["account.id"])

        series = ActiveAccountSeries(data_layer, {"entityName": "account", "filter": {"age": {"gt": "30"}}})
        sql, values = series.get_sql()

        assert "WHERE (account.age > ?) AND account.status = ?" in sql
        assert "GROUP BY account.id" in sql.split("\n")
        assert values[:2] == [30, "active"]

    def test_custom_filter_type(self, data_layer):
        """Test subclasses can handle extra filter types."""

        class InFilterSeries(DataSeriesBase):
            ALLOWED_FILTER_TYPES = DataSeriesBase.ALLOWED_FILTER_TYPES + ["in"]

            def check_custom_filter_cases(self, filter_type, sql_ready_name, value):
                if filter_type == "in":
                    return Clause(f"{sql_ready_name} IN (SELECT unnest(string_to_array(?, ',')))", [value])
                return super().check_custom_filter_cases(filter_type, sql_ready_name, value)

        series = InFilterSeries(data_layer, {"entityName": "account", "filter": {"status": {"in": "active,new"}}})
        _, values = series.get_sql()

        assert "account.status IN" in series.where_sql
        assert values[0] == "active,new"

    def test_reset_where_is_extended(self, data_layer):
        """Test generated conditions are appended to a reset WHERE clause."""
        series = make_series(data_layer, filter={"age": {"gt": "30"}})
        series.reset_where_sql("WHERE account.last_name IS NOT NULL")

        sql, _ = series.get_sql()

        assert "WHERE account.last_name IS NOT NULL AND (account.age > ?)" in sql

    def test_reset_limit_and_offset(self, data_layer):
        series = make_series(data_layer)
        series.reset_limit(1000)
        series.reset_offset(0)

        sql, values = series.get_sql()

        assert "OFFSET" not in sql
        assert values == [DataSeriesBase.MAX_LIMIT]

    def test_reset_full_sql(self, data_layer):
        """Test a complete statement replaces the generated one."""
        series = make_series(data_layer)
        series.reset_data_series_sql("SELECT 1", [])

        assert series.get_sql() == ("SELECT 1", [])


# ============================================================================
# RESULTS
# ============================================================================


class TestResults:
    """Test row nesting and execution."""

    def test_nest_row(self, data_layer):
        """Test related entities nest under their parents."""
        series = make_series(data_layer)
        row = {
            "account.id": 1,
            "account.first_name": "Jane",
            "account.organisation_primary": 2,
            "organisation.id": 2,
            "organisation.name": "Acme",
            "organisation.region_location": None,
            "region.id": None,
            "region.name": None,
            "total_orders": 3,
            "tags": '["a", "b"]',
        }

        assert series.nest_row(row) == {
            "id": 1,
            "firstName": "Jane",
            "organisationPrimary": 2,
            "organisation": {"id": 2, "name": "Acme", "regionLocation": None, "region": None},
            "totalOrders": 3,
            "tags": ["a", "b"],
        }

    @pytest.mark.asyncio
    async def test_get_data_series(self, data_layer, connector):
        """Test the query runs on the entity's module and rows are nested."""
        connector.query.return_value = [{"account.id": 1, "organisation.id": None, "organisation.name": None}]

        rows = await make_series(data_layer).get_data_series()

        assert rows == [{"id": 1, "organisation": None}]
        sql, values, module = connector.query.await_args.args
        assert sql.startswith("SELECT account.id")
        assert module == "main"

    @pytest.mark.asyncio
    async def test_get_total_count(self, data_layer, connector):
        connector.query.return_value = [{"count": 42}]
        assert await make_series(data_layer).get_total_count() == 42

        connector.query.return_value = []
        assert await make_series(data_layer).get_total_count() == 0

    @pytest.mark.asyncio
    async def test_final_result_hook(self, data_layer, connector):
        """Test subclasses can reshape the result."""

        class NameSeries(DataSeriesBase):
            async def get_final_result(self, initial_result):
                return [row["firstName"] for row in initial_result]

        connector.query.return_value = [{"account.first_name": "Jane"}]

        rows = await NameSeries(data_layer, {"entityName": "account"}).get_data_series()

        assert rows == ["Jane"]

    @pytest.mark.asyncio
    async def test_invalid_config_does_not_query(self, data_layer, connector):
        with pytest.raises(DataSeriesConfigError):
            await make_series(data_layer, limit="abc").get_data_series()

        connector.query.assert_not_awaited()
