"""
Data series: paginated, searchable, filterable and sortable listings.

A data series is configured declaratively, typically straight from request
query parameters:

    {
        "entityName": "account",
        "searchValue": "jo",
        "searchAttributes": ["firstName", "lastName"],
        "filter": {"status": {"eq": "active"}, "age": {"gte": "18"}},
        "sort": {"lastName": "asc"},
        "limit": 20,
        "offset": 40
    }

Related entities are LEFT JOINed automatically up to relationship_depth
levels deep, and each result row nests the related entity under its name.
Subclasses customise the query through the hook methods
(get_search_clauses, get_additional_where_clauses, get_group_by_clause,
get_all_order_by_clauses, check_custom_filter_cases, get_final_result) or
replace whole parts of it with the reset_*_sql methods.
"""

import json
import structlog
from typing import Any, Dict, List, Optional, Tuple, Union

import asyncpg
from pydantic import BaseModel, Field

from orm.src.data_layer import DataLayer
from orm.src.query_builder import Clause, Q
from shared.errors import DataSeriesConfigError
from shared.models.data_model import get_relationship_property_name
from shared.naming import convert_sql_name_to_property, get_sql_ready_name
from shared.utils import is_json_string, is_numeric

logger = structlog.get_logger(__name__)

TEXT_TYPES = {"varchar", "char", "text", "tinytext", "mediumtext", "longtext", "enum"}


class DataSeriesConfig(BaseModel):
    """Declarative data series configuration.

    searchValue, limit, offset, sort and filter accept any value here and
    are checked by DataSeriesBase.validate_config() so that every problem is
    reported at once.
    """

    entity_name: Optional[str] = Field(None, alias="entityName")
    module_name: Optional[str] = Field(None, alias="moduleName")
    search_value: Any = Field("", alias="searchValue")
    limit: Any = None
    offset: Any = None
    sort: Any = Field(default_factory=dict)
    filter: Any = Field(default_factory=dict)
    included_attributes: List[str] = Field(default_factory=list, alias="includedAttributes")
    search_attributes: List[str] = Field(default_factory=list, alias="searchAttributes")
    relationship_depth: int = Field(3, alias="relationshipDepth", ge=0)
    join_type: str = Field("LEFT", alias="joinType")

    model_config = {
        "populate_by_name": True,
    }


class DataSeriesBase:
    """Builds and runs a data series query for one entity."""

    DEFAULT_LIMIT = 10
    MAX_LIMIT = 100
    ALLOWED_FILTER_TYPES = ["like", "eq", "ne", "gt", "gte", "lt", "lte"]
    ALLOWED_SORT_OPTIONS = ["asc", "desc"]
    ALLOWED_JOIN_TYPES = ["LEFT", "INNER", "RIGHT"]

    def __init__(
        self,
        data_layer: DataLayer,
        data_series_config: Union[DataSeriesConfig, Dict[str, Any], None] = None,
        additional_params: Optional[Dict[str, Any]] = None,
        debug_mode: bool = False,
    ):
        """
        Args:
            data_layer: Data layer for the merged data model
            data_series_config: Configuration model or its camelCase dict form
            additional_params: Extra values available to subclasses
            debug_mode: Log every query and its values
        """
        if data_series_config is None:
            data_series_config = DataSeriesConfig()
        elif isinstance(data_series_config, dict):
            data_series_config = DataSeriesConfig.model_validate(data_series_config)

        self.data_layer = data_layer
        self.config = data_series_config
        self.additional_params = additional_params or {}
        self.debug_mode = debug_mode

        self.entity_name = data_series_config.entity_name
        self.entity_name_sql_case = get_sql_ready_name(self.entity_name or "")
        self.module_name = data_series_config.module_name
        if self.module_name is None and self._entity_exists(self.entity_name):
            self.module_name = data_layer.get_module_name_from_entity_name(self.entity_name)

        self.search_value = data_series_config.search_value
        self.search_attributes = list(data_series_config.search_attributes)
        self.included_attributes = list(data_series_config.included_attributes)
        self.sort = data_series_config.sort if data_series_config.sort is not None else {}
        self.filter = data_series_config.filter if data_series_config.filter is not None else {}
        self.relationship_depth = data_series_config.relationship_depth
        self.join_type = str(data_series_config.join_type).upper()

        self.limit = data_series_config.limit if data_series_config.limit is not None else self.DEFAULT_LIMIT
        if is_numeric(self.limit):
            self.limit = min(int(float(self.limit)), self.MAX_LIMIT)

        self.offset = data_series_config.offset if data_series_config.offset is not None else 0
        if is_numeric(self.offset):
            self.offset = int(float(self.offset))

        self._clauses_prepared = False
        self.set_default_sql()

    def _entity_exists(self, entity_name: Optional[str]) -> bool:
        return bool(entity_name) and self.data_layer.check_entity_exists_in_data_model(entity_name)

    # ========================================================================
    # Default SQL
    # ========================================================================

    def set_default_sql(self) -> None:
        """Initialise every SQL part from the configuration."""
        self.joined_entity_names: List[str] = []
        self.join_parents: Dict[str, str] = {}
        join_parts: List[str] = []

        if self._entity_exists(self.entity_name) and self.join_type in self.ALLOWED_JOIN_TYPES:
            self._add_relationship_joins(self.entity_name, 0, join_parts)

        self.join_sql = "\n".join(join_parts)
        self.join_values: List[Any] = []

        self.data_series_select_sql = self._get_default_select_sql()
        self.count_select_sql = "SELECT COUNT(*) AS count"

        self.where_sql = ""
        self.where_values: List[Any] = []
        self.search_and_filter_where_sql = ""
        self.search_and_filter_where_values: List[Any] = []
        self.additional_where_sql = ""
        self.additional_where_values: List[Any] = []
        self.order_by_sql = ""
        self.order_by_values: List[Any] = []
        self.group_by_sql = ""
        self.group_by_values: List[Any] = []
        self.having_sql = ""
        self.having_values: List[Any] = []

        self.limit_sql = "LIMIT ?"
        self.limit_value = self.limit
        self.reset_offset(self.offset)

        self.data_series_full_sql = ""
        self.data_series_values: List[Any] = []
        self.full_count_sql = ""
        self.count_values: List[Any] = []

    def _add_relationship_joins(self, entity_name: str, depth: int, join_parts: List[str]) -> None:
        if depth >= self.relationship_depth:
            return

        entity = self.data_layer.data_model[entity_name]
        for related_entity, relationship_names in entity.relationships.items():
            if not relationship_names:
                continue
            if related_entity == self.entity_name or related_entity in self.joined_entity_names:
                continue
            if related_entity not in self.data_layer.data_model:
                continue

            foreign_key = get_relationship_property_name(related_entity, relationship_names[0])
            related_table = get_sql_ready_name(related_entity)
            join_parts.append(
                f"{self.join_type} JOIN {related_table} ON "
                f"{get_sql_ready_name(entity_name)}.{get_sql_ready_name(foreign_key)} = {related_table}.id"
            )
            self.joined_entity_names.append(related_entity)
            self.join_parents[related_entity] = entity_name

            self._add_relationship_joins(related_entity, depth + 1, join_parts)

    def _get_columns(self, entity_name: str) -> List[str]:
        return list(self.data_layer.get_entity_property_types(entity_name).keys())

    def _labelled_column(self, entity_name: str, property_name: str) -> str:
        table = get_sql_ready_name(entity_name)
        column = get_sql_ready_name(property_name)
        return f'{table}.{column} AS "{table}.{column}"'

    def _get_default_select_sql(self) -> str:
        if not self._entity_exists(self.entity_name):
            return "SELECT *"

        if self.included_attributes:
            base_columns = [name for name in self.included_attributes if "." not in name]
            linked_columns = [name for name in self.included_attributes if "." in name]
        else:
            base_columns = self._get_columns(self.entity_name)
            linked_columns = [
                f"{related}.{column}"
                for related in self.joined_entity_names
                for column in self._get_columns(related)
            ]

        selected = [self._labelled_column(self.entity_name, name) for name in base_columns]
        for qualified in linked_columns:
            related, column = qualified.split(".", 1)
            selected.append(self._labelled_column(related, column))

        return "SELECT " + ", ".join(selected)

    # ========================================================================
    # SQL Overrides
    # ========================================================================

    def reset_data_series_select_sql(self, sql: str = "") -> None:
        self.data_series_select_sql = sql

    def reset_count_select_sql(self, sql: str = "") -> None:
        self.count_select_sql = sql

    def reset_join_sql(self, sql: str = "", values: Optional[List[Any]] = None) -> None:
        self.join_sql = sql
        self.join_values = list(values or [])

    def reset_where_sql(self, sql: str = "", values: Optional[List[Any]] = None) -> None:
        """Replace the WHERE clause. sql must start with "WHERE"."""
        self.where_sql = sql
        self.where_values = list(values or [])

    def reset_search_and_filter_where_sql(self, sql: str = "", values: Optional[List[Any]] = None) -> None:
        """Replace the generated search and filter conditions."""
        self.search_and_filter_where_sql = sql
        self.search_and_filter_where_values = list(values or [])

    def reset_order_by_sql(self, sql: str = "", values: Optional[List[Any]] = None) -> None:
        self.order_by_sql = sql
        self.order_by_values = list(values or [])

    def reset_group_by_sql(self, sql: str = "", values: Optional[List[Any]] = None) -> None:
        self.group_by_sql = sql
        self.group_by_values = list(values or [])

    def reset_having_sql(self, sql: str = "", values: Optional[List[Any]] = None) -> None:
        self.having_sql = sql
        self.having_values = list(values or [])

    def reset_limit(self, limit: int = DEFAULT_LIMIT) -> None:
        """Set the page size, capped at MAX_LIMIT."""
        self.limit = min(int(limit), self.MAX_LIMIT)
        self.limit_sql = "LIMIT ?"
        self.limit_value = self.limit

    def reset_offset(self, offset: Any = -1) -> None:
        """Set the offset. Values below 1 remove the OFFSET clause."""
        self.offset_sql = ""
        self.offset_value: Optional[int] = None
        if is_numeric(offset) and int(float(offset)) > 0:
            self.offset_sql = "OFFSET ?"
            self.offset_value = int(float(offset))

    def reset_data_series_sql(self, full_sql: str = "", values: Optional[List[Any]] = None) -> None:
        self.data_series_full_sql = full_sql
        self.data_series_values = list(values or [])

    def reset_count_sql(self, full_sql: str = "", values: Optional[List[Any]] = None) -> None:
        self.full_count_sql = full_sql
        self.count_values = list(values or [])

    # ========================================================================
    # Validation
    # ========================================================================

    def _is_known_attribute(self, name: str) -> bool:
        if "." in name:
            related, attribute = name.split(".", 1)
            if related != self.entity_name and related not in self.joined_entity_names:
                return False
            return attribute in self.data_layer.get_entity_property_types(related)
        return name in self.data_layer.get_entity_property_types(self.entity_name)

    def validate_config(self) -> None:
        """
        Check the configuration.

        Raises:
            DataSeriesConfigError: With every problem found
        """
        errors: List[str] = []

        if not self.entity_name:
            errors.append("Required attribute: 'entityName'")
        elif not self._entity_exists(self.entity_name):
            errors.append(f"Entity '{self.entity_name}' is not defined in the data model")

        if not self.module_name and self._entity_exists(self.entity_name):
            errors.append("Required attribute: 'moduleName'")

        if not isinstance(self.search_value, str):
            errors.append("'searchValue' property should be of type string")

        if not is_numeric(self.limit):
            errors.append("'limit' property should be numeric")
        elif int(float(self.limit)) < 1:
            errors.append("'limit' property should be at least 1")

        if not is_numeric(self.offset):
            errors.append("'offset' property should be numeric")
        elif int(float(self.offset)) < 0:
            errors.append("'offset' property should not be negative")

        if self.join_type not in self.ALLOWED_JOIN_TYPES:
            errors.append(
                f"Invalid 'joinType' provided: {self.join_type}. "
                f"Allowed options: {', '.join(self.ALLOWED_JOIN_TYPES)}"
            )

        if not isinstance(self.sort, dict):
            errors.append("'sort' property provided is not a valid object")
        else:
            for attribute_name, direction in self.sort.items():
                if direction not in self.ALLOWED_SORT_OPTIONS:
                    errors.append(
                        f"Invalid 'sort' type provided for {attribute_name}: {direction}. "
                        f"Allowed options: {', '.join(self.ALLOWED_SORT_OPTIONS)}"
                    )

        if not isinstance(self.filter, dict):
            errors.append("'filter' property provided is not a valid object")
        else:
            for attribute_name, filter_config in self.filter.items():
                if not isinstance(filter_config, dict):
                    errors.append(f"Invalid 'filter' provided for {attribute_name}. Should be an object")
                    continue
                for filter_type, filter_value in filter_config.items():
                    if filter_type not in self.ALLOWED_FILTER_TYPES:
                        errors.append(
                            f"Invalid 'filter' type provided for {attribute_name}: '{filter_type}'. "
                            f"Allowed options: {', '.join(self.ALLOWED_FILTER_TYPES)}"
                        )
                    if not isinstance(filter_value, str):
                        errors.append(
                            f"Invalid 'filter' value provided for {attribute_name}: {filter_value}. "
                            "Should be of type string"
                        )

        if self._entity_exists(self.entity_name):
            referenced = list(self.search_attributes) + list(self.included_attributes)
            if isinstance(self.sort, dict):
                referenced.extend(self.sort.keys())
            if isinstance(self.filter, dict):
                referenced.extend(self.filter.keys())
            for attribute_name in referenced:
                if not self._is_known_attribute(attribute_name):
                    errors.append(f"Unknown attribute '{attribute_name}' for entity '{self.entity_name}'")

        errors.extend(self.do_custom_validation())

        if errors:
            logger.warning("data_series_config_invalid", entity=self.entity_name, errors=errors)
            raise DataSeriesConfigError(errors)

    def do_custom_validation(self) -> List[str]:
        """Hook for additional checks. Returns error messages."""
        return []

    # ========================================================================
    # Clause Hooks
    # ========================================================================

    def _qualify(self, attribute_name: str) -> str:
        if "." in attribute_name:
            return attribute_name
        return f"{self.entity_name}.{attribute_name}"

    def _property_type(self, qualified_name: str) -> Optional[str]:
        entity_name, attribute_name = qualified_name.split(".", 1)
        return self.data_layer.get_entity_property_types(entity_name).get(attribute_name)

    def _like_clause(self, qualified_name: str, value: str) -> Clause:
        column = get_sql_ready_name(qualified_name)
        if self._property_type(qualified_name) not in TEXT_TYPES:
            column = f"CAST({column} AS TEXT)"
        return Clause(f"{column} ILIKE ?", [f"%{value}%"])

    def get_search_clauses(self, search_value: str) -> Optional[Clause]:
        """OR of case-insensitive LIKE matches over the search attributes."""
        if not self.search_attributes:
            return None
        return Q.or_condition(*(self._like_clause(self._qualify(name), search_value) for name in self.search_attributes))

    def _get_filter_clause(self, qualified_name: str, filter_type: str, value: str) -> Optional[Clause]:
        if filter_type == "like":
            return self._like_clause(qualified_name, value)

        entity_name, attribute_name = qualified_name.split(".", 1)
        typed_value = self.data_layer.coerce_value(entity_name, attribute_name, value)
        comparisons = {
            "eq": Q.equal,
            "ne": Q.not_equal,
            "gte": Q.greater_or_equal,
            "gt": Q.greater_than,
            "lte": Q.less_than_or_equal,
            "lt": Q.less_than,
        }
        if filter_type in comparisons:
            return comparisons[filter_type](qualified_name, typed_value)
        return self.check_custom_filter_cases(filter_type, get_sql_ready_name(qualified_name), value)

    def check_custom_filter_cases(self, filter_type: str, sql_ready_name: str, value: Any) -> Optional[Clause]:
        """
        Hook for filter types added to ALLOWED_FILTER_TYPES by subclasses.

        Raises:
            DataSeriesConfigError: For any filter type that is not handled
        """
        raise DataSeriesConfigError([f"Unhandled filter type provided: {filter_type}"])

    def get_filter_clauses(self) -> Optional[Clause]:
        clauses: List[Optional[Clause]] = []
        for attribute_name, filter_config in self.filter.items():
            for filter_type, value in filter_config.items():
                clauses.append(self._get_filter_clause(self._qualify(attribute_name), filter_type, value))
        return Q.and_condition(*clauses) if clauses else None

    def get_additional_where_clauses(self) -> Optional[Clause]:
        """Hook for conditions added to every query, e.g. tenant scoping."""
        return None

    def set_additional_where_sql(self) -> None:
        clause = self.get_additional_where_clauses()
        if clause:
            self.additional_where_sql = clause.prepared_statement
            self.additional_where_values = list(clause.values)

    def get_group_by_clause(self) -> Optional[str]:
        """Hook returning a GROUP BY clause, e.g. Q.group_by([...])."""
        return None

    def get_order_by_clauses(self) -> List[Dict[str, Any]]:
        if not self.sort:
            return [{"field": f"{self.entity_name_sql_case}.id", "is_descending": False}]
        return [
            {"field": self._qualify(attribute_name), "is_descending": direction == "desc"}
            for attribute_name, direction in self.sort.items()
        ]

    def get_all_order_by_clauses(self, default_order_by_clauses: List[Dict[str, Any]]) -> str:
        """Hook to add ORDER BY fields beyond the configured sort."""
        return Q.order_by(default_order_by_clauses)

    # ========================================================================
    # Assembly
    # ========================================================================

    def _append_where(self, statement: str, values: List[Any]) -> None:
        self.where_sql += f"{' AND' if self.where_sql else 'WHERE'} {statement}"
        self.where_values = self.where_values + list(values)

    def prepare_clauses(self) -> None:
        """Validate the configuration and build WHERE, GROUP BY and ORDER BY."""
        if self._clauses_prepared:
            return

        self.validate_config()

        if self.search_and_filter_where_sql:
            self._append_where(self.search_and_filter_where_sql, self.search_and_filter_where_values)
        else:
            search_clause = self.get_search_clauses(self.search_value) if self.search_value else None
            filter_clause = self.get_filter_clauses()
            if search_clause and filter_clause:
                combined = Q.and_condition(search_clause, filter_clause)
            else:
                combined = search_clause or filter_clause
            if combined:
                self._append_where(combined.prepared_statement, combined.values)

        self.set_additional_where_sql()
        if self.additional_where_sql:
            self._append_where(self.additional_where_sql, self.additional_where_values)

        if not self.group_by_sql:
            self.group_by_sql = (self.get_group_by_clause() or "").strip()

        if not self.order_by_sql:
            self.order_by_sql = self.get_all_order_by_clauses(self.get_order_by_clauses()).strip()

        self._clauses_prepared = True

    def build_final_data_series_sql(self) -> None:
        """Assemble the full data series statement and its values."""
        parts = [self.data_series_select_sql, f"FROM {self.entity_name_sql_case}"]
        for part in (
            self.join_sql,
            self.where_sql,
            self.group_by_sql,
            self.having_sql,
            self.order_by_sql,
            self.limit_sql,
            self.offset_sql,
        ):
            if part:
                parts.append(part)
        self.data_series_full_sql = "\n".join(parts)

        self.data_series_values = (
            self.join_values
            + self.where_values
            + self.group_by_values
            + self.having_values
            + self.order_by_values
        )
        if self.limit_sql and self.limit_value is not None:
            self.data_series_values.append(int(self.limit_value))
        if self.offset_sql and self.offset_value:
            self.data_series_values.append(self.offset_value)

    def build_final_count_sql(self) -> None:
        """Assemble the count statement: no ORDER BY, LIMIT or OFFSET."""
        parts = [self.count_select_sql, f"FROM {self.entity_name_sql_case}"]
        for part in (self.join_sql, self.where_sql, self.group_by_sql, self.having_sql):
            if part:
                parts.append(part)
        self.full_count_sql = "\n".join(parts)

        self.count_values = self.join_values + self.where_values + self.group_by_values + self.having_values

    def get_sql(self) -> Tuple[str, List[Any]]:
        """Build (if needed) and return the data series statement and values."""
        self.prepare_clauses()
        if not self.data_series_full_sql:
            self.build_final_data_series_sql()
        return self.data_series_full_sql, self.data_series_values

    def get_count_sql(self) -> Tuple[str, List[Any]]:
        """Build (if needed) and return the count statement and values."""
        self.prepare_clauses()
        if not self.full_count_sql:
            self.build_final_count_sql()
        return self.full_count_sql, self.count_values

    # ========================================================================
    # Execution
    # ========================================================================

    def _log_query(self, sql: str, values: List[Any], log_query: bool) -> None:
        if self.debug_mode or log_query:
            logger.info("data_series_sql", entity=self.entity_name, sql=sql, values=values)

    async def get_data_series(
        self,
        log_query: bool = False,
        transaction: Optional[asyncpg.Connection] = None,
    ) -> List[Dict[str, Any]]:
        """
        Run the data series query.

        Returns:
            Rows of the base entity with related entities nested by name

        Raises:
            DataSeriesConfigError: If the configuration is invalid
            DatabaseError: If the query fails
        """
        sql, values = self.get_sql()
        self._log_query(sql, values, log_query)

        rows = await self.data_layer.get_array_from_database(sql, self.module_name, values, transaction=transaction)
        return await self.get_final_result([self.nest_row(row) for row in rows])

    async def get_total_count(
        self,
        log_query: bool = False,
        transaction: Optional[asyncpg.Connection] = None,
    ) -> int:
        """Count all rows matching the search, filters and additional conditions."""
        sql, values = self.get_count_sql()
        self._log_query(sql, values, log_query)

        rows = await self.data_layer.get_array_from_database(sql, self.module_name, values, transaction=transaction)
        if not rows:
            return 0
        first = rows[0]
        return int(first.get("count", next(iter(first.values()), 0)))

    def nest_row(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """
        Turn a flat row with "table.column" labels into a nested dictionary.

        Related entities are placed under their entity name inside their
        parent. A related entity whose values are all None becomes None.
        Columns without a table label are added to the top level.
        """
        tables: Dict[str, Dict[str, Any]] = {}
        top_level: Dict[str, Any] = {}

        for label, value in row.items():
            if "." in label:
                table, column = label.split(".", 1)
                tables.setdefault(table, {})[convert_sql_name_to_property(column)] = value
            else:
                if is_json_string(value):
                    value = json.loads(value)
                top_level[convert_sql_name_to_property(label)] = value

        result = tables.get(self.entity_name_sql_case, {})

        nested: Dict[str, Optional[Dict[str, Any]]] = {self.entity_name: result}
        for related_entity in self.joined_entity_names:
            values = tables.get(get_sql_ready_name(related_entity))
            if values is None:
                continue
            nested[related_entity] = values if any(v is not None for v in values.values()) else None

        for related_entity in self.joined_entity_names:
            if related_entity not in nested:
                continue
            parent = nested.get(self.join_parents[related_entity])
            if parent is not None:
                parent[related_entity] = nested[related_entity]

        result.update(top_level)
        return result

    async def get_final_result(self, initial_result: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Hook to reshape the result before it is returned."""
        return initial_result
