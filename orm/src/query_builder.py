"""
Query builder for ORM SELECT statements.

Conditions are built with the static helpers on Q and passed to
QueryModel.find_array() / find_single():

    rows = await query_model.find_array(
        FindOptions(entity_name="account", fields=["firstName", "lastName"]),
        Q.or_condition(
            Q.like("firstName", "Jo%"),
            Q.and_condition(Q.equal("status", "active"), Q.greater_or_equal("age", 18)),
        ),
        Q.order_by([{"field": "lastName", "is_descending": False}]),
        Q.limit(20),
    )

Conditions are Clause objects holding a prepared statement with "?"
placeholders and the values that fill them. ORDER BY, GROUP BY, LIMIT and
OFFSET helpers return plain strings, which are placed after the WHERE clause
in a fixed order regardless of the order they were passed in.
"""

import structlog
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import asyncpg

from orm.src.data_layer import DataLayer
from shared.errors import QueryBuildError
from shared.naming import get_sql_ready_name

logger = structlog.get_logger(__name__)


@dataclass
class Clause:
    """A SQL condition with "?" placeholders and the values that fill them."""

    prepared_statement: str
    values: List[Any] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.prepared_statement)


QueryPart = Union[Clause, str, None]


class Q:
    """Static helpers that build query clauses."""

    OPERATOR_AND = "AND"
    OPERATOR_OR = "OR"

    ORDER_BY = "ORDER BY"
    GROUP_BY = "GROUP BY"
    LIMIT = "LIMIT"
    OFFSET = "OFFSET"
    ADDITIONAL_CLAUSES = (ORDER_BY, GROUP_BY, LIMIT, OFFSET)

    def __init__(self):
        raise TypeError("Q only provides static helpers and cannot be instantiated")

    # ========================================================================
    # Comparison Operators
    # ========================================================================

    @staticmethod
    def _compare(field_name: str, operator: str, value: Any) -> Clause:
        return Clause(f"{get_sql_ready_name(field_name)} {operator} ?", [value])

    @staticmethod
    def equal(field_name: str, value: Any) -> Clause:
        """field = value"""
        return Q._compare(field_name, "=", value)

    @staticmethod
    def not_equal(field_name: str, value: Any) -> Clause:
        """field != value"""
        return Q._compare(field_name, "!=", value)

    @staticmethod
    def is_null(field_name: str) -> Clause:
        """field IS NULL"""
        return Clause(f"{get_sql_ready_name(field_name)} IS NULL")

    @staticmethod
    def is_not_null(field_name: str) -> Clause:
        """field IS NOT NULL"""
        return Clause(f"{get_sql_ready_name(field_name)} IS NOT NULL")

    @staticmethod
    def like(field_name: str, value: Any) -> Clause:
        """field LIKE value"""
        return Q._compare(field_name, "LIKE", value)

    @staticmethod
    def not_like(field_name: str, value: Any) -> Clause:
        """field NOT LIKE value"""
        return Q._compare(field_name, "NOT LIKE", value)

    @staticmethod
    def in_(field_name: str, values: Sequence[Any]) -> Clause:
        """field IN (values...)"""
        placeholders = ",".join("?" for _ in values)
        return Clause(f"{get_sql_ready_name(field_name)} IN ({placeholders})", list(values))

    @staticmethod
    def not_in(field_name: str, values: Sequence[Any]) -> Clause:
        """field NOT IN (values...)"""
        placeholders = ",".join("?" for _ in values)
        return Clause(f"{get_sql_ready_name(field_name)} NOT IN ({placeholders})", list(values))

    @staticmethod
    def greater_than(field_name: str, value: Any) -> Clause:
        """field > value"""
        return Q._compare(field_name, ">", value)

    @staticmethod
    def greater_or_equal(field_name: str, value: Any) -> Clause:
        """field >= value"""
        return Q._compare(field_name, ">=", value)

    @staticmethod
    def less_than(field_name: str, value: Any) -> Clause:
        """field < value"""
        return Q._compare(field_name, "<", value)

    @staticmethod
    def less_than_or_equal(field_name: str, value: Any) -> Clause:
        """field <= value"""
        return Q._compare(field_name, "<=", value)

    # ========================================================================
    # Logical Operators
    # ========================================================================

    @staticmethod
    def build_condition(operator: str, clauses: Sequence[Optional[Clause]]) -> Clause:
        """
        Wrap clauses in parentheses joined by operator.

        None and empty clauses are skipped. If nothing is left, an empty
        clause is returned.
        """
        statements: List[str] = []
        values: List[Any] = []
        for clause in clauses:
            if not clause:
                continue
            statements.append(clause.prepared_statement)
            values.extend(clause.values)

        if not statements:
            return Clause("")

        return Clause("(" + f" {operator} ".join(statements) + ")", values)

    @staticmethod
    def and_condition(*clauses: Optional[Clause]) -> Clause:
        """(a AND b AND ...)"""
        return Q.build_condition(Q.OPERATOR_AND, clauses)

    @staticmethod
    def or_condition(*clauses: Optional[Clause]) -> Clause:
        """(a OR b OR ...)"""
        return Q.build_condition(Q.OPERATOR_OR, clauses)

    # ========================================================================
    # Additional Clauses
    # ========================================================================

    @staticmethod
    def order_by(fields: Sequence[Dict[str, Any]]) -> str:
        """
        ORDER BY clause.

        Args:
            fields: Dicts with "field" and optional "is_descending"
                (defaults to True)

        Returns:
            " ORDER BY a DESC,b ASC", or "" if fields is empty
        """
        parts = []
        for order_field in fields:
            is_descending = order_field.get("is_descending", True)
            parts.append(get_sql_ready_name(order_field["field"]) + (" DESC" if is_descending else " ASC"))

        if not parts:
            return ""
        return " ORDER BY " + ",".join(parts)

    @staticmethod
    def group_by(fields: Sequence[str]) -> str:
        """" GROUP BY a,b", or "" if fields is empty."""
        if not fields:
            return ""
        return " GROUP BY " + ",".join(get_sql_ready_name(name) for name in fields)

    @staticmethod
    def limit(number: int = -1) -> str:
        """" LIMIT n" for n > 0, otherwise ""."""
        if number > 0:
            return f" LIMIT {int(number)}"
        return ""

    @staticmethod
    def offset(number: int = -1) -> str:
        """" OFFSET n" for n > 0, otherwise ""."""
        if number > 0:
            return f" OFFSET {int(number)}"
        return ""

    # ========================================================================
    # Assembly
    # ========================================================================

    @staticmethod
    def is_additional_clause(part: QueryPart) -> bool:
        return isinstance(part, str) and any(keyword in part for keyword in Q.ADDITIONAL_CLAUSES)

    @staticmethod
    def build_query_conditions(clauses: Sequence[QueryPart]) -> Clause:
        """
        Combine all condition clauses into the body of a WHERE clause.

        Clause objects and plain string conditions are joined with AND.
        ORDER BY, GROUP BY, LIMIT and OFFSET strings are skipped.
        """
        statements: List[str] = []
        values: List[Any] = []
        for clause in clauses:
            if clause is None or Q.is_additional_clause(clause):
                continue
            if isinstance(clause, str):
                if clause.strip():
                    statements.append(clause.strip())
                continue
            if clause:
                statements.append(clause.prepared_statement)
                values.extend(clause.values)

        return Clause(" AND ".join(statements), values)

    @staticmethod
    def build_query_additional_clauses(clauses: Sequence[QueryPart]) -> str:
        """
        Combine ORDER BY, GROUP BY, LIMIT and OFFSET strings.

        GROUP BY clauses come first, then ORDER BY clauses, then the last
        LIMIT and the last OFFSET given.
        """
        group_by_clauses: List[str] = []
        order_by_clauses: List[str] = []
        limit: Optional[str] = None
        offset: Optional[str] = None

        for clause in clauses:
            if not isinstance(clause, str):
                continue
            if Q.GROUP_BY in clause:
                group_by_clauses.append(clause)
            if Q.ORDER_BY in clause:
                order_by_clauses.append(clause)
            if Q.LIMIT in clause:
                limit = clause
            if Q.OFFSET in clause:
                offset = clause

        return "".join(group_by_clauses) + "".join(order_by_clauses) + (limit or "") + (offset or "")


@dataclass
class LinkedEntity:
    """A related entity to INNER JOIN through one of the base entity's relationships."""

    entity_name: str
    relationship_name: str
    fields: List[str] = field(default_factory=list)


@dataclass
class FindOptions:
    """What to select in a find_array / find_single query."""

    entity_name: str
    fields: Optional[List[str]] = None
    linked_entities: List[LinkedEntity] = field(default_factory=list)
    transaction: Optional[asyncpg.Connection] = None


class QueryModel:
    """Runs SELECT queries assembled from Q clauses."""

    def __init__(self, data_layer: DataLayer, debug_mode: bool = False):
        self.data_layer = data_layer
        self.debug_mode = debug_mode

    def build_select(self, options: FindOptions, clauses: Sequence[QueryPart]) -> Tuple[str, List[Any]]:
        """
        Assemble the SELECT statement for the given options and clauses.

        Returns:
            (sql, values)

        Raises:
            DataModelError: If the entity does not exist
            QueryBuildError: If the same entity is linked more than once
        """
        self.data_layer.get_entity(options.entity_name)
        table_name = get_sql_ready_name(options.entity_name)

        if options.fields:
            selected = [get_sql_ready_name(name) for name in options.fields]
        else:
            selected = ["*"]

        joins: List[str] = []
        linked_entity_names: List[str] = []
        for linked in options.linked_entities:
            if not linked.fields:
                continue
            if linked.entity_name in linked_entity_names:
                logger.error("duplicate_linked_entity", entity=linked.entity_name)
                raise QueryBuildError(
                    f"find_array() does not support multiple INNER JOINs on the same table. "
                    f"'{linked.entity_name}' is linked more than once; use a custom query instead."
                )
            linked_entity_names.append(linked.entity_name)

            linked_table = get_sql_ready_name(linked.entity_name)
            joins.append(
                f" INNER JOIN {linked_table} ON "
                f"{table_name}.{get_sql_ready_name(linked.relationship_name)} = {linked_table}.id"
            )
            selected.extend(get_sql_ready_name(name) for name in linked.fields)

        sql = "SELECT " + ", ".join(selected) + f" FROM {table_name}" + "".join(joins)

        conditions = Q.build_query_conditions(clauses)
        if conditions:
            sql += " WHERE " + conditions.prepared_statement

        sql += Q.build_query_additional_clauses(clauses)
        return sql, conditions.values

    async def find_array(self, options: FindOptions, *clauses: QueryPart) -> List[Dict[str, Any]]:
        """
        Run a SELECT for the entity with the given clauses.

        Returns:
            Rows keyed by property name
        """
        sql, values = self.build_select(options, clauses)

        if self.debug_mode:
            logger.info("query_model_sql", sql=sql, values=values)

        module_name = self.data_layer.get_module_name_from_entity_name(options.entity_name)
        rows = await self.data_layer.get_array_from_database(
            sql, module_name, values, transaction=options.transaction
        )
        return [self.data_layer.row_to_properties(options.entity_name, row) for row in rows]

    async def find_single(self, options: FindOptions, *clauses: QueryPart) -> Optional[Dict[str, Any]]:
        """Like find_array(), limited to one row. Returns the row or None."""
        remaining = [clause for clause in clauses if not (isinstance(clause, str) and Q.LIMIT in clause)]
        remaining.append(Q.limit(1))

        rows = await self.find_array(options, *remaining)
        return rows[0] if rows else None

    async def find_count(self, options: FindOptions, *clauses: QueryPart) -> int:
        """Count the rows matching the condition clauses."""
        self.data_layer.get_entity(options.entity_name)
        sql = f"SELECT COUNT(*) AS count FROM {get_sql_ready_name(options.entity_name)}"

        conditions = Q.build_query_conditions(clauses)
        if conditions:
            sql += " WHERE " + conditions.prepared_statement

        if self.debug_mode:
            logger.info("query_model_sql", sql=sql, values=conditions.values)

        module_name = self.data_layer.get_module_name_from_entity_name(options.entity_name)
        rows = await self.data_layer.get_array_from_database(
            sql, module_name, conditions.values, transaction=options.transaction
        )
        return int(rows[0]["count"]) if rows else 0
