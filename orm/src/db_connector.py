"""
Database connector for the data-model ORM.

Keeps one asyncpg connection pool per database module. Queries are written
with "?" placeholders, which are rewritten to PostgreSQL's positional
"$1, $2, ..." form before they reach the driver.
"""

import asyncpg
import structlog
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from shared.errors import ConfigurationError, DatabaseError
from shared.models.dx_config import DatabaseConfig

logger = structlog.get_logger(__name__)

# Server-side errors and client-side ones (argument count or type mismatches)
DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError)


def convert_placeholders(sql: str) -> str:
    """
    Rewrite "?" placeholders to "$n" placeholders.

    Question marks inside single or double quoted literals are left alone.

    Args:
        sql: SQL using "?" placeholders

    Returns:
        SQL using "$1", "$2", ... placeholders
    """
    result: List[str] = []
    position = 0
    quote: Optional[str] = None

    for char in sql:
        if quote:
            result.append(char)
            if char == quote:
                quote = None
            continue

        if char in ("'", '"'):
            quote = char
            result.append(char)
        elif char == "?":
            position += 1
            result.append(f"${position}")
        else:
            result.append(char)

    return "".join(result)


def get_affected_row_count(status: str) -> int:
    """Parse the row count from an asyncpg command status such as 'UPDATE 3'."""
    if not status:
        return 0
    last = status.rsplit(" ", 1)[-1]
    return int(last) if last.isdigit() else 0


class DbConnector:
    """Connection pools for every configured database module."""

    def __init__(
        self,
        module_configs: Dict[str, DatabaseConfig],
        min_pool_size: int = 1,
        max_pool_size: int = 10,
        command_timeout: float = 30,
    ):
        """
        Initialize the connector. Pools are created by connect().

        Args:
            module_configs: Database settings per module name
            min_pool_size: Minimum connections per pool
            max_pool_size: Maximum connections per pool
            command_timeout: Statement timeout in seconds
        """
        self.module_configs = dict(module_configs)
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout = command_timeout
        self.pools: Dict[str, asyncpg.Pool] = {}

    async def connect(self) -> None:
        """Create a connection pool for each module."""
        for module_name, config in self.module_configs.items():
            if module_name in self.pools:
                continue

            logger.info(
                "initializing_database_pool",
                module=module_name,
                host=config.host,
                database=config.database,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
            try:
                self.pools[module_name] = await asyncpg.create_pool(
                    min_size=self.min_pool_size,
                    max_size=self.max_pool_size,
                    command_timeout=self.command_timeout,
                    **config.connect_kwargs(),
                )
            except (OSError, *DRIVER_ERRORS) as e:
                logger.error("database_pool_failed", module=module_name, error=str(e))
                raise DatabaseError(
                    f"Could not connect to database for module '{module_name}'",
                    details={"module": module_name, "error": str(e)},
                ) from e

    async def close(self) -> None:
        """Close all pools."""
        for module_name, pool in list(self.pools.items()):
            await pool.close()
            logger.info("database_pool_closed", module=module_name)
        self.pools.clear()

    def get_pool(self, module_name: str) -> asyncpg.Pool:
        """
        Get the pool for a module.

        Raises:
            ConfigurationError: If the module is not configured or not connected
        """
        if module_name not in self.module_configs:
            raise ConfigurationError(f"Database module '{module_name}' is not configured")
        if module_name not in self.pools:
            raise ConfigurationError(f"Database module '{module_name}' is not connected")
        return self.pools[module_name]

    async def check_db_connection(self) -> Dict[str, bool]:
        """
        Run a trivial query on every module.

        Returns:
            Module name mapped to whether the query succeeded
        """
        status: Dict[str, bool] = {}
        for module_name in self.module_configs:
            try:
                pool = self.get_pool(module_name)
                async with pool.acquire() as conn:
                    await conn.fetchval("SELECT 1")
                status[module_name] = True
            except (ConfigurationError, OSError, *DRIVER_ERRORS) as e:
                logger.error("database_connection_check_failed", module=module_name, error=str(e))
                status[module_name] = False
        return status

    @asynccontextmanager
    async def transaction(self, module_name: str) -> AsyncIterator[asyncpg.Connection]:
        """
        Context manager for database transactions.

        Yields:
            asyncpg.Connection: Connection with an open transaction
        """
        pool = self.get_pool(module_name)
        async with pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    @asynccontextmanager
    async def _connection(
        self, module_name: str, connection: Optional[asyncpg.Connection]
    ) -> AsyncIterator[asyncpg.Connection]:
        if connection is not None:
            yield connection
            return
        pool = self.get_pool(module_name)
        async with pool.acquire() as conn:
            yield conn

    async def query(
        self,
        sql: str,
        values: Optional[Sequence[Any]] = None,
        module_name: str = "main",
        connection: Optional[asyncpg.Connection] = None,
    ) -> List[Dict[str, Any]]:
        """
        Run a statement that returns rows.

        Args:
            sql: SQL with "?" placeholders
            values: Placeholder values, in order
            module_name: Database module to run on
            connection: Existing connection, e.g. inside a transaction

        Returns:
            Rows as dictionaries keyed by column name

        Raises:
            DatabaseError: If the driver rejects the statement
        """
        statement = convert_placeholders(sql)
        params = list(values or [])
        try:
            async with self._connection(module_name, connection) as conn:
                rows = await conn.fetch(statement, *params)
        except DRIVER_ERRORS as e:
            logger.error("database_query_failed", module=module_name, sql=statement, error=str(e))
            raise DatabaseError(str(e), details={"sql": statement}) from e

        return [dict(row) for row in rows]

    async def execute(
        self,
        sql: str,
        values: Optional[Sequence[Any]] = None,
        module_name: str = "main",
        connection: Optional[asyncpg.Connection] = None,
    ) -> int:
        """
        Run a statement that does not return rows.

        Returns:
            Number of affected rows

        Raises:
            DatabaseError: If the driver rejects the statement
        """
        statement = convert_placeholders(sql)
        params = list(values or [])
        try:
            async with self._connection(module_name, connection) as conn:
                status = await conn.execute(statement, *params)
        except DRIVER_ERRORS as e:
            logger.error("database_execute_failed", module=module_name, sql=statement, error=str(e))
            raise DatabaseError(str(e), details={"sql": statement}) from e

        return get_affected_row_count(status)

    async def query_multiple(
        self,
        queries: Sequence[Tuple[str, Sequence[Any]]],
        module_name: str = "main",
    ) -> List[List[Dict[str, Any]]]:
        """
        Run several statements in a single transaction.

        Any failure rolls back every statement in the batch.

        Args:
            queries: (sql, values) pairs

        Returns:
            Result rows for each statement, in order
        """
        results: List[List[Dict[str, Any]]] = []
        async with self.transaction(module_name) as conn:
            for sql, values in queries:
                results.append(await self.query(sql, values, module_name, connection=conn))

        logger.debug("database_batch_committed", module=module_name, statements=len(queries))
        return results
