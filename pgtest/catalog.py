"""Read-only catalog queries against a live database."""

from __future__ import annotations

from typing import Any, Protocol

from .errors import CatalogQueryError

TABLE_EXISTS_QUERY = """
    SELECT count(*)
    FROM pg_catalog.pg_tables
    WHERE schemaname = $1 AND tablename = $2
"""

TABLE_COLUMNS_QUERY = """
    SELECT column_name::text AS column_name
    FROM information_schema.columns
    WHERE table_schema = $1 AND table_name = $2
    ORDER BY ordinal_position
"""

TABLES_QUERY = """
    SELECT tablename
    FROM pg_catalog.pg_tables
    WHERE schemaname NOT IN ('pg_catalog', 'information_schema')
    ORDER BY schemaname, tablename
"""


class Queryable(Protocol):
    """Anything with asyncpg's query surface (a pool or a connection)."""

    async def fetch(self, query: str, *args: Any) -> list[Any]: ...

    async def fetchval(self, query: str, *args: Any) -> Any: ...


async def table_exists(conn: Queryable, schema: str, table: str) -> bool:
    try:
        count = await conn.fetchval(TABLE_EXISTS_QUERY, schema, table)
    except Exception as exc:
        raise CatalogQueryError(f"Failed to look up table {schema}.{table}: {exc}") from exc
    return count == 1


async def table_columns(conn: Queryable, schema: str, table: str) -> tuple[str, ...]:
    """Column names of `schema.table` in ordinal order."""

    try:
        rows = await conn.fetch(TABLE_COLUMNS_QUERY, schema, table)
    except Exception as exc:
        raise CatalogQueryError(f"Failed to list columns of {schema}.{table}: {exc}") from exc
    return tuple(str(row["column_name"]) for row in rows)


async def tables(conn: Queryable) -> tuple[str, ...]:
    """Names of every table outside the system schemas."""

    try:
        rows = await conn.fetch(TABLES_QUERY)
    except Exception as exc:
        raise CatalogQueryError(f"Failed to list tables: {exc}") from exc
    return tuple(str(row["tablename"]) for row in rows)


__all__ = [
    "Queryable",
    "TABLES_QUERY",
    "TABLE_COLUMNS_QUERY",
    "TABLE_EXISTS_QUERY",
    "table_columns",
    "table_exists",
    "tables",
]
