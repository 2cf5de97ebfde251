"""Execute bound queries against the pool of the query's database."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy.engine import Connection, CursorResult
from sqlalchemy.exc import SQLAlchemyError

from sqlgate.config.models import QueryDefinition
from sqlgate.errors import InternalError
from sqlgate.storage.cache import QueryResultCache
from sqlgate.storage.pools import ConnectionPoolManager
from sqlgate.validation.sql_heuristics import translate_placeholders

if TYPE_CHECKING:
    from sqlgate.serving.binding import BoundParameter

LOG = logging.getLogger("sqlgate.storage.executor")

Row = dict[str, object]


def _adapt_value(value: object, dialect_name: str) -> object:
    """Convert values the target driver cannot bind natively."""
    if dialect_name != "sqlite":
        return value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    return value


class QueryExecutor:
    """
    Runs a QueryDefinition with bound parameters using scoped acquisition.

    Row results of queries with an enabled cache are served from ``cache``
    when present.
    """

    def __init__(self, pools: ConnectionPoolManager, *, cache: QueryResultCache | None = None) -> None:
        self._pools = pools
        self._cache = cache

    @property
    def pools(self) -> ConnectionPoolManager:
        """Pool manager used for acquisition."""
        return self._pools

    def execute_rows(self, query: QueryDefinition, bound: Sequence[BoundParameter]) -> list[Row]:
        """
        Execute ``query`` and return every row as a column-name mapping.

        Parameters
        ----------
        query
            Query to run; its ``database`` selects the pool.
        bound
            Bound parameters, one per ``?`` placeholder.

        Returns
        -------
        list[Row]
            Rows in result order; empty for statements that return no rows.
        """
        settings = query.cache if self._cache is not None and query.cache_enabled else None
        if settings is not None:
            cached = self._cache.get(query.name, settings, bound)  # type: ignore[union-attr]
            if cached is not None:
                return cached
        LOG.debug(
            "Executing query=%s database=%s params=%d", query.name, query.database, len(bound)
        )
        with self._pools.acquire(query.database) as connection:
            result = self._execute(connection, query, bound)
            if not result.returns_rows:
                return []
            columns = list(result.keys())
            rows = [dict(zip(columns, row, strict=True)) for row in result]
        LOG.debug("Query %s returned %d rows", query.name, len(rows))
        if settings is not None:
            self._cache.put(query.name, settings, bound, rows)  # type: ignore[union-attr]
        return rows

    def execute_scalar_count(self, query: QueryDefinition, bound: Sequence[BoundParameter]) -> int:
        """
        Execute a count query and return the first column of its first row.

        Returns
        -------
        int
            Count value, or 0 when the query returns no row.

        Raises
        ------
        InternalError
            If the value cannot be read as an integer.
        """
        with self._pools.acquire(query.database) as connection:
            result = self._execute(connection, query, bound)
            row = result.first() if result.returns_rows else None
        if row is None or row[0] is None:
            LOG.warning("Count query %s returned no results", query.name)
            return 0
        try:
            return int(row[0])
        except (TypeError, ValueError) as exc:
            message = f"Count query '{query.name}' returned a non-integer value: {row[0]!r}"
            raise InternalError(message) from exc

    @staticmethod
    def _execute(
        connection: Connection,
        query: QueryDefinition,
        bound: Sequence[BoundParameter],
    ) -> CursorResult[object]:
        dialect = connection.dialect
        ordered = sorted(bound, key=lambda param: param.position)
        values = [_adapt_value(param.value, dialect.name) for param in ordered]
        try:
            sql = translate_placeholders(query.sql, dialect.paramstyle)
        except ValueError as exc:
            message = f"Cannot bind parameters for query '{query.name}': {exc}"
            raise InternalError(message) from exc
        try:
            if not values:
                return connection.exec_driver_sql(query.sql)
            if dialect.paramstyle == "named":
                named = {f"p{index}": value for index, value in enumerate(values, start=1)}
                return connection.exec_driver_sql(sql, named)
            return connection.exec_driver_sql(sql, tuple(values))
        except SQLAlchemyError as exc:
            LOG.exception("Failed to execute query: %s", query.name)
            message = f"Failed to execute query: {query.name}"
            raise InternalError(message) from exc


__all__ = ["QueryExecutor", "Row"]
