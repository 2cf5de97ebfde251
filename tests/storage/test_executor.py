"""Query execution against pooled connections."""

from __future__ import annotations

from decimal import Decimal

import pytest

from sqlgate.config.models import ParameterType, QueryDefinition
from sqlgate.config.registry import ConfigurationRegistry
from sqlgate.errors import InternalError
from sqlgate.serving.binding import BoundParameter
from sqlgate.storage.executor import QueryExecutor
from tests._helpers.expect import expect_equal, expect_length


def test_execute_rows_returns_column_mappings(registry: ConfigurationRegistry, executor: QueryExecutor) -> None:
    """Rows come back as column-name dictionaries in result order."""
    query = registry.queries["stock-trades-by-symbol"]
    bound = (BoundParameter("symbol", "MSFT", ParameterType.STRING, 1),)

    rows = executor.execute_rows(query, bound)

    expect_length(rows, 10)
    expect_equal(rows[0], {"id": 2, "symbol": "MSFT", "quantity": 20, "price": 102.0})


def test_execute_scalar_count(registry: ConfigurationRegistry, executor: QueryExecutor) -> None:
    """Counts read the first column of the first row."""
    expect_equal(executor.execute_scalar_count(registry.queries["stock-trades-count"], ()), 30)


def test_question_mark_inside_literal_is_not_bound(executor: QueryExecutor) -> None:
    """Only real placeholders receive values."""
    query = QueryDefinition(
        name="literal",
        database="stocktrades",
        sql="SELECT 'what?' AS label, COUNT(*) AS n FROM stock_trades WHERE symbol = ?",
        parameters=({"name": "symbol"},),
    )

    rows = executor.execute_rows(query, (BoundParameter("symbol", "AAPL", ParameterType.STRING, 1),))

    expect_equal(rows, [{"label": "what?", "n": 10}])


def test_decimal_values_bind_on_sqlite(executor: QueryExecutor) -> None:
    """Decimal parameters are adapted for the SQLite driver."""
    query = QueryDefinition(
        name="pricey",
        database="stocktrades",
        sql="SELECT COUNT(*) FROM stock_trades WHERE price > ?",
        parameters=({"name": "min_price", "type": "DECIMAL"},),
    )
    bound = (BoundParameter("min_price", Decimal("125.5"), ParameterType.DECIMAL, 1),)

    expect_equal(executor.execute_scalar_count(query, bound), 5)


def test_driver_error_is_internal_error(executor: QueryExecutor) -> None:
    """Driver failures surface as InternalError naming the query."""
    query = QueryDefinition(name="broken", database="stocktrades", sql="SELECT * FROM no_such_table")

    with pytest.raises(InternalError, match="broken"):
        executor.execute_rows(query, ())


def test_count_without_rows_is_zero(executor: QueryExecutor) -> None:
    """A count query returning no row yields zero."""
    query = QueryDefinition(
        name="empty-count",
        database="stocktrades",
        sql="SELECT id FROM stock_trades WHERE id < 0",
    )

    expect_equal(executor.execute_scalar_count(query, ()), 0)
