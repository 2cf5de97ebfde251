"""Single-result and paginated endpoint algorithms."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import pytest

from sqlgate.config.models import QueryDefinition, ResponseType
from sqlgate.config.registry import ConfigurationRegistry
from sqlgate.errors import BadRequest, NotFound
from sqlgate.serving.binding import BoundParameter
from sqlgate.serving.handlers import EndpointHandler, EndpointService, HandlerTable, PaginationMeta
from sqlgate.storage.executor import QueryExecutor, Row
from tests._helpers.expect import expect_equal, expect_length, expect_true


class RecordingExecutor(QueryExecutor):
    """Executor stand-in returning canned rows and recording bound values."""

    def __init__(self, rows: list[Row], count: int = 0) -> None:
        self.rows = rows
        self.count = count
        self.calls: list[tuple[str, list[tuple[str, Any, int]]]] = []

    def execute_rows(self, query: QueryDefinition, bound: Sequence[BoundParameter]) -> list[Row]:
        self.calls.append((query.name, [(p.name, p.value, p.position) for p in bound]))
        return list(self.rows)

    def execute_scalar_count(self, query: QueryDefinition, bound: Sequence[BoundParameter]) -> int:
        self.calls.append((query.name, [(p.name, p.value, p.position) for p in bound]))
        return self.count


@pytest.fixture
def handlers(registry: ConfigurationRegistry) -> HandlerTable:
    """Handler table for the seeded configuration.

    Returns
    -------
    HandlerTable
        Handlers keyed by endpoint name.
    """
    return HandlerTable.build(registry)


def _handler(handlers: HandlerTable, name: str) -> EndpointHandler:
    handler = handlers.get(name)
    if handler is None:
        pytest.fail(f"handler {name} missing")
    return handler


def test_handler_table_resolves_links(handlers: HandlerTable) -> None:
    """Handlers carry the resolved query, count query and database."""
    handler = _handler(handlers, "stock-trades-list")

    expect_equal(handler.query.name, "stock-trades-all")
    expect_equal(handler.count_query.name if handler.count_query else None, "stock-trades-count")
    expect_equal(handler.database, "stocktrades")
    expect_equal(handlers.databases(), frozenset({"stocktrades"}))


@pytest.mark.parametrize(
    ("rows", "expected_type"),
    [
        ([{"id": 1}], ResponseType.SINGLE),
        ([{"id": 1}, {"id": 2}], ResponseType.LIST),
    ],
)
def test_single_result_shapes_by_row_count(
    handlers: HandlerTable, rows: list[Row], expected_type: ResponseType
) -> None:
    """One row is SINGLE with an object; more rows are a LIST."""
    service = EndpointService(RecordingExecutor(rows))

    envelope = service.execute(_handler(handlers, "stock-trades-by-symbol"), {"symbol": "AAPL"})

    expect_equal(envelope.type, expected_type)
    expect_equal(envelope.data, rows[0] if len(rows) == 1 else rows)
    expect_true(envelope.pagination is None, message="single results carry no pagination")


def test_single_result_without_rows_is_not_found(handlers: HandlerTable) -> None:
    """Zero rows raise NotFound naming the endpoint."""
    service = EndpointService(RecordingExecutor([]))

    with pytest.raises(NotFound, match="stock-trades-by-symbol"):
        service.execute(_handler(handlers, "stock-trades-by-symbol"), {"symbol": "ZZZ"})


def test_pagination_metadata_arithmetic() -> None:
    """45 rows at size 20 make three pages."""
    first = PaginationMeta.compute(page=0, size=20, total_elements=45)
    last = PaginationMeta.compute(page=2, size=20, total_elements=45)

    expect_equal((first.total_pages, first.first, first.last), (3, True, False))
    expect_equal((last.total_pages, last.first, last.last), (3, False, True))
    expect_equal(
        first.to_payload(),
        {"page": 0, "size": 20, "totalElements": 45, "totalPages": 3, "first": True, "last": False},
    )


def test_paginated_count_query_gets_renumbered_values(handlers: HandlerTable) -> None:
    """The count query reuses bound values without limit/offset."""
    executor = RecordingExecutor([{"id": 1}], count=10)
    service = EndpointService(executor)

    envelope = service.execute(
        _handler(handlers, "stock-trades-by-symbol-paged"), {"symbol": "AAPL", "page": "1", "size": "4"}
    )

    expect_equal(envelope.type, ResponseType.PAGED)
    expect_equal(
        executor.calls,
        [
            ("stock-trades-by-symbol-paged", [("symbol", "AAPL", 1), ("limit", 4, 2), ("offset", 4, 3)]),
            ("stock-trades-count-by-symbol", [("symbol", "AAPL", 1)]),
        ],
    )
    pagination = envelope.pagination
    if pagination is None:
        pytest.fail("paged envelope must carry pagination")
    expect_equal((pagination.total_elements, pagination.total_pages), (10, 3))


def test_paginated_page_validation_precedes_execution(handlers: HandlerTable) -> None:
    """An oversized page is rejected before any query runs."""
    executor = RecordingExecutor([])
    service = EndpointService(executor)

    with pytest.raises(BadRequest, match="exceeds maximum 20"):
        service.execute(_handler(handlers, "stock-trades-list"), {"size": "50"})
    expect_length(executor.calls, 0)


def test_paginated_against_database(handlers: HandlerTable, executor: QueryExecutor) -> None:
    """End-to-end paging over the seeded table."""
    service = EndpointService(executor)

    envelope = service.execute(_handler(handlers, "stock-trades-list"), {"page": "2", "size": "10"})

    payload = envelope.to_payload()
    expect_equal([row["id"] for row in payload["data"]], list(range(21, 31)))
    expect_equal(payload["pagination"]["totalElements"], 30)
    expect_equal(payload["pagination"]["last"], True)
    expect_true(isinstance(payload["timestamp"], int), message="timestamp must be epoch millis")


def test_single_against_database(handlers: HandlerTable, executor: QueryExecutor) -> None:
    """Looking up one trade by id returns a SINGLE envelope."""
    service = EndpointService(executor)

    envelope = service.execute(_handler(handlers, "stock-trade-by-id"), {"id": "7"})

    expect_equal(envelope.type, ResponseType.SINGLE)
    expect_equal(envelope.data["symbol"], "AAPL")
