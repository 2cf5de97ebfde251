"""Per-query result cache and its use by the executor."""

from __future__ import annotations

from decimal import Decimal

import pytest

from sqlgate.config.models import CacheSettings, ParameterType, QueryDefinition
from sqlgate.serving.binding import BoundParameter
from sqlgate.storage.cache import QueryResultCache, cache_key
from sqlgate.storage.executor import QueryExecutor
from sqlgate.storage.pools import ConnectionPoolManager
from tests._helpers.expect import expect_equal, expect_length, expect_true

SETTINGS = CacheSettings(enabled=True, ttl_seconds=60, max_size=2)


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _symbol(value: str) -> tuple[BoundParameter, ...]:
    return (BoundParameter("symbol", value, ParameterType.STRING, 1),)


def _cached_query(**cache: object) -> QueryDefinition:
    return QueryDefinition(
        name="by-symbol",
        database="stocktrades",
        sql="SELECT id, symbol FROM stock_trades WHERE symbol = ? ORDER BY id",
        parameters=({"name": "symbol"},),
        cache={"enabled": True, **cache},
    )


def test_cache_settings_defaults_and_aliases() -> None:
    """Caching is off by default; camelCase and short aliases are accepted."""
    defaults = CacheSettings()
    expect_equal((defaults.enabled, defaults.ttl_seconds, defaults.max_size), (False, 300, 1000))

    parsed = CacheSettings.model_validate({"enabled": True, "ttl": 5, "maxSize": 3})
    expect_equal((parsed.enabled, parsed.ttl_seconds, parsed.max_size), (True, 5, 3))

    query = QueryDefinition(name="q", database="db", sql="SELECT 1")
    expect_equal(query.cache_enabled, False)


def test_cache_key_orders_by_position_and_keeps_types_apart() -> None:
    """Keys follow placeholder order and distinguish equal values of different types."""
    first = BoundParameter("a", 1, ParameterType.INTEGER, 1)
    second = BoundParameter("b", "x", ParameterType.STRING, 2)
    expect_equal(cache_key((second, first)), cache_key((first, second)))

    as_decimal = BoundParameter("a", Decimal(1), ParameterType.DECIMAL, 1)
    expect_true(cache_key((first,)) != cache_key((as_decimal,)), message="1 and Decimal(1) share a key")


def test_get_returns_copies_and_counts_hits() -> None:
    """Stored rows come back as independent copies."""
    cache = QueryResultCache()
    cache.put("q", SETTINGS, _symbol("AAPL"), [{"id": 1}])

    first = cache.get("q", SETTINGS, _symbol("AAPL"))
    if first is None:
        pytest.fail("expected a cache hit")
    first[0]["id"] = 99

    expect_equal(cache.get("q", SETTINGS, _symbol("AAPL")), [{"id": 1}])
    expect_equal(cache.get("q", SETTINGS, _symbol("MSFT")), None)
    stats = cache.stats()["q"]
    expect_equal((stats["hits"], stats["misses"], stats["size"]), (2, 1, 1))
    expect_equal(stats["hitRate"], 0.6667)


def test_entries_expire_after_ttl() -> None:
    """An entry older than its time-to-live is a miss."""
    clock = _Clock()
    cache = QueryResultCache(timer=clock)
    cache.put("q", SETTINGS, (), [{"n": 1}])

    clock.now = 59.0
    expect_equal(cache.get("q", SETTINGS, ()), [{"n": 1}])
    clock.now = 61.0
    expect_equal(cache.get("q", SETTINGS, ()), None)
    expect_equal(cache.stats()["q"]["size"], 0)


def test_max_size_bounds_entries_per_query() -> None:
    """Each query keeps at most ``max_size`` entries."""
    cache = QueryResultCache()
    for symbol in ("AAPL", "MSFT", "GOOGL"):
        cache.put("q", SETTINGS, _symbol(symbol), [{"symbol": symbol}])

    expect_equal(cache.stats()["q"]["size"], 2)


def test_changed_settings_start_a_fresh_cache() -> None:
    """Entries written under old settings are not served under new ones."""
    cache = QueryResultCache()
    cache.put("q", SETTINGS, (), [{"n": 1}])

    resized = CacheSettings(enabled=True, ttl_seconds=60, max_size=10)

    expect_equal(cache.get("q", resized, ()), None)
    expect_equal(cache.stats()["q"]["maxSize"], 10)


def test_invalidate_one_query_or_all() -> None:
    """Invalidation reports how many entries were removed."""
    cache = QueryResultCache()
    cache.put("a", SETTINGS, _symbol("AAPL"), [{"id": 1}])
    cache.put("a", SETTINGS, _symbol("MSFT"), [{"id": 2}])
    cache.put("b", SETTINGS, (), [{"id": 3}])

    expect_equal(cache.invalidate("a"), 2)
    expect_equal(cache.invalidate("unknown"), 0)
    expect_equal(cache.get("b", SETTINGS, ()), [{"id": 3}])
    expect_equal(cache.invalidate(), 1)
    expect_equal(cache.get("b", SETTINGS, ()), None)


def test_executor_serves_repeat_calls_from_cache(pools: ConnectionPoolManager) -> None:
    """A cached query skips the database until its entry is invalidated."""
    cache = QueryResultCache()
    executor = QueryExecutor(pools, cache=cache)
    query = _cached_query()

    first = executor.execute_rows(query, _symbol("AAPL"))
    with pools.acquire("stocktrades") as connection:
        connection.exec_driver_sql("DELETE FROM stock_trades WHERE symbol = 'AAPL'")
        connection.commit()
    second = executor.execute_rows(query, _symbol("AAPL"))

    expect_length(first, 10)
    expect_equal(second, first)
    expect_equal(cache.stats()["by-symbol"]["hits"], 1)

    cache.invalidate("by-symbol")
    expect_equal(executor.execute_rows(query, _symbol("AAPL")), [])


def test_executor_keys_on_bound_values(pools: ConnectionPoolManager) -> None:
    """Different parameter values are cached separately."""
    cache = QueryResultCache()
    executor = QueryExecutor(pools, cache=cache)
    query = _cached_query()

    aapl = executor.execute_rows(query, _symbol("AAPL"))
    msft = executor.execute_rows(query, _symbol("MSFT"))

    expect_equal({row["symbol"] for row in aapl}, {"AAPL"})
    expect_equal({row["symbol"] for row in msft}, {"MSFT"})
    expect_equal(cache.stats()["by-symbol"]["size"], 2)


def test_executor_ignores_cache_for_disabled_queries(pools: ConnectionPoolManager) -> None:
    """Queries without enabled caching never touch the cache."""
    cache = QueryResultCache()
    executor = QueryExecutor(pools, cache=cache)
    query = _cached_query().model_copy(update={"cache": CacheSettings(enabled=False)})

    executor.execute_rows(query, _symbol("AAPL"))
    executor.execute_rows(query, _symbol("AAPL"))

    expect_equal(cache.stats(), {})
