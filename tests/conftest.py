"""Pytest configuration for the sqlgate test suite."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from sqlgate.config.registry import ConfigurationRegistry, RegistryHolder
from sqlgate.serving.dispatcher import RequestDispatcher
from sqlgate.storage.executor import QueryExecutor
from sqlgate.storage.pools import ConnectionPoolManager
from tests._helpers.stocktrades import seed_stocktrades, stocktrades_registry


@pytest.fixture
def stocktrades_db(tmp_path: Path) -> Path:
    """Provide a seeded SQLite stock-trades database file.

    Returns
    -------
    Path
        Database path inside ``tmp_path``.
    """
    return seed_stocktrades(tmp_path / "stocktrades.db")


@pytest.fixture
def registry(stocktrades_db: Path) -> ConfigurationRegistry:
    """Provide a validated registry for the seeded database.

    Returns
    -------
    ConfigurationRegistry
        Registry with stock-trades databases, queries and endpoints.
    """
    return stocktrades_registry(stocktrades_db)


@pytest.fixture
def pools(registry: ConfigurationRegistry) -> Iterator[ConnectionPoolManager]:
    """Provide a pool manager that is disposed after the test.

    Yields
    ------
    ConnectionPoolManager
        Pools for the registry's databases.
    """
    manager = ConnectionPoolManager(registry.databases)
    yield manager
    manager.close()


@pytest.fixture
def executor(pools: ConnectionPoolManager) -> QueryExecutor:
    """Provide a query executor over the shared pools.

    Returns
    -------
    QueryExecutor
        Executor bound to ``pools``.
    """
    return QueryExecutor(pools)


@pytest.fixture
def dispatcher(
    registry: ConfigurationRegistry, pools: ConnectionPoolManager
) -> Iterator[RequestDispatcher]:
    """Provide a dispatcher with a small async worker pool.

    Yields
    ------
    RequestDispatcher
        Dispatcher whose workers are shut down after the test.
    """
    instance = RequestDispatcher(RegistryHolder(registry), pools, max_workers=2, max_pending=5)
    yield instance
    instance.shutdown(wait=True)
