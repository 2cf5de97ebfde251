"""One independently bounded SQLAlchemy pool per named database."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from enum import StrEnum

from sqlalchemy import create_engine, event
from sqlalchemy.engine import URL, Connection, Engine, make_url
from sqlalchemy.exc import ArgumentError, DisconnectionError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.pool import ConnectionPoolEntry, QueuePool

from sqlgate.config.models import DatabaseDefinition
from sqlgate.errors import InternalError, NotFound, ServiceUnavailable

LOG = logging.getLogger("sqlgate.storage.pools")

EngineFactory = Callable[[DatabaseDefinition], Engine]


class HealthStatus(StrEnum):
    """Reachability verdict for one database or for the whole service."""

    UP = "UP"
    DEGRADED = "DEGRADED"
    DOWN = "DOWN"


def resolve_url(definition: DatabaseDefinition) -> URL:
    """
    Combine the definition's URL, credentials and driver into one URL.

    Credentials and driver only fill in what the URL leaves unspecified.

    Returns
    -------
    URL
        SQLAlchemy URL ready for ``create_engine``.
    """
    url = make_url(definition.url)
    if definition.username and not url.username:
        url = url.set(username=definition.username)
    if definition.password is not None and not url.password:
        url = url.set(password=definition.password.get_secret_value())
    if definition.driver and "+" not in url.drivername:
        url = url.set(drivername=f"{url.drivername}+{definition.driver}")
    return url


def _report_leak(name: str, threshold: float, holder: str) -> None:
    LOG.warning(
        "Possible connection leak for database=%s: connection checked out by thread=%s "
        "still held after %.3fs",
        name,
        holder,
        threshold,
    )


def _install_pool_events(engine: Engine, definition: DatabaseDefinition) -> None:
    """
    Attach idle-timeout and leak-detection hooks to an engine's pool.

    Leak detection arms a timer on checkout that warns if the connection is
    still held when the threshold elapses; check-in cancels it.
    """
    idle_timeout = definition.pool.idle_timeout_ms / 1000
    leak_threshold = definition.pool.leak_detection_threshold_ms / 1000
    name = definition.name

    @event.listens_for(engine, "checkout")
    def _on_checkout(_dbapi_conn: object, record: ConnectionPoolEntry, _proxy: object) -> None:
        now = time.monotonic()
        checked_in_at = record.info.pop("checked_in_at", None)
        if idle_timeout and checked_in_at is not None and now - checked_in_at > idle_timeout:
            LOG.debug("Discarding idle connection for database=%s", name)
            message = f"connection idle longer than {idle_timeout:.3f}s"
            raise DisconnectionError(message)
        if leak_threshold:
            timer = threading.Timer(
                leak_threshold,
                _report_leak,
                args=(name, leak_threshold, threading.current_thread().name),
            )
            timer.daemon = True
            timer.start()
            record.info["leak_timer"] = timer

    def _disarm(record: ConnectionPoolEntry) -> None:
        timer: threading.Timer | None = record.info.pop("leak_timer", None)
        if timer is not None:
            timer.cancel()

    @event.listens_for(engine, "checkin")
    def _on_checkin(_dbapi_conn: object, record: ConnectionPoolEntry) -> None:
        _disarm(record)
        record.info["checked_in_at"] = time.monotonic()

    # invalidation clears record.info before check-in runs
    @event.listens_for(engine, "invalidate")
    def _on_invalidate(_dbapi_conn: object, record: ConnectionPoolEntry, _exc: object) -> None:
        _disarm(record)


def build_engine(definition: DatabaseDefinition) -> Engine:
    """
    Create a pooled engine sized and timed from the definition's pool settings.

    Parameters
    ----------
    definition
        Database definition supplying URL, credentials and pool tunables.

    Returns
    -------
    Engine
        Engine backed by a bounded ``QueuePool``.
    """
    url = resolve_url(definition)
    pool = definition.pool
    pool_size = max(1, min(pool.minimum_idle, pool.maximum_pool_size))
    connect_args: dict[str, object] = {}
    if url.get_backend_name() == "sqlite":
        connect_args["check_same_thread"] = False
    engine = create_engine(
        url,
        poolclass=QueuePool,
        pool_size=pool_size,
        max_overflow=pool.maximum_pool_size - pool_size,
        pool_timeout=pool.connection_timeout_ms / 1000,
        pool_recycle=max(pool.max_lifetime_ms // 1000, 1) if pool.max_lifetime_ms else -1,
        connect_args=connect_args,
    )
    _install_pool_events(engine, definition)
    LOG.info(
        "Created pool for database=%s backend=%s size=%d max=%d",
        definition.name,
        url.get_backend_name(),
        pool_size,
        pool.maximum_pool_size,
    )
    return engine


class ConnectionPoolManager:
    """
    Lazily created, independent connection pools keyed by database name.

    Engine creation is serialized by a lock; once created, acquisition from
    one pool never waits on another pool.
    """

    def __init__(
        self,
        databases: Mapping[str, DatabaseDefinition],
        *,
        engine_factory: EngineFactory = build_engine,
    ) -> None:
        self._databases = dict(databases)
        self._engine_factory = engine_factory
        self._engines: dict[str, Engine] = {}
        self._lock = threading.Lock()

    @property
    def database_names(self) -> tuple[str, ...]:
        """Names of every configured database."""
        return tuple(self._databases)

    def definition(self, name: str) -> DatabaseDefinition:
        """
        Return the definition for ``name``.

        Returns
        -------
        DatabaseDefinition
            Configured database definition.

        Raises
        ------
        NotFound
            If no database is configured under ``name``.
        """
        definition = self._databases.get(name)
        if definition is None:
            message = f"Database not found: {name}"
            raise NotFound(message)
        return definition

    def engine(self, name: str) -> Engine:
        """
        Return the engine for ``name``, creating its pool on first use.

        Returns
        -------
        Engine
            Pooled engine for the database.

        Raises
        ------
        InternalError
            If the definition's URL cannot be turned into an engine.
        """
        engine = self._engines.get(name)
        if engine is not None:
            return engine
        definition = self.definition(name)
        with self._lock:
            engine = self._engines.get(name)
            if engine is None:
                try:
                    engine = self._engine_factory(definition)
                except (ArgumentError, ImportError) as exc:
                    message = f"Cannot create pool for database '{name}': {exc}"
                    raise InternalError(message) from exc
                self._engines[name] = engine
        return engine

    @contextmanager
    def acquire(self, name: str) -> Iterator[Connection]:
        """
        Check out a pooled connection; it is returned on every exit path.

        Yields
        ------
        Connection
            Connection from the database's pool.

        Raises
        ------
        ServiceUnavailable
            If the pool times out or the database cannot be reached.
        """
        engine = self.engine(name)
        try:
            connection = engine.connect()
        except PoolTimeoutError as exc:
            message = f"Timed out acquiring a connection for database '{name}'"
            raise ServiceUnavailable(message) from exc
        except SQLAlchemyError as exc:
            message = f"Database '{name}' is not reachable: {exc}"
            raise ServiceUnavailable(message) from exc
        try:
            yield connection
        finally:
            connection.close()

    def health_check(self, name: str) -> HealthStatus:
        """
        Check a database with its lightweight test query.

        Returns
        -------
        HealthStatus
            UP when the test query succeeds, otherwise DOWN.
        """
        test_query = self.definition(name).pool.connection_test_query
        try:
            with self.acquire(name) as connection:
                connection.exec_driver_sql(test_query)
        except (ServiceUnavailable, InternalError, SQLAlchemyError) as exc:
            LOG.warning("Health check failed for database=%s: %s", name, exc)
            return HealthStatus.DOWN
        return HealthStatus.UP

    def describe_pools(self) -> dict[str, dict[str, object]]:
        """
        Summarize pool state for management output.

        Returns
        -------
        dict[str, dict[str, object]]
            Per-database flag for pool creation and the pool status line.
        """
        summary: dict[str, dict[str, object]] = {}
        for name in self._databases:
            engine = self._engines.get(name)
            summary[name] = {
                "created": engine is not None,
                "status": engine.pool.status() if engine is not None else None,
            }
        return summary

    def replace_definitions(self, databases: Mapping[str, DatabaseDefinition]) -> None:
        """Adopt new definitions, disposing pools whose definition changed or vanished."""
        with self._lock:
            for name in list(self._engines):
                if databases.get(name) != self._databases.get(name):
                    LOG.info("Disposing pool for database=%s after reload", name)
                    self._engines.pop(name).dispose()
            self._databases = dict(databases)

    def close(self) -> None:
        """Dispose every pool."""
        with self._lock:
            for name, engine in self._engines.items():
                LOG.debug("Disposing pool for database=%s", name)
                engine.dispose()
            self._engines.clear()


__all__ = [
    "ConnectionPoolManager",
    "EngineFactory",
    "HealthStatus",
    "build_engine",
    "resolve_url",
]
