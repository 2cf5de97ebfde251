"""Immutable snapshot of the three definition maps with load-time validation."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from pydantic import BaseModel, Field

from sqlgate.config.models import DatabaseDefinition, EndpointDefinition, QueryDefinition
from sqlgate.config.sources import ConfigurationSource
from sqlgate.errors import ConfigurationError
from sqlgate.validation.sql_heuristics import count_placeholders

LOG = logging.getLogger("sqlgate.config.registry")


class RegistryReport(BaseModel):
    """Structured outcome of referential-integrity validation."""

    source: str = ""
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    database_count: int = 0
    query_count: int = 0
    endpoint_count: int = 0

    @property
    def valid(self) -> bool:
        """Return True when no errors were recorded."""
        return not self.errors


def placeholder_mismatch(query: QueryDefinition) -> str | None:
    """
    Compare a query's ``?`` placeholders with its declared parameters.

    Returns
    -------
    str | None
        Error text when the counts differ, otherwise None.
    """
    placeholders = count_placeholders(query.sql)
    declared = len(query.parameters)
    if placeholders == declared:
        return None
    return (
        f"Query '{query.name}' parameter mismatch: SQL has {placeholders} placeholders "
        f"but {declared} parameters defined"
    )


def _position_errors(query: QueryDefinition) -> list[str]:
    positions = sorted(spec.position or 0 for spec in query.parameters)
    expected = list(range(1, len(query.parameters) + 1))
    if positions == expected:
        return []
    return [
        f"Query '{query.name}' parameter positions {positions} must be exactly {expected}"
    ]


def validate_definitions(
    databases: Mapping[str, DatabaseDefinition],
    queries: Mapping[str, QueryDefinition],
    endpoints: Mapping[str, EndpointDefinition],
    *,
    source: str = "",
) -> RegistryReport:
    """
    Check referential integrity and per-definition invariants.

    Parameters
    ----------
    databases, queries, endpoints
        Definition maps keyed by name.
    source
        Identifier of the configuration source, echoed in the report.

    Returns
    -------
    RegistryReport
        Ordered errors and warnings plus counts.
    """
    report = RegistryReport(
        source=source,
        database_count=len(databases),
        query_count=len(queries),
        endpoint_count=len(endpoints),
    )

    for name, query in queries.items():
        if query.database not in databases:
            report.errors.append(f"Query '{name}' references non-existent database '{query.database}'")
        mismatch = placeholder_mismatch(query)
        if mismatch is not None:
            report.errors.append(mismatch)
        report.errors.extend(_position_errors(query))

    routes: dict[tuple[str, str], str] = {}
    for name, endpoint in endpoints.items():
        if endpoint.query not in queries:
            report.errors.append(f"Endpoint '{name}' references non-existent query '{endpoint.query}'")
        if endpoint.count_query is not None and endpoint.count_query not in queries:
            report.errors.append(
                f"Endpoint '{name}' references non-existent count query '{endpoint.count_query}'"
            )
        if endpoint.pagination_enabled and endpoint.count_query is None:
            report.warnings.append(
                f"Endpoint '{name}' enables pagination without a count query; "
                "totalElements will be reported as 0"
            )
        pagination = endpoint.pagination
        if pagination is not None and pagination.default_size > pagination.max_size:
            report.errors.append(
                f"Endpoint '{name}' default page size {pagination.default_size} exceeds "
                f"maximum {pagination.max_size}"
            )
        route = (endpoint.method.value, endpoint.path)
        if route in routes:
            report.errors.append(
                f"Endpoint '{name}' duplicates route {route[0]} {route[1]} of endpoint '{routes[route]}'"
            )
        else:
            routes[route] = name

    used = {q.database for q in queries.values()}
    report.warnings.extend(
        f"Database '{name}' is not referenced by any query" for name in databases if name not in used
    )
    return report


@dataclass(frozen=True)
class ConfigurationRegistry:
    """Validated, read-only snapshot of databases, queries and endpoints."""

    databases: Mapping[str, DatabaseDefinition]
    queries: Mapping[str, QueryDefinition]
    endpoints: Mapping[str, EndpointDefinition]
    report: RegistryReport = field(default_factory=RegistryReport)

    @classmethod
    def build(
        cls,
        databases: Mapping[str, DatabaseDefinition],
        queries: Mapping[str, QueryDefinition],
        endpoints: Mapping[str, EndpointDefinition],
        *,
        source: str = "",
    ) -> ConfigurationRegistry:
        """
        Validate definition maps and freeze them into a registry.

        Returns
        -------
        ConfigurationRegistry
            Registry whose report has no errors.

        Raises
        ------
        ConfigurationError
            If validation recorded any error; the report is attached.
        """
        report = validate_definitions(databases, queries, endpoints, source=source)
        for warning in report.warnings:
            LOG.warning("%s", warning)
        if not report.valid:
            for error in report.errors:
                LOG.error("%s", error)
            message = (
                f"Configuration from {source or 'source'} failed validation with "
                f"{len(report.errors)} error(s): {'; '.join(report.errors)}"
            )
            raise ConfigurationError(message, report=report)
        LOG.info(
            "Configuration registry loaded: %d databases, %d queries, %d endpoints",
            report.database_count,
            report.query_count,
            report.endpoint_count,
        )
        return cls(
            databases=MappingProxyType(dict(databases)),
            queries=MappingProxyType(dict(queries)),
            endpoints=MappingProxyType(dict(endpoints)),
            report=report,
        )

    @classmethod
    def load(cls, source: ConfigurationSource) -> ConfigurationRegistry:
        """
        Load every kind from ``source`` and validate the result.

        Returns
        -------
        ConfigurationRegistry
            Validated registry.
        """
        LOG.info("Loading configuration from %s", source.describe())
        return cls.build(
            source.load_databases(),
            source.load_queries(),
            source.load_endpoints(),
            source=source.describe(),
        )

    def get_database(self, name: str) -> DatabaseDefinition | None:
        """Return the database definition or None when absent."""
        return self.databases.get(name)

    def get_query(self, name: str) -> QueryDefinition | None:
        """Return the query definition or None when absent."""
        return self.queries.get(name)

    def get_endpoint(self, name: str) -> EndpointDefinition | None:
        """Return the endpoint definition or None when absent."""
        return self.endpoints.get(name)

    def database_for_endpoint(self, name: str) -> str | None:
        """
        Resolve the database an endpoint's primary query runs against.

        Returns
        -------
        str | None
            Database name, or None when any link is missing.
        """
        endpoint = self.get_endpoint(name)
        query = self.get_query(endpoint.query) if endpoint is not None else None
        return query.database if query is not None else None


class RegistryHolder:
    """Holds the current registry snapshot and swaps it atomically on reload."""

    def __init__(
        self,
        registry: ConfigurationRegistry,
        *,
        loader: Callable[[], ConfigurationRegistry] | None = None,
    ) -> None:
        self._registry = registry
        self._loader = loader
        self._lock = threading.Lock()
        self._listeners: list[Callable[[ConfigurationRegistry], None]] = []

    @property
    def current(self) -> ConfigurationRegistry:
        """Return the active snapshot."""
        return self._registry

    def subscribe(self, listener: Callable[[ConfigurationRegistry], None]) -> None:
        """Register a callback invoked with each newly swapped-in registry."""
        self._listeners.append(listener)

    def reload(self) -> ConfigurationRegistry:
        """
        Build a fresh snapshot and swap it in; the old one stays on failure.

        Returns
        -------
        ConfigurationRegistry
            The new active registry.

        Raises
        ------
        ConfigurationError
            If no loader is configured or the new configuration is invalid.
        """
        if self._loader is None:
            message = "Registry holder has no loader; reload is unavailable"
            raise ConfigurationError(message)
        with self._lock:
            fresh = self._loader()
            for listener in self._listeners:
                listener(fresh)
            self._registry = fresh
        LOG.info("Configuration registry reloaded")
        return fresh


__all__ = [
    "ConfigurationRegistry",
    "RegistryHolder",
    "RegistryReport",
    "placeholder_mismatch",
    "validate_definitions",
]
