"""Two-phase validation: configuration chain, then declared SQL against live schemas.

Phase 1 walks endpoint -> query -> database links. Phase 2 runs only when
phase 1 passes; it scans each query heuristically and checks the tables and
columns it finds against SQLAlchemy inspector metadata. Individual mismatches
are reported, never raised.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field

from pydantic import BaseModel, Field
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from sqlgate.config.models import QueryDefinition
from sqlgate.config.registry import ConfigurationRegistry
from sqlgate.errors import InternalError, NotFound, ServiceUnavailable
from sqlgate.storage.pools import ConnectionPoolManager
from sqlgate.validation.sql_heuristics import CAVEAT_CTE, CAVEAT_SUBQUERY, TableRef, scan_sql

LOG = logging.getLogger("sqlgate.validation.schema")

PHASE_CONFIGURATION = "configuration"
PHASE_SCHEMA = "schema"


class ValidationReport(BaseModel):
    """Outcome of one validation phase."""

    phase: str
    passed: bool = True
    skipped: bool = False
    successes: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    def error(self, message: str) -> None:
        """Record an error and mark the phase failed."""
        self.errors.append(message)
        self.passed = False


class SchemaValidationResult(BaseModel):
    """Combined result of both validation phases."""

    configuration: ValidationReport
    database: ValidationReport

    @property
    def passed(self) -> bool:
        """Return True when both phases passed."""
        return self.configuration.passed and self.database.passed


@dataclass
class _DatabaseCatalog:
    """Lower-cased table and column names of one database, loaded on demand."""

    tables: dict[str | None, set[str]] = field(default_factory=dict)
    columns: dict[tuple[str | None, str], set[str]] = field(default_factory=dict)


class SchemaValidator:
    """Validates a registry's configuration chain and its SQL against live databases."""

    def __init__(self, registry: ConfigurationRegistry, pools: ConnectionPoolManager) -> None:
        self._registry = registry
        self._pools = pools

    def validate_configuration(self) -> ValidationReport:
        """
        Check endpoint -> query, endpoint -> count query and query -> database links.

        Returns
        -------
        ValidationReport
            Configuration-phase report.
        """
        report = ValidationReport(phase=PHASE_CONFIGURATION)
        registry = self._registry
        for name, endpoint in sorted(registry.endpoints.items()):
            if registry.get_query(endpoint.query) is None:
                report.error(f"Endpoint '{name}' references non-existent query '{endpoint.query}'")
            else:
                report.successes.append(f"Endpoint '{name}' -> query '{endpoint.query}'")
            if endpoint.count_query is None:
                continue
            if registry.get_query(endpoint.count_query) is None:
                report.error(
                    f"Endpoint '{name}' references non-existent count query '{endpoint.count_query}'"
                )
            else:
                report.successes.append(f"Endpoint '{name}' -> count query '{endpoint.count_query}'")
        for name, query in sorted(registry.queries.items()):
            if registry.get_database(query.database) is None:
                report.error(f"Query '{name}' references non-existent database '{query.database}'")
            else:
                report.successes.append(f"Query '{name}' -> database '{query.database}'")
        LOG.info(
            "Configuration validation: %d ok, %d errors", len(report.successes), len(report.errors)
        )
        return report

    def validate_schema(self) -> ValidationReport:
        """
        Check each query's tables, columns and placeholders against its database.

        Returns
        -------
        ValidationReport
            Schema-phase report; unreachable databases yield one error per query.
        """
        report = ValidationReport(phase=PHASE_SCHEMA)
        by_database: dict[str, list[QueryDefinition]] = defaultdict(list)
        for query in self._registry.queries.values():
            by_database[query.database].append(query)

        for database, queries in sorted(by_database.items()):
            queries.sort(key=lambda query: query.name)
            try:
                catalog = self._load_catalog(database, queries)
            except (NotFound, ServiceUnavailable, InternalError, SQLAlchemyError) as exc:
                LOG.warning("Schema validation cannot reach database=%s: %s", database, exc)
                for query in queries:
                    report.error(f"Query '{query.name}': database '{database}' is not reachable: {exc}")
                continue
            for query in queries:
                self._check_query(report, database, query, catalog)
        LOG.info(
            "Schema validation: %d ok, %d errors, %d warnings",
            len(report.successes),
            len(report.errors),
            len(report.warnings),
        )
        return report

    def run(self) -> SchemaValidationResult:
        """
        Run phase 1 and, when it passes, phase 2.

        Returns
        -------
        SchemaValidationResult
            Both reports; the schema phase is marked skipped after a phase 1 failure.
        """
        configuration = self.validate_configuration()
        if not configuration.passed:
            skipped = ValidationReport(phase=PHASE_SCHEMA, passed=False, skipped=True)
            skipped.warnings.append("Skipped because configuration validation failed")
            return SchemaValidationResult(configuration=configuration, database=skipped)
        return SchemaValidationResult(configuration=configuration, database=self.validate_schema())

    def _load_catalog(self, database: str, queries: list[QueryDefinition]) -> _DatabaseCatalog:
        refs: set[TableRef] = set()
        for query in queries:
            refs.update(scan_sql(query.sql).tables)
        catalog = _DatabaseCatalog()
        with self._pools.acquire(database) as connection:
            inspector = inspect(connection)
            for schema in sorted({ref.schema for ref in refs}, key=lambda value: value or ""):
                names = inspector.get_table_names(schema=schema) + inspector.get_view_names(schema=schema)
                catalog.tables[schema] = {name.lower() for name in names}
            for ref in sorted(refs, key=TableRef.display):
                if ref.name.lower() not in catalog.tables.get(ref.schema, set()):
                    continue
                columns = inspector.get_columns(ref.name, schema=ref.schema)
                catalog.columns[(ref.schema, ref.name.lower())] = {
                    str(column["name"]).lower() for column in columns
                }
        return catalog

    @staticmethod
    def _check_query(
        report: ValidationReport,
        database: str,
        query: QueryDefinition,
        catalog: _DatabaseCatalog,
    ) -> None:
        scan = scan_sql(query.sql)
        lenient = CAVEAT_CTE in scan.caveats or CAVEAT_SUBQUERY in scan.caveats
        report.warnings.extend(f"Query '{query.name}': {caveat}" for caveat in scan.caveats)

        declared = len(query.parameters)
        if scan.placeholder_count != declared:
            report.error(
                f"Query '{query.name}' parameter mismatch: SQL has {scan.placeholder_count} "
                f"placeholders but {declared} parameters defined"
            )

        known_columns: set[str] = set()
        for ref in scan.tables:
            if ref.name.lower() in catalog.tables.get(ref.schema, set()):
                report.successes.append(f"Query '{query.name}': table '{ref.display()}' exists")
                known_columns |= catalog.columns.get((ref.schema, ref.name.lower()), set())
                continue
            message = (
                f"Query '{query.name}' references non-existent table '{ref.display()}' "
                f"in database '{database}'"
            )
            if lenient:
                report.warnings.append(message)
            else:
                report.error(message)

        if not known_columns:
            return
        for column in scan.columns:
            if column.lower() in known_columns:
                continue
            message = f"Query '{query.name}' references non-existent column '{column}'"
            if lenient:
                report.warnings.append(message)
            else:
                report.error(message)


__all__ = ["SchemaValidationResult", "SchemaValidator", "ValidationReport"]
