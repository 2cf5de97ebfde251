"""Interchangeable backends that supply raw database/query/endpoint definitions.

Every backend produces one or more *documents* per definition kind and merges
them with the same fail-fast rules:

* a kind with no documents, or whose documents define nothing, is fatal;
* a name defined by two documents is fatal, and the error names both sources;
* an entry that does not validate is fatal, and the error names its source.

No backend substitutes an empty map for a missing kind.
"""

from __future__ import annotations

import fnmatch
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Protocol, TypeVar

import duckdb
import yaml
from pydantic import ValidationError

from sqlgate.config.models import (
    DatabaseDefinition,
    DefinitionModel,
    EndpointDefinition,
    QueryDefinition,
)
from sqlgate.errors import ConfigurationError

LOG = logging.getLogger("sqlgate.config.sources")

DefinitionKind = Literal["databases", "queries", "endpoints"]
ModelT = TypeVar("ModelT", bound=DefinitionModel)

_SINGULAR: dict[str, str] = {"databases": "database", "queries": "query", "endpoints": "endpoint"}

DEFAULT_PATTERNS: dict[DefinitionKind, tuple[str, ...]] = {
    "databases": ("*-database.yml", "*-databases.yml"),
    "queries": ("*-query.yml", "*-queries.yml"),
    "endpoints": ("*-endpoint.yml", "*-endpoints.yml", "*-api.yml"),
}


@dataclass(frozen=True)
class ConfigDocument:
    """One document's worth of raw entries for a single definition kind."""

    source_id: str
    kind: DefinitionKind
    entries: Mapping[str, object] = field(default_factory=dict)


class ConfigurationSource(Protocol):
    """Backend-agnostic provider of the three definition maps."""

    def describe(self) -> str:
        """Return a human-readable identifier for logs and errors."""
        ...

    def load_databases(self) -> dict[str, DatabaseDefinition]:
        """Load database definitions keyed by name."""
        ...

    def load_queries(self) -> dict[str, QueryDefinition]:
        """Load query definitions keyed by name."""
        ...

    def load_endpoints(self) -> dict[str, EndpointDefinition]:
        """Load endpoint definitions keyed by name."""
        ...


def merge_documents(
    kind: DefinitionKind,
    documents: Sequence[ConfigDocument],
    model: type[ModelT],
) -> dict[str, ModelT]:
    """
    Validate and merge documents of one kind into a single name-keyed map.

    Parameters
    ----------
    kind
        Definition kind being merged.
    documents
        Documents in load order.
    model
        Pydantic model used to validate each entry.

    Returns
    -------
    dict[str, ModelT]
        Definitions keyed by name, in document order.

    Raises
    ------
    ConfigurationError
        If no documents exist, a name is defined twice, an entry is invalid,
        or the merged result is empty.
    """
    singular = _SINGULAR[kind]
    if not documents:
        message = f"No {singular} configuration documents found"
        raise ConfigurationError(message)

    merged: dict[str, ModelT] = {}
    origins: dict[str, str] = {}
    for document in documents:
        if not document.entries:
            LOG.warning("No %s configurations found in %s", singular, document.source_id)
            continue
        for name, entry in document.entries.items():
            if name in origins:
                message = (
                    f"Duplicate {singular} configuration '{name}': defined in "
                    f"{origins[name]} and {document.source_id}"
                )
                raise ConfigurationError(message)
            if not isinstance(entry, Mapping):
                message = f"{singular.capitalize()} '{name}' in {document.source_id} is not a mapping"
                raise ConfigurationError(message)
            try:
                merged[name] = model.model_validate({**entry, "name": name})
            except ValidationError as exc:
                message = f"Invalid {singular} '{name}' in {document.source_id}: {exc}"
                raise ConfigurationError(message) from exc
            origins[name] = document.source_id
        LOG.info(
            "Loaded %d %s configuration(s) from %s",
            len(document.entries),
            singular,
            document.source_id,
        )

    if not merged:
        message = f"No {singular} configurations found in {len(documents)} document(s)"
        raise ConfigurationError(message)
    return merged


class DocumentConfigurationSource(ABC):
    """Shared merge logic for sources that yield documents per kind."""

    def describe(self) -> str:
        """
        Return a human-readable identifier for logs and errors.

        Returns
        -------
        str
            Source identifier.
        """
        return type(self).__name__

    @abstractmethod
    def documents(self, kind: DefinitionKind) -> list[ConfigDocument]:
        """
        Return the documents holding definitions of ``kind``.

        Returns
        -------
        list[ConfigDocument]
            Documents in merge order.
        """

    def load_databases(self) -> dict[str, DatabaseDefinition]:
        """
        Load database definitions keyed by name.

        Returns
        -------
        dict[str, DatabaseDefinition]
            Validated database definitions.
        """
        return merge_documents("databases", self.documents("databases"), DatabaseDefinition)

    def load_queries(self) -> dict[str, QueryDefinition]:
        """
        Load query definitions keyed by name.

        Returns
        -------
        dict[str, QueryDefinition]
            Validated query definitions.
        """
        return merge_documents("queries", self.documents("queries"), QueryDefinition)

    def load_endpoints(self) -> dict[str, EndpointDefinition]:
        """
        Load endpoint definitions keyed by name.

        Returns
        -------
        dict[str, EndpointDefinition]
            Validated endpoint definitions.
        """
        return merge_documents("endpoints", self.documents("endpoints"), EndpointDefinition)


class MappingConfigurationSource(DocumentConfigurationSource):
    """In-memory documents; useful for embedding and for tests."""

    def __init__(self, documents: Iterable[ConfigDocument], *, name: str = "memory") -> None:
        self._documents = tuple(documents)
        self._name = name

    @classmethod
    def single(
        cls,
        *,
        databases: Mapping[str, object],
        queries: Mapping[str, object],
        endpoints: Mapping[str, object],
        name: str = "memory",
    ) -> MappingConfigurationSource:
        """
        Build a source from one mapping per kind.

        Returns
        -------
        MappingConfigurationSource
            Source with exactly one document per kind.
        """
        return cls(
            [
                ConfigDocument(f"{name}:databases", "databases", databases),
                ConfigDocument(f"{name}:queries", "queries", queries),
                ConfigDocument(f"{name}:endpoints", "endpoints", endpoints),
            ],
            name=name,
        )

    def describe(self) -> str:
        """
        Return the configured source name.

        Returns
        -------
        str
            Source identifier.
        """
        return self._name

    def documents(self, kind: DefinitionKind) -> list[ConfigDocument]:
        """
        Return the in-memory documents of ``kind``.

        Returns
        -------
        list[ConfigDocument]
            Documents in construction order.
        """
        return [doc for doc in self._documents if doc.kind == kind]


class YamlDirectorySource(DocumentConfigurationSource):
    """YAML documents discovered by filename pattern across directories."""

    def __init__(
        self,
        directories: Sequence[Path],
        *,
        patterns: Mapping[DefinitionKind, Sequence[str]] | None = None,
    ) -> None:
        self._directories = tuple(Path(d) for d in directories)
        self._patterns: dict[DefinitionKind, tuple[str, ...]] = dict(DEFAULT_PATTERNS)
        if patterns:
            self._patterns.update({kind: tuple(values) for kind, values in patterns.items()})

    def describe(self) -> str:
        """
        Describe the scanned directories.

        Returns
        -------
        str
            Source identifier listing directories.
        """
        joined = ", ".join(str(d) for d in self._directories)
        return f"yaml:[{joined}]"

    def scan(self, kind: DefinitionKind) -> list[Path]:
        """
        Find files matching the patterns configured for ``kind``.

        Returns
        -------
        list[Path]
            Matching files, sorted by name within each directory.
        """
        patterns = self._patterns[kind]
        matches: list[Path] = []
        for directory in self._directories:
            if not directory.is_dir():
                LOG.warning("Configuration directory does not exist: %s", directory)
                continue
            found = sorted(
                path
                for path in directory.iterdir()
                if path.is_file() and any(fnmatch.fnmatch(path.name, p) for p in patterns)
            )
            LOG.debug("Found %d %s file(s) in %s", len(found), kind, directory)
            matches.extend(found)
        return matches

    def documents(self, kind: DefinitionKind) -> list[ConfigDocument]:
        """
        Parse every matching YAML file into a document.

        Returns
        -------
        list[ConfigDocument]
            One document per file.

        Raises
        ------
        ConfigurationError
            If no files match or a file cannot be parsed.
        """
        files = self.scan(kind)
        if not files:
            message = (
                f"No {_SINGULAR[kind]} configuration files found in {self.describe()} "
                f"with patterns {list(self._patterns[kind])}"
            )
            raise ConfigurationError(message)
        return [self._read(path, kind) for path in files]

    @staticmethod
    def _read(path: Path, kind: DefinitionKind) -> ConfigDocument:
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            message = f"Failed to load {_SINGULAR[kind]} configuration file {path}: {exc}"
            raise ConfigurationError(message) from exc
        if not isinstance(raw, Mapping):
            message = f"Configuration file {path} must contain a mapping"
            raise ConfigurationError(message)
        entries = raw.get(kind) or {}
        if not isinstance(entries, Mapping):
            message = f"'{kind}' in {path} must be a mapping of name to definition"
            raise ConfigurationError(message)
        return ConfigDocument(str(path), kind, entries)


# ---------------------------------------------------------------------------
# Relational store (DuckDB)
# ---------------------------------------------------------------------------

CONFIG_STORE_DDL: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS sqlgate_databases (
        name VARCHAR PRIMARY KEY,
        url VARCHAR NOT NULL,
        username VARCHAR,
        password VARCHAR,
        driver VARCHAR,
        description VARCHAR,
        pool_json VARCHAR
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sqlgate_queries (
        name VARCHAR PRIMARY KEY,
        sql_text VARCHAR NOT NULL,
        database_name VARCHAR NOT NULL,
        description VARCHAR,
        parameters_json VARCHAR,
        cache_json VARCHAR
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sqlgate_endpoints (
        name VARCHAR PRIMARY KEY,
        path VARCHAR NOT NULL,
        method VARCHAR NOT NULL,
        query_name VARCHAR NOT NULL,
        count_query_name VARCHAR,
        description VARCHAR,
        pagination_json VARCHAR,
        parameters_json VARCHAR,
        response_json VARCHAR
    )
    """,
)

_TABLE_BY_KIND: dict[DefinitionKind, str] = {
    "databases": "sqlgate_databases",
    "queries": "sqlgate_queries",
    "endpoints": "sqlgate_endpoints",
}


def _loads(value: str | None) -> object | None:
    return json.loads(value) if value else None


def _database_entry(row: tuple[object, ...]) -> dict[str, object]:
    _, url, username, password, driver, description, pool_json = row
    entry: dict[str, object] = {
        "url": url,
        "username": username,
        "password": password,
        "driver": driver,
        "description": description or "",
    }
    pool = _loads(pool_json)  # type: ignore[arg-type]
    if pool is not None:
        entry["pool"] = pool
    return entry


def _query_entry(row: tuple[object, ...]) -> dict[str, object]:
    # stores created before cache_json existed have five columns
    _, sql_text, database_name, description, parameters_json, *rest = row
    entry: dict[str, object] = {
        "sql": sql_text,
        "database": database_name,
        "description": description or "",
        "parameters": _loads(parameters_json) or [],  # type: ignore[arg-type]
    }
    cache = _loads(rest[0]) if rest else None  # type: ignore[arg-type]
    if cache is not None:
        entry["cache"] = cache
    return entry


def _endpoint_entry(row: tuple[object, ...]) -> dict[str, object]:
    (
        _,
        path,
        method,
        query_name,
        count_query_name,
        description,
        pagination_json,
        parameters_json,
        response_json,
    ) = row
    return {
        "path": path,
        "method": method,
        "query": query_name,
        "count_query": count_query_name,
        "description": description or "",
        "pagination": _loads(pagination_json),  # type: ignore[arg-type]
        "parameters": _loads(parameters_json) or [],  # type: ignore[arg-type]
        "response": _loads(response_json),  # type: ignore[arg-type]
    }


_ROW_READERS = {
    "databases": _database_entry,
    "queries": _query_entry,
    "endpoints": _endpoint_entry,
}


class DuckDBConfigurationSource(DocumentConfigurationSource):
    """Definitions stored as rows in a DuckDB configuration database."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)

    def describe(self) -> str:
        """
        Describe the backing DuckDB file.

        Returns
        -------
        str
            Source identifier.
        """
        return f"duckdb:{self._db_path}"

    def documents(self, kind: DefinitionKind) -> list[ConfigDocument]:
        """
        Read all rows of the table backing ``kind`` as one document.

        Returns
        -------
        list[ConfigDocument]
            A single document for the table.

        Raises
        ------
        ConfigurationError
            If the database file or table is missing or unreadable.
        """
        if not self._db_path.is_file():
            message = f"Configuration database not found at {self._db_path}"
            raise ConfigurationError(message)
        table = _TABLE_BY_KIND[kind]
        reader = _ROW_READERS[kind]
        try:
            with duckdb.connect(str(self._db_path), read_only=True) as con:
                rows = con.execute(f"SELECT * FROM {table} ORDER BY name").fetchall()  # noqa: S608
        except duckdb.Error as exc:
            message = f"Failed to read {table} from {self._db_path}: {exc}"
            raise ConfigurationError(message) from exc
        entries = {str(row[0]): reader(row) for row in rows}
        return [ConfigDocument(f"{self.describe()}#{table}", kind, entries)]


def bootstrap_config_store(con: duckdb.DuckDBPyConnection) -> None:
    """
    Create the configuration tables when they do not exist.

    Parameters
    ----------
    con
        Writable DuckDB connection.
    """
    for ddl in CONFIG_STORE_DDL:
        con.execute(ddl)


def _dumps(value: object | None) -> str | None:
    return None if value is None else json.dumps(value, default=str)


def store_definitions(
    con: duckdb.DuckDBPyConnection,
    *,
    databases: Iterable[DatabaseDefinition] = (),
    queries: Iterable[QueryDefinition] = (),
    endpoints: Iterable[EndpointDefinition] = (),
) -> int:
    """
    Upsert definitions into the DuckDB configuration tables.

    Parameters
    ----------
    con
        Writable DuckDB connection; tables are created when missing.
    databases, queries, endpoints
        Definitions to write.

    Returns
    -------
    int
        Number of rows written.
    """
    bootstrap_config_store(con)
    written = 0
    for db in databases:
        con.execute(
            "INSERT OR REPLACE INTO sqlgate_databases VALUES (?, ?, ?, ?, ?, ?, ?)",
            [
                db.name,
                db.url,
                db.username,
                db.password.get_secret_value() if db.password is not None else None,
                db.driver,
                db.description,
                _dumps(db.pool.model_dump(mode="json")),
            ],
        )
        written += 1
    for query in queries:
        con.execute(
            "INSERT OR REPLACE INTO sqlgate_queries VALUES (?, ?, ?, ?, ?, ?)",
            [
                query.name,
                query.sql,
                query.database,
                query.description,
                _dumps([p.model_dump(mode="json") for p in query.parameters]),
                _dumps(query.cache.model_dump(mode="json") if query.cache else None),
            ],
        )
        written += 1
    for endpoint in endpoints:
        con.execute(
            "INSERT OR REPLACE INTO sqlgate_endpoints VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                endpoint.name,
                endpoint.path,
                endpoint.method.value,
                endpoint.query,
                endpoint.count_query,
                endpoint.description,
                _dumps(endpoint.pagination.model_dump(mode="json") if endpoint.pagination else None),
                _dumps([p.model_dump(mode="json") for p in endpoint.parameters]),
                _dumps(endpoint.response.model_dump(mode="json") if endpoint.response else None),
            ],
        )
        written += 1
    LOG.info("Stored %d definition row(s) in configuration database", written)
    return written


__all__ = [
    "CONFIG_STORE_DDL",
    "DEFAULT_PATTERNS",
    "ConfigDocument",
    "ConfigurationSource",
    "DefinitionKind",
    "DocumentConfigurationSource",
    "DuckDBConfigurationSource",
    "MappingConfigurationSource",
    "YamlDirectorySource",
    "bootstrap_config_store",
    "merge_documents",
    "store_definitions",
]
