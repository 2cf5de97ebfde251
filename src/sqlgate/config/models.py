"""Typed definitions for the three linked configuration layers.

Databases, queries and endpoints are declared in external documents and
validated into frozen pydantic models. Documents may use either snake_case
keys or the camelCase spellings common in hand-written YAML
(``countQuery``, ``defaultSize``, ``maximumPoolSize``); both validate to the
same model.
"""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Annotated

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, SecretStr, field_validator

PATH_PARAM_PATTERN = re.compile(r"\{([^{}/]+)\}")


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class ParameterType(StrEnum):
    """Declared value type of a query or endpoint parameter."""

    STRING = "STRING"
    INTEGER = "INTEGER"
    LONG = "LONG"
    BOOLEAN = "BOOLEAN"
    DOUBLE = "DOUBLE"
    TIMESTAMP = "TIMESTAMP"
    DECIMAL = "DECIMAL"


class ParameterSource(StrEnum):
    """Where a declared endpoint parameter is expected to come from."""

    PATH = "PATH"
    QUERY = "QUERY"
    BODY = "BODY"


class ResponseType(StrEnum):
    """Envelope type reported to callers."""

    SINGLE = "SINGLE"
    LIST = "LIST"
    PAGED = "PAGED"


class HttpMethod(StrEnum):
    """HTTP methods an endpoint may be registered under."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


class DefinitionModel(BaseModel):
    """Base model for configuration definitions: frozen, tolerant of extra keys."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)


def _upper(value: object) -> object:
    return value.upper() if isinstance(value, str) else value


class ParameterSpec(DefinitionModel):
    """A named, typed, positioned argument declared for a query or endpoint."""

    name: str = Field(min_length=1)
    type: ParameterType = ParameterType.STRING
    required: bool = False
    position: Annotated[int, Field(ge=1)] | None = None
    source: ParameterSource | None = None
    default: object | None = Field(default=None, validation_alias=_alias("default", "defaultValue"))
    description: str = ""

    @field_validator("type", "source", mode="before")
    @classmethod
    def _normalize_enum(cls, value: object) -> object:
        return _upper(value)


def _assign_positions(specs: tuple[ParameterSpec, ...]) -> tuple[ParameterSpec, ...]:
    """
    Fill in missing 1-based positions from declaration order.

    Returns
    -------
    tuple[ParameterSpec, ...]
        Specs with every ``position`` populated.
    """
    return tuple(
        spec if spec.position is not None else spec.model_copy(update={"position": index})
        for index, spec in enumerate(specs, start=1)
    )


class PoolSettings(DefinitionModel):
    """Per-database connection pool tunables (times in milliseconds)."""

    maximum_pool_size: int = Field(
        default=10, ge=1, validation_alias=_alias("maximum_pool_size", "maximumPoolSize", "max_size")
    )
    minimum_idle: int = Field(
        default=2, ge=0, validation_alias=_alias("minimum_idle", "minimumIdle", "min_idle")
    )
    connection_timeout_ms: int = Field(
        default=30_000,
        ge=1,
        validation_alias=_alias("connection_timeout_ms", "connectionTimeout"),
    )
    idle_timeout_ms: int = Field(
        default=600_000, ge=0, validation_alias=_alias("idle_timeout_ms", "idleTimeout")
    )
    max_lifetime_ms: int = Field(
        default=1_800_000, ge=0, validation_alias=_alias("max_lifetime_ms", "maxLifetime")
    )
    leak_detection_threshold_ms: int = Field(
        default=60_000,
        ge=0,
        validation_alias=_alias("leak_detection_threshold_ms", "leakDetectionThreshold"),
    )
    connection_test_query: str = Field(
        default="SELECT 1",
        min_length=1,
        validation_alias=_alias("connection_test_query", "connectionTestQuery", "test_query"),
    )


class DatabaseDefinition(DefinitionModel):
    """A named database with its connection URL, credentials and pool settings."""

    name: str = Field(min_length=1)
    url: str = Field(min_length=1)
    username: str | None = None
    password: SecretStr | None = None
    driver: str | None = None
    description: str = ""
    pool: PoolSettings = Field(default_factory=PoolSettings)

    def public_view(self) -> dict[str, object]:
        """
        Describe the database without exposing credentials.

        Returns
        -------
        dict[str, object]
            JSON-friendly mapping suitable for management endpoints.
        """
        return {
            "name": self.name,
            "url": self.url,
            "username": self.username,
            "driver": self.driver,
            "description": self.description,
            "pool": self.pool.model_dump(),
        }


class CacheSettings(DefinitionModel):
    """Per-query result cache switch, entry lifetime and capacity."""

    enabled: bool = False
    ttl_seconds: float = Field(
        default=300, gt=0, validation_alias=_alias("ttl_seconds", "ttlSeconds", "ttl")
    )
    max_size: int = Field(default=1000, ge=1, validation_alias=_alias("max_size", "maxSize"))


class QueryDefinition(DefinitionModel):
    """Author-supplied SQL bound to a database, with positional parameters."""

    name: str = Field(min_length=1)
    sql: str = Field(min_length=1)
    database: str = Field(min_length=1)
    description: str = ""
    parameters: tuple[ParameterSpec, ...] = ()
    cache: CacheSettings | None = None

    @field_validator("parameters", mode="after")
    @classmethod
    def _positions(cls, value: tuple[ParameterSpec, ...]) -> tuple[ParameterSpec, ...]:
        return _assign_positions(value)

    def ordered_parameters(self) -> tuple[ParameterSpec, ...]:
        """
        Return parameters sorted by declared position.

        Returns
        -------
        tuple[ParameterSpec, ...]
            Parameters in placeholder order.
        """
        return tuple(sorted(self.parameters, key=lambda spec: spec.position or 0))

    @property
    def cache_enabled(self) -> bool:
        """Return True when results of this query may be served from cache."""
        return self.cache is not None and self.cache.enabled


class PaginationSpec(DefinitionModel):
    """Pagination switch and page-size bounds for an endpoint."""

    enabled: bool = False
    default_size: int = Field(default=20, ge=1, validation_alias=_alias("default_size", "defaultSize"))
    max_size: int = Field(default=100, ge=1, validation_alias=_alias("max_size", "maxSize"))


class ResponseField(DefinitionModel):
    """Declared response field, informational only."""

    name: str
    type: str = "STRING"
    description: str = ""


class ResponseShape(DefinitionModel):
    """Declared response shape of an endpoint, informational only."""

    type: ResponseType | None = None
    fields: tuple[ResponseField, ...] = ()

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: object) -> object:
        return _upper(value)


class EndpointDefinition(DefinitionModel):
    """A REST endpoint declared in configuration."""

    name: str = Field(min_length=1)
    path: str = Field(min_length=1)
    method: HttpMethod = HttpMethod.GET
    query: str = Field(min_length=1)
    count_query: str | None = Field(default=None, validation_alias=_alias("count_query", "countQuery"))
    pagination: PaginationSpec | None = None
    parameters: tuple[ParameterSpec, ...] = ()
    response: ResponseShape | None = None
    description: str = ""

    @field_validator("method", mode="before")
    @classmethod
    def _normalize_method(cls, value: object) -> object:
        return _upper(value)

    @field_validator("path")
    @classmethod
    def _leading_slash(cls, value: str) -> str:
        if not value.startswith("/"):
            message = f"endpoint path must start with '/': {value!r}"
            raise ValueError(message)
        return value

    @property
    def pagination_enabled(self) -> bool:
        """Return True when the endpoint serves paged results."""
        return self.pagination is not None and self.pagination.enabled

    @property
    def path_parameters(self) -> tuple[str, ...]:
        """Names of ``{param}`` placeholders in the path template."""
        return tuple(match.split(":", 1)[0] for match in PATH_PARAM_PATTERN.findall(self.path))


__all__ = [
    "PATH_PARAM_PATTERN",
    "CacheSettings",
    "DatabaseDefinition",
    "DefinitionModel",
    "EndpointDefinition",
    "HttpMethod",
    "PaginationSpec",
    "ParameterSource",
    "ParameterSpec",
    "ParameterType",
    "PoolSettings",
    "QueryDefinition",
    "ResponseField",
    "ResponseShape",
    "ResponseType",
]
