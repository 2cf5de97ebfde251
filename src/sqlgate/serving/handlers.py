"""Handler records built at load time and the single/paginated result algorithms."""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from sqlgate.config.models import EndpointDefinition, PaginationSpec, QueryDefinition, ResponseType
from sqlgate.config.registry import ConfigurationRegistry
from sqlgate.errors import BadRequest, ConfigurationError, NotFound
from sqlgate.serving.binding import ParameterBinder, parse_page_request, strip_and_renumber
from sqlgate.storage.executor import QueryExecutor

LOG = logging.getLogger("sqlgate.serving.handlers")


def epoch_millis() -> int:
    """Return the current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


class CamelModel(BaseModel):
    """Response model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_payload(self) -> dict[str, Any]:
        """
        Serialize to a JSON-ready dict with camelCase keys.

        Returns
        -------
        dict[str, Any]
            Payload with unset top-level sections omitted; row values stay intact.
        """
        payload = self.model_dump(mode="json", by_alias=True)
        return {key: value for key, value in payload.items() if value is not None}


class PaginationMeta(CamelModel):
    """Page arithmetic reported alongside PAGED data."""

    page: int
    size: int
    total_elements: int
    total_pages: int
    first: bool
    last: bool

    @classmethod
    def compute(cls, page: int, size: int, total_elements: int) -> PaginationMeta:
        """
        Derive page count and first/last flags from a total row count.

        Returns
        -------
        PaginationMeta
            Metadata with ``total_pages = ceil(total / size)``.
        """
        total_pages = math.ceil(total_elements / size) if size > 0 else 0
        return cls(
            page=page,
            size=size,
            total_elements=total_elements,
            total_pages=total_pages,
            first=page == 0,
            last=page >= total_pages - 1,
        )


class ResponseEnvelope(CamelModel):
    """Uniform response wrapper for every endpoint result."""

    type: ResponseType
    data: Any
    pagination: PaginationMeta | None = None
    timestamp: int


@dataclass(frozen=True)
class EndpointHandler:
    """Resolved endpoint with its query, optional count query and database."""

    endpoint: EndpointDefinition
    query: QueryDefinition
    count_query: QueryDefinition | None

    @property
    def name(self) -> str:
        """Endpoint name."""
        return self.endpoint.name

    @property
    def database(self) -> str:
        """Database the primary query runs against."""
        return self.query.database


class HandlerTable:
    """Fixed map of endpoint names to handler records."""

    def __init__(self, handlers: Mapping[str, EndpointHandler]) -> None:
        self._handlers = MappingProxyType(dict(handlers))

    @classmethod
    def build(cls, registry: ConfigurationRegistry) -> HandlerTable:
        """
        Resolve every endpoint's query links from a validated registry.

        Returns
        -------
        HandlerTable
            One handler per endpoint.

        Raises
        ------
        ConfigurationError
            If an endpoint references a query absent from the registry.
        """
        handlers: dict[str, EndpointHandler] = {}
        for name, endpoint in registry.endpoints.items():
            query = registry.get_query(endpoint.query)
            count_query = registry.get_query(endpoint.count_query) if endpoint.count_query else None
            if query is None or (endpoint.count_query and count_query is None):
                message = f"Endpoint '{name}' has unresolved query references"
                raise ConfigurationError(message)
            handlers[name] = EndpointHandler(endpoint=endpoint, query=query, count_query=count_query)
        return cls(handlers)

    def get(self, name: str) -> EndpointHandler | None:
        """Return the handler for ``name`` or None."""
        return self._handlers.get(name)

    def __len__(self) -> int:
        return len(self._handlers)

    def names(self) -> tuple[str, ...]:
        """Names of every registered endpoint."""
        return tuple(self._handlers)

    def databases(self) -> frozenset[str]:
        """Databases used by the primary and count queries of all endpoints."""
        used = {handler.database for handler in self._handlers.values()}
        used.update(
            handler.count_query.database
            for handler in self._handlers.values()
            if handler.count_query is not None
        )
        return frozenset(used)


class EndpointService:
    """Executes endpoint handlers and wraps results in response envelopes."""

    def __init__(self, executor: QueryExecutor, *, binder: ParameterBinder | None = None) -> None:
        self._executor = executor
        self._binder = binder or ParameterBinder()
        self._warned_no_count: set[str] = set()
        self._warn_lock = threading.Lock()

    def execute(self, handler: EndpointHandler, params: Mapping[str, object]) -> ResponseEnvelope:
        """
        Run an endpoint with the paged or single-result algorithm.

        Returns
        -------
        ResponseEnvelope
            SINGLE, LIST or PAGED envelope.
        """
        self._binder.check_endpoint_parameters(handler.endpoint, params)
        pagination = handler.endpoint.pagination
        if pagination is not None and pagination.enabled:
            return self.execute_paginated(handler, params, pagination)
        return self.execute_single(handler, params)

    def execute_single(self, handler: EndpointHandler, params: Mapping[str, object]) -> ResponseEnvelope:
        """
        Run the primary query and shape the envelope by row count.

        Returns
        -------
        ResponseEnvelope
            SINGLE for exactly one row, LIST for more.

        Raises
        ------
        NotFound
            If the query returns no rows.
        """
        bound = self._binder.bind(handler.query, params)
        rows = self._executor.execute_rows(handler.query, bound)
        if not rows:
            message = f"No data found for endpoint: {handler.name}"
            raise NotFound(message, extras={"endpoint": handler.name})
        if len(rows) == 1:
            return ResponseEnvelope(type=ResponseType.SINGLE, data=rows[0], timestamp=epoch_millis())
        return ResponseEnvelope(type=ResponseType.LIST, data=rows, timestamp=epoch_millis())

    def execute_paginated(
        self,
        handler: EndpointHandler,
        params: Mapping[str, object],
        pagination: PaginationSpec,
    ) -> ResponseEnvelope:
        """
        Run the data query for one page and, when configured, the count query.

        The two queries use separate connections and see no shared snapshot.

        Returns
        -------
        ResponseEnvelope
            PAGED envelope with pagination metadata.

        Raises
        ------
        BadRequest
            On invalid page/size, or when the bound values left after dropping
            ``limit``/``offset`` do not match the count query's parameters.
        """
        page = parse_page_request(params, pagination)
        bound = self._binder.bind(handler.query, params, page=page)
        rows = self._executor.execute_rows(handler.query, bound)

        total = 0
        if handler.count_query is not None:
            count_bound = strip_and_renumber(bound)
            declared = len(handler.count_query.parameters)
            if len(count_bound) != declared:
                message = (
                    f"Count query '{handler.count_query.name}' expects {declared} parameters "
                    f"but {len(count_bound)} remain after removing limit/offset"
                )
                raise BadRequest(message, extras={"endpoint": handler.name})
            total = self._executor.execute_scalar_count(handler.count_query, count_bound)
        else:
            self._warn_missing_count(handler.name)

        return ResponseEnvelope(
            type=ResponseType.PAGED,
            data=rows,
            pagination=PaginationMeta.compute(page.page, page.size, total),
            timestamp=epoch_millis(),
        )

    def _warn_missing_count(self, name: str) -> None:
        with self._warn_lock:
            if name in self._warned_no_count:
                return
            self._warned_no_count.add(name)
        LOG.warning("Endpoint %s is paginated without a count query; totalElements is 0", name)


__all__ = [
    "CamelModel",
    "EndpointHandler",
    "EndpointService",
    "HandlerTable",
    "PaginationMeta",
    "ResponseEnvelope",
    "epoch_millis",
]
