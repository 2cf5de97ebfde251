"""FastAPI application exposing configured endpoints and management routes."""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import Annotated, Any

from anyio import to_thread
from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.responses import Response

from sqlgate import __version__
from sqlgate.config.models import EndpointDefinition
from sqlgate.config.registry import ConfigurationRegistry, RegistryHolder
from sqlgate.config.serving_models import ServingConfig
from sqlgate.errors import (
    BadRequest,
    ConfigurationError,
    InternalError,
    InvalidConfiguration,
    NotFound,
    ProblemDetail,
    RequestError,
    log_problem,
)
from sqlgate.serving.binding import flatten_parameters
from sqlgate.serving.dispatcher import AsyncAccepted, RequestDispatcher
from sqlgate.serving.routing import order_endpoints
from sqlgate.storage.pools import ConnectionPoolManager, HealthStatus
from sqlgate.validation.schema import SchemaValidator

LOG = logging.getLogger("sqlgate.serving.http.fastapi")

MANAGEMENT_PREFIX = "/api/management"
PROBLEM_MEDIA_TYPE = "application/problem+json"
FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")

PoolFactory = Callable[[ConfigurationRegistry], ConnectionPoolManager]


@dataclass
class AppRuntime:
    """Objects shared by every request of one application instance."""

    config: ServingConfig
    holder: RegistryHolder
    pools: ConnectionPoolManager
    dispatcher: RequestDispatcher
    routes: dict[str, str] = field(default_factory=dict)

    def validator(self) -> SchemaValidator:
        """
        Build a validator over the current registry snapshot.

        Returns
        -------
        SchemaValidator
            Validator sharing this runtime's pools.
        """
        return SchemaValidator(self.holder.current, self.pools)

    def unrouted_endpoints(self, registry: ConfigurationRegistry) -> list[str]:
        """
        Name endpoints whose method and path have no registered HTTP route.

        Routes are fixed when the application starts, so endpoints added or
        moved by a reload are only reachable after a restart.

        Returns
        -------
        list[str]
            Sorted endpoint names.
        """
        return sorted(
            name
            for name, endpoint in registry.endpoints.items()
            if self.routes.get(name) != _route_key(endpoint)
        )

    def close(self) -> None:
        """Stop async workers and dispose every pool."""
        self.dispatcher.shutdown(wait=True)
        self.pools.close()


def load_registry(config: ServingConfig) -> ConfigurationRegistry:
    """
    Load and validate the registry from the configured source.

    Returns
    -------
    ConfigurationRegistry
        Validated registry.

    Raises
    ------
    ConfigurationError
        If the source is missing, unparseable or fails validation.
    """
    return ConfigurationRegistry.load(config.build_source())


def default_pools(registry: ConfigurationRegistry) -> ConnectionPoolManager:
    """Create a pool manager for every database in ``registry``."""
    return ConnectionPoolManager(registry.databases)


def build_runtime(
    config: ServingConfig,
    *,
    registry: ConfigurationRegistry | None = None,
    pool_factory: PoolFactory = default_pools,
) -> AppRuntime:
    """
    Assemble registry holder, pools and dispatcher for one application.

    Parameters
    ----------
    config
        Serving configuration.
    registry
        Pre-built registry; loaded from ``config`` when omitted.
    pool_factory
        Creates the pool manager for the registry's databases.

    Returns
    -------
    AppRuntime
        Runtime ready to serve requests.
    """
    current = registry if registry is not None else load_registry(config)
    holder = RegistryHolder(current, loader=lambda: load_registry(config))
    pools = pool_factory(current)
    dispatcher = RequestDispatcher(
        holder,
        pools,
        max_workers=config.async_workers,
        max_pending=config.max_pending_jobs,
        job_retention=config.job_retention,
    )
    return AppRuntime(config=config, holder=holder, pools=pools, dispatcher=dispatcher)


def problem_response(detail: ProblemDetail) -> JSONResponse:
    """
    Convert a ProblemDetail payload into a JSON HTTP response.

    Returns
    -------
    JSONResponse
        Response with an RFC 9457 payload.
    """
    status_code = detail.status or status.HTTP_500_INTERNAL_SERVER_ERROR
    return JSONResponse(status_code=status_code, content=detail.to_dict(), media_type=PROBLEM_MEDIA_TYPE)


def install_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers for consistent Problem Details."""

    @app.exception_handler(RequestError)
    def _handle_request_error(request: Request, exc: RequestError) -> JSONResponse:
        log_problem(LOG, exc.detail, exc=exc if exc.detail.status >= 500 else None)  # noqa: PLR2004
        return problem_response(replace(exc.detail, extras={**exc.detail.extras, "path": request.url.path}))

    @app.exception_handler(RequestValidationError)
    def _handle_validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
        problem = BadRequest("Request validation failed", extras={"errors": jsonable_encoder(exc.errors())})
        return problem_response(problem.detail)

    @app.exception_handler(Exception)
    def _handle_unexpected(_request: Request, exc: Exception) -> JSONResponse:
        LOG.exception("Unhandled error while serving request")
        return problem_response(InternalError(str(exc)).detail)


def install_logging_middleware(app: FastAPI) -> None:
    """Add structured logging for each request."""

    @app.middleware("http")
    async def _log_request(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        LOG.info(
            "Handled %s %s status=%s duration_ms=%.2f params=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            dict(request.query_params),
        )
        return response


def get_runtime(request: Request) -> AppRuntime:
    """
    Retrieve the application runtime from state.

    Returns
    -------
    AppRuntime
        Shared runtime objects.

    Raises
    ------
    InternalError
        If the runtime is missing.
    """
    runtime: AppRuntime | None = getattr(request.app.state, "runtime", None)
    if runtime is None:
        message = "Application runtime is not initialized"
        raise InternalError(message)
    return runtime


RuntimeDep = Annotated[AppRuntime, Depends(get_runtime)]


async def _request_parameters(request: Request) -> dict[str, object]:
    """Flatten path, query-string and form values; earlier sources win."""
    form_items: list[tuple[str, object]] = []
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(FORM_CONTENT_TYPES):
        form = await request.form()
        form_items = [(key, value) for key, value in form.multi_items() if isinstance(value, str)]
    return flatten_parameters(request.path_params, request.query_params.multi_items(), form_items)


def _endpoint_route(endpoint_name: str) -> Callable[[Request], Awaitable[JSONResponse]]:
    async def handle(request: Request) -> JSONResponse:
        runtime = get_runtime(request)
        params = await _request_parameters(request)
        result = await to_thread.run_sync(runtime.dispatcher.dispatch, endpoint_name, params)
        if isinstance(result, AsyncAccepted):
            return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=result.to_payload())
        return JSONResponse(content=result.to_payload())

    handle.__name__ = f"endpoint_{endpoint_name.replace('-', '_')}"
    return handle


def _route_key(endpoint: EndpointDefinition) -> str:
    return f"{endpoint.method.value} {endpoint.path}"


def register_endpoint_routes(app: FastAPI, endpoints: list[EndpointDefinition]) -> dict[str, str]:
    """
    Register one route per endpoint in specificity order.

    Returns
    -------
    dict[str, str]
        Endpoint name to the ``METHOD path`` it was registered under.
    """
    routes: dict[str, str] = {}
    for endpoint in order_endpoints(endpoints):
        app.add_api_route(
            endpoint.path,
            _endpoint_route(endpoint.name),
            methods=[endpoint.method.value],
            name=endpoint.name,
            summary=endpoint.description or None,
            tags=["endpoints"],
        )
        routes[endpoint.name] = _route_key(endpoint)
        LOG.debug("Registered %s %s -> %s", endpoint.method.value, endpoint.path, endpoint.name)
    LOG.info("Registered %d endpoint routes", len(endpoints))
    return routes


def build_management_router() -> APIRouter:
    """
    Construct the management router: health, listings, validation, jobs, usage,
    result cache and reload.

    Returns
    -------
    APIRouter
        Router mounted under the management prefix.
    """
    router = APIRouter(prefix=MANAGEMENT_PREFIX, tags=["management"])

    @router.get("/health", summary="Aggregate database health")
    def health(*, runtime: RuntimeDep) -> JSONResponse:
        payload = runtime.dispatcher.aggregate_health()
        code = (
            status.HTTP_503_SERVICE_UNAVAILABLE
            if payload["status"] == HealthStatus.DOWN.value
            else status.HTTP_200_OK
        )
        return JSONResponse(status_code=code, content=payload)

    @router.get("/endpoints", summary="Registered endpoints in route order")
    def list_endpoints(*, runtime: RuntimeDep) -> list[dict[str, Any]]:
        endpoints = order_endpoints(runtime.holder.current.endpoints.values())
        return [endpoint.model_dump(mode="json") for endpoint in endpoints]

    @router.get("/queries", summary="Configured queries")
    def list_queries(*, runtime: RuntimeDep) -> list[dict[str, Any]]:
        queries = runtime.holder.current.queries
        return [queries[name].model_dump(mode="json") for name in sorted(queries)]

    @router.get("/databases", summary="Configured databases without credentials")
    def list_databases(*, runtime: RuntimeDep) -> list[dict[str, object]]:
        databases = runtime.holder.current.databases
        return [databases[name].public_view() for name in sorted(databases)]

    @router.get("/validation/configuration", summary="Validate the configuration chain")
    def validate_configuration(*, runtime: RuntimeDep) -> dict[str, Any]:
        return runtime.validator().validate_configuration().model_dump(mode="json")

    @router.get("/validation/schema", summary="Validate queries against database schemas")
    def validate_schema(*, runtime: RuntimeDep) -> dict[str, Any]:
        result = runtime.validator().run()
        return {"passed": result.passed, **result.model_dump(mode="json")}

    @router.get("/jobs/{request_id}", summary="Async job status and result")
    def job_status(request_id: str, *, runtime: RuntimeDep) -> dict[str, Any]:
        job = runtime.dispatcher.jobs.get(request_id)
        if job is None:
            message = f"Async request not found: {request_id}"
            raise NotFound(message, extras={"requestId": request_id})
        return job.to_dict()

    @router.get("/usage", summary="Per-endpoint usage counters")
    def usage(*, runtime: RuntimeDep) -> dict[str, Any]:
        return {
            "endpoints": runtime.dispatcher.usage.snapshot(),
            "jobs": runtime.dispatcher.jobs.counts(),
            "pools": runtime.pools.describe_pools(),
        }

    @router.get("/cache", summary="Per-query result cache counters")
    def cache_stats(*, runtime: RuntimeDep) -> dict[str, Any]:
        queries = runtime.holder.current.queries
        return {
            "enabled": sorted(name for name, query in queries.items() if query.cache_enabled),
            "queries": runtime.dispatcher.cache.stats(),
        }

    @router.delete("/cache", summary="Invalidate every cached result")
    def invalidate_cache(*, runtime: RuntimeDep) -> dict[str, Any]:
        return {"query": None, "removed": runtime.dispatcher.cache.invalidate()}

    @router.delete("/cache/{query_name}", summary="Invalidate cached results of one query")
    def invalidate_query_cache(query_name: str, *, runtime: RuntimeDep) -> dict[str, Any]:
        if runtime.holder.current.get_query(query_name) is None:
            message = f"Query not found: {query_name}"
            raise NotFound(message, extras={"query": query_name})
        return {"query": query_name, "removed": runtime.dispatcher.cache.invalidate(query_name)}

    @router.post("/reload", summary="Reload definitions from the configured source")
    def reload_configuration(*, runtime: RuntimeDep) -> dict[str, Any]:
        try:
            registry = runtime.holder.reload()
        except ConfigurationError as exc:
            extras: dict[str, Any] = {}
            if exc.report is not None:
                extras = {"errors": exc.report.errors, "warnings": exc.report.warnings}
            message = f"Reload rejected; previous configuration stays active: {exc}"
            raise InvalidConfiguration(message, extras=extras) from exc
        unrouted = runtime.unrouted_endpoints(registry)
        if unrouted:
            LOG.warning("Endpoints without an HTTP route until restart: %s", ", ".join(unrouted))
        return {"report": registry.report.model_dump(mode="json"), "unroutedEndpoints": unrouted}

    return router


def _log_startup_validation(runtime: AppRuntime) -> None:
    result = runtime.validator().run()
    for report in (result.configuration, result.database):
        for warning in report.warnings:
            LOG.warning("[%s] %s", report.phase, warning)
        for error in report.errors:
            LOG.error("[%s] %s", report.phase, error)
    LOG.info("Startup schema validation passed=%s", result.passed)


def create_app(
    *,
    config_loader: Callable[[], ServingConfig] = ServingConfig.from_env,
    registry: ConfigurationRegistry | None = None,
    pool_factory: PoolFactory = default_pools,
) -> FastAPI:
    """
    Build the FastAPI application with configured lifecycle and routes.

    Configuration is loaded eagerly so an invalid configuration aborts
    startup before any route is registered.

    Parameters
    ----------
    config_loader:
        Factory for loading serving configuration.
    registry:
        Optional pre-built registry, bypassing the configured source.
    pool_factory:
        Factory creating the connection pool manager.

    Returns
    -------
    FastAPI
        Configured FastAPI instance.
    """
    config = config_loader()
    runtime = build_runtime(config, registry=registry, pool_factory=pool_factory)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if config.validate_schema_on_startup:
            await to_thread.run_sync(_log_startup_validation, runtime)
        try:
            yield
        finally:
            await to_thread.run_sync(runtime.close)

    app = FastAPI(
        title="sqlgate",
        description="REST endpoints generated from database, query and endpoint definitions.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.state.config = config

    install_exception_handlers(app)
    install_logging_middleware(app)
    app.include_router(build_management_router())
    runtime.routes = register_endpoint_routes(app, list(runtime.holder.current.endpoints.values()))
    return app


__all__ = [
    "MANAGEMENT_PREFIX",
    "AppRuntime",
    "build_management_router",
    "build_runtime",
    "create_app",
    "get_runtime",
    "install_exception_handlers",
    "install_logging_middleware",
    "load_registry",
    "problem_response",
    "register_endpoint_routes",
]
