"""Per-request entry point: sync or async execution, job tracking and usage metrics."""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol
from uuid import uuid4

from sqlgate.config.models import ParameterType
from sqlgate.config.registry import ConfigurationRegistry, RegistryHolder
from sqlgate.errors import InternalError, NotFound, RequestError, ServiceUnavailable
from sqlgate.serving.binding import coerce_value
from sqlgate.serving.handlers import (
    CamelModel,
    EndpointHandler,
    EndpointService,
    HandlerTable,
    ResponseEnvelope,
    epoch_millis,
)
from sqlgate.storage.cache import QueryResultCache
from sqlgate.storage.executor import QueryExecutor
from sqlgate.storage.pools import ConnectionPoolManager, HealthStatus

LOG = logging.getLogger("sqlgate.serving.dispatcher")

ASYNC_FLAG = "async"
ASYNC_MESSAGE = "Request submitted for async processing"
JOBS_PATH = "/api/management/jobs"


class AsyncAccepted(CamelModel):
    """Acknowledgement returned when a request is queued for async execution."""

    message: str = ASYNC_MESSAGE
    request_id: str
    endpoint: str
    status_url: str
    timestamp: int


class JobStatus(StrEnum):
    """Lifecycle of an async job."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


@dataclass
class JobRecord:
    """Status and outcome of one async request."""

    request_id: str
    endpoint: str
    status: JobStatus = JobStatus.PENDING
    submitted_at: int = field(default_factory=epoch_millis)
    started_at: int | None = None
    finished_at: int | None = None
    result: dict[str, Any] | None = None
    error: dict[str, Any] | None = None

    @property
    def finished(self) -> bool:
        """Return True once the job succeeded or failed."""
        return self.status in {JobStatus.SUCCEEDED, JobStatus.FAILED}

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize for the job status endpoint.

        Returns
        -------
        dict[str, Any]
            camelCase payload; ``result`` or ``error`` appear once finished.
        """
        payload: dict[str, Any] = {
            "requestId": self.request_id,
            "endpoint": self.endpoint,
            "status": self.status.value,
            "submittedAt": self.submitted_at,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
        }
        if self.result is not None:
            payload["result"] = self.result
        if self.error is not None:
            payload["error"] = self.error
        return payload


class JobStore:
    """
    Thread-safe registry of async jobs.

    Unfinished jobs are capped at ``max_pending``; finished jobs beyond
    ``retention`` are evicted oldest first.
    """

    def __init__(self, *, max_pending: int = 100, retention: int = 1000) -> None:
        self._max_pending = max_pending
        self._retention = retention
        self._jobs: OrderedDict[str, JobRecord] = OrderedDict()
        self._lock = threading.Lock()

    def create(self, endpoint: str) -> JobRecord:
        """
        Register a new PENDING job.

        Returns
        -------
        JobRecord
            The new job with a fresh UUID request id.

        Raises
        ------
        ServiceUnavailable
            If ``max_pending`` jobs are already unfinished.
        """
        with self._lock:
            pending = sum(1 for job in self._jobs.values() if not job.finished)
            if pending >= self._max_pending:
                message = f"Async queue is full ({pending} pending jobs)"
                raise ServiceUnavailable(message, extras={"endpoint": endpoint})
            job = JobRecord(request_id=str(uuid4()), endpoint=endpoint)
            self._jobs[job.request_id] = job
        return job

    def get(self, request_id: str) -> JobRecord | None:
        """Return the job for ``request_id`` or None."""
        with self._lock:
            return self._jobs.get(request_id)

    def mark_running(self, request_id: str) -> None:
        """Move a job to RUNNING."""
        with self._lock:
            job = self._jobs.get(request_id)
            if job is not None:
                job.status = JobStatus.RUNNING
                job.started_at = epoch_millis()

    def mark_succeeded(self, request_id: str, result: dict[str, Any]) -> None:
        """Store the envelope of a successful job."""
        self._finish(request_id, JobStatus.SUCCEEDED, result=result)

    def mark_failed(self, request_id: str, error: dict[str, Any]) -> None:
        """Store the problem detail of a failed job."""
        self._finish(request_id, JobStatus.FAILED, error=error)

    def _finish(
        self,
        request_id: str,
        status: JobStatus,
        *,
        result: dict[str, Any] | None = None,
        error: dict[str, Any] | None = None,
    ) -> None:
        with self._lock:
            job = self._jobs.get(request_id)
            if job is None:
                return
            job.status = status
            job.finished_at = epoch_millis()
            job.result = result
            job.error = error
            self._evict()

    def _evict(self) -> None:
        finished = [key for key, job in self._jobs.items() if job.finished]
        for key in finished[: max(0, len(finished) - self._retention)]:
            del self._jobs[key]

    def counts(self) -> dict[str, int]:
        """
        Count jobs per status.

        Returns
        -------
        dict[str, int]
            Status name to job count.
        """
        with self._lock:
            totals = {status.value: 0 for status in JobStatus}
            for job in self._jobs.values():
                totals[job.status.value] += 1
        return totals


class UsageRecorder(Protocol):
    """Sink for per-request usage metrics."""

    def record(self, endpoint: str, duration_ms: float, *, success: bool) -> None:
        """Record one completed request."""
        ...

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Return aggregated usage keyed by endpoint."""
        ...


@dataclass
class _UsageCounter:
    calls: int = 0
    failures: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0
    last_called: int | None = None


class InMemoryUsageRecorder:
    """Per-endpoint counters held in process memory."""

    def __init__(self) -> None:
        self._counters: dict[str, _UsageCounter] = {}
        self._lock = threading.Lock()

    def record(self, endpoint: str, duration_ms: float, *, success: bool) -> None:
        """Record one completed request."""
        with self._lock:
            counter = self._counters.setdefault(endpoint, _UsageCounter())
            counter.calls += 1
            counter.failures += 0 if success else 1
            counter.total_ms += duration_ms
            counter.max_ms = max(counter.max_ms, duration_ms)
            counter.last_called = epoch_millis()

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """
        Aggregate counters per endpoint.

        Returns
        -------
        dict[str, dict[str, Any]]
            Calls, failures, average and max duration, last call time.
        """
        with self._lock:
            return {
                name: {
                    "calls": counter.calls,
                    "failures": counter.failures,
                    "averageMs": round(counter.total_ms / counter.calls, 3) if counter.calls else 0.0,
                    "maxMs": round(counter.max_ms, 3),
                    "lastCalled": counter.last_called,
                }
                for name, counter in sorted(self._counters.items())
            }


def aggregate_status(statuses: Mapping[str, HealthStatus]) -> HealthStatus:
    """
    Fold per-database statuses into one service verdict.

    Returns
    -------
    HealthStatus
        UP when every database is up (or none are used), DOWN when none are,
        DEGRADED otherwise.
    """
    if not statuses:
        return HealthStatus.UP
    up = sum(1 for status in statuses.values() if status is HealthStatus.UP)
    if up == len(statuses):
        return HealthStatus.UP
    if up == 0:
        return HealthStatus.DOWN
    return HealthStatus.DEGRADED


class RequestDispatcher:
    """
    Resolves endpoint handlers and executes them inline or on a worker pool.

    Parameters
    ----------
    holder
        Registry holder; reloads rebuild the handler table and pool definitions
        and clear the result cache.
    pools
        Connection pool manager shared with schema validation.
    usage
        Usage sink; defaults to an in-memory recorder.
    cache
        Result cache for queries that enable caching; a fresh one by default.
    max_workers, max_pending, job_retention
        Async worker pool size and job store limits.
    """

    def __init__(
        self,
        holder: RegistryHolder,
        pools: ConnectionPoolManager,
        *,
        usage: UsageRecorder | None = None,
        cache: QueryResultCache | None = None,
        max_workers: int = 4,
        max_pending: int = 100,
        job_retention: int = 1000,
    ) -> None:
        self._holder = holder
        self._pools = pools
        self.cache = cache if cache is not None else QueryResultCache()
        self._service = EndpointService(QueryExecutor(pools, cache=self.cache))
        self._handlers = HandlerTable.build(holder.current)
        self.usage: UsageRecorder = usage or InMemoryUsageRecorder()
        self.jobs = JobStore(max_pending=max_pending, retention=job_retention)
        self._workers = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="sqlgate-async")
        holder.subscribe(self._on_reload)

    @property
    def handlers(self) -> HandlerTable:
        """Current handler table."""
        return self._handlers

    def _on_reload(self, registry: ConfigurationRegistry) -> None:
        handlers = HandlerTable.build(registry)
        self._pools.replace_definitions(registry.databases)
        self.cache.invalidate()
        self._handlers = handlers
        LOG.info("Dispatcher picked up %d endpoints after reload", len(handlers))

    def handler(self, name: str) -> EndpointHandler:
        """
        Look up the handler for an endpoint name.

        Raises
        ------
        NotFound
            If no endpoint with ``name`` is registered.
        """
        handler = self._handlers.get(name)
        if handler is None:
            message = f"Endpoint not found: {name}"
            raise NotFound(message, extras={"endpoint": name})
        return handler

    def dispatch(self, name: str, params: Mapping[str, object]) -> ResponseEnvelope | AsyncAccepted:
        """
        Execute an endpoint, or queue it when the ``async`` flag is set.

        One usage record is written per call. Any raised error, including an
        unknown endpoint or a refused async submission, counts as a failure;
        an accepted async submission counts as a success.

        Parameters
        ----------
        name
            Endpoint name.
        params
            Flattened request parameters.

        Returns
        -------
        ResponseEnvelope | AsyncAccepted
            Result envelope, or the acknowledgement of a queued job.
        """
        start = time.perf_counter()
        success = False
        try:
            handler = self.handler(name)
            raw_flag = params.get(ASYNC_FLAG)
            run_async = (
                False if raw_flag is None else coerce_value(raw_flag, ParameterType.BOOLEAN, ASYNC_FLAG)
            )
            result = self.submit(handler, params) if run_async else self.execute(handler, params)
            success = True
            return result
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            self.usage.record(name, duration_ms, success=success)
            LOG.debug("Endpoint %s finished success=%s duration_ms=%.2f", name, success, duration_ms)

    def execute(self, handler: EndpointHandler, params: Mapping[str, object]) -> ResponseEnvelope:
        """
        Run a handler inline.

        Returns
        -------
        ResponseEnvelope
            Result envelope.
        """
        return self._service.execute(handler, params)

    def submit(self, handler: EndpointHandler, params: Mapping[str, object]) -> AsyncAccepted:
        """
        Queue a handler on the async worker pool.

        Returns
        -------
        AsyncAccepted
            Acknowledgement carrying the job's request id and status URL.

        Raises
        ------
        ServiceUnavailable
            If the job store is full or the worker pool is shut down.
        """
        job = self.jobs.create(handler.name)
        try:
            self._workers.submit(self._run_job, job.request_id, handler, dict(params))
        except RuntimeError as exc:
            problem = ServiceUnavailable("Async worker pool is shut down")
            self.jobs.mark_failed(job.request_id, problem.detail.to_dict())
            raise problem from exc
        LOG.info("Queued async request %s for endpoint %s", job.request_id, handler.name)
        return AsyncAccepted(
            request_id=job.request_id,
            endpoint=handler.name,
            status_url=f"{JOBS_PATH}/{job.request_id}",
            timestamp=epoch_millis(),
        )

    def _run_job(self, request_id: str, handler: EndpointHandler, params: Mapping[str, object]) -> None:
        self.jobs.mark_running(request_id)
        try:
            envelope = self.execute(handler, params)
        except RequestError as exc:
            LOG.warning("Async request %s failed: %s", request_id, exc)
            self.jobs.mark_failed(request_id, exc.detail.to_dict())
        except Exception as exc:
            LOG.exception("Async request %s failed unexpectedly", request_id)
            self.jobs.mark_failed(request_id, InternalError(str(exc)).detail.to_dict())
        else:
            self.jobs.mark_succeeded(request_id, envelope.to_payload())

    def database_health(self) -> dict[str, HealthStatus]:
        """
        Check every database used by a registered endpoint.

        Returns
        -------
        dict[str, HealthStatus]
            Status per database name.
        """
        return {name: self._pools.health_check(name) for name in sorted(self._handlers.databases())}

    def aggregate_health(self) -> dict[str, Any]:
        """
        Summarize service health over the databases used by endpoints.

        Returns
        -------
        dict[str, Any]
            Overall status plus per-database statuses.
        """
        statuses = self.database_health()
        overall = aggregate_status(statuses)
        return {
            "status": overall.value,
            "databases": {name: status.value for name, status in statuses.items()},
            "endpoints": len(self._handlers),
            "timestamp": epoch_millis(),
        }

    def shutdown(self, *, wait: bool = True) -> None:
        """Stop accepting async work and wait for running jobs when ``wait``."""
        self._workers.shutdown(wait=wait)


__all__ = [
    "ASYNC_MESSAGE",
    "AsyncAccepted",
    "InMemoryUsageRecorder",
    "JobRecord",
    "JobStatus",
    "JobStore",
    "RequestDispatcher",
    "UsageRecorder",
    "aggregate_status",
]
