"""Shared error taxonomy and Problem Details helpers."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from uuid import uuid4

if TYPE_CHECKING:
    from sqlgate.config.registry import RegistryReport

PROBLEM_NAMESPACE = "https://problems.sqlgate.dev"


def generate_correlation_id() -> str:
    """
    Return a new correlation identifier for tracing errors.

    Returns
    -------
    str
        UUID4 correlation identifier.
    """
    return str(uuid4())


@dataclass(frozen=True)
class ProblemDetail:
    """
    RFC 9457 Problem Details payload.

    Fields mirror the standard shape with optional extras for diagnostics.
    """

    type: str
    title: str
    detail: str
    status: int
    instance: str = field(default_factory=generate_correlation_id)
    extras: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize to a JSON-friendly dict.

        Returns
        -------
        dict[str, Any]
            Problem detail payload as a plain dictionary.
        """
        payload: dict[str, Any] = {
            "type": self.type,
            "title": self.title,
            "status": self.status,
            "detail": self.detail,
            "instance": self.instance,
        }
        if self.extras:
            payload["extras"] = self.extras
        return payload


class ConfigurationError(Exception):
    """Fatal load-time configuration failure; startup must abort."""

    def __init__(self, message: str, *, report: RegistryReport | None = None) -> None:
        super().__init__(message)
        self.report = report


class RequestError(Exception):
    """Base request-time error carrying a ProblemDetail payload."""

    code = "request.failed"
    title = "Request failed"
    status = 500

    def __init__(self, message: str, *, extras: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.detail = ProblemDetail(
            type=f"{PROBLEM_NAMESPACE}/{self.code}",
            title=self.title,
            detail=message,
            status=self.status,
            extras=dict(extras or {}),
        )

    def __str__(self) -> str:
        return f"{self.detail.title}: {self.detail.detail}"


class BadRequest(RequestError):
    """Missing or invalid parameter value, or pagination bounds violated."""

    code = "request.bad_request"
    title = "Bad request"
    status = 400


class NotFound(RequestError):
    """Unknown endpoint/query/database name or an empty single-result query."""

    code = "request.not_found"
    title = "Not found"
    status = 404


class ServiceUnavailable(RequestError):
    """A pool or the async worker queue cannot accept more work right now."""

    code = "request.unavailable"
    title = "Service unavailable"
    status = 503


class InvalidConfiguration(RequestError):
    """A requested configuration reload failed validation; the previous snapshot stays active."""

    code = "request.invalid_configuration"
    title = "Invalid configuration"
    status = 422


class InternalError(RequestError):
    """A validated reference is missing at execution time, or the driver failed."""

    code = "request.internal"
    title = "Internal error"
    status = 500


def log_problem(logger: logging.Logger, detail: ProblemDetail, *, exc: BaseException | None = None) -> None:
    """
    Log a ProblemDetail at a level matching its status code.

    Parameters
    ----------
    logger
        Logger to emit to.
    detail
        Problem payload to log.
    exc
        Optional exception to attach for server-side failures.
    """
    if detail.status >= 500:  # noqa: PLR2004
        logger.error(
            "%s [%s] instance=%s", detail.title, detail.detail, detail.instance, exc_info=exc
        )
    else:
        logger.info("%s [%s] instance=%s", detail.title, detail.detail, detail.instance)


__all__ = [
    "BadRequest",
    "ConfigurationError",
    "InternalError",
    "InvalidConfiguration",
    "NotFound",
    "ProblemDetail",
    "RequestError",
    "ServiceUnavailable",
    "generate_correlation_id",
    "log_problem",
]
