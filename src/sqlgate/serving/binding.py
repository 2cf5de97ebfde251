"""Map flattened request parameters onto a query's positional parameter list."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation

from sqlgate.config.models import EndpointDefinition, PaginationSpec, ParameterSpec, ParameterType, QueryDefinition
from sqlgate.errors import BadRequest

LOG = logging.getLogger("sqlgate.serving.binding")

INT32_RANGE = (-(2**31), 2**31 - 1)
INT64_RANGE = (-(2**63), 2**63 - 1)
PAGINATION_KEYS = ("limit", "offset")

_TRUE_WORDS = frozenset({"true", "1", "yes"})
_FALSE_WORDS = frozenset({"false", "0", "no"})

ParameterItems = Mapping[str, object] | Iterable[tuple[str, object]]


@dataclass(frozen=True)
class BoundParameter:
    """A coerced value bound to one ``?`` placeholder position."""

    name: str
    value: object
    type: ParameterType
    position: int


@dataclass(frozen=True)
class PageRequest:
    """Validated zero-based page number and page size."""

    page: int
    size: int

    @property
    def offset(self) -> int:
        """Row offset of the first row on this page."""
        return self.page * self.size


def _invalid(name: str, param_type: ParameterType, value: object) -> BadRequest:
    message = f"Invalid value for parameter '{name}': expected {param_type.value}, got {value!r}"
    return BadRequest(message, extras={"parameter": name, "type": param_type.value})


def _coerce_int(value: object, name: str, param_type: ParameterType) -> int:
    if isinstance(value, bool):
        raise _invalid(name, param_type, value)
    if isinstance(value, int):
        result = value
    elif isinstance(value, float) and value.is_integer():
        result = int(value)
    elif isinstance(value, str):
        try:
            result = int(value.strip())
        except ValueError as exc:
            raise _invalid(name, param_type, value) from exc
    else:
        raise _invalid(name, param_type, value)
    low, high = INT32_RANGE if param_type is ParameterType.INTEGER else INT64_RANGE
    if not low <= result <= high:
        message = f"Parameter '{name}' value {result} is out of range for {param_type.value}"
        raise BadRequest(message, extras={"parameter": name, "type": param_type.value})
    return result


def _coerce_bool(value: object, name: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    raise _invalid(name, ParameterType.BOOLEAN, value)


def _coerce_double(value: object, name: str) -> float:
    if isinstance(value, bool):
        raise _invalid(name, ParameterType.DOUBLE, value)
    try:
        result = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise _invalid(name, ParameterType.DOUBLE, value) from exc
    if not math.isfinite(result):
        raise _invalid(name, ParameterType.DOUBLE, value)
    return result


def _coerce_decimal(value: object, name: str) -> Decimal:
    if isinstance(value, bool):
        raise _invalid(name, ParameterType.DECIMAL, value)
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise _invalid(name, ParameterType.DECIMAL, value) from exc
    if not result.is_finite():
        raise _invalid(name, ParameterType.DECIMAL, value)
    return result


def _coerce_timestamp(value: object, name: str) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)  # noqa: DTZ001
    if isinstance(value, int) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=UTC)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return datetime.fromtimestamp(int(text) / 1000, tz=UTC)
        try:
            return datetime.fromisoformat(text)
        except ValueError as exc:
            raise _invalid(name, ParameterType.TIMESTAMP, value) from exc
    raise _invalid(name, ParameterType.TIMESTAMP, value)


def coerce_value(value: object, param_type: ParameterType, name: str) -> object:
    """
    Convert a raw request value to the declared parameter type.

    Parameters
    ----------
    value
        Raw value, usually request text or a configured default.
    param_type
        Declared parameter type.
    name
        Parameter name used in error messages.

    Returns
    -------
    object
        Value of the Python type matching ``param_type``.

    Raises
    ------
    BadRequest
        If the value cannot be converted or is out of range.
    """
    if param_type is ParameterType.STRING:
        return value if isinstance(value, str) else str(value)
    if param_type in {ParameterType.INTEGER, ParameterType.LONG}:
        return _coerce_int(value, name, param_type)
    if param_type is ParameterType.BOOLEAN:
        return _coerce_bool(value, name)
    if param_type is ParameterType.DOUBLE:
        return _coerce_double(value, name)
    if param_type is ParameterType.DECIMAL:
        return _coerce_decimal(value, name)
    return _coerce_timestamp(value, name)


def flatten_parameters(*sources: ParameterItems) -> dict[str, object]:
    """
    Merge parameter sources in priority order; the first value seen for a key wins.

    Sources are typically path parameters, then query-string pairs, then form
    pairs. Multi-valued sources should be passed as ``(key, value)`` pairs so
    repeated keys keep their first value.

    Returns
    -------
    dict[str, object]
        Flattened request parameters.
    """
    merged: dict[str, object] = {}
    for source in sources:
        items = source.items() if isinstance(source, Mapping) else source
        for key, value in items:
            merged.setdefault(key, value)
    return merged


def _is_absent(params: Mapping[str, object], name: str) -> bool:
    return params.get(name) is None


def parse_page_request(params: Mapping[str, object], pagination: PaginationSpec) -> PageRequest:
    """
    Read and validate ``page`` and ``size`` for a paginated endpoint.

    Returns
    -------
    PageRequest
        Page 0 and the endpoint's default size when the request omits them.

    Raises
    ------
    BadRequest
        On a negative page, a non-positive size or a size above the maximum.
    """
    page = 0 if _is_absent(params, "page") else _coerce_int(params["page"], "page", ParameterType.INTEGER)
    size = (
        pagination.default_size
        if _is_absent(params, "size")
        else _coerce_int(params["size"], "size", ParameterType.INTEGER)
    )
    if page < 0:
        message = f"Page number must be >= 0, got {page}"
        raise BadRequest(message, extras={"parameter": "page"})
    if size <= 0:
        message = f"Page size must be > 0, got {size}"
        raise BadRequest(message, extras={"parameter": "size"})
    if size > pagination.max_size:
        message = f"Page size {size} exceeds maximum {pagination.max_size}"
        raise BadRequest(message, extras={"parameter": "size"})
    return PageRequest(page=page, size=size)


def strip_and_renumber(
    bound: Sequence[BoundParameter], names: Iterable[str] = PAGINATION_KEYS
) -> tuple[BoundParameter, ...]:
    """
    Drop parameters with the given names and renumber the rest from 1.

    Returns
    -------
    tuple[BoundParameter, ...]
        Remaining parameters in their original order with contiguous positions.
    """
    dropped = set(names)
    kept = [param for param in sorted(bound, key=lambda param: param.position) if param.name not in dropped]
    return tuple(replace(param, position=index) for index, param in enumerate(kept, start=1))


class ParameterBinder:
    """Binds request values to the ordered ParameterSpec list of a query."""

    def bind(
        self,
        query: QueryDefinition,
        params: Mapping[str, object],
        *,
        page: PageRequest | None = None,
    ) -> tuple[BoundParameter, ...]:
        """
        Produce one bound value per declared parameter, in position order.

        Parameters
        ----------
        query
            Query whose parameters are bound.
        params
            Flattened request parameters.
        page
            When given, ``limit`` and ``offset`` are injected from it and take
            precedence over request values of the same name.

        Returns
        -------
        tuple[BoundParameter, ...]
            Bound parameters ordered by position.

        Raises
        ------
        BadRequest
            If a required parameter is absent or a value fails coercion.
        """
        values: Mapping[str, object] = params
        if page is not None:
            values = {**params, "limit": page.size, "offset": page.offset}
        bound = tuple(self._bind_one(spec, values) for spec in query.ordered_parameters())
        LOG.debug("Bound %d parameters for query=%s", len(bound), query.name)
        return bound

    @staticmethod
    def _bind_one(spec: ParameterSpec, params: Mapping[str, object]) -> BoundParameter:
        position = spec.position or 0
        if not _is_absent(params, spec.name):
            value = coerce_value(params[spec.name], spec.type, spec.name)
        elif spec.required:
            message = f"Required parameter '{spec.name}' is missing"
            raise BadRequest(message, extras={"parameter": spec.name})
        elif spec.default is not None:
            value = coerce_value(spec.default, spec.type, spec.name)
        else:
            value = None
        return BoundParameter(name=spec.name, value=value, type=spec.type, position=position)

    @staticmethod
    def check_endpoint_parameters(endpoint: EndpointDefinition, params: Mapping[str, object]) -> None:
        """
        Validate the request against the endpoint's declared parameters.

        Raises
        ------
        BadRequest
            If a required declared parameter is absent or a value has the wrong type.
        """
        for spec in endpoint.parameters:
            if not _is_absent(params, spec.name):
                coerce_value(params[spec.name], spec.type, spec.name)
            elif spec.required:
                message = f"Required parameter '{spec.name}' is missing"
                raise BadRequest(message, extras={"parameter": spec.name})


__all__ = [
    "PAGINATION_KEYS",
    "BoundParameter",
    "PageRequest",
    "ParameterBinder",
    "coerce_value",
    "flatten_parameters",
    "parse_page_request",
    "strip_and_renumber",
]
