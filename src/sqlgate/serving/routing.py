"""Deterministic route ordering so literal segments win over path variables."""

from __future__ import annotations

from collections.abc import Iterable

from sqlgate.config.models import PATH_PARAM_PATTERN, EndpointDefinition


def count_path_parameters(path: str) -> int:
    """Return the number of ``{param}`` placeholders in a path template."""
    return len(PATH_PARAM_PATTERN.findall(path))


def specificity_key(endpoint: EndpointDefinition) -> tuple[int, int, str, str, str]:
    """
    Sort key for registration order.

    Fewer placeholders sort first, then longer paths, then path text; method
    and name make the order total for identical paths.

    Returns
    -------
    tuple[int, int, str, str, str]
        Comparable key.
    """
    return (
        count_path_parameters(endpoint.path),
        -len(endpoint.path),
        endpoint.path,
        endpoint.method.value,
        endpoint.name,
    )


def order_endpoints(endpoints: Iterable[EndpointDefinition]) -> list[EndpointDefinition]:
    """
    Order endpoints most specific first for route registration.

    Returns
    -------
    list[EndpointDefinition]
        Endpoints in registration order.
    """
    return sorted(endpoints, key=specificity_key)


__all__ = ["count_path_parameters", "order_endpoints", "specificity_key"]
