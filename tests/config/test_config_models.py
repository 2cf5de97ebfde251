"""Definition models: aliases, defaults and normalization."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from sqlgate.config.models import (
    DatabaseDefinition,
    EndpointDefinition,
    HttpMethod,
    ParameterType,
    QueryDefinition,
)
from tests._helpers.expect import expect_equal, expect_not_in, expect_true


def test_query_positions_default_to_declaration_order() -> None:
    """Omitted positions become 1..n in list order."""
    query = QueryDefinition.model_validate(
        {
            "name": "q",
            "database": "db",
            "sql": "SELECT ? , ?",
            "parameters": [{"name": "a", "type": "integer"}, {"name": "b"}],
        }
    )

    expect_equal([spec.position for spec in query.parameters], [1, 2])
    expect_equal(query.parameters[0].type, ParameterType.INTEGER)
    expect_equal(query.parameters[1].type, ParameterType.STRING)


def test_ordered_parameters_sort_by_position() -> None:
    """Explicit positions control placeholder order."""
    query = QueryDefinition.model_validate(
        {
            "name": "q",
            "database": "db",
            "sql": "SELECT ? , ?",
            "parameters": [{"name": "second", "position": 2}, {"name": "first", "position": 1}],
        }
    )

    expect_equal([spec.name for spec in query.ordered_parameters()], ["first", "second"])


def test_pool_settings_accept_camel_case_and_defaults() -> None:
    """Pool tunables accept camelCase keys and keep documented defaults."""
    database = DatabaseDefinition.model_validate(
        {"name": "db", "url": "sqlite://", "pool": {"maximumPoolSize": 3, "leakDetectionThreshold": 0}}
    )

    expect_equal(database.pool.maximum_pool_size, 3)
    expect_equal(database.pool.leak_detection_threshold_ms, 0)
    expect_equal(database.pool.minimum_idle, 2)
    expect_equal(database.pool.connection_timeout_ms, 30_000)
    expect_equal(database.pool.connection_test_query, "SELECT 1")


def test_public_view_hides_password() -> None:
    """Management views never include credentials."""
    database = DatabaseDefinition(name="db", url="postgresql://host/db", username="u", password="secret")

    view = database.public_view()

    expect_not_in("password", view)
    expect_true("secret" not in repr(database), message="password leaked through repr")


def test_endpoint_normalizes_method_and_reads_path_parameters() -> None:
    """Lower-case methods are accepted and path variables are listed."""
    endpoint = EndpointDefinition.model_validate(
        {"name": "e", "path": "/a/{id}/b/{code}", "method": "post", "query": "q", "countQuery": "c"}
    )

    expect_equal(endpoint.method, HttpMethod.POST)
    expect_equal(endpoint.path_parameters, ("id", "code"))
    expect_equal(endpoint.count_query, "c")
    expect_true(not endpoint.pagination_enabled, message="pagination should default to off")


def test_endpoint_path_must_start_with_slash() -> None:
    """Relative paths are rejected."""
    with pytest.raises(ValidationError):
        EndpointDefinition(name="e", path="api/x", query="q")


def test_definitions_are_frozen() -> None:
    """Validated definitions cannot be mutated."""
    query = QueryDefinition(name="q", database="db", sql="SELECT 1")

    with pytest.raises(ValidationError):
        query.sql = "DROP TABLE t"  # type: ignore[misc]
