"""Tests for sqlgate CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
import yaml

from sqlgate.cli.main import main
from tests._helpers.expect import expect_equal, expect_in, expect_length, expect_true
from tests._helpers.stocktrades import database_entries, endpoint_entries, query_entries

if TYPE_CHECKING:
    from _pytest.capture import CaptureFixture


@dataclass
class CliResult:
    """Captured CLI execution result."""

    exit_code: int
    stdout: str
    stderr: str


CliRunner = Callable[[list[str]], CliResult]


@pytest.fixture
def cli_runner(capsys: CaptureFixture[str], monkeypatch: pytest.MonkeyPatch) -> CliRunner:
    """
    Run the CLI with captured output and a clean environment.

    Returns
    -------
    CliRunner
        Callable that executes the CLI and captures stdout/stderr.
    """
    for name in ("SQLGATE_CONFIG_SOURCE", "SQLGATE_CONFIG_DIRS", "SQLGATE_CONFIG_DB"):
        monkeypatch.delenv(name, raising=False)

    def _run(args: list[str]) -> CliResult:
        exit_code = main(args)
        captured = capsys.readouterr()
        return CliResult(exit_code=exit_code, stdout=captured.out, stderr=captured.err)

    return _run


def _write_yaml(path: Path, payload: dict[str, object]) -> None:
    path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf8")


@pytest.fixture
def config_dir(tmp_path: Path, stocktrades_db: Path) -> Path:
    """
    Write the stock-trades configuration as YAML documents.

    Returns
    -------
    Path
        Directory holding the documents.
    """
    directory = tmp_path / "config"
    directory.mkdir()
    _write_yaml(directory / "stocktrades-databases.yml", {"databases": database_entries(stocktrades_db)})
    _write_yaml(directory / "stocktrades-queries.yml", {"queries": query_entries()})
    _write_yaml(directory / "stocktrades-api.yml", {"endpoints": endpoint_entries()})
    return directory


def test_validate_reports_counts(cli_runner: CliRunner, config_dir: Path) -> None:
    """A valid configuration summarizes what was loaded."""
    result = cli_runner(["validate", "--config-dir", str(config_dir)])

    expect_equal(result.exit_code, 0, label="exit_code")
    expect_in("Configuration valid: 1 databases, 7 queries, 5 endpoints", result.stdout)


def test_validate_reports_dangling_reference(cli_runner: CliRunner, config_dir: Path) -> None:
    """Broken references are printed and fail the command."""
    endpoints = endpoint_entries()
    endpoints["orphan"] = {"path": "/api/orphan", "query": "no-such-query"}
    _write_yaml(config_dir / "stocktrades-api.yml", {"endpoints": endpoints})

    result = cli_runner(["validate", "--config-dir", str(config_dir)])

    expect_equal(result.exit_code, 1, label="exit_code")
    expect_in("ERROR", result.stderr)
    expect_in("no-such-query", result.stderr)


def test_routes_lists_most_specific_first(cli_runner: CliRunner, config_dir: Path) -> None:
    """Literal paths come before templated ones."""
    result = cli_runner(["routes", "--config-dir", str(config_dir)])

    expect_equal(result.exit_code, 0, label="exit_code")
    lines = result.stdout.strip().splitlines()
    expect_length(lines, 6, label="header plus endpoints")
    paths = [line.split()[1] for line in lines[1:]]
    expect_equal(paths[0], "/api/trades/search")
    expect_equal(paths[1], "/api/trades")
    expect_equal(paths[-1], "/api/trades/{id}")


def test_schema_json_output(cli_runner: CliRunner, config_dir: Path) -> None:
    """Schema validation emits both phase reports as JSON."""
    result = cli_runner(["schema", "--config-dir", str(config_dir), "--json"])

    expect_equal(result.exit_code, 0, label="exit_code")
    data = json.loads(result.stdout)
    expect_true(data["configuration"]["passed"], message="configuration phase should pass")
    expect_true(data["database"]["passed"], message="schema phase should pass")
    expect_equal(data["database"]["errors"], [])


def test_migrate_then_validate_from_duckdb(
    cli_runner: CliRunner, config_dir: Path, tmp_path: Path
) -> None:
    """Migrated definitions load back from the DuckDB store."""
    store = tmp_path / "store" / "config.duckdb"

    migrated = cli_runner(["migrate", "--config-dir", str(config_dir), "--to", str(store)])

    expect_equal(migrated.exit_code, 0, label="migrate exit_code")
    expect_in("Wrote 13 definitions", migrated.stdout)

    validated = cli_runner(["validate", "--source", "duckdb", "--config-db", str(store)])

    expect_equal(validated.exit_code, 0, label="validate exit_code")
    expect_in("1 databases, 7 queries, 5 endpoints", validated.stdout)


def test_no_command_prints_help(cli_runner: CliRunner) -> None:
    """Running without a subcommand fails with usage text."""
    result = cli_runner([])

    expect_equal(result.exit_code, 1, label="exit_code")
    expect_in("usage: sqlgate", result.stdout)
