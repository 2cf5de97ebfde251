"""CLI entrypoint for validating, inspecting, migrating and serving configurations."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Callable, Iterable
from pathlib import Path

import duckdb
import uvicorn

from sqlgate.config.registry import ConfigurationRegistry, RegistryReport
from sqlgate.config.serving_models import ServingConfig
from sqlgate.config.sources import YamlDirectorySource, store_definitions
from sqlgate.errors import ConfigurationError, InternalError, log_problem
from sqlgate.serving.http.fastapi import create_app
from sqlgate.serving.routing import order_endpoints
from sqlgate.storage.pools import ConnectionPoolManager
from sqlgate.validation.schema import SchemaValidator, ValidationReport

LOG = logging.getLogger("sqlgate.cli")

CommandHandler = Callable[[argparse.Namespace], int]


# ---------------------------------------------------------------------------
# Argument parsing / logging setup
# ---------------------------------------------------------------------------


def _setup_logging(verbosity: int) -> None:
    """
    Configure logging based on -v/--verbose count.

    0 -> WARNING, 1 -> INFO, 2+ -> DEBUG.
    """
    if verbosity <= 0:
        level = logging.WARNING
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def _add_source_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--source",
        choices=["yaml", "duckdb"],
        default=None,
        help="Configuration backend (default: SQLGATE_CONFIG_SOURCE or yaml)",
    )
    p.add_argument(
        "--config-dir",
        type=Path,
        action="append",
        default=None,
        help="Directory with YAML configuration documents (repeatable)",
    )
    p.add_argument(
        "--config-db",
        type=Path,
        default=None,
        help="DuckDB configuration store (for --source duckdb)",
    )


def _serving_config(args: argparse.Namespace) -> ServingConfig:
    """
    Merge command-line overrides onto the environment configuration.

    Returns
    -------
    ServingConfig
        Validated configuration.
    """
    env = ServingConfig.from_env()
    values = env.model_dump()
    if args.source is not None:
        values["source"] = args.source
    if args.config_dir:
        values["config_dirs"] = [path.expanduser().resolve() for path in args.config_dir]
    if args.config_db is not None:
        values["config_db_path"] = args.config_db.expanduser().resolve()
    return ServingConfig(**values)


def _load_registry(args: argparse.Namespace) -> ConfigurationRegistry:
    return ConfigurationRegistry.load(_serving_config(args).build_source())


def _write_report(report: RegistryReport) -> None:
    for error in report.errors:
        sys.stderr.write(f"ERROR   {error}\n")
    for warning in report.warnings:
        sys.stderr.write(f"WARNING {warning}\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_validate(args: argparse.Namespace) -> int:
    """
    Load the configuration and report referential-integrity findings.

    Returns
    -------
    int
        Exit code (0 when valid, 1 on errors).
    """
    try:
        registry = _load_registry(args)
    except ConfigurationError as exc:
        if exc.report is not None:
            _write_report(exc.report)
        else:
            sys.stderr.write(f"ERROR   {exc}\n")
        return 1
    _write_report(registry.report)
    report = registry.report
    sys.stdout.write(
        f"Configuration valid: {report.database_count} databases, "
        f"{report.query_count} queries, {report.endpoint_count} endpoints "
        f"({len(report.warnings)} warnings)\n"
    )
    return 0


def _cmd_routes(args: argparse.Namespace) -> int:
    """
    Print endpoint routes in registration order.

    Returns
    -------
    int
        Exit code (0 on success).
    """
    registry = _load_registry(args)
    rows = [
        (endpoint.method.value, endpoint.path, endpoint.name, endpoint.query)
        for endpoint in order_endpoints(registry.endpoints.values())
    ]
    if not rows:
        sys.stdout.write("No endpoints configured.\n")
        return 0
    headers = ("method", "path", "endpoint", "query")
    widths = [max(len(headers[idx]), *(len(row[idx]) for row in rows)) for idx in range(len(headers))]

    def _fmt(row: tuple[str, ...]) -> str:
        return "  ".join(value.ljust(widths[idx]) for idx, value in enumerate(row)).rstrip()

    sys.stdout.write(_fmt(headers) + "\n")
    for row in rows:
        sys.stdout.write(_fmt(row) + "\n")
    return 0


def _write_phase(report: ValidationReport) -> None:
    state = "skipped" if report.skipped else ("passed" if report.passed else "failed")
    sys.stdout.write(f"[{report.phase}] {state}: {len(report.successes)} ok, {len(report.errors)} errors\n")
    for error in report.errors:
        sys.stdout.write(f"  ERROR   {error}\n")
    for warning in report.warnings:
        sys.stdout.write(f"  WARNING {warning}\n")


def _cmd_schema(args: argparse.Namespace) -> int:
    """
    Validate every query against its database schema.

    Returns
    -------
    int
        Exit code (0 when both phases pass, 1 otherwise).
    """
    registry = _load_registry(args)
    pools = ConnectionPoolManager(registry.databases)
    try:
        result = SchemaValidator(registry, pools).run()
    finally:
        pools.close()
    if args.json:
        sys.stdout.write(json.dumps(result.model_dump(mode="json"), indent=2) + "\n")
    else:
        _write_phase(result.configuration)
        _write_phase(result.database)
    return 0 if result.passed else 1


def _cmd_migrate(args: argparse.Namespace) -> int:
    """
    Copy YAML definitions into a DuckDB configuration store.

    Returns
    -------
    int
        Exit code (0 on success).
    """
    directories = [path.expanduser().resolve() for path in args.config_dir or [Path("config")]]
    registry = ConfigurationRegistry.load(YamlDirectorySource(directories))
    target: Path = args.to
    target.parent.mkdir(parents=True, exist_ok=True)
    with duckdb.connect(str(target)) as con:
        written = store_definitions(
            con,
            databases=registry.databases.values(),
            queries=registry.queries.values(),
            endpoints=registry.endpoints.values(),
        )
    sys.stdout.write(f"Wrote {written} definitions to {target}\n")
    return 0


def _cmd_serve(args: argparse.Namespace) -> int:
    """
    Serve the configured endpoints over HTTP.

    Returns
    -------
    int
        Exit code (0 after a clean shutdown).
    """
    config = _serving_config(args)
    app = create_app(config_loader=lambda: config)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
    return 0


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sqlgate",
        description="Configuration-driven REST endpoints over SQL databases.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase logging verbosity (-v, -vv)",
    )
    subparsers = parser.add_subparsers(dest="command")

    p_validate = subparsers.add_parser("validate", help="Load and validate the configuration.")
    _add_source_args(p_validate)
    p_validate.set_defaults(func=_cmd_validate)

    p_routes = subparsers.add_parser("routes", help="List endpoint routes in registration order.")
    _add_source_args(p_routes)
    p_routes.set_defaults(func=_cmd_routes)

    p_schema = subparsers.add_parser("schema", help="Validate queries against database schemas.")
    _add_source_args(p_schema)
    p_schema.add_argument("--json", action="store_true", help="Emit the full result as JSON")
    p_schema.set_defaults(func=_cmd_schema)

    p_migrate = subparsers.add_parser("migrate", help="Copy YAML definitions into a DuckDB store.")
    p_migrate.add_argument(
        "--config-dir",
        type=Path,
        action="append",
        default=None,
        help="Directory with YAML configuration documents (repeatable, default: ./config)",
    )
    p_migrate.add_argument("--to", type=Path, required=True, help="Target DuckDB file")
    p_migrate.set_defaults(func=_cmd_migrate)

    p_serve = subparsers.add_parser("serve", help="Serve endpoints over HTTP.")
    _add_source_args(p_serve)
    p_serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    p_serve.add_argument("--port", type=int, default=8080, help="Bind port (default: 8080)")
    p_serve.add_argument("--log-level", default="info", help="uvicorn log level (default: info)")
    p_serve.set_defaults(func=_cmd_serve)
    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main(argv: Iterable[str] | None = None) -> int:
    """
    CLI entrypoint for sqlgate commands.

    Parameters
    ----------
    argv:
        Optional argument list (defaults to sys.argv).

    Returns
    -------
    int
        Exit code (0 on success).
    """
    parser = _make_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    _setup_logging(args.verbose)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    try:
        func: CommandHandler = args.func
        return int(func(args))
    except ConfigurationError as exc:
        sys.stderr.write(f"Configuration error: {exc}\n")
        return 1
    except Exception as exc:  # noqa: BLE001
        problem = InternalError(str(exc), extras={"command": args.command})
        log_problem(LOG, problem.detail, exc=exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
