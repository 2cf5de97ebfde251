"""Process-level serving configuration loaded from the environment."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from sqlgate.config.sources import ConfigurationSource, DuckDBConfigurationSource, YamlDirectorySource

SourceKind = Literal["yaml", "duckdb"]


def _parse_env_flag(value: str | None, *, default: bool) -> bool:
    """
    Interpret a string environment value as a boolean.

    Parameters
    ----------
    value:
        Raw environment variable value or None.
    default:
        Value to return when the environment variable is unset.

    Returns
    -------
    bool
        Parsed boolean flag.
    """
    if value is None:
        return default
    return value.lower() not in {"0", "false", "no", "off"}


def _parse_paths(value: str | None) -> list[Path]:
    if not value:
        return []
    return [Path(part).expanduser().resolve() for part in value.split(os.pathsep) if part.strip()]


class ServingConfig(BaseModel):
    """
    Runtime settings for the HTTP surface and the CLI.

    Centralizes environment loading and validation so both entry points pick
    the same configuration source and worker limits.
    """

    source: SourceKind = Field(
        default="yaml",
        description="Configuration backend: 'yaml' directories or a 'duckdb' store.",
    )
    config_dirs: list[Path] = Field(
        default_factory=list,
        description="Directories scanned for YAML configuration documents.",
    )
    config_db_path: Path | None = Field(
        default=None,
        description="DuckDB configuration store (required when source='duckdb').",
    )
    async_workers: int = Field(
        default=4,
        ge=1,
        description="Worker threads executing async endpoint requests.",
    )
    max_pending_jobs: int = Field(
        default=100,
        ge=1,
        description="Unfinished async jobs allowed before new submissions are refused.",
    )
    job_retention: int = Field(
        default=1000,
        ge=1,
        description="Finished async jobs kept for status lookups.",
    )
    validate_schema_on_startup: bool = Field(
        default=False,
        description="Run schema validation at startup and log its findings.",
    )

    @classmethod
    def from_env(cls) -> ServingConfig:
        """
        Construct a ServingConfig from environment variables.

        Returns
        -------
        ServingConfig
            Validated configuration populated from environment values.
        """
        source: SourceKind = (
            "duckdb" if os.environ.get("SQLGATE_CONFIG_SOURCE", "yaml").lower() == "duckdb" else "yaml"
        )
        db_env = os.environ.get("SQLGATE_CONFIG_DB")
        return cls(
            source=source,
            config_dirs=_parse_paths(os.environ.get("SQLGATE_CONFIG_DIRS")),
            config_db_path=Path(db_env).expanduser().resolve() if db_env else None,
            async_workers=int(os.environ.get("SQLGATE_ASYNC_WORKERS", "4")),
            max_pending_jobs=int(os.environ.get("SQLGATE_MAX_PENDING_JOBS", "100")),
            job_retention=int(os.environ.get("SQLGATE_JOB_RETENTION", "1000")),
            validate_schema_on_startup=_parse_env_flag(
                os.environ.get("SQLGATE_VALIDATE_SCHEMA_ON_STARTUP"), default=False
            ),
        )

    @model_validator(mode="after")
    def _validate_source(self) -> ServingConfig:
        """
        Apply source-specific defaults and validation.

        Returns
        -------
        ServingConfig
            Normalized configuration.

        Raises
        ------
        ValueError
            When the DuckDB source has no database path.
        """
        if self.source == "yaml" and not self.config_dirs:
            self.config_dirs = [(Path() / "config").resolve()]
        if self.source == "duckdb" and self.config_db_path is None:
            message = "SQLGATE_CONFIG_DB is required when SQLGATE_CONFIG_SOURCE='duckdb'"
            raise ValueError(message)
        return self

    def build_source(self) -> ConfigurationSource:
        """
        Instantiate the configured ConfigurationSource.

        Returns
        -------
        ConfigurationSource
            YAML directory or DuckDB-backed source.
        """
        if self.source == "duckdb" and self.config_db_path is not None:
            return DuckDBConfigurationSource(self.config_db_path)
        return YamlDirectorySource(self.config_dirs)


__all__ = ["ServingConfig", "SourceKind"]
