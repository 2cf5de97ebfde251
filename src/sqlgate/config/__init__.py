"""Configuration models, sources and the validated registry snapshot.

This package provides:
- **Models** (`models.py`): database, query and endpoint definitions
- **Sources** (`sources.py`): YAML, DuckDB and in-memory configuration backends
- **Registry** (`registry.py`): load-time validation and the immutable snapshot
- **Serving** (`serving_models.py`): environment-driven process settings
"""

from sqlgate.config.models import (
    DatabaseDefinition,
    EndpointDefinition,
    PaginationSpec,
    ParameterSpec,
    ParameterType,
    PoolSettings,
    QueryDefinition,
)
from sqlgate.config.registry import ConfigurationRegistry, RegistryHolder, RegistryReport
from sqlgate.config.serving_models import ServingConfig
from sqlgate.config.sources import (
    ConfigDocument,
    ConfigurationSource,
    DuckDBConfigurationSource,
    MappingConfigurationSource,
    YamlDirectorySource,
)

__all__ = [
    "ConfigDocument",
    "ConfigurationRegistry",
    "ConfigurationSource",
    "DatabaseDefinition",
    "DuckDBConfigurationSource",
    "EndpointDefinition",
    "MappingConfigurationSource",
    "PaginationSpec",
    "ParameterSpec",
    "ParameterType",
    "PoolSettings",
    "QueryDefinition",
    "RegistryHolder",
    "RegistryReport",
    "ServingConfig",
    "YamlDirectorySource",
]
