"""Disposable PostgreSQL servers for test suites."""

from __future__ import annotations

from .errors import (
    CatalogQueryError,
    CloneError,
    ColumnNotFoundError,
    ConfigurationError,
    DatabaseConnectionError,
    ExternalCommandError,
    FixtureAbort,
    FixtureStateError,
    PgTestError,
    ProvisioningError,
    ReadinessTimeoutError,
    RoleAssumptionError,
    SchemaValidationError,
    ServerNotReadyError,
    TableNotFoundError,
)
from .fixture import FixtureState, PostgresFixture
from .options import ConnectOptions, ConnOpt, conn_create_copy, conn_database, conn_role
from .postgres import Postgres
from .provisioner import CommandResult, Container, DockerProvisioner, LaunchSpec, Provisioner
from .settings import (
    ConnectionSettings,
    Option,
    PostgresConfig,
    load_config,
    opt_expire_after,
    opt_mounts,
    opt_name,
    opt_network_name,
    opt_repo,
    opt_settings,
    opt_skip_tear_down,
    opt_timeout_after,
    opt_version,
)
from .validation import TableExpectation, TableNamed, columns, table_expectation, to_snake

__version__ = "0.1.0"

__all__ = [
    "CatalogQueryError",
    "CloneError",
    "ColumnNotFoundError",
    "CommandResult",
    "ConfigurationError",
    "ConnOpt",
    "ConnectOptions",
    "ConnectionSettings",
    "Container",
    "DatabaseConnectionError",
    "DockerProvisioner",
    "ExternalCommandError",
    "FixtureAbort",
    "FixtureState",
    "FixtureStateError",
    "LaunchSpec",
    "Option",
    "PgTestError",
    "Postgres",
    "PostgresConfig",
    "PostgresFixture",
    "Provisioner",
    "ProvisioningError",
    "ReadinessTimeoutError",
    "RoleAssumptionError",
    "SchemaValidationError",
    "ServerNotReadyError",
    "TableExpectation",
    "TableNamed",
    "TableNotFoundError",
    "__version__",
    "columns",
    "conn_create_copy",
    "conn_database",
    "conn_role",
    "load_config",
    "opt_expire_after",
    "opt_mounts",
    "opt_name",
    "opt_network_name",
    "opt_repo",
    "opt_settings",
    "opt_skip_tear_down",
    "opt_timeout_after",
    "opt_version",
    "table_expectation",
    "to_snake",
]
