"""Exception hierarchy shared by the fixture, engine, and validator."""

from __future__ import annotations

from typing import Sequence


class PgTestError(RuntimeError):
    """Base class for every error raised by pgtest."""


class ConfigurationError(PgTestError):
    """Raised when connection or fixture parameters are malformed."""


class ProvisioningError(PgTestError):
    """Raised when the backing container cannot be launched or inspected."""


class FixtureStateError(PgTestError):
    """Raised when an operation is called in the wrong lifecycle state."""


class ReadinessTimeoutError(PgTestError):
    """Raised when the server never became ready within the timeout."""

    def __init__(self, message: str, *, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class ServerNotReadyError(PgTestError):
    """A single liveness probe reported the server as not ready."""

    def __init__(self, status: int, reason: str) -> None:
        super().__init__(f"postgres is not ready: ({status}) {reason}")
        self.status = status
        self.reason = reason


class DatabaseConnectionError(PgTestError):
    """Raised when a pool or direct connection cannot be established."""


class RoleAssumptionError(PgTestError):
    """Raised when `SET ROLE` fails on a freshly opened pool."""

    def __init__(self, role: str, message: str) -> None:
        super().__init__(message)
        self.role = role


class ExternalCommandError(PgTestError):
    """Raised when a delegated client-tool command exits nonzero."""

    def __init__(self, command: Sequence[str], exit_code: int, output: str = "") -> None:
        super().__init__(f"{command[0] if command else 'command'} exited with error (code: {exit_code})")
        self.command = tuple(command)
        self.exit_code = exit_code
        self.output = output


class CloneError(PgTestError):
    """Raised when a template copy of a database fails."""

    def __init__(self, source: str, target: str, message: str) -> None:
        super().__init__(message)
        self.source = source
        self.target = target


class CatalogQueryError(PgTestError):
    """Raised when a catalog query against the live database fails."""


class SchemaValidationError(PgTestError):
    """Raised when a model does not match the live schema."""

    def __init__(self, message: str, *, schema: str, table: str) -> None:
        super().__init__(message)
        self.schema = schema
        self.table = table


class TableNotFoundError(SchemaValidationError):
    """The expected table is missing from the catalog."""


class ColumnNotFoundError(SchemaValidationError):
    """A model field has no matching column."""

    def __init__(
        self,
        message: str,
        *,
        schema: str,
        table: str,
        model: str,
        field: str,
        columns: Sequence[str],
    ) -> None:
        super().__init__(message, schema=schema, table=table)
        self.model = model
        self.field = field
        self.columns = tuple(columns)


class FixtureAbort(BaseException):
    """Unrecoverable failure raised by the `must_*` convenience wrappers.

    Derives from BaseException so ordinary `except Exception` handlers in test
    code do not swallow it.
    """


__all__ = [
    "CatalogQueryError",
    "CloneError",
    "ColumnNotFoundError",
    "ConfigurationError",
    "DatabaseConnectionError",
    "ExternalCommandError",
    "FixtureAbort",
    "FixtureStateError",
    "PgTestError",
    "ProvisioningError",
    "ReadinessTimeoutError",
    "RoleAssumptionError",
    "SchemaValidationError",
    "ServerNotReadyError",
    "TableNotFoundError",
]
