"""Per-call connection options for `PostgresFixture.connect`."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable


@dataclass(frozen=True, slots=True)
class ConnectOptions:
    """Resolved options for one `connect` call.

    An empty `database` means the fixture's primary database.
    """

    database: str = ""
    role: str = ""
    create_copy: bool = False

    @classmethod
    def build(cls, *opts: ConnOpt) -> ConnectOptions:
        """Apply modifiers in order; later ones win."""

        options = cls()
        for opt in opts:
            options = opt(options)
        return options


ConnOpt = Callable[[ConnectOptions], ConnectOptions]


def conn_database(database: str) -> ConnOpt:
    """Target `database` instead of the primary one. An empty name changes nothing."""

    def _apply(options: ConnectOptions) -> ConnectOptions:
        if not database:
            return options
        return replace(options, database=database)

    return _apply


def conn_role(role: str) -> ConnOpt:
    """Assume `role` on every pooled connection."""

    def _apply(options: ConnectOptions) -> ConnectOptions:
        return replace(options, role=role)

    return _apply


def conn_create_copy() -> ConnOpt:
    """Clone the target database and connect to the clone instead."""

    def _apply(options: ConnectOptions) -> ConnectOptions:
        return replace(options, create_copy=True)

    return _apply


__all__ = ["ConnOpt", "ConnectOptions", "conn_create_copy", "conn_database", "conn_role"]
