"""Connection descriptor and fixture configuration."""

from __future__ import annotations

import copy
import os
import re
import tomllib
from pathlib import Path
from typing import Any, Callable
from urllib.parse import parse_qs, quote, unquote, urlsplit

import asyncpg
from pydantic import BaseModel, ConfigDict, Field

from .errors import ConfigurationError, DatabaseConnectionError

CONFIG_FILE = Path("pgtest.toml")
NETWORK_ENV_VAR = "HOST_NETWORK_NAME"

DEFAULT_POSTGRES_REPO = "postgres"
DEFAULT_POSTGRES_VERSION = "13-alpine"
DEFAULT_EXPIRE_AFTER = 600
DEFAULT_TIMEOUT_AFTER = 30

_URL_SCHEMES = ("postgres://", "postgresql://")
_DSN_PAIR = re.compile(r"\s*(\w+)\s*=\s*('(?:[^'\\]|\\.)*'|[^\s']*)")
_DSN_NEEDS_QUOTES = re.compile(r"[\s'\\]")


class ConnectionSettings(BaseModel):
    """Everything needed to reach one database on the fixture's server."""

    model_config = ConfigDict(validate_assignment=True)

    host: str = "localhost"
    port: int = Field(default=5432, ge=1, le=65535)
    user: str = "postgres"
    password: str = Field(default="", repr=False)
    database: str = "postgres"
    disable_ssl: bool = False
    max_open_conns: int = Field(default=10, ge=1)

    @property
    def ssl_mode(self) -> str:
        return "disable" if self.disable_ssl else "require"

    def dsn(self) -> str:
        """libpq key/value connection string."""

        pairs = (
            ("host", self.host),
            ("port", str(self.port)),
            ("user", self.user),
            ("password", self.password),
            ("dbname", self.database),
            ("sslmode", self.ssl_mode),
        )
        return " ".join(f"{key}={_dsn_value(value)}" for key, value in pairs)

    def url(self) -> str:
        """`postgresql://` connection URI."""

        return "postgresql://{user}:{password}@{host}:{port}/{database}?sslmode={mode}".format(
            user=quote(self.user, safe=""),
            password=quote(self.password, safe=""),
            host=self.host,
            port=self.port,
            database=quote(self.database, safe=""),
            mode=self.ssl_mode,
        )

    def __str__(self) -> str:
        return self.dsn()

    def with_database(self, database: str) -> ConnectionSettings:
        """Return an independent copy targeting another database."""

        return self.model_copy(update={"database": database})

    def pool_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for `asyncpg.create_pool`."""

        return {"dsn": self.url(), "min_size": 1, "max_size": self.max_open_conns}

    async def connect(self, *, timeout: float = 5.0) -> asyncpg.Connection:
        """Open a direct connection and make sure it answers a trivial query."""

        try:
            conn = await asyncpg.connect(dsn=self.url(), timeout=timeout)
        except Exception as exc:
            raise DatabaseConnectionError(
                f"Failed to connect to {self.host}:{self.port}/{self.database}: {exc}"
            ) from exc
        try:
            await conn.execute("SELECT 1")
        except Exception as exc:
            await conn.close()
            raise DatabaseConnectionError(
                f"Failed to ping {self.host}:{self.port}/{self.database}: {exc}"
            ) from exc
        return conn

    @classmethod
    def parse(cls, text: str) -> ConnectionSettings:
        """Read a DSN or URL produced by `dsn()` / `url()` back into settings."""

        text = text.strip()
        if not text:
            raise ConfigurationError("Empty connection string.")
        if text.startswith(_URL_SCHEMES):
            values = _parse_url(text)
        else:
            values = _parse_dsn(text)
        try:
            return cls(**values)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid connection parameters: {exc}") from exc


class PostgresConfig(BaseModel):
    """Fixture-level settings; see `Option` for the modifier style."""

    repo: str = DEFAULT_POSTGRES_REPO
    version: str = DEFAULT_POSTGRES_VERSION
    name: str = "postgres"
    expire_after: int = Field(default=DEFAULT_EXPIRE_AFTER, ge=0)
    timeout_after: float = Field(default=DEFAULT_TIMEOUT_AFTER, ge=0)
    skip_tear_down: bool = False
    mounts: list[str] = Field(default_factory=list)
    network_name: str = Field(default_factory=lambda: os.environ.get(NETWORK_ENV_VAR, ""))
    settings: ConnectionSettings | None = None

    def apply(self, *opts: Option) -> PostgresConfig:
        """Return a copy with each modifier applied in order."""

        config = self
        for opt in opts:
            config = opt(config)
        return config

    def image(self) -> str:
        return f"{self.repo}:{self.version}"


Option = Callable[[PostgresConfig], PostgresConfig]


def _update(**updates: object) -> Option:
    def _apply(config: PostgresConfig) -> PostgresConfig:
        return config.model_copy(update=copy.deepcopy(updates), deep=True)

    return _apply


def opt_name(name: str) -> Option:
    return _update(name=name)


def opt_settings(settings: ConnectionSettings) -> Option:
    return _update(settings=settings.model_copy())


def opt_repo(repo: str) -> Option:
    return _update(repo=repo)


def opt_version(version: str) -> Option:
    return _update(version=version)


def opt_expire_after(seconds: int) -> Option:
    """Have the provisioner reap the container after this long. Defaults to 600 seconds."""

    return _update(expire_after=seconds)


def opt_timeout_after(seconds: float) -> Option:
    """Wait this long for the server to become ready. Defaults to 30 seconds."""

    return _update(timeout_after=seconds)


def opt_skip_tear_down() -> Option:
    return _update(skip_tear_down=True)


def opt_mounts(mounts: list[str]) -> Option:
    return _update(mounts=list(mounts))


def opt_network_name(network_name: str) -> Option:
    return _update(network_name=network_name)


def load_config(path: Path | None = None) -> PostgresConfig:
    """Load fixture defaults from disk; fall back to defaults if missing."""

    try:
        data = _read_config_file(path or CONFIG_FILE)
    except FileNotFoundError:
        return PostgresConfig()
    except (tomllib.TOMLDecodeError, OSError):
        return PostgresConfig()
    return PostgresConfig(**data)


def _read_config_file(path: Path) -> dict[str, object]:
    with path.open("rb") as handle:
        raw = tomllib.load(handle)
    section = raw.get("pgtest", raw)
    data: dict[str, object] = {}
    if not isinstance(section, dict):
        return data
    for key in ("repo", "version", "name", "network_name"):
        value = section.get(key)
        if isinstance(value, str):
            data[key] = value
    expire_after = section.get("expire_after")
    if isinstance(expire_after, int) and not isinstance(expire_after, bool) and expire_after >= 0:
        data["expire_after"] = expire_after
    timeout_after = section.get("timeout_after")
    if isinstance(timeout_after, (int, float)) and not isinstance(timeout_after, bool) and timeout_after >= 0:
        data["timeout_after"] = timeout_after
    skip = section.get("skip_tear_down")
    if isinstance(skip, bool):
        data["skip_tear_down"] = skip
    mounts = section.get("mounts")
    if isinstance(mounts, list):
        data["mounts"] = [str(mount) for mount in mounts]
    return data


def _dsn_value(value: str) -> str:
    if value and not _DSN_NEEDS_QUOTES.search(value):
        return value
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def _parse_dsn(text: str) -> dict[str, object]:
    values: dict[str, object] = {}
    position = 0
    while position < len(text):
        match = _DSN_PAIR.match(text, position)
        if match is None or match.end() == position:
            raise ConfigurationError(f"Malformed connection string near: {text[position:]!r}")
        key, raw = match.group(1), match.group(2)
        if raw.startswith("'"):
            raw = re.sub(r"\\(.)", r"\1", raw[1:-1])
        values[key] = raw
        position = match.end()
        while position < len(text) and text[position].isspace():
            position += 1
    return _normalize(values)


def _parse_url(text: str) -> dict[str, object]:
    try:
        parts = urlsplit(text)
        port = parts.port
    except ValueError as exc:
        raise ConfigurationError(f"Malformed connection URL: {exc}") from exc
    values: dict[str, object] = {}
    if parts.hostname:
        values["host"] = parts.hostname
    if port is not None:
        values["port"] = port
    if parts.username is not None:
        values["user"] = unquote(parts.username)
    if parts.password is not None:
        values["password"] = unquote(parts.password)
    if parts.path.strip("/"):
        values["dbname"] = unquote(parts.path.lstrip("/"))
    for key, items in parse_qs(parts.query).items():
        values[key] = items[-1]
    return _normalize(values)


def _normalize(values: dict[str, object]) -> dict[str, object]:
    normalized: dict[str, object] = {}
    for key, value in values.items():
        if key == "dbname":
            normalized["database"] = value
        elif key == "sslmode":
            normalized["disable_ssl"] = value == "disable"
        elif key in {"host", "port", "user", "password"}:
            normalized[key] = value
        else:
            raise ConfigurationError(f"Unsupported connection parameter: {key}")
    return normalized


__all__ = [
    "CONFIG_FILE",
    "ConnectionSettings",
    "DEFAULT_POSTGRES_REPO",
    "DEFAULT_POSTGRES_VERSION",
    "NETWORK_ENV_VAR",
    "Option",
    "PostgresConfig",
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
]
