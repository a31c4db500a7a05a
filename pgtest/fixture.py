"""Lifecycle and connection engine for a disposable PostgreSQL container."""

from __future__ import annotations

import asyncio
import glob
import logging
import shlex
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Sequence

import asyncpg

from . import catalog
from .errors import (
    CatalogQueryError,
    CloneError,
    ConfigurationError,
    DatabaseConnectionError,
    ExternalCommandError,
    FixtureAbort,
    FixtureStateError,
    RoleAssumptionError,
)
from .names import find_path, generate_password, memory_mb, quote_ident, random_name
from .options import ConnectOptions, ConnOpt, conn_database
from .provisioner import Container, DockerProvisioner, LaunchSpec, Provisioner
from .readiness import ReadinessProber
from .settings import (
    DEFAULT_EXPIRE_AFTER,
    DEFAULT_TIMEOUT_AFTER,
    ConnectionSettings,
    Option,
    PostgresConfig,
)
from .validation import validate_model, validate_models

LOG = logging.getLogger(__name__)

POSTGRES_PORT = 5432
MAINTENANCE_DATABASE = "postgres"

REVOKE_CONNECT_SQL = "REVOKE CONNECT ON DATABASE {database} FROM public"

TERMINATE_SESSIONS_SQL = """
    SELECT pid, pg_terminate_backend(pid)
    FROM pg_stat_activity
    WHERE datname = $1 AND pid <> pg_backend_pid()
"""


class FixtureState(str, Enum):
    """Lifecycle of a fixture's backing container."""

    UNINITIALIZED = "uninitialized"
    PROVISIONING = "provisioning"
    READY = "ready"
    TORN_DOWN = "torn_down"
    FAILED = "failed"


def server_flags(memory: int) -> tuple[str, ...]:
    """`postgres -c ...` flags trading durability for speed.

    https://www.postgresql.org/docs/current/non-durability.html
    """

    settings = (
        "fsync=off",
        "synchronous_commit=off",
        "full_page_writes=off",
        "random_page_cost=1.1",
        f"shared_buffers={memory // 8}MB",
        f"work_mem={memory // 8}MB",
    )
    flags: list[str] = []
    for setting in settings:
        flags += ["-c", setting]
    return tuple(flags)


class PostgresFixture:
    """A PostgreSQL server in a throwaway container, plus helpers to use it."""

    def __init__(
        self,
        config: PostgresConfig | None = None,
        *opts: Option,
        provisioner: Provisioner | None = None,
        logger: logging.Logger | None = None,
        poll_interval: float = 0.1,
    ) -> None:
        self._config = (config or PostgresConfig()).apply(*opts)
        self._provisioner = provisioner or DockerProvisioner()
        self._log = logger or LOG
        self._poll_interval = poll_interval
        self._settings = self._config.settings.model_copy() if self._config.settings else None
        self._container: Container | None = None
        self._state = FixtureState.UNINITIALIZED

    @property
    def config(self) -> PostgresConfig:
        return self._config

    @property
    def state(self) -> FixtureState:
        return self._state

    @property
    def container(self) -> Container | None:
        return self._container

    @property
    def settings(self) -> ConnectionSettings:
        """Connection settings for the primary database."""

        if self._settings is None:
            raise FixtureStateError("connection settings are not known before set_up")
        return self._settings

    def host_name(self) -> str:
        return self._container.name if self._container else ""

    async def set_up(self) -> None:
        """Launch the container and wait until the server answers queries."""

        if self._state is not FixtureState.UNINITIALIZED:
            raise FixtureStateError(f"cannot set up a fixture that is {self._state.value}")
        self._state = FixtureState.PROVISIONING
        try:
            await self._launch()
            await self.wait_for_ready(self._config.timeout_after or DEFAULT_TIMEOUT_AFTER)
        except BaseException:
            self._state = FixtureState.FAILED
            await self._discard_failed_container()
            raise
        self._state = FixtureState.READY

    async def tear_down(self) -> None:
        """Release the container. Safe to call more than once."""

        if self._config.skip_tear_down:
            return
        container = self._container
        if container is None:
            return
        self._container = None
        self._state = FixtureState.TORN_DOWN
        await asyncio.to_thread(self._provisioner.purge, container)

    @asynccontextmanager
    async def guard(self) -> AsyncIterator[PostgresFixture]:
        """Tear down if the wrapped block raises, then re-raise the original error."""

        try:
            yield self
        except GeneratorExit:
            raise
        except BaseException:
            try:
                await self.tear_down()
            except Exception as exc:
                self._log.warning("failed to tear down", extra={"error": str(exc), "container": self.host_name()})
            raise

    async def connect(self, *opts: ConnOpt) -> asyncpg.Pool:
        """Open a pool against the primary database, or as the options direct.

        With `conn_create_copy()` the target database is cloned first and the
        pool is opened against the clone. The caller owns and closes the pool.
        """

        self._require_ready("connect")
        options = ConnectOptions.build(*opts)
        database = options.database or self.settings.database
        if options.create_copy:
            target = random_name("copy")
            await self.copy_database(database, target)
            database = target
        settings = self.settings.with_database(database)
        setup = _assume_role(options.role) if options.role else None
        try:
            pool = await asyncpg.create_pool(**settings.pool_kwargs(), setup=setup)
        except Exception as exc:
            raise DatabaseConnectionError(f"Failed to open a pool on database '{database}': {exc}") from exc
        if options.role:
            try:
                await pool.execute("SELECT 1")
            except RoleAssumptionError:
                await pool.close()
                raise
            except Exception as exc:
                await pool.close()
                raise DatabaseConnectionError(f"Failed to use pool on database '{database}': {exc}") from exc
        return pool

    async def must_connect(self, *opts: ConnOpt) -> asyncpg.Pool:
        try:
            return await self.connect(*opts)
        except Exception as exc:
            raise FixtureAbort(f"failed to connect to postgres: {exc}") from exc

    async def psql(self, command: Sequence[str], mounts: Sequence[str] = (), *, quiet: bool = False) -> int:
        """Run a client tool (psql, createdb, pg_dump, ...) against the server.

        A nonzero exit raises `ExternalCommandError` unless `quiet` is set, in
        which case the exit status is returned for the caller to interpret.
        """

        container = self._require_container()
        settings = self.settings
        env = {
            "PGUSER": settings.user,
            "PGPASSWORD": settings.password,
            "PGDATABASE": settings.database,
            "PGHOST": "127.0.0.1",
            "PGPORT": str(POSTGRES_PORT),
        }
        result = await asyncio.to_thread(
            self._provisioner.exec,
            container,
            list(command),
            env=env,
            mounts=tuple(mounts),
            remove=not self._config.skip_tear_down,
        )
        if result.exit_code != 0 and not quiet:
            self._log.debug(
                "psql failed",
                extra={
                    "status": result.exit_code,
                    "container": container.name,
                    "cmd": " ".join(command),
                    "output": result.output,
                },
            )
            raise ExternalCommandError(command, result.exit_code, result.output)
        return result.exit_code

    async def ping_psql(self) -> None:
        await self.psql(["psql", "-c", ";"])

    async def ping(self) -> None:
        pool = await self.connect()
        try:
            await pool.execute("SELECT 1")
        except Exception as exc:
            raise DatabaseConnectionError(f"Failed to ping postgres: {exc}") from exc
        finally:
            await pool.close()

    async def create_database(self, name: str) -> None:
        if not name:
            raise ConfigurationError("must provide a database name")
        self._require_ready("create a database")
        status = await self.psql(["createdb", "--template=template0", name])
        self._log.debug("create database", extra={"status": status, "database": name, "container": self.host_name()})

    async def copy_database(self, source: str, target: str, *, terminate_source_sessions: bool = False) -> None:
        """Create `target` as a template copy of `source` (defaults to the primary database).

        Postgres refuses to copy a template with open sessions. Callers close
        their own connections first, or pass `terminate_source_sessions=True`
        to have every other session on `source` terminated.
        """

        if not target:
            raise ConfigurationError("must provide a target database name")
        self._require_ready("copy a database")
        source = source or self.settings.database
        if terminate_source_sessions:
            await self._terminate_sessions(source)
        try:
            status = await self.psql(["createdb", f"--template={source}", target])
        except ExternalCommandError as exc:
            raise CloneError(
                source,
                target,
                f"failed to copy database '{source}' to '{target}' (code: {exc.exit_code}): {exc.output}",
            ) from exc
        self._log.debug(
            "copy database",
            extra={"status": status, "source": source, "target": target, "container": self.host_name()},
        )

    async def drop_database(self, name: str) -> None:
        """Revoke new connections, terminate existing sessions, then drop."""

        if not name:
            raise ConfigurationError("must provide a database name")
        pool = await self.connect(conn_database(name))
        try:
            await pool.execute(REVOKE_CONNECT_SQL.format(database=quote_ident(name)))
            await pool.execute(TERMINATE_SESSIONS_SQL, name)
        except Exception as exc:
            raise CatalogQueryError(f"Failed to close sessions on database '{name}': {exc}") from exc
        finally:
            await pool.close()
        status = await self.psql(["dropdb", name])
        self._log.debug("drop database", extra={"status": status, "database": name, "container": self.host_name()})

    async def dump(self, directory: str | Path, filename: str) -> None:
        """Write a custom-format dump of the primary database into `directory`."""

        path = self._resolve_directory(directory)
        database = self.settings.database
        script = f"pg_dump -Fc -Z0 {shlex.quote(database)} > /tmp/{shlex.quote(filename)}"
        status = await self.psql(["sh", "-c", script], [f"{path}:/tmp"])
        self._log.debug(
            "dump database",
            extra={"status": status, "database": database, "container": self.host_name(), "path": str(path)},
        )

    async def restore(self, directory: str | Path, filename: str) -> None:
        """Restore a dump written by `dump` into the primary database."""

        path = self._resolve_directory(directory)
        database = self.settings.database
        script = (
            f"pg_restore --dbname={shlex.quote(database)} --verbose --single-transaction "
            f"/tmp/{shlex.quote(filename)}"
        )
        status = await self.psql(["sh", "-c", script], [f"{path}:/tmp"])
        self._log.debug(
            "restore database",
            extra={"status": status, "database": database, "container": self.host_name(), "path": str(path)},
        )

    async def load_sql(self, path: str | Path) -> None:
        """Run a `.sql` file, or every `*.sql` file in a directory, against the primary database."""

        self._require_ready("load sql")
        target = Path(path)
        if target.is_dir():
            for file in sorted(target.glob("*.sql")):
                await self._load_sql_file(file)
        elif target.is_file():
            await self._load_sql_file(target)
        else:
            raise ConfigurationError(f"could not resolve path: {path}")

    async def load_sql_pattern(self, pattern: str) -> None:
        """Run every file matching a glob pattern against the primary database."""

        for file in sorted(glob.glob(pattern)):
            await self.load_sql(file)

    async def wait_for_ready(self, timeout: float) -> None:
        """Poll until the server accepts connections, or raise `ReadinessTimeoutError`."""

        container = self._require_container()
        network = self._config.network_name
        settings = self.settings

        async def _resolve_port() -> int | None:
            port = await asyncio.to_thread(self._provisioner.resolve_port, container, network, POSTGRES_PORT)
            if port is not None:
                settings.port = port
            return port

        async def _check() -> int:
            return await self.psql(["pg_isready"], quiet=True)

        async def _confirm() -> None:
            conn = await settings.connect()
            await conn.close()

        prober = ReadinessProber(
            resolve_port=_resolve_port,
            check=_check,
            confirm=_confirm,
            initial_delay=self._poll_interval,
            max_delay=max(self._poll_interval, 1.0),
        )
        await prober.wait(timeout)

    async def table_exists(self, database: str, schema: str, table: str) -> bool:
        async with self._catalog(database) as pool:
            return await catalog.table_exists(pool, schema, table)

    async def table_columns(self, database: str, schema: str, table: str) -> tuple[str, ...]:
        async with self._catalog(database) as pool:
            return await catalog.table_columns(pool, schema, table)

    async def tables(self, database: str) -> tuple[str, ...]:
        async with self._catalog(database) as pool:
            return await catalog.tables(pool)

    async def validate_model(self, database: str, model: Any) -> None:
        """Check one model against `database` (empty means the primary database)."""

        await validate_model(self, database, model)

    async def validate_models(self, database: str, *models: Any) -> None:
        await validate_models(self, database, *models)

    @asynccontextmanager
    async def _catalog(self, database: str) -> AsyncIterator[asyncpg.Pool]:
        pool = await self.connect(conn_database(database))
        try:
            yield pool
        finally:
            await pool.close()

    async def _launch(self) -> None:
        config = self._config
        if self._settings is None:
            self._settings = ConnectionSettings(
                user="postgres",
                password=generate_password(),
                database=config.name,
                disable_ssl=True,
            )
        settings = self._settings
        spec = LaunchSpec(
            name=random_name(config.name),
            image=config.image(),
            env={
                "POSTGRES_USER": settings.user,
                "POSTGRES_PASSWORD": settings.password,
                "POSTGRES_DB": settings.database,
            },
            command=server_flags(memory_mb()),
            network=config.network_name,
            mounts=tuple(config.mounts),
            ports=(POSTGRES_PORT,),
        )
        self._container = await asyncio.to_thread(self._provisioner.launch, spec)
        settings.host = await asyncio.to_thread(
            self._provisioner.resolve_address, self._container, config.network_name
        )
        await asyncio.to_thread(
            self._provisioner.expire, self._container, config.expire_after or DEFAULT_EXPIRE_AFTER
        )
        self._log.debug(
            "launched postgres",
            extra={"container": self._container.name, "image": spec.image, "host": settings.host},
        )

    async def _discard_failed_container(self) -> None:
        container = self._container
        if container is None or self._config.skip_tear_down:
            return
        self._container = None
        try:
            await asyncio.to_thread(self._provisioner.purge, container)
        except Exception as exc:
            self._log.warning("failed to remove container after failed set up", extra={"error": str(exc)})

    async def _terminate_sessions(self, database: str) -> None:
        conn = await self.settings.with_database(MAINTENANCE_DATABASE).connect()
        try:
            await conn.execute(TERMINATE_SESSIONS_SQL, database)
        except Exception as exc:
            raise CatalogQueryError(f"Failed to terminate sessions on database '{database}': {exc}") from exc
        finally:
            await conn.close()

    async def _load_sql_file(self, file: Path) -> None:
        directory = file.resolve().parent
        try:
            status = await self.psql(
                ["psql", "-v", "ON_ERROR_STOP=1", f"--file=/tmp/{file.name}"],
                [f"{directory}:/tmp"],
            )
        except ExternalCommandError:
            self._log.debug("load sql failed", extra={"database": self.settings.database, "file": file.name})
            raise
        self._log.debug(
            "load sql",
            extra={"status": status, "database": self.settings.database, "container": self.host_name(), "file": file.name},
        )

    def _resolve_directory(self, directory: str | Path) -> Path:
        path = find_path(directory)
        if path is None:
            raise ConfigurationError(f"could not resolve path: {directory}")
        return path

    def _require_container(self) -> Container:
        if self._container is None:
            raise FixtureStateError(f"no container is running (fixture is {self._state.value})")
        return self._container

    def _require_ready(self, operation: str) -> None:
        if self._state is not FixtureState.READY:
            raise FixtureStateError(f"cannot {operation}: fixture is {self._state.value}")


def _assume_role(role: str) -> Callable[[Any], Awaitable[None]]:
    """Pool `setup` hook, run on every acquire (release resets the session)."""

    statement = f"SET ROLE {quote_ident(role)}"

    async def _setup(conn: Any) -> None:
        try:
            await conn.execute(statement)
        except Exception as exc:
            raise RoleAssumptionError(role, f"failed to assume role '{role}': {exc}") from exc

    return _setup


__all__ = ["FixtureState", "POSTGRES_PORT", "PostgresFixture", "server_flags"]
