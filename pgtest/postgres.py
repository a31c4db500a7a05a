"""Entry points that hand out a ready-to-use PostgreSQL fixture."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from .errors import FixtureAbort
from .fixture import PostgresFixture
from .provisioner import Provisioner
from .settings import Option, PostgresConfig


class Postgres(PostgresFixture):
    """PostgreSQL fixture with constructors that guarantee a healthy server."""

    @classmethod
    async def create(
        cls,
        *opts: Option,
        config: PostgresConfig | None = None,
        provisioner: Provisioner | None = None,
        logger: logging.Logger | None = None,
    ) -> Postgres:
        """Launch a container, wait for it, and health-check a pooled connection.

        Any failure leaves nothing running and surfaces the original error.
        """

        postgres = cls(config, *opts, provisioner=provisioner, logger=logger)
        await postgres.set_up()
        async with postgres.guard():
            await postgres.ping()
        return postgres

    @classmethod
    async def must_create(
        cls,
        *opts: Option,
        config: PostgresConfig | None = None,
        provisioner: Provisioner | None = None,
        logger: logging.Logger | None = None,
    ) -> Postgres:
        try:
            return await cls.create(*opts, config=config, provisioner=provisioner, logger=logger)
        except Exception as exc:
            raise FixtureAbort(f"failed to set up postgres: {exc}") from exc

    @classmethod
    @asynccontextmanager
    async def managed(
        cls,
        *opts: Option,
        config: PostgresConfig | None = None,
        provisioner: Provisioner | None = None,
        logger: logging.Logger | None = None,
    ) -> AsyncIterator[Postgres]:
        """Scope a fixture to an `async with` block; the container is always released.

        If the block raises, teardown problems are logged and the block's own
        error propagates. On a clean exit teardown errors propagate.
        """

        postgres = await cls.create(*opts, config=config, provisioner=provisioner, logger=logger)
        async with postgres.guard():
            yield postgres
        await postgres.tear_down()


__all__ = ["Postgres"]
