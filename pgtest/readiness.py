"""Bounded retry loop that waits for a freshly started server.

`backoff` yields the delay to wait after each failed attempt; `retry` keeps
calling an async operation until it succeeds or the deadline passes. A single
attempt is cancelled once it runs into the deadline. Errors
raised by individual attempts are logged and swallowed; only the final
`ReadinessTimeoutError` reaches the caller, chained to the last failure.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from .errors import ProvisioningError, ReadinessTimeoutError, ServerNotReadyError

LOG = logging.getLogger(__name__)

T = TypeVar("T")

PG_ISREADY_REASONS = {
    1: "server is rejecting connections",
    2: "no response",
    3: "no attempt was made",
}


def pg_isready_reason(status: int) -> str:
    """Human readable reason for a `pg_isready` exit status."""

    return PG_ISREADY_REASONS.get(status, "unknown")


async def backoff(initial_delay: float, max_delay: float, multiplier: float) -> AsyncIterator[float]:
    delay = initial_delay
    while True:
        yield delay
        delay = min(delay * multiplier, max_delay)


async def retry(
    timeout: float,
    attempt: Callable[[], Awaitable[T]],
    *,
    description: str = "operation",
    initial_delay: float = 0.1,
    max_delay: float = 1.0,
    multiplier: float = 2.0,
) -> T:
    """Call `attempt` until it succeeds or `timeout` seconds have elapsed."""

    deadline = time.monotonic() + timeout
    attempts = 0
    last_error: Exception | None = None
    async for delay in backoff(initial_delay, max_delay, multiplier):
        attempts += 1
        budget = max(deadline - time.monotonic(), 0.0)
        try:
            async with asyncio.timeout(budget):
                return await attempt()
        except TimeoutError:
            last_error = TimeoutError(f"attempt {attempts} did not finish within {budget:.2f}s")
            LOG.debug(
                "Attempt timed out",
                extra={"target": description, "attempt": attempts, "error": str(last_error)},
            )
        except Exception as exc:
            last_error = exc
            LOG.debug(
                "Attempt failed, retrying",
                extra={"target": description, "attempt": attempts, "error": str(exc)},
            )
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        await asyncio.sleep(min(delay, remaining))
    raise ReadinessTimeoutError(
        f"gave up waiting for {description} after {attempts} attempt(s): {last_error}",
        attempts=attempts,
    ) from last_error


class ReadinessProber:
    """Polls a server until it accepts connections.

    Each probe resolves the published port, runs the `pg_isready` style check,
    and only then confirms with a real client connection.
    """

    def __init__(
        self,
        *,
        resolve_port: Callable[[], Awaitable[int | None]],
        check: Callable[[], Awaitable[int]],
        confirm: Callable[[], Awaitable[None]],
        initial_delay: float = 0.1,
        max_delay: float = 1.0,
    ) -> None:
        self._resolve_port = resolve_port
        self._check = check
        self._confirm = confirm
        self._initial_delay = initial_delay
        self._max_delay = max_delay

    async def wait(self, timeout: float, *, description: str = "postgres") -> None:
        await retry(
            timeout,
            self._probe,
            description=description,
            initial_delay=self._initial_delay,
            max_delay=self._max_delay,
        )

    async def _probe(self) -> None:
        port = await self._resolve_port()
        if port is None:
            raise ProvisioningError("could not get port from container")
        status = await self._check()
        if status != 0:
            raise ServerNotReadyError(status, pg_isready_reason(status))
        await self._confirm()


__all__ = ["PG_ISREADY_REASONS", "ReadinessProber", "backoff", "pg_isready_reason", "retry"]
