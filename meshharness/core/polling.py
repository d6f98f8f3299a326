"""Bounded polling shared by convergence, shutdown and work-state waits."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from loguru import logger

from meshharness.core.errors import ConvergenceTimeoutError
from meshharness.datastructures.type_aliases import DurationSeconds

T = TypeVar("T")


async def poll_until(
    probe: Callable[[], Awaitable[T]],
    accept: Callable[[T], bool],
    *,
    timeout: DurationSeconds,
    interval: DurationSeconds,
    description: str,
    error_type: type[ConvergenceTimeoutError] = ConvergenceTimeoutError,
) -> T:
    """Run ``probe`` until ``accept`` returns True for its result.

    Each probe runs under the remaining deadline, so a hung probe cannot
    outlive the caller's timeout. Exceptions raised by ``probe`` propagate
    immediately; only results rejected by ``accept`` are retried. On expiry
    ``error_type`` is raised carrying the last observed result.

    Nothing is scheduled in the background: when this returns or raises, no
    polling activity remains.
    """
    if timeout <= 0:
        raise ValueError("timeout must be positive")
    if interval <= 0:
        raise ValueError("interval must be positive")

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    attempts = 0
    last_observed: T | None = None

    def _expired() -> ConvergenceTimeoutError:
        return error_type(
            description,
            timeout=timeout,
            attempts=attempts,
            last_observed=last_observed,
        )

    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise _expired()

        scope = asyncio.timeout(remaining)
        try:
            async with scope:
                observed = await probe()
        except TimeoutError:
            if scope.expired():
                raise _expired() from None
            raise

        attempts += 1
        last_observed = observed
        if accept(observed):
            logger.debug("{} satisfied after {} attempts", description, attempts)
            return observed

        remaining = deadline - loop.time()
        if remaining <= 0:
            raise _expired()
        await asyncio.sleep(min(interval, remaining))
