"""Bounded, fixed-interval polling.

Every wait in a deployment (instance state, health probes, remote
commands, build jobs, service stability, database availability) is
expressed as a :class:`Poller` and driven by :func:`poll_until`.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, TypeVar

from smartdeploy.core.exceptions import ConvergenceTimeoutError, TransientError
from smartdeploy.utils.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)

ProgressCallback = Callable[[int, str], Awaitable[None]]


@dataclass
class PollResult(Generic[T]):
    """Outcome of a single poll attempt."""

    done: bool
    value: T | None = None
    message: str | None = None

    @classmethod
    def ready(cls, value: T | None = None, message: str | None = None) -> "PollResult[T]":
        return cls(done=True, value=value, message=message)

    @classmethod
    def pending(cls, message: str | None = None) -> "PollResult[T]":
        return cls(done=False, message=message)


@dataclass
class Poller(Generic[T]):
    """A bounded polling loop description."""

    attempt: Callable[[], Awaitable[PollResult[T]]]
    interval: float
    max_attempts: int
    description: str


async def poll_until(
    poller: Poller[T],
    on_progress: ProgressCallback | None = None,
) -> T | None:
    """Run ``poller`` until an attempt reports done.

    A :class:`TransientError` raised by an attempt counts as "not yet".
    Any other exception aborts the loop. Raises
    :class:`ConvergenceTimeoutError` when the attempt budget is spent.
    """
    last_message: str | None = None

    for attempt in range(1, poller.max_attempts + 1):
        try:
            result = await poller.attempt()
        except TransientError as e:
            result = PollResult.pending(e.message)

        if result.done:
            logger.debug(
                "poll.completed",
                description=poller.description,
                attempt=attempt,
            )
            return result.value

        last_message = result.message
        if on_progress and result.message:
            await on_progress(attempt, result.message)

        if attempt < poller.max_attempts:
            await asyncio.sleep(poller.interval)

    logger.warning(
        "poll.exhausted",
        description=poller.description,
        attempts=poller.max_attempts,
        last_message=last_message,
    )
    raise ConvergenceTimeoutError(poller.description, poller.max_attempts, last_message)
