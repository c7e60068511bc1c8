"""Bounded polling of an asynchronous "is it ready yet" check.

Every wait in the project goes through :class:`ConvergenceWaiter`: waiting for
a freshly applied feature to report healthy, and waiting for a teardown
precondition (relay pods drained, test namespace terminated) to hold.

The probe is an async callable returning ``True`` once the condition holds.
``TransientError`` and ``NotFoundError`` mean "not yet": the object being
waited on may simply not be visible in the API server's cache. Any other
exception is fatal and ends the wait on the spot, since a rejected
configuration will not become healthy by waiting longer.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from ciliumctl.shared.errors import NotFoundError, TransientError
from ciliumctl.shared.models import ConvergenceOutcome

logger = logging.getLogger(__name__)

Probe = Callable[[], Awaitable[bool]]
Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]

DEFAULT_INTERVAL = 2.0

_NOT_READY = (TransientError, NotFoundError)


class ConvergenceWaiter:
    """Poll a probe on a fixed interval until healthy, fatal, or deadline."""

    def __init__(
        self,
        interval: float = DEFAULT_INTERVAL,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        if interval <= 0:
            raise ValueError("poll interval must be positive")
        self.interval = interval
        self._clock = clock
        self._sleep = sleep

    def now(self) -> float:
        return self._clock()

    async def wait(
        self, probe: Probe, deadline: float, *, description: str = "condition"
    ) -> ConvergenceOutcome:
        """Poll ``probe`` for at most ``deadline`` seconds.

        Cancelling the awaiting task interrupts the sleep and propagates
        ``asyncio.CancelledError``; nothing keeps polling in the background.
        """

        started = self._clock()
        polls = 0
        last_error: Optional[BaseException] = None

        while True:
            polls += 1
            try:
                healthy = await probe()
            except _NOT_READY as exc:
                healthy = False
                last_error = exc
                logger.debug("%s not ready yet (poll %d): %s", description, polls, exc)
            except Exception as exc:
                elapsed = self._clock() - started
                logger.warning("%s failed after %d poll(s): %s", description, polls, exc)
                return ConvergenceOutcome(
                    healthy=False, last_error=exc, elapsed=elapsed, polls=polls, fatal=True
                )
            else:
                if healthy:
                    elapsed = self._clock() - started
                    logger.info("%s satisfied after %.1fs (%d poll(s))", description, elapsed, polls)
                    return ConvergenceOutcome(healthy=True, elapsed=elapsed, polls=polls)

            elapsed = self._clock() - started
            remaining = deadline - elapsed
            if remaining <= 0:
                logger.warning(
                    "%s still pending after %.1fs (%d poll(s))", description, elapsed, polls
                )
                return ConvergenceOutcome(
                    healthy=False, last_error=last_error, elapsed=elapsed, polls=polls
                )
            await self._sleep(min(self.interval, remaining))
