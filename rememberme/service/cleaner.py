from __future__ import annotations

import asyncio
from typing import Optional

from rememberme.logging import get_logger
from rememberme.service.authenticator import Authenticator
from rememberme.service.errors import ConfigurationError

logger = get_logger(__name__)

DEFAULT_CLEANER_PERIOD_SECONDS = 86_400


class Cleaner:
    """Background task expiring old logins and their sessions.

    Each tick calls :meth:`Authenticator.clean_old_logins` on a worker thread
    so the blocking store calls never stall the event loop. A failed tick is
    logged and the next one runs after the usual period.
    """

    def __init__(
        self,
        authenticator: Authenticator,
        *,
        period: float = DEFAULT_CLEANER_PERIOD_SECONDS,
        max_age: Optional[int] = None,
        initial_delay: Optional[float] = None,
    ) -> None:
        if period is None or period <= 0:
            raise ConfigurationError(reason="bad_cleaner_period")
        if max_age is None:
            max_age = authenticator.options.cookie_max_age
        if max_age <= 0:
            raise ConfigurationError(reason="bad_cookie_max_age")
        if initial_delay is not None and initial_delay < 0:
            raise ConfigurationError(reason="bad_cleaner_period")
        self.authenticator = authenticator
        self.period = period
        self.max_age = max_age
        self.initial_delay = period if initial_delay is None else initial_delay
        self.ticks = 0
        self.last_removed = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    def run_once(self) -> int:
        """Run one sweep on the calling thread and return the number of expired logins."""
        removed = self.authenticator.clean_old_logins(self.max_age)
        self.ticks += 1
        self.last_removed = removed
        return removed

    async def start(self) -> None:
        if self._running:
            logger.warning("cleaner_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("cleaner_started", period=self.period, max_age=self.max_age)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("cleaner_stopped")

    async def _run_loop(self) -> None:
        delay = self.initial_delay
        while self._running:
            await asyncio.sleep(delay)
            delay = self.period
            try:
                removed = await asyncio.to_thread(self.run_once)
            except Exception as exc:
                logger.error(
                    "cleaner_tick_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    retry_in=self.period,
                )
                continue
            logger.debug("cleaner_tick", removed=removed)


__all__ = ["Cleaner", "DEFAULT_CLEANER_PERIOD_SECONDS"]
