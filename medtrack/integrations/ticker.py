"""Cancellable live display of time elapsed since the last dose."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from medtrack.core.errors import NotFoundError
from medtrack.data.repository import SubstanceRepository
from medtrack.data.safety import elapsed_hours, last_dose_time

logger = logging.getLogger(__name__)

ElapsedCallback = Callable[[float], Awaitable[None] | None]

TICK_SECONDS = 1.0


class ElapsedTicker:
    """Re-reads the last dose every tick and reports hours elapsed.

    Owned by the presentation layer. It never writes to the store and can be
    stopped at any time.
    """

    def __init__(
        self,
        repository: SubstanceRepository,
        substance_id: str,
        callback: ElapsedCallback,
        interval: float = TICK_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.substance_id = substance_id
        self.callback = callback
        self.interval = interval
        self.clock = clock or (lambda: datetime.now(UTC))
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def current_elapsed(self) -> float | None:
        """Hours since the last committed dose, or None when there is none."""
        substance = self.repository.get_substance(self.substance_id)
        last = last_dose_time(substance.get("doses", []))
        if last is None:
            return None
        return elapsed_hours(self.clock(), last)

    async def start(self) -> None:
        """Start ticking."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Elapsed ticker started for %s", self.substance_id)

    async def stop(self) -> None:
        """Stop ticking."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("Elapsed ticker stopped for %s", self.substance_id)

    async def _loop(self) -> None:
        while self._running:
            try:
                hours = self.current_elapsed()
            except NotFoundError:
                logger.warning("Substance %s no longer exists; stopping ticker", self.substance_id)
                self._running = False
                return
            if hours is not None:
                result = self.callback(hours)
                if asyncio.iscoroutine(result):
                    await result
            await asyncio.sleep(self.interval)
