"""Periodic housekeeping for the session and tournament stores.

Each pass:
    1. Expires sessions idle past their timeout.
    2. Destroys terminal sessions past the retention window.
    3. Evicts the oldest terminal sessions while over the total memory budget.
    4. Drops terminal tournaments past their retention window, if a
       tournament store is attached.

The sweeper is started by the application lifespan and cancelled on
shutdown.  ``sweep_once`` is the unit of work and can be called directly.
"""

from __future__ import annotations

import asyncio
import logging

from pydantic import BaseModel, Field

from deep_reason.core.memory_manager import MemoryBudgetManager
from deep_reason.store.session_store import SessionStore
from deep_reason.store.tournament_store import TournamentStore

logger = logging.getLogger(__name__)


class SweepReport(BaseModel):
    expired: list[str] = Field(default_factory=list)
    purged: list[str] = Field(default_factory=list)
    evicted: list[str] = Field(default_factory=list)
    purged_tournaments: list[str] = Field(default_factory=list)


class SessionSweeper:
    """Background asyncio task running sweep passes at a fixed interval."""

    def __init__(
        self,
        store: SessionStore,
        memory: MemoryBudgetManager,
        interval_seconds: float = 60.0,
        tournaments: TournamentStore | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._store = store
        self._memory = memory
        self._tournaments = tournaments
        self._interval = interval_seconds
        self._task: asyncio.Task | None = None
        self.running = False

    async def sweep_once(self) -> SweepReport:
        now = self._store.clock()
        report = SweepReport(
            expired=await self._store.sweep_expired(now),
            purged=await self._store.purge_terminal(now),
            evicted=await self._memory.rebalance(self._store),
        )
        if self._tournaments is not None:
            report.purged_tournaments = await self._tournaments.purge_terminal(now)
        if report.expired or report.purged or report.evicted or report.purged_tournaments:
            logger.info(
                "Sweep: expired=%d purged=%d evicted=%d tournaments=%d",
                len(report.expired), len(report.purged), len(report.evicted),
                len(report.purged_tournaments),
            )
        return report

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self.running = True
        self._task = asyncio.create_task(self._loop(), name="session-sweeper")
        logger.info("Session sweeper started (interval=%.1fs)", self._interval)

    async def stop(self) -> None:
        self.running = False
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Session sweeper stopped")

    async def _loop(self) -> None:
        while self.running:
            try:
                await asyncio.sleep(self._interval)
                await self.sweep_once()
            except asyncio.CancelledError:
                break
            except Exception as error:
                logger.error("Sweep error: %s", error)
