"""In-memory Tournament registry.

Tournaments are mutated only by the scheduler task that runs them; the
store just owns the id → aggregate mapping and answers status queries.
Terminal tournaments are kept for ``retention`` after they conclude, then
dropped by ``purge_terminal``.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from datetime import datetime, timedelta

from deep_reason.domain.enums import TournamentState
from deep_reason.domain.errors import TournamentNotFound
from deep_reason.domain.tournament import Tournament, TournamentSnapshot

logger = logging.getLogger(__name__)


class TournamentStore:
    """Async-safe registry of tournaments."""

    def __init__(self, retention: timedelta = timedelta(hours=1)) -> None:
        if retention < timedelta(0):
            raise ValueError("retention must not be negative")
        self._retention = retention
        self._lock = asyncio.Lock()
        self._tournaments: dict[str, Tournament] = {}

    async def add(self, tournament: Tournament) -> None:
        async with self._lock:
            self._tournaments[tournament.tournament_id] = tournament
            logger.debug("Registered tournament %s", tournament.tournament_id)

    async def get(self, tournament_id: str) -> Tournament:
        """Return the live tournament.

        Raises:
            TournamentNotFound: If the id was never registered.
        """
        async with self._lock:
            tournament = self._tournaments.get(tournament_id)
            if tournament is None:
                raise TournamentNotFound(tournament_id)
            return tournament

    async def snapshot(self, tournament_id: str) -> TournamentSnapshot:
        tournament = await self.get(tournament_id)
        return tournament.snapshot()

    async def purge_terminal(self, now: datetime) -> list[str]:
        """Drop terminal tournaments concluded longer than the retention ago."""
        async with self._lock:
            stale = [
                tid for tid, t in self._tournaments.items()
                if t.state.is_terminal
                and t.concluded_at is not None
                and t.concluded_at + self._retention < now
            ]
            for tid in stale:
                del self._tournaments[tid]
            if stale:
                logger.info("Purged %d terminal tournament(s)", len(stale))
            return stale

    async def tournaments(self) -> list[Tournament]:
        async with self._lock:
            return list(self._tournaments.values())

    async def state_counts(self) -> dict[str, int]:
        async with self._lock:
            counts = Counter(t.state.value for t in self._tournaments.values())
            return {state.value: counts.get(state.value, 0) for state in TournamentState}
