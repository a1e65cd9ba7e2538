"""In-memory AnalysisSession store with async-safe access and idle expiry.

Design notes:
    - An asyncio.Lock guards all state mutations so concurrent request
      handlers and tournament workers never corrupt a session.
    - ``transition`` is the only way to change a session's state.  It is a
      compare-and-set: the caller names the state it believes the session
      is in, and the call fails with InvalidTransition if it is wrong.
    - Each session also owns a mutual-exclusion lock (``lock_for``) held by
      the conversation engine for the duration of one turn or finalize.
      The store never takes that lock itself.
    - Expiry is explicit: ``sweep_expired(now)`` and ``purge_terminal(now)``
      are called by the sweeper service, never by hidden timers.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from datetime import datetime, timedelta

from deep_reason.domain.context import AnalysisContext
from deep_reason.domain.enums import AnalysisType, SessionState, TurnRole
from deep_reason.domain.errors import InvalidContext, InvalidTransition, SessionNotFound
from deep_reason.domain.session import AnalysisSession, SessionSnapshot
from deep_reason.domain.turn import ConversationTurn, TurnPayload
from deep_reason.foundation.clock import Clock, utc_now

logger = logging.getLogger(__name__)

# Permitted moves besides the universal "→ EXPIRED / → FAILED" from any
# non-terminal state.
_ALLOWED: dict[SessionState, frozenset[SessionState]] = {
    SessionState.INITIATED: frozenset({SessionState.ACTIVE}),
    SessionState.ACTIVE: frozenset(
        {SessionState.AWAITING_RESPONSE, SessionState.FINALIZING}
    ),
    SessionState.AWAITING_RESPONSE: frozenset({SessionState.ACTIVE}),
    SessionState.FINALIZING: frozenset({SessionState.COMPLETED}),
}

_ABORT_STATES = frozenset({SessionState.EXPIRED, SessionState.FAILED})


def is_permitted(current: SessionState, target: SessionState) -> bool:
    """Whether the state machine allows ``current → target``."""
    if current.is_terminal:
        return False
    if target in _ABORT_STATES:
        return True
    return target in _ALLOWED.get(current, frozenset())


class SessionStore:
    """Async-safe, in-memory registry of analysis sessions.

    Args:
        idle_timeout: Default inactivity period after which a non-terminal
             session is expired by the sweeper.
        retention: How long terminal sessions are kept for status queries
             before ``purge_terminal`` destroys them.
        clock: Source of "now"; injected so tests can control time.
    """

    def __init__(
        self,
        idle_timeout: timedelta = timedelta(minutes=30),
        retention: timedelta = timedelta(minutes=5),
        clock: Clock = utc_now,
    ) -> None:
        if idle_timeout <= timedelta(0):
            raise ValueError("idle_timeout must be positive")

        self._idle_timeout = idle_timeout
        self._retention = retention
        self._clock = clock
        self._lock = asyncio.Lock()
        self._sessions: dict[str, AnalysisSession] = {}
        self._session_locks: dict[str, asyncio.Lock] = {}

    @property
    def clock(self) -> Clock:
        return self._clock

    # ── Public API ───────────────────────────────────────────────────────

    async def open(
        self,
        context: AnalysisContext,
        idle_timeout: timedelta | None = None,
        analysis_type: AnalysisType = AnalysisType.EXECUTION_TRACE,
    ) -> str:
        """Create a session in INITIATED and move it straight to ACTIVE.

        Raises:
            InvalidContext: If the focus area names no files, entry points
                or services.
        """
        if context.focus_area.is_empty:
            raise InvalidContext(
                "Focus area must name at least one file, entry point or service"
            )
        timeout = idle_timeout if idle_timeout is not None else self._idle_timeout
        if timeout <= timedelta(0):
            raise InvalidContext("idle_timeout must be positive")

        async with self._lock:
            session = AnalysisSession(
                context=context,
                idle_timeout=timeout,
                now=self._clock(),
                analysis_type=analysis_type,
            )
            self._sessions[session.session_id] = session
            self._session_locks[session.session_id] = asyncio.Lock()
            self._apply(session, SessionState.ACTIVE)
            logger.info(
                "Opened session %s (type=%s, idle_timeout=%s)",
                session.session_id, analysis_type.value, timeout,
            )
            return session.session_id

    async def get(self, session_id: str) -> AnalysisSession:
        """Return the live session object.

        Raises:
            SessionNotFound: If absent or already destroyed.
        """
        async with self._lock:
            return self._require(session_id)

    async def snapshot(self, session_id: str) -> SessionSnapshot:
        async with self._lock:
            return self._require(session_id).snapshot()

    async def transition(
        self,
        session_id: str,
        from_state: SessionState,
        to_state: SessionState,
        reason: str | None = None,
    ) -> AnalysisSession:
        """Atomic compare-and-set on the session's state.

        Raises:
            SessionNotFound: Unknown session id.
            InvalidTransition: ``from_state`` does not match, or the state
                machine forbids ``from_state → to_state``.
        """
        async with self._lock:
            session = self._require(session_id)
            if session.state != from_state:
                raise InvalidTransition(
                    session_id, expected=from_state, actual=session.state, target=to_state,
                )
            if not is_permitted(from_state, to_state):
                raise InvalidTransition(
                    session_id,
                    expected=from_state,
                    actual=session.state,
                    target=to_state,
                    reason=f"transition {from_state.value} → {to_state.value} is not permitted",
                )
            self._apply(session, to_state, reason)
            return session

    async def append_turn(
        self,
        session_id: str,
        role: TurnRole,
        payload: TurnPayload,
        confidence: float | None = None,
        findings: list[str] | None = None,
    ) -> ConversationTurn:
        """Append a turn to a non-terminal session's history."""
        async with self._lock:
            session = self._require(session_id)
            if session.is_terminal:
                raise InvalidTransition(
                    session_id,
                    expected=None,
                    actual=session.state,
                    reason=f"cannot append turns in terminal state {session.state.value}",
                )
            turn = session.append_turn(
                role, payload, self._clock(), confidence=confidence, findings=findings,
            )
            logger.debug(
                "Session %s ← %s turn #%d (%d chars)",
                session_id, role.value, turn.sequence, len(payload.message),
            )
            return turn

    def lock_for(self, session_id: str) -> asyncio.Lock:
        """The session's mutual-exclusion lock.

        Raises:
            SessionNotFound: If the session was never opened or is destroyed.
        """
        lock = self._session_locks.get(session_id)
        if lock is None:
            raise SessionNotFound(session_id)
        return lock

    async def request_cancel(self, session_id: str) -> AnalysisSession:
        async with self._lock:
            session = self._require(session_id)
            session.cancel_requested = True
            return session

    async def mark_in_flight(self, session_id: str, in_flight: bool) -> None:
        async with self._lock:
            self._require(session_id).in_flight = in_flight

    async def sweep_expired(self, now: datetime | None = None) -> list[str]:
        """Expire non-terminal sessions idle for longer than their timeout.

        Returns the ids of sessions moved to EXPIRED.
        """
        async with self._lock:
            now = now or self._clock()
            expired = [
                sid for sid, session in self._sessions.items()
                if session.is_idle(now)
            ]
            for sid in expired:
                self._apply(self._sessions[sid], SessionState.EXPIRED, "idle timeout", now=now)
            if expired:
                logger.info("Expired %d idle session(s)", len(expired))
            return expired

    async def purge_terminal(self, now: datetime | None = None) -> list[str]:
        """Destroy terminal sessions whose retention window has elapsed."""
        async with self._lock:
            now = now or self._clock()
            stale = [
                sid for sid, session in self._sessions.items()
                if session.terminal_at is not None
                and session.terminal_at + self._retention < now
            ]
            for sid in stale:
                self._remove(sid)
            if stale:
                logger.info("Purged %d terminal session(s)", len(stale))
            return stale

    async def evict(self, session_id: str) -> bool:
        """Explicitly destroy a session.  Returns False if it was unknown."""
        async with self._lock:
            if session_id not in self._sessions:
                return False
            self._remove(session_id)
            logger.info("Evicted session %s", session_id)
            return True

    async def restore(self, session: AnalysisSession) -> None:
        """Re-register a session reconstructed from a persisted snapshot."""
        async with self._lock:
            self._sessions[session.session_id] = session
            self._session_locks.setdefault(session.session_id, asyncio.Lock())

    async def sessions(self) -> list[AnalysisSession]:
        async with self._lock:
            return list(self._sessions.values())

    async def active_count(self) -> int:
        async with self._lock:
            return sum(1 for s in self._sessions.values() if not s.is_terminal)

    async def state_counts(self) -> dict[str, int]:
        """Number of sessions per state.  Observability only."""
        async with self._lock:
            counts = Counter(s.state.value for s in self._sessions.values())
            return {state.value: counts.get(state.value, 0) for state in SessionState}

    # ── Internals ────────────────────────────────────────────────────────

    def _require(self, session_id: str) -> AnalysisSession:
        """Must be called while holding self._lock."""
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def _apply(
        self,
        session: AnalysisSession,
        to_state: SessionState,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> None:
        """Must be called while holding self._lock."""
        now = now or self._clock()
        previous = session.state
        session.state = to_state
        if to_state.is_terminal:
            session.terminal_at = now
            if to_state != SessionState.COMPLETED:
                session.failure_reason = reason
        else:
            session.last_activity_at = now
        logger.debug(
            "Session %s: %s → %s%s",
            session.session_id, previous.value, to_state.value,
            f" ({reason})" if reason else "",
        )

    def _remove(self, session_id: str) -> None:
        """Must be called while holding self._lock."""
        self._sessions.pop(session_id, None)
        self._session_locks.pop(session_id, None)
