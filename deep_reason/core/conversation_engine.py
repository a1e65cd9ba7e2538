"""ConversationEngine: single-session turn-taking against the reasoning engine.

Flow of one turn:

    ACTIVE ──lock──▶ AWAITING_RESPONSE ──dispatch──▶ ACTIVE ──enforce budget──▶ unlock
                         │                              ▲
                         └── RateLimited / Timeout / ───┘  (RETRYABLE result)
                             TransportError

Design rules:
    1. One in-flight call per session: a per-session lock is held for the
       whole of submit_turn / finalize.  By default a second caller waits;
       with ``blocking=False`` it fails fast with SessionBusy.
    2. No silent retries.  A failed dispatch returns a RETRYABLE TurnResult
       and the session goes back to ACTIVE; resubmission is the caller's call.
    3. Dispatch is the only suspension point and is bounded by a time budget.
    4. Memory is enforced inline after every answered turn and before the
       closing synthesis, while the session lock is still held.
    5. Cancellation is honoured at the next boundary: an in-flight dispatch
       completes, then the session is failed with reason "cancelled".
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator

from pydantic import BaseModel

from deep_reason.core.memory_manager import MemoryBudgetManager
from deep_reason.domain.context import AnalysisContext
from deep_reason.domain.enums import (
    AnalysisType,
    SessionState,
    SummaryFormat,
    TurnOutcome,
    TurnRole,
)
from deep_reason.domain.errors import (
    DispatchError,
    DispatchTimeout,
    InvalidTransition,
    SessionBusy,
    SessionNotFound,
)
from deep_reason.domain.session import (
    AnalysisSession,
    FinalSummary,
    SessionSnapshot,
    TurnResult,
)
from deep_reason.domain.turn import CodeReference, TurnPayload
from deep_reason.reasoning.client import (
    ReasoningClient,
    ReasoningRequest,
    ReasoningResponse,
    RequestPurpose,
)
from deep_reason.store.session_store import SessionStore

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"

_FINALIZE_MESSAGE = (
    "Synthesize the conversation so far into a final analysis of the defect: "
    "root causes, supporting evidence, and what remains uncertain."
)


class ConversationStart(BaseModel):
    """Result of start_conversation: the new session and its first turn, if any."""

    session_id: str
    first_turn: TurnResult | None = None

    model_config = {"frozen": True}


class ConversationEngine:
    """Drives conversations through the session state machine.

    Args:
        store: Single source of truth for session state.
        client: The external reasoning boundary.
        memory: Budget manager run after each answered turn.
        time_budget: Default dispatch time budget in seconds.
        max_turns: Turns (ever appended) after which a session must finalize.
        blocking: Wait for a busy session (True) or raise SessionBusy (False).
    """

    def __init__(
        self,
        store: SessionStore,
        client: ReasoningClient,
        memory: MemoryBudgetManager | None = None,
        time_budget: float = 60.0,
        max_turns: int = 50,
        blocking: bool = True,
    ) -> None:
        if time_budget <= 0:
            raise ValueError("time_budget must be positive")
        self._store = store
        self._client = client
        self._memory = memory or MemoryBudgetManager()
        self._time_budget = time_budget
        self._max_turns = max_turns
        self._blocking = blocking

    @property
    def store(self) -> SessionStore:
        return self._store

    # ── Session lifecycle ────────────────────────────────────────────────

    async def open(
        self,
        context: AnalysisContext,
        idle_timeout: timedelta | None = None,
        analysis_type: AnalysisType = AnalysisType.EXECUTION_TRACE,
    ) -> str:
        return await self._store.open(context, idle_timeout, analysis_type)

    async def start_conversation(
        self,
        context: AnalysisContext,
        analysis_type: AnalysisType = AnalysisType.EXECUTION_TRACE,
        initial_question: str | None = None,
        idle_timeout: timedelta | None = None,
        time_budget: float | None = None,
    ) -> ConversationStart:
        """Open a session and, if given, submit the opening question."""
        session_id = await self.open(context, idle_timeout, analysis_type)
        first_turn = None
        if initial_question:
            first_turn = await self.submit_turn(
                session_id, initial_question, time_budget=time_budget,
            )
        return ConversationStart(session_id=session_id, first_turn=first_turn)

    async def submit_turn(
        self,
        session_id: str,
        message: str,
        code_references: list[CodeReference] | None = None,
        time_budget: float | None = None,
    ) -> TurnResult:
        """Send one requester message and wait for the analyzer's answer.

        Raises:
            SessionNotFound: Unknown or destroyed session.
            SessionBusy: Another call is in flight and ``blocking`` is off.
            InvalidTransition: Session not ACTIVE (e.g. FINALIZING, terminal,
                cancelled) or its turn limit was reached.  Also raised when a
                cancel lands while the dispatch fails, since no retry is possible.
        """
        async with self._exclusive(session_id):
            session = await self._store.get(session_id)
            await self._refuse_if_cancelled(session)
            if session.state == SessionState.ACTIVE and session.next_sequence >= self._max_turns:
                raise InvalidTransition(
                    session_id,
                    expected=SessionState.ACTIVE,
                    actual=session.state,
                    reason=f"turn limit of {self._max_turns} reached; finalize the session",
                )

            await self._store.transition(
                session_id, SessionState.ACTIVE, SessionState.AWAITING_RESPONSE,
            )
            request_turn = await self._store.append_turn(
                session_id,
                TurnRole.REQUESTER,
                TurnPayload(message=message, code_references=code_references or []),
            )
            request = ReasoningRequest(
                purpose=RequestPurpose.TURN,
                session_id=session_id,
                analysis_type=session.analysis_type,
                context=session.context,
                history=session.turns[:-1],
                message=message,
                code_references=code_references or [],
            )

            try:
                response = await self.dispatch(request, time_budget)
            except DispatchError as exc:
                exc.entity_id = exc.entity_id or session_id
                logger.warning(
                    "Turn #%d on session %s not answered (%s): %s",
                    request_turn.sequence, session_id, exc.kind.value, exc.message,
                )
                await self._store.transition(
                    session_id, SessionState.AWAITING_RESPONSE, SessionState.ACTIVE,
                )
                await self._honour_cancel(session_id)
                if session.is_terminal:
                    raise InvalidTransition(
                        session_id,
                        expected=SessionState.ACTIVE,
                        actual=session.state,
                        reason="session was cancelled during the failed dispatch",
                    ) from exc
                return TurnResult(
                    session_id=session_id,
                    outcome=TurnOutcome.RETRYABLE,
                    request_sequence=request_turn.sequence,
                    error_kind=exc.kind.value,
                    error_message=exc.message,
                    retry_after=exc.retry_after,
                )

            response_turn = await self._store.append_turn(
                session_id,
                TurnRole.ANALYZER,
                TurnPayload(message=response.content, code_references=response.code_references),
                confidence=response.confidence,
                findings=response.findings,
            )
            await self._store.transition(
                session_id, SessionState.AWAITING_RESPONSE, SessionState.ACTIVE,
            )
            checkpoint = self._memory.enforce(session)
            await self._honour_cancel(session_id)

            return TurnResult(
                session_id=session_id,
                outcome=TurnOutcome.RESPONDED,
                request_sequence=request_turn.sequence,
                response=response_turn,
                verdict=response.verdict,
                checkpoint_created=checkpoint is not None,
            )

    async def finalize(
        self,
        session_id: str,
        summary_format: SummaryFormat = SummaryFormat.DETAILED,
        time_budget: float | None = None,
    ) -> FinalSummary:
        """Issue the closing synthesis and complete the session.

        Raises:
            InvalidTransition: Session not ACTIVE.
            DispatchError: The closing dispatch failed; the session is FAILED.
        """
        async with self._exclusive(session_id):
            session = await self._store.get(session_id)
            await self._refuse_if_cancelled(session)
            await self._store.transition(
                session_id, SessionState.ACTIVE, SessionState.FINALIZING,
            )
            self._memory.enforce(session)

            request = ReasoningRequest(
                purpose=RequestPurpose.FINALIZE,
                session_id=session_id,
                analysis_type=session.analysis_type,
                context=session.context,
                history=session.turns,
                message=_FINALIZE_MESSAGE,
                summary_format=summary_format,
            )
            try:
                response = await self.dispatch(request, time_budget)
            except DispatchError as exc:
                exc.entity_id = exc.entity_id or session_id
                logger.error(
                    "Finalize failed for session %s (%s): %s",
                    session_id, exc.kind.value, exc.message,
                )
                await self._store.transition(
                    session_id,
                    SessionState.FINALIZING,
                    SessionState.FAILED,
                    reason=f"finalize dispatch failed: {exc.kind.value}",
                )
                raise

            await self._store.transition(
                session_id, SessionState.FINALIZING, SessionState.COMPLETED,
            )
            logger.info(
                "Session %s completed after %d turn(s)", session_id, session.next_sequence,
            )
            return self._build_summary(session, summary_format, response)

    async def status(self, session_id: str) -> SessionSnapshot:
        """Read-only snapshot; valid in every state until the session is destroyed."""
        return await self._store.snapshot(session_id)

    async def cancel(self, session_id: str) -> SessionSnapshot:
        """Request cancellation.

        An idle session is failed immediately.  A session with a call in
        flight is failed as soon as that call's dispatch completes.
        """
        session = await self._store.request_cancel(session_id)
        lock = self._store.lock_for(session_id)
        if not lock.locked():
            async with lock:
                if not session.is_terminal:
                    await self._store.transition(
                        session_id, session.state, SessionState.FAILED, reason=CANCELLED_REASON,
                    )
                    logger.info("Cancelled session %s", session_id)
        return await self._store.snapshot(session_id)

    async def retire(self, session_id: str, reason: str) -> bool:
        """Close an ACTIVE session without a closing synthesis.

        Used when the owner of a session (e.g. a tournament) no longer needs
        it.  Returns False if the session was not ACTIVE or no longer exists.
        """
        try:
            async with self._exclusive(session_id):
                session = await self._store.get(session_id)
                if session.state != SessionState.ACTIVE:
                    return False
                await self._store.transition(
                    session_id, SessionState.ACTIVE, SessionState.FINALIZING, reason=reason,
                )
                await self._store.transition(
                    session_id, SessionState.FINALIZING, SessionState.COMPLETED, reason=reason,
                )
        except SessionNotFound:
            return False
        logger.debug("Retired session %s (%s)", session_id, reason)
        return True

    # ── Internals ────────────────────────────────────────────────────────

    @asynccontextmanager
    async def _exclusive(self, session_id: str) -> AsyncIterator[None]:
        """Hold the session's mutual-exclusion lock for one call."""
        lock = self._store.lock_for(session_id)
        if not self._blocking and lock.locked():
            raise SessionBusy(session_id)
        async with lock:
            await self._store.mark_in_flight(session_id, True)
            try:
                yield
            finally:
                try:
                    await self._store.mark_in_flight(session_id, False)
                except SessionNotFound:
                    pass  # evicted while in flight

    async def dispatch(
        self, request: ReasoningRequest, time_budget: float | None,
    ) -> ReasoningResponse:
        """Dispatch to the reasoning client under a time budget.

        Used for session turns and for sessionless requests such as
        hypothesis generation.  Timeouts surface as DispatchTimeout.
        """
        budget = time_budget or self._time_budget
        try:
            return await asyncio.wait_for(
                self._client.dispatch(request, budget), timeout=budget,
            )
        except asyncio.TimeoutError as exc:
            raise DispatchTimeout(
                f"No answer within {budget:.1f}s", entity_id=request.session_id,
            ) from exc
        except asyncio.CancelledError:
            await self._restore_after_cancelled_dispatch(request)
            raise

    async def _restore_after_cancelled_dispatch(self, request: ReasoningRequest) -> None:
        """Leave a session usable when its dispatch task is torn down."""
        if request.session_id is None or request.purpose != RequestPurpose.TURN:
            return
        try:
            await self._store.transition(
                request.session_id, SessionState.AWAITING_RESPONSE, SessionState.ACTIVE,
            )
        except (InvalidTransition, SessionNotFound):
            pass

    async def _refuse_if_cancelled(self, session: AnalysisSession) -> None:
        if not session.cancel_requested:
            return
        await self._honour_cancel(session.session_id)
        raise InvalidTransition(
            session.session_id,
            expected=SessionState.ACTIVE,
            actual=session.state,
            reason="session was cancelled",
        )

    async def _honour_cancel(self, session_id: str) -> None:
        session = await self._store.get(session_id)
        if session.cancel_requested and session.state == SessionState.ACTIVE:
            await self._store.transition(
                session_id, SessionState.ACTIVE, SessionState.FAILED, reason=CANCELLED_REASON,
            )
            logger.info("Cancelled session %s after in-flight call", session_id)

    def _build_summary(
        self,
        session: AnalysisSession,
        summary_format: SummaryFormat,
        response: ReasoningResponse,
    ) -> FinalSummary:
        insights: list[str] = []
        for turn in session.turns:
            for finding in turn.findings:
                if finding not in insights:
                    insights.append(finding)
        now = self._store.clock()
        return FinalSummary(
            session_id=session.session_id,
            summary_format=summary_format,
            summary=response.content,
            findings=list(response.findings),
            insights=insights,
            ruled_out_approaches=list(session.context.attempted_approaches),
            total_turns=session.next_sequence,
            duration_seconds=max((now - session.created_at).total_seconds(), 0.0),
            confidence=response.confidence,
        )
