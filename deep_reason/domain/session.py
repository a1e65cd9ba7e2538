"""AnalysisSession: one long-running, stateful analysis conversation.

A session is NOT an analysis result.  It is the ordered record of an
exchange between the requester and the reasoning engine, plus the state
machine position that decides which exchange may happen next.

Thread-safety note:
    Individual AnalysisSession objects are mutated *only* by the
    SessionStore while it holds its lock (state, timestamps) or by the
    owner of the session's mutual-exclusion lock (turn history).  They are
    not themselves locked.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from deep_reason.domain.context import AnalysisContext
from deep_reason.domain.enums import (
    AnalysisType,
    SessionState,
    SummaryFormat,
    TurnOutcome,
    TurnRole,
    Verdict,
)
from deep_reason.domain.memory import MemoryCheckpoint
from deep_reason.domain.turn import ConversationTurn, TurnPayload
from deep_reason.foundation.identifiers import new_id


class AnalysisSession:
    """Mutable session aggregate owned by the SessionStore."""

    __slots__ = (
        "session_id",
        "state",
        "context",
        "analysis_type",
        "idle_timeout",
        "created_at",
        "last_activity_at",
        "terminal_at",
        "failure_reason",
        "cancel_requested",
        "in_flight",
        "next_sequence",
        "checkpoints",
        "_turns",
    )

    def __init__(
        self,
        context: AnalysisContext,
        idle_timeout: timedelta,
        now: datetime,
        analysis_type: AnalysisType = AnalysisType.EXECUTION_TRACE,
        session_id: str | None = None,
    ) -> None:
        self.session_id: str = session_id or new_id()
        self.state: SessionState = SessionState.INITIATED
        self.context = context
        self.analysis_type = analysis_type
        self.idle_timeout = idle_timeout
        self.created_at: datetime = now
        self.last_activity_at: datetime = now
        self.terminal_at: datetime | None = None
        self.failure_reason: str | None = None
        self.cancel_requested: bool = False
        self.in_flight: bool = False
        self.next_sequence: int = 0
        self.checkpoints: list[MemoryCheckpoint] = []
        self._turns: list[ConversationTurn] = []

    # ── Turn history ─────────────────────────────────────────────────────

    def append_turn(
        self,
        role: TurnRole,
        payload: TurnPayload,
        now: datetime,
        confidence: float | None = None,
        findings: list[str] | None = None,
    ) -> ConversationTurn:
        """Append a turn with the next sequence number and bump activity."""
        turn = ConversationTurn(
            sequence=self.next_sequence,
            role=role,
            payload=payload,
            timestamp=now,
            confidence=confidence,
            findings=findings or [],
        )
        self._turns.append(turn)
        self.next_sequence += 1
        self.last_activity_at = now
        return turn

    def replace_turns(
        self,
        turns: list[ConversationTurn],
        checkpoint: MemoryCheckpoint,
        max_checkpoints: int,
    ) -> None:
        """Swap in a compacted history.  ``next_sequence`` is left untouched."""
        self._turns = list(turns)
        self.checkpoints.append(checkpoint)
        if len(self.checkpoints) > max_checkpoints:
            del self.checkpoints[: len(self.checkpoints) - max_checkpoints]

    def load_history(
        self,
        turns: list[ConversationTurn],
        checkpoints: list[MemoryCheckpoint],
        next_sequence: int,
    ) -> None:
        """Install a persisted history on a freshly constructed session."""
        if turns and turns[-1].sequence >= next_sequence:
            raise ValueError("next_sequence must exceed every persisted turn sequence")
        self._turns = list(turns)
        self.checkpoints = list(checkpoints)
        self.next_sequence = next_sequence

    @property
    def turns(self) -> list[ConversationTurn]:
        """Read-only view of the (possibly compacted) turn history."""
        return list(self._turns)

    @property
    def turn_count(self) -> int:
        return len(self._turns)

    @property
    def latest_checkpoint(self) -> MemoryCheckpoint | None:
        return self.checkpoints[-1] if self.checkpoints else None

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def is_idle(self, now: datetime) -> bool:
        """True if the idle timeout elapsed strictly before *now*.

        A session with a call in flight is never idle.
        """
        if self.is_terminal or self.in_flight:
            return False
        return self.last_activity_at + self.idle_timeout < now

    def snapshot(self) -> SessionSnapshot:
        """Immutable point-in-time view, valid in every state."""
        latest = self.latest_checkpoint
        return SessionSnapshot(
            session_id=self.session_id,
            state=self.state,
            analysis_type=self.analysis_type,
            context=self.context,
            turns=list(self._turns),
            turn_count=len(self._turns),
            total_turns=self.next_sequence,
            checkpoint_count=len(self.checkpoints),
            last_checkpoint_sequence=latest.sequence_at_checkpoint if latest else None,
            created_at=self.created_at,
            last_activity_at=self.last_activity_at,
            idle_timeout_seconds=self.idle_timeout.total_seconds(),
            in_flight=self.in_flight,
            failure_reason=self.failure_reason,
        )

    # ── Dunder ───────────────────────────────────────────────────────────

    def __repr__(self) -> str:
        return (
            f"AnalysisSession(id={self.session_id}, "
            f"state={self.state.value}, "
            f"turns={len(self._turns)}, "
            f"next_seq={self.next_sequence})"
        )


class SessionSnapshot(BaseModel):
    """Read-only observation of a session, returned by status queries."""

    session_id: str
    state: SessionState
    analysis_type: AnalysisType
    context: AnalysisContext
    turns: list[ConversationTurn]
    turn_count: int = Field(..., description="Turns currently held (after compaction)")
    total_turns: int = Field(..., description="Turns ever appended")
    checkpoint_count: int
    last_checkpoint_sequence: int | None = None
    created_at: datetime
    last_activity_at: datetime
    idle_timeout_seconds: float
    in_flight: bool
    failure_reason: str | None = None

    model_config = {"frozen": True}


class TurnResult(BaseModel):
    """Outcome of one submit_turn call.

    A RETRYABLE outcome means the request was not answered but the session
    is back in ACTIVE; the caller decides whether and when to resubmit.
    """

    session_id: str
    outcome: TurnOutcome
    request_sequence: int
    response: ConversationTurn | None = None
    verdict: Verdict | None = None
    error_kind: str | None = None
    error_message: str | None = None
    retry_after: float | None = None
    checkpoint_created: bool = False

    model_config = {"frozen": True}

    @property
    def is_retryable(self) -> bool:
        return self.outcome == TurnOutcome.RETRYABLE


class FinalSummary(BaseModel):
    """Closing synthesis of a completed session."""

    session_id: str
    summary_format: SummaryFormat
    summary: str
    findings: list[str] = Field(default_factory=list)
    insights: list[str] = Field(default_factory=list)
    ruled_out_approaches: list[str] = Field(default_factory=list)
    total_turns: int
    duration_seconds: float
    confidence: float | None = None

    model_config = {"frozen": True}
