"""Tournament: competing hypotheses evaluated across synchronized rounds.

Lifecycle:  seeding → running → {concluded, failed, cancelled}
    - seeding:   hypotheses are being generated and their sessions opened
    - running:   rounds are executing
    - concluded: a winner was selected (single survivor or max rounds)
    - failed:    no viable hypothesis survived a round
    - cancelled: stopped on request; no further rounds started
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from deep_reason.domain.context import AnalysisContext
from deep_reason.domain.enums import HypothesisStatus, TournamentState
from deep_reason.domain.hypothesis import Hypothesis
from deep_reason.foundation.identifiers import new_id


class TournamentConfig(BaseModel):
    """Width and depth of a tournament.  All fields must be positive."""

    max_hypotheses: int = Field(default=5, gt=0)
    max_rounds: int = Field(default=3, gt=0)
    parallel_sessions: int = Field(default=3, gt=0)

    model_config = {"frozen": True}


class RoundResult(BaseModel):
    """Outcome of one round: hypothesis id → status after the round."""

    round_number: int = Field(..., ge=1)
    outcomes: dict[str, HypothesisStatus]
    scores: dict[str, float] = Field(default_factory=dict)
    eliminated: list[str] = Field(default_factory=list)
    started_at: datetime
    finished_at: datetime

    model_config = {"frozen": True}


class Tournament:
    """Mutable tournament aggregate owned by the TournamentStore.

    Hypotheses are mutated only by the scheduler task running the
    tournament; readers go through ``snapshot()``.
    """

    __slots__ = (
        "tournament_id",
        "issue",
        "context",
        "config",
        "state",
        "hypotheses",
        "rounds",
        "current_round",
        "winner",
        "failure_reason",
        "cancel_requested",
        "created_at",
        "concluded_at",
    )

    def __init__(
        self,
        issue: str,
        context: AnalysisContext,
        config: TournamentConfig,
        now: datetime,
        tournament_id: str | None = None,
    ) -> None:
        self.tournament_id: str = tournament_id or new_id()
        self.issue = issue
        self.context = context
        self.config = config
        self.state: TournamentState = TournamentState.SEEDING
        self.hypotheses: dict[str, Hypothesis] = {}
        self.rounds: list[RoundResult] = []
        self.current_round: int = 0
        self.winner: str | None = None
        self.failure_reason: str | None = None
        self.cancel_requested: bool = False
        self.created_at: datetime = now
        self.concluded_at: datetime | None = None

    # ── Queries ──────────────────────────────────────────────────────────

    def survivors(self) -> list[Hypothesis]:
        """Hypotheses not yet refuted, in seeding order."""
        return [h for h in self.hypotheses.values() if not h.is_refuted]

    def count_in(self, status: HypothesisStatus) -> int:
        return sum(1 for h in self.hypotheses.values() if h.status == status)

    def snapshot(self) -> TournamentSnapshot:
        winner = self.hypotheses.get(self.winner) if self.winner else None
        return TournamentSnapshot(
            tournament_id=self.tournament_id,
            issue=self.issue,
            state=self.state,
            config=self.config,
            current_round=self.current_round,
            hypotheses=[h.model_copy(deep=True) for h in self.hypotheses.values()],
            rounds=list(self.rounds),
            winner=self.winner,
            winner_statement=winner.statement if winner else None,
            winner_score=winner.evidence_score if winner else None,
            failure_reason=self.failure_reason,
            created_at=self.created_at,
            concluded_at=self.concluded_at,
        )

    def __repr__(self) -> str:
        return (
            f"Tournament(id={self.tournament_id}, state={self.state.value}, "
            f"round={self.current_round}/{self.config.max_rounds}, "
            f"hypotheses={len(self.hypotheses)})"
        )


class TournamentSnapshot(BaseModel):
    """Read-only tournament status: current round, hypotheses, result."""

    tournament_id: str
    issue: str
    state: TournamentState
    config: TournamentConfig
    current_round: int
    hypotheses: list[Hypothesis]
    rounds: list[RoundResult]
    winner: str | None = None
    winner_statement: str | None = None
    winner_score: float | None = None
    failure_reason: str | None = None
    created_at: datetime
    concluded_at: datetime | None = None

    model_config = {"frozen": True}

    @property
    def testing_count(self) -> int:
        return sum(1 for h in self.hypotheses if h.status == HypothesisStatus.TESTING)
