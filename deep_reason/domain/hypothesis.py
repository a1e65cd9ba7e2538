"""Hypothesis: a competing explanation for a code defect.

A hypothesis is NOT a verdict.  It is a short statement bound 1:1 to an
analysis session, whose status and evidence score are adjusted after each
tournament round from what the reasoning engine reported in that session.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from deep_reason.domain.enums import HypothesisStatus, Verdict
from deep_reason.foundation.identifiers import new_id


class Hypothesis(BaseModel):
    """A single candidate explanation owned by exactly one tournament.

    Fields:
        confidences: Analyzer confidences reported for this hypothesis, one
                     per answered round.  ``evidence_score`` is their mean.
        consecutive_failures: Dispatch failures in a row; reset on success.
    """

    hypothesis_id: str = Field(default_factory=new_id)
    statement: str = Field(..., min_length=1, max_length=500)
    round_introduced: int = Field(default=0, ge=0)
    status: HypothesisStatus = HypothesisStatus.PENDING
    evidence_score: float = Field(default=0.0, ge=0.0, le=1.0)
    session_id: str | None = None
    confidences: list[float] = Field(default_factory=list)
    consecutive_failures: int = Field(default=0, ge=0)
    last_verdict: Verdict | None = None
    eliminated_in_round: int | None = None

    model_config = {"frozen": False}

    # ── Evidence ─────────────────────────────────────────────────────────

    def record_evidence(self, verdict: Verdict, confidence: float) -> None:
        """Fold one answered round into status and score."""
        self.confidences.append(confidence)
        self.evidence_score = round(sum(self.confidences) / len(self.confidences), 4)
        self.consecutive_failures = 0
        self.last_verdict = verdict
        self.status = _VERDICT_STATUS[verdict]

    def record_failure(self) -> int:
        self.consecutive_failures += 1
        return self.consecutive_failures

    @property
    def is_refuted(self) -> bool:
        return self.status == HypothesisStatus.REFUTED


_VERDICT_STATUS = {
    Verdict.SUPPORTED: HypothesisStatus.SUPPORTED,
    Verdict.REFUTED: HypothesisStatus.REFUTED,
    Verdict.INCONCLUSIVE: HypothesisStatus.INCONCLUSIVE,
}


def ranking_key(hypothesis: Hypothesis) -> tuple[float, int, str]:
    """Sort key: highest score, then earliest round, then smallest id."""
    return (-hypothesis.evidence_score, hypothesis.round_introduced, hypothesis.hypothesis_id)


def select_winner(candidates: list[Hypothesis]) -> Hypothesis | None:
    """Pick the best non-refuted hypothesis, deterministically."""
    survivors = [h for h in candidates if not h.is_refuted]
    if not survivors:
        return None
    return min(survivors, key=ranking_key)
