"""MemoryBudgetManager: bounds the working-memory footprint of sessions.

Two-tier history:
    - Tier 1: a single checkpoint turn summarising everything older
    - Tier 2: the most recent ``keep_recent`` turns, kept verbatim

Size estimation formula (default, ``TokenHeuristicEstimator``):

    size(turn) = turn_overhead
               + ceil(len(message) / 4)
               + Σ ceil(len(finding) / 4)
               + Σ ceil((len(ref.file) + len(ref.snippet)) / 4)

    size(session) = Σ size(turn)

The formula is deterministic and monotonic in turn count and payload size.
Both the estimator and the compactor are injected, so deployments may swap
either without touching the enforcement contract:

    - enforce() never breaks sequence ordering: the compacted turn takes the
      sequence number immediately below the oldest retained turn.
    - enforce() is idempotent: a history whose only foldable turn is already
      a checkpoint is left alone, and so is one that compaction would not
      shrink.

Mutation rule:
    enforce() rewrites a session's history in place.  Callers MUST hold that
    session's mutual-exclusion lock (the conversation engine does).
"""

from __future__ import annotations

import logging
import math
from typing import Protocol

from deep_reason.domain.enums import TurnRole
from deep_reason.domain.memory import MemoryCheckpoint
from deep_reason.domain.session import AnalysisSession
from deep_reason.domain.turn import ConversationTurn, TurnPayload
from deep_reason.store.session_store import SessionStore

logger = logging.getLogger(__name__)


# ── Pluggable policies ───────────────────────────────────────────────────────


class SizeEstimator(Protocol):
    """Protocol for per-turn footprint estimation."""

    def estimate_turn(self, turn: ConversationTurn) -> int:
        ...


class Compactor(Protocol):
    """Protocol for folding a run of turns into one summary text."""

    def compact(self, turns: list[ConversationTurn]) -> str:
        ...


class TokenHeuristicEstimator:
    """~4 characters per token plus a fixed per-turn overhead."""

    def __init__(self, chars_per_unit: int = 4, turn_overhead: int = 4) -> None:
        if chars_per_unit < 1:
            raise ValueError("chars_per_unit must be at least 1")
        self._chars_per_unit = chars_per_unit
        self._turn_overhead = turn_overhead

    def _units(self, text: str) -> int:
        return math.ceil(len(text) / self._chars_per_unit)

    def estimate_turn(self, turn: ConversationTurn) -> int:
        size = self._turn_overhead + self._units(turn.payload.message)
        size += sum(self._units(f) for f in turn.findings)
        for ref in turn.payload.code_references:
            size += self._units(ref.file + (ref.snippet or ""))
        return size


class ExtractiveCompactor:
    """Deterministic summary: one excerpt line per folded turn.

    An earlier checkpoint among the folded turns is carried forward first,
    so repeated compaction keeps a rolling summary.  When the result is
    longer than ``max_summary_chars`` the oldest text is dropped.
    """

    def __init__(self, max_summary_chars: int = 2000, excerpt_chars: int = 160) -> None:
        self._max_summary_chars = max_summary_chars
        self._excerpt_chars = excerpt_chars

    def compact(self, turns: list[ConversationTurn]) -> str:
        lines: list[str] = []
        for turn in turns:
            if turn.is_checkpoint:
                lines.append(turn.payload.message)
                continue
            first_line = turn.payload.message.strip().split("\n", 1)[0]
            lines.append(f"[{turn.role.value} #{turn.sequence}] {first_line[: self._excerpt_chars]}")
            lines.extend(f"  finding: {f[: self._excerpt_chars]}" for f in turn.findings)

        text = "\n".join(lines)
        if len(text) > self._max_summary_chars:
            text = "…" + text[-(self._max_summary_chars - 1):]
        return text


# ── Manager ──────────────────────────────────────────────────────────────────


class MemoryBudgetManager:
    """Estimates session footprints and compacts histories over budget.

    Args:
        budget: Default per-session budget in size units.
        keep_recent: Turns always kept verbatim (K).
        total_budget: Process-wide cap used by ``rebalance``.
        max_checkpoints: Checkpoint records retained per session.
        max_carried_findings: Findings carried onto a checkpoint turn.
    """

    def __init__(
        self,
        budget: int = 8000,
        keep_recent: int = 4,
        total_budget: int = 200_000,
        max_checkpoints: int = 5,
        max_carried_findings: int = 20,
        estimator: SizeEstimator | None = None,
        compactor: Compactor | None = None,
    ) -> None:
        if budget <= 0 or total_budget <= 0:
            raise ValueError("budgets must be positive")
        if keep_recent < 1:
            raise ValueError("keep_recent must be at least 1")
        if max_checkpoints < 1:
            raise ValueError("max_checkpoints must be at least 1")

        self._budget = budget
        self._keep_recent = keep_recent
        self._total_budget = total_budget
        self._max_checkpoints = max_checkpoints
        self._max_carried_findings = max_carried_findings
        self._estimator = estimator or TokenHeuristicEstimator()
        self._compactor = compactor or ExtractiveCompactor()

    @property
    def budget(self) -> int:
        return self._budget

    # ── Estimation ───────────────────────────────────────────────────────

    def estimate(self, session: AnalysisSession) -> int:
        """Footprint of the session's current history, in size units."""
        return self.estimate_turns(session.turns)

    def estimate_turns(self, turns: list[ConversationTurn]) -> int:
        return sum(self._estimator.estimate_turn(t) for t in turns)

    # ── Enforcement ──────────────────────────────────────────────────────

    def enforce(
        self,
        session: AnalysisSession,
        budget: int | None = None,
    ) -> MemoryCheckpoint | None:
        """Compact the session's history if it exceeds *budget*.

        Returns the checkpoint created, or None if nothing changed.
        """
        limit = budget if budget is not None else self._budget
        turns = session.turns
        size_before = self.estimate_turns(turns)
        if size_before <= limit:
            return None

        cut = len(turns) - self._keep_recent
        if cut <= 0:
            return None

        folded, recent = turns[:cut], turns[cut:]
        if len(folded) == 1 and folded[0].is_checkpoint:
            return None

        compacted = self._build_checkpoint_turn(folded, recent[0].sequence - 1)
        new_turns = [compacted, *recent]
        size_after = self.estimate_turns(new_turns)
        if size_after >= size_before:
            logger.debug(
                "Session %s: compaction would not shrink history (%d → %d), skipped",
                session.session_id, size_before, size_after,
            )
            return None

        checkpoint = MemoryCheckpoint(
            session_id=session.session_id,
            sequence_at_checkpoint=compacted.sequence,
            compacted_context=compacted.payload.message,
            folded_turns=len(folded),
            size_before=size_before,
            size_after=size_after,
        )
        session.replace_turns(new_turns, checkpoint, self._max_checkpoints)
        logger.info(
            "Checkpointed session %s at #%d: folded %d turn(s), %d → %d units (budget %d)",
            session.session_id, compacted.sequence, len(folded),
            size_before, size_after, limit,
        )
        return checkpoint

    def _build_checkpoint_turn(
        self, folded: list[ConversationTurn], sequence: int,
    ) -> ConversationTurn:
        findings: list[str] = []
        for turn in folded:
            for finding in turn.findings:
                if finding not in findings:
                    findings.append(finding)
        return ConversationTurn(
            sequence=sequence,
            role=TurnRole.ANALYZER,
            payload=TurnPayload(message=self._compactor.compact(folded)),
            timestamp=folded[-1].timestamp,
            findings=findings[-self._max_carried_findings:],
            is_checkpoint=True,
        )

    # ── Process-wide eviction ────────────────────────────────────────────

    async def rebalance(self, store: SessionStore) -> list[str]:
        """Evict the oldest terminal sessions while over the total budget.

        Live (non-terminal) sessions are never evicted here.
        """
        sessions = await store.sessions()
        total = sum(self.estimate(s) for s in sessions)
        if total <= self._total_budget:
            return []

        evicted: list[str] = []
        candidates = sorted(
            (s for s in sessions if s.is_terminal and s.terminal_at is not None),
            key=lambda s: s.terminal_at,
        )
        for session in candidates:
            if total <= self._total_budget:
                break
            if await store.evict(session.session_id):
                total -= self.estimate(session)
                evicted.append(session.session_id)

        if evicted:
            logger.info(
                "Evicted %d terminal session(s) to respect total budget %d (now %d)",
                len(evicted), self._total_budget, total,
            )
        elif total > self._total_budget:
            logger.warning(
                "Total footprint %d exceeds budget %d with no terminal sessions to evict",
                total, self._total_budget,
            )
        return evicted
