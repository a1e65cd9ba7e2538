"""Tournament round loop: LangGraph nodes and the RoundRunner they share.

Each round:
    1. Every surviving hypothesis is tested in its own session, at most
       ``parallel_sessions`` at a time.  A hypothesis is TESTING only while
       it holds a slot.
    2. All tests join at a barrier before anything is decided.
    3. Refuted hypotheses are eliminated and their sessions retired.
    4. The loop ends on a single survivor, max rounds, no survivors or a
       cancellation request.

Retry policy per hypothesis: a RETRYABLE turn is retried after a capped
backoff; after ``max_consecutive_failures`` in a row the hypothesis is
marked INCONCLUSIVE for the round.
"""

from __future__ import annotations

import asyncio
import logging

from deep_reason.core.conversation_engine import ConversationEngine
from deep_reason.domain.enums import (
    HypothesisStatus,
    SessionState,
    TournamentState,
    TurnOutcome,
    Verdict,
)
from deep_reason.domain.errors import InvalidTransition, NoViableHypothesis, SessionNotFound
from deep_reason.domain.hypothesis import Hypothesis, select_winner
from deep_reason.domain.tournament import RoundResult, Tournament
from deep_reason.store.tournament_store import TournamentStore
from deep_reason.tournament.state import TournamentGraphState

logger = logging.getLogger(__name__)

OUTCOME_RUNNING = "running"
OUTCOME_CONCLUDED = "concluded"
OUTCOME_FAILED = "failed"
OUTCOME_CANCELLED = "cancelled"

_TEST_PROMPT = """Issue under investigation:
{issue}

Hypothesis under test (round {round_number}):
{statement}

Examine the code in the focus area and decide whether the evidence supports
or refutes this hypothesis.  Report a verdict of "supported", "refuted" or
"inconclusive" and a confidence between 0 and 1."""


def build_test_message(issue: str, hypothesis: Hypothesis, round_number: int) -> str:
    return _TEST_PROMPT.format(
        issue=issue, statement=hypothesis.statement, round_number=round_number,
    )


class RoundRunner:
    """Executes rounds and elimination on behalf of the graph nodes.

    Args:
        engine: Drives the per-hypothesis sessions.
        tournaments: Where the nodes look tournaments up by id.
        max_consecutive_failures: Failed dispatches in a row before a
            hypothesis is marked INCONCLUSIVE for the round.
        retry_backoff: Base delay in seconds; doubled per consecutive failure.
        max_backoff: Upper bound on any single retry delay.
        time_budget: Per-turn dispatch budget; engine default if None.
    """

    def __init__(
        self,
        engine: ConversationEngine,
        tournaments: TournamentStore,
        max_consecutive_failures: int = 3,
        retry_backoff: float = 1.0,
        max_backoff: float = 30.0,
        time_budget: float | None = None,
    ) -> None:
        if max_consecutive_failures <= 0:
            raise ValueError("max_consecutive_failures must be positive")
        self.engine = engine
        self.tournaments = tournaments
        self._max_failures = max_consecutive_failures
        self._backoff = retry_backoff
        self._max_backoff = max_backoff
        self._time_budget = time_budget

    # ── Round execution ──────────────────────────────────────────────────

    async def execute_round(self, tournament: Tournament, round_number: int) -> RoundResult:
        """Test every survivor once, bounded by the tournament's parallelism."""
        clock = self.engine.store.clock
        started_at = clock()
        tournament.current_round = round_number

        contenders: list[Hypothesis] = []
        for hypothesis in tournament.survivors():
            if await self._session_usable(hypothesis):
                contenders.append(hypothesis)
            else:
                hypothesis.status = HypothesisStatus.INCONCLUSIVE
                logger.info(
                    "Hypothesis %s has no usable session; inconclusive in round %d",
                    hypothesis.hypothesis_id, round_number,
                )

        semaphore = asyncio.Semaphore(tournament.config.parallel_sessions)

        async def run_one(hypothesis: Hypothesis) -> None:
            async with semaphore:
                if tournament.cancel_requested:
                    return
                hypothesis.status = HypothesisStatus.TESTING
                try:
                    await self._test(tournament, hypothesis, round_number)
                except Exception:
                    logger.exception(
                        "Testing hypothesis %s failed unexpectedly", hypothesis.hypothesis_id,
                    )
                    hypothesis.status = HypothesisStatus.INCONCLUSIVE

        logger.info(
            "Tournament %s round %d: testing %d hypothesis(es), %d at a time",
            tournament.tournament_id, round_number, len(contenders),
            tournament.config.parallel_sessions,
        )
        await asyncio.gather(*(run_one(h) for h in contenders))

        survivors_at_start = [h for h in tournament.hypotheses.values()
                              if h.eliminated_in_round is None]
        eliminated = [h.hypothesis_id for h in survivors_at_start if h.is_refuted]
        result = RoundResult(
            round_number=round_number,
            outcomes={h.hypothesis_id: h.status for h in survivors_at_start},
            scores={h.hypothesis_id: h.evidence_score for h in survivors_at_start},
            eliminated=eliminated,
            started_at=started_at,
            finished_at=clock(),
        )
        tournament.rounds.append(result)
        return result

    async def _test(self, tournament: Tournament, hypothesis: Hypothesis, round_number: int) -> None:
        message = build_test_message(tournament.issue, hypothesis, round_number)
        while True:
            if tournament.cancel_requested:
                hypothesis.status = HypothesisStatus.INCONCLUSIVE
                return
            try:
                result = await self.engine.submit_turn(
                    hypothesis.session_id, message, time_budget=self._time_budget,
                )
            except (InvalidTransition, SessionNotFound) as exc:
                logger.info(
                    "Session for hypothesis %s unusable (%s); inconclusive",
                    hypothesis.hypothesis_id, exc.message,
                )
                hypothesis.status = HypothesisStatus.INCONCLUSIVE
                return

            if result.outcome == TurnOutcome.RESPONDED:
                confidence = result.response.confidence if result.response else None
                hypothesis.record_evidence(
                    result.verdict or Verdict.INCONCLUSIVE,
                    confidence if confidence is not None else 0.0,
                )
                logger.debug(
                    "Hypothesis %s → %s (score=%.3f)",
                    hypothesis.hypothesis_id, hypothesis.status.value, hypothesis.evidence_score,
                )
                return

            failures = hypothesis.record_failure()
            if failures >= self._max_failures:
                logger.warning(
                    "Hypothesis %s: %d consecutive failures (%s); inconclusive",
                    hypothesis.hypothesis_id, failures, result.error_kind,
                )
                hypothesis.status = HypothesisStatus.INCONCLUSIVE
                return
            delay = min(
                result.retry_after or self._backoff * 2 ** (failures - 1),
                self._max_backoff,
            )
            logger.debug(
                "Hypothesis %s: retrying in %.2fs after %s",
                hypothesis.hypothesis_id, delay, result.error_kind,
            )
            await asyncio.sleep(delay)

    # ── Elimination ──────────────────────────────────────────────────────

    async def apply_elimination(self, tournament: Tournament, result: RoundResult) -> str:
        """Retire refuted hypotheses and decide whether another round runs.

        Raises:
            NoViableHypothesis: Every hypothesis has been refuted.
        """
        for hypothesis_id in result.eliminated:
            hypothesis = tournament.hypotheses[hypothesis_id]
            hypothesis.eliminated_in_round = result.round_number
            await self.retire(hypothesis, "hypothesis refuted")

        if tournament.cancel_requested:
            return OUTCOME_CANCELLED

        survivors = tournament.survivors()
        if not survivors:
            raise NoViableHypothesis(tournament.tournament_id, result.round_number)

        testable = [h for h in survivors if await self._session_usable(h)]
        if (
            len(survivors) == 1
            or result.round_number >= tournament.config.max_rounds
            or not testable
        ):
            self.conclude(tournament, survivors)
            return OUTCOME_CONCLUDED
        return OUTCOME_RUNNING

    def conclude(self, tournament: Tournament, survivors: list[Hypothesis]) -> None:
        winner = select_winner(survivors)
        tournament.winner = winner.hypothesis_id if winner else None
        tournament.state = TournamentState.CONCLUDED
        tournament.concluded_at = self.engine.store.clock()
        logger.info(
            "Tournament %s concluded after %d round(s): winner=%s score=%.3f",
            tournament.tournament_id, tournament.current_round,
            tournament.winner, winner.evidence_score if winner else 0.0,
        )

    def fail(self, tournament: Tournament, reason: str) -> None:
        tournament.state = TournamentState.FAILED
        tournament.failure_reason = reason
        tournament.winner = None
        tournament.concluded_at = self.engine.store.clock()

    async def retire(self, hypothesis: Hypothesis, reason: str) -> None:
        if hypothesis.session_id is not None:
            await self.engine.retire(hypothesis.session_id, reason)

    async def _session_usable(self, hypothesis: Hypothesis) -> bool:
        if hypothesis.session_id is None:
            return False
        try:
            snapshot = await self.engine.status(hypothesis.session_id)
        except SessionNotFound:
            return False
        return snapshot.state == SessionState.ACTIVE


# ── Graph nodes ──────────────────────────────────────────────────────────────

def make_run_round(runner: RoundRunner):
    """Create the run_round node bound to a RoundRunner."""

    async def run_round(state: TournamentGraphState) -> dict:
        tournament = await runner.tournaments.get(state["tournament_id"])
        if tournament.cancel_requested:
            return {"outcome": OUTCOME_CANCELLED}
        round_number = state.get("round_number", 0) + 1
        await runner.execute_round(tournament, round_number)
        return {"round_number": round_number}

    return run_round


def make_eliminate(runner: RoundRunner):
    """Create the eliminate node bound to a RoundRunner."""

    async def eliminate(state: TournamentGraphState) -> dict:
        if state.get("outcome") == OUTCOME_CANCELLED:
            return {}
        tournament = await runner.tournaments.get(state["tournament_id"])
        try:
            outcome = await runner.apply_elimination(tournament, tournament.rounds[-1])
        except NoViableHypothesis as exc:
            runner.fail(tournament, exc.kind.value)
            logger.warning("%s", exc.message)
            return {"outcome": OUTCOME_FAILED}
        return {"outcome": outcome}

    return eliminate


def check_conclusion(state: TournamentGraphState) -> str:
    """Conditional edge: "end" once decided or out of rounds, else "loop"."""
    if state.get("outcome", OUTCOME_RUNNING) != OUTCOME_RUNNING:
        return "end"
    if state.get("round_number", 0) >= state.get("max_rounds", 1):
        return "end"
    return "loop"
