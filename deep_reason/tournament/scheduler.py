"""TournamentScheduler: seeds hypotheses and runs the round loop in the background.

Lifecycle of one tournament:

    start ──▶ SEEDING ──generate + open sessions──▶ RUNNING ──graph──▶ CONCLUDED
                 │                                     │                FAILED
                 └── dispatch error ──▶ FAILED         └── cancel ──▶ CANCELLED

``start`` returns as soon as the sessions are open; rounds run in an
asyncio task that ``wait`` joins.  ``shutdown`` cancels every pending task.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any

from pydantic import ValidationError

from deep_reason.core.conversation_engine import ConversationEngine
from deep_reason.domain.context import AnalysisContext
from deep_reason.domain.enums import AnalysisType, TournamentState
from deep_reason.domain.errors import DispatchError, InvalidContext, InvalidTournamentConfig
from deep_reason.domain.hypothesis import Hypothesis
from deep_reason.domain.tournament import Tournament, TournamentConfig, TournamentSnapshot
from deep_reason.reasoning.client import ReasoningRequest, RequestPurpose
from deep_reason.store.tournament_store import TournamentStore
from deep_reason.tournament.builder import build_tournament_graph, recursion_limit
from deep_reason.tournament.nodes import OUTCOME_RUNNING, RoundRunner
from deep_reason.tournament.state import TournamentGraphState

logger = logging.getLogger(__name__)

_GENERIC_EXPLANATIONS = (
    "A race condition between concurrent operations corrupts shared state",
    "Stale or cached state is read after it has been updated elsewhere",
    "An unhandled edge case in input validation lets bad data through",
    "A configuration or environment mismatch changes runtime behaviour",
    "Resource exhaustion under load degrades the affected code path",
    "An error is swallowed upstream and resurfaces later as a wrong result",
)


def fallback_statements(context: AnalysisContext, count: int) -> list[str]:
    """Deterministic hypotheses used when generation yields too few."""
    focus = context.focus_area
    statements = [f"The defect originates in {path}" for path in focus.files]
    statements += [f"The defect is triggered through {entry}" for entry in focus.entry_points]
    statements += [
        f"The defect lies in how {service} interacts with its callers"
        for service in focus.service_names
    ]
    statements += list(_GENERIC_EXPLANATIONS)
    n = 1
    while len(statements) < count:
        statements.append(f"Alternative explanation #{n} for the reported behaviour")
        n += 1
    return statements[:count]


class TournamentScheduler:
    """Runs hypothesis tournaments on top of a ConversationEngine.

    Args:
        engine: Opens and drives the per-hypothesis sessions.
        tournaments: Registry of tournaments; a private one if None.
        max_consecutive_failures: See RoundRunner.
        retry_backoff: See RoundRunner.
        max_backoff: See RoundRunner.
        time_budget: Dispatch budget for generation and tests.
        idle_timeout: Idle timeout of the hypothesis sessions.
    """

    def __init__(
        self,
        engine: ConversationEngine,
        tournaments: TournamentStore | None = None,
        max_consecutive_failures: int = 3,
        retry_backoff: float = 1.0,
        max_backoff: float = 30.0,
        time_budget: float | None = None,
        idle_timeout: timedelta | None = None,
    ) -> None:
        self._engine = engine
        self._tournaments = tournaments or TournamentStore()
        self._time_budget = time_budget
        self._idle_timeout = idle_timeout
        self._runner = RoundRunner(
            engine,
            self._tournaments,
            max_consecutive_failures=max_consecutive_failures,
            retry_backoff=retry_backoff,
            max_backoff=max_backoff,
            time_budget=time_budget,
        )
        self._graph = build_tournament_graph(self._runner)
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def engine(self) -> ConversationEngine:
        return self._engine

    @property
    def tournaments(self) -> TournamentStore:
        return self._tournaments

    @property
    def pending_count(self) -> int:
        """Tournaments whose round loop is still running."""
        return len(self._tasks)

    # ── Public API ───────────────────────────────────────────────────────

    async def start(
        self,
        issue: str,
        context: AnalysisContext,
        config: TournamentConfig | dict[str, Any] | None = None,
    ) -> str:
        """Seed hypotheses, open their sessions and launch the round loop.

        Raises:
            InvalidTournamentConfig: Non-positive config values or empty issue.
            InvalidContext: Empty focus area.
            DispatchError: Hypothesis generation failed; the tournament is
                left FAILED for status queries.
        """
        cfg = self._validate(config)
        if not issue.strip():
            raise InvalidTournamentConfig("issue must not be empty")
        if context.focus_area.is_empty:
            raise InvalidContext(
                "Focus area must name at least one file, entry point or service"
            )

        tournament = Tournament(issue, context, cfg, now=self._engine.store.clock())
        await self._tournaments.add(tournament)
        logger.info(
            "Seeding tournament %s (hypotheses=%d, rounds=%d, parallel=%d)",
            tournament.tournament_id, cfg.max_hypotheses, cfg.max_rounds, cfg.parallel_sessions,
        )

        try:
            statements = await self._generate(tournament)
        except DispatchError as exc:
            exc.entity_id = tournament.tournament_id
            self._runner.fail(tournament, f"hypothesis generation failed: {exc.kind.value}")
            logger.error(
                "Tournament %s: hypothesis generation failed: %s",
                tournament.tournament_id, exc.message,
            )
            raise

        for statement in statements:
            session_id = await self._engine.open(
                context, self._idle_timeout, AnalysisType.HYPOTHESIS_TEST,
            )
            hypothesis = Hypothesis(statement=statement, round_introduced=0, session_id=session_id)
            tournament.hypotheses[hypothesis.hypothesis_id] = hypothesis

        tournament.state = TournamentState.RUNNING
        self._tasks[tournament.tournament_id] = asyncio.create_task(
            self._run(tournament), name=f"tournament-{tournament.tournament_id}",
        )
        return tournament.tournament_id

    async def wait(self, tournament_id: str) -> TournamentSnapshot:
        """Block until the tournament is terminal and return its final snapshot."""
        task = self._tasks.get(tournament_id)
        if task is not None:
            await asyncio.shield(task)
        return await self._tournaments.snapshot(tournament_id)

    async def run(
        self,
        issue: str,
        context: AnalysisContext,
        config: TournamentConfig | dict[str, Any] | None = None,
    ) -> TournamentSnapshot:
        tournament_id = await self.start(issue, context, config)
        return await self.wait(tournament_id)

    async def status(self, tournament_id: str) -> TournamentSnapshot:
        return await self._tournaments.snapshot(tournament_id)

    async def cancel(self, tournament_id: str) -> TournamentSnapshot:
        """Stop the tournament at its next dispatch or round boundary."""
        tournament = await self._tournaments.get(tournament_id)
        if not tournament.state.is_terminal:
            tournament.cancel_requested = True
            logger.info("Cancellation requested for tournament %s", tournament_id)
        return tournament.snapshot()

    async def shutdown(self) -> None:
        """Cancel every pending tournament task and wait for them to unwind."""
        pending = [task for task in self._tasks.values() if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info("Cancelled %d running tournament(s)", len(pending))
        self._tasks.clear()

    # ── Internals ────────────────────────────────────────────────────────

    @staticmethod
    def _validate(config: TournamentConfig | dict[str, Any] | None) -> TournamentConfig:
        if config is None:
            return TournamentConfig()
        if isinstance(config, TournamentConfig):
            return config
        try:
            return TournamentConfig.model_validate(config)
        except ValidationError as exc:
            raise InvalidTournamentConfig(f"Invalid tournament config: {exc}") from exc

    async def _generate(self, tournament: Tournament) -> list[str]:
        count = tournament.config.max_hypotheses
        request = ReasoningRequest(
            purpose=RequestPurpose.GENERATE_HYPOTHESES,
            analysis_type=AnalysisType.HYPOTHESIS_TEST,
            context=tournament.context,
            message=tournament.issue,
            hypothesis_count=count,
        )
        response = await self._engine.dispatch(request, self._time_budget)

        statements: list[str] = []
        for statement in response.hypotheses:
            statement = statement.strip()[:500]
            if statement and statement not in statements:
                statements.append(statement)
        if len(statements) < count:
            logger.info(
                "Tournament %s: %d of %d hypotheses generated; padding with fallbacks",
                tournament.tournament_id, len(statements), count,
            )
            for statement in fallback_statements(tournament.context, count + len(statements)):
                if len(statements) >= count:
                    break
                if statement not in statements:
                    statements.append(statement)
        return statements[:count]

    async def _run(self, tournament: Tournament) -> None:
        initial_state: TournamentGraphState = {
            "tournament_id": tournament.tournament_id,
            "round_number": 0,
            "max_rounds": tournament.config.max_rounds,
            "outcome": OUTCOME_RUNNING,
        }
        try:
            await self._graph.ainvoke(
                initial_state,
                config={"recursion_limit": recursion_limit(tournament.config.max_rounds)},
            )
            if tournament.cancel_requested and not tournament.state.is_terminal:
                self._mark_cancelled(tournament, "cancelled")
            elif not tournament.state.is_terminal:
                self._runner.conclude(tournament, tournament.survivors())
        except asyncio.CancelledError:
            self._mark_cancelled(tournament, "shutdown")
            raise
        except Exception as exc:
            logger.exception("Tournament %s crashed", tournament.tournament_id)
            self._runner.fail(tournament, f"internal error: {exc}")
        finally:
            await self._retire_sessions(tournament)
            self._tasks.pop(tournament.tournament_id, None)

    def _mark_cancelled(self, tournament: Tournament, reason: str) -> None:
        tournament.state = TournamentState.CANCELLED
        tournament.failure_reason = reason
        tournament.concluded_at = self._engine.store.clock()
        logger.info("Tournament %s cancelled (%s)", tournament.tournament_id, reason)

    async def _retire_sessions(self, tournament: Tournament) -> None:
        """Close every hypothesis session except the winner's."""
        for hypothesis in tournament.hypotheses.values():
            if hypothesis.hypothesis_id == tournament.winner:
                continue
            await self._runner.retire(hypothesis, f"tournament {tournament.state.value}")
