"""JSON-ready state snapshots for the session and tournament stores.

``dump_state`` turns both stores into plain dicts (suitable for
``json.dumps``); ``load_state`` rebuilds them well enough to answer
``status`` queries after a restart.

Work interrupted by the restart cannot resume:
    - sessions caught in AWAITING_RESPONSE or FINALIZING come back ACTIVE
      (the dispatch was lost; the caller may resubmit or finalize again)
    - tournaments caught in SEEDING or RUNNING come back FAILED, with any
      hypothesis that was mid-test marked INCONCLUSIVE

``save_snapshot`` and ``load_snapshot`` move the same dict to and from a
JSON file; the application lifespan calls them when ``snapshot_path`` is set.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from deep_reason.domain.context import AnalysisContext
from deep_reason.domain.enums import (
    AnalysisType,
    HypothesisStatus,
    SessionState,
    TournamentState,
)
from deep_reason.domain.hypothesis import Hypothesis
from deep_reason.domain.memory import MemoryCheckpoint
from deep_reason.domain.session import AnalysisSession
from deep_reason.domain.tournament import RoundResult, Tournament, TournamentConfig
from deep_reason.domain.turn import ConversationTurn
from deep_reason.store.session_store import SessionStore
from deep_reason.store.tournament_store import TournamentStore

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1
INTERRUPTED_REASON = "interrupted by restart"

_INTERRUPTED_SESSION_STATES = frozenset(
    {SessionState.AWAITING_RESPONSE, SessionState.FINALIZING}
)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value is not None else None


# ── Sessions ─────────────────────────────────────────────────────────────────

def session_to_dict(session: AnalysisSession) -> dict[str, Any]:
    return {
        "session_id": session.session_id,
        "state": session.state.value,
        "analysis_type": session.analysis_type.value,
        "context": session.context.model_dump(mode="json"),
        "idle_timeout_seconds": session.idle_timeout.total_seconds(),
        "created_at": _iso(session.created_at),
        "last_activity_at": _iso(session.last_activity_at),
        "terminal_at": _iso(session.terminal_at),
        "failure_reason": session.failure_reason,
        "next_sequence": session.next_sequence,
        "turns": [turn.model_dump(mode="json") for turn in session.turns],
        "latest_checkpoint": (
            session.latest_checkpoint.model_dump(mode="json")
            if session.latest_checkpoint else None
        ),
    }


def session_from_dict(data: dict[str, Any]) -> AnalysisSession:
    session = AnalysisSession(
        context=AnalysisContext.model_validate(data["context"]),
        idle_timeout=timedelta(seconds=float(data["idle_timeout_seconds"])),
        now=_parse(data["created_at"]),
        analysis_type=AnalysisType(data["analysis_type"]),
        session_id=data["session_id"],
    )
    checkpoint = data.get("latest_checkpoint")
    session.load_history(
        turns=[ConversationTurn.model_validate(t) for t in data.get("turns", [])],
        checkpoints=[MemoryCheckpoint.model_validate(checkpoint)] if checkpoint else [],
        next_sequence=int(data["next_sequence"]),
    )
    state = SessionState(data["state"])
    if state in _INTERRUPTED_SESSION_STATES:
        logger.warning(
            "Session %s was %s at snapshot time; restored as active",
            session.session_id, state.value,
        )
        state = SessionState.ACTIVE
    session.state = state
    session.last_activity_at = _parse(data["last_activity_at"])
    session.terminal_at = _parse(data.get("terminal_at"))
    session.failure_reason = data.get("failure_reason")
    return session


# ── Tournaments ──────────────────────────────────────────────────────────────

def tournament_to_dict(tournament: Tournament) -> dict[str, Any]:
    return {
        "tournament_id": tournament.tournament_id,
        "issue": tournament.issue,
        "context": tournament.context.model_dump(mode="json"),
        "config": tournament.config.model_dump(mode="json"),
        "state": tournament.state.value,
        "current_round": tournament.current_round,
        "hypotheses": [h.model_dump(mode="json") for h in tournament.hypotheses.values()],
        "rounds": [r.model_dump(mode="json") for r in tournament.rounds],
        "winner": tournament.winner,
        "failure_reason": tournament.failure_reason,
        "created_at": _iso(tournament.created_at),
        "concluded_at": _iso(tournament.concluded_at),
    }


def tournament_from_dict(data: dict[str, Any], now: datetime) -> Tournament:
    tournament = Tournament(
        issue=data["issue"],
        context=AnalysisContext.model_validate(data["context"]),
        config=TournamentConfig.model_validate(data["config"]),
        now=_parse(data["created_at"]),
        tournament_id=data["tournament_id"],
    )
    for raw in data.get("hypotheses", []):
        hypothesis = Hypothesis.model_validate(raw)
        tournament.hypotheses[hypothesis.hypothesis_id] = hypothesis
    tournament.rounds = [RoundResult.model_validate(r) for r in data.get("rounds", [])]
    tournament.current_round = int(data.get("current_round", 0))
    tournament.winner = data.get("winner")
    tournament.failure_reason = data.get("failure_reason")
    tournament.concluded_at = _parse(data.get("concluded_at"))

    state = TournamentState(data["state"])
    if not state.is_terminal:
        logger.warning(
            "Tournament %s was %s at snapshot time; restored as failed",
            tournament.tournament_id, state.value,
        )
        state = TournamentState.FAILED
        tournament.failure_reason = INTERRUPTED_REASON
        for hypothesis in tournament.hypotheses.values():
            if hypothesis.status == HypothesisStatus.TESTING:
                hypothesis.status = HypothesisStatus.INCONCLUSIVE
        tournament.concluded_at = now
    tournament.state = state
    return tournament


# ── Whole-store round trip ───────────────────────────────────────────────────

async def dump_state(
    sessions: SessionStore,
    tournaments: TournamentStore | None = None,
) -> dict[str, Any]:
    """Serialise both stores into one JSON-ready dict."""
    return {
        "version": SNAPSHOT_VERSION,
        "taken_at": _iso(sessions.clock()),
        "sessions": [session_to_dict(s) for s in await sessions.sessions()],
        "tournaments": (
            [tournament_to_dict(t) for t in await tournaments.tournaments()]
            if tournaments is not None else []
        ),
    }


async def load_state(
    data: dict[str, Any],
    sessions: SessionStore,
    tournaments: TournamentStore | None = None,
) -> tuple[int, int]:
    """Register every persisted session and tournament.

    Returns:
        (sessions restored, tournaments restored)

    Raises:
        ValueError: Unsupported snapshot version.
    """
    version = data.get("version")
    if version != SNAPSHOT_VERSION:
        raise ValueError(f"Unsupported snapshot version: {version!r}")

    restored_sessions = 0
    for raw in data.get("sessions", []):
        await sessions.restore(session_from_dict(raw))
        restored_sessions += 1

    restored_tournaments = 0
    if tournaments is not None:
        now = sessions.clock()
        for raw in data.get("tournaments", []):
            await tournaments.add(tournament_from_dict(raw, now))
            restored_tournaments += 1

    logger.info(
        "Restored %d session(s) and %d tournament(s) from snapshot",
        restored_sessions, restored_tournaments,
    )
    return restored_sessions, restored_tournaments


# ── State file ───────────────────────────────────────────────────────────────

async def save_snapshot(
    path: str | Path,
    sessions: SessionStore,
    tournaments: TournamentStore | None = None,
) -> None:
    """Write ``dump_state`` to *path*, replacing any previous file atomically."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    data = await dump_state(sessions, tournaments)
    scratch = target.with_name(target.name + ".tmp")
    scratch.write_text(json.dumps(data, indent=2), encoding="utf-8")
    scratch.replace(target)
    logger.info(
        "Wrote snapshot of %d session(s) and %d tournament(s) to %s",
        len(data["sessions"]), len(data["tournaments"]), target,
    )


async def load_snapshot(
    path: str | Path,
    sessions: SessionStore,
    tournaments: TournamentStore | None = None,
) -> tuple[int, int]:
    """Restore from *path*; a missing file means a fresh start."""
    target = Path(path)
    if not target.exists():
        logger.info("No snapshot at %s; starting empty", target)
        return 0, 0
    data = json.loads(target.read_text(encoding="utf-8"))
    return await load_state(data, sessions, tournaments)
