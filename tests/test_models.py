"""Tests for domain models: validation, hypothesis scoring, error payloads."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from deep_reason.domain.context import AnalysisContext, EntryPoint, FocusArea
from deep_reason.domain.enums import (
    ErrorKind,
    HypothesisStatus,
    SessionState,
    TournamentState,
    TurnRole,
    Verdict,
)
from deep_reason.domain.errors import (
    InvalidTransition,
    RateLimited,
    SessionBusy,
    SessionNotFound,
)
from deep_reason.domain.hypothesis import Hypothesis, select_winner
from deep_reason.domain.session import AnalysisSession
from deep_reason.domain.tournament import Tournament, TournamentConfig
from deep_reason.domain.turn import TurnPayload

from tests.fakes import BASE_TIME, make_context


class TestContext:
    def test_focus_area_empty(self) -> None:
        assert FocusArea().is_empty
        assert not FocusArea(service_names=["billing"]).is_empty

    def test_entry_point_str(self) -> None:
        ep = EntryPoint(file="app.py", line=10, function_name="main")
        assert "app.py:10" in str(ep)

    def test_context_is_frozen(self) -> None:
        ctx = make_context()
        with pytest.raises(ValidationError):
            ctx.stuck_points = []

    def test_entry_point_requires_file(self) -> None:
        with pytest.raises(ValidationError):
            EntryPoint(file="", line=1)

    def test_partial_finding_default_category(self) -> None:
        ctx = AnalysisContext.model_validate(
            {"partial_findings": [{"description": "slow"}], "focus_area": {"files": ["a.py"]}}
        )
        assert ctx.partial_findings[0].category == "general"


class TestSessionStates:
    def test_terminal_flags(self) -> None:
        assert SessionState.COMPLETED.is_terminal
        assert SessionState.EXPIRED.is_terminal
        assert SessionState.FAILED.is_terminal
        assert not SessionState.AWAITING_RESPONSE.is_terminal

    def test_tournament_terminal_flags(self) -> None:
        assert TournamentState.CANCELLED.is_terminal
        assert not TournamentState.RUNNING.is_terminal


class TestAnalysisSession:
    def test_new_session_is_initiated(self) -> None:
        session = AnalysisSession(make_context(), timedelta(minutes=5), BASE_TIME)
        assert session.state == SessionState.INITIATED
        assert session.turn_count == 0
        assert session.next_sequence == 0

    def test_idle_is_strict(self) -> None:
        session = AnalysisSession(make_context(), timedelta(minutes=5), BASE_TIME)
        session.state = SessionState.ACTIVE
        assert not session.is_idle(BASE_TIME + timedelta(minutes=5))
        assert session.is_idle(BASE_TIME + timedelta(minutes=5, seconds=1))

    def test_turns_view_is_a_copy(self) -> None:
        session = AnalysisSession(make_context(), timedelta(minutes=5), BASE_TIME)
        session.append_turn(TurnRole.REQUESTER, TurnPayload(message="hi"), BASE_TIME)
        view = session.turns
        view.clear()
        assert session.turn_count == 1

    def test_load_history_rejects_stale_sequence(self) -> None:
        session = AnalysisSession(make_context(), timedelta(minutes=5), BASE_TIME)
        session.append_turn(TurnRole.REQUESTER, TurnPayload(message="hi"), BASE_TIME)
        with pytest.raises(ValueError):
            session.load_history(session.turns, [], next_sequence=0)


class TestHypothesis:
    def test_evidence_score_is_mean_confidence(self) -> None:
        h = Hypothesis(statement="stale cache")
        h.record_evidence(Verdict.SUPPORTED, 0.6)
        h.record_evidence(Verdict.SUPPORTED, 0.8)
        assert h.evidence_score == pytest.approx(0.7)
        assert h.status == HypothesisStatus.SUPPORTED

    def test_success_resets_failures(self) -> None:
        h = Hypothesis(statement="stale cache")
        assert h.record_failure() == 1
        assert h.record_failure() == 2
        h.record_evidence(Verdict.INCONCLUSIVE, 0.3)
        assert h.consecutive_failures == 0
        assert h.status == HypothesisStatus.INCONCLUSIVE

    def test_refuted(self) -> None:
        h = Hypothesis(statement="stale cache")
        h.record_evidence(Verdict.REFUTED, 0.9)
        assert h.is_refuted

    def test_statement_bounds(self) -> None:
        with pytest.raises(ValidationError):
            Hypothesis(statement="")
        with pytest.raises(ValidationError):
            Hypothesis(statement="x" * 501)

    def test_winner_prefers_score_then_round_then_id(self) -> None:
        a = Hypothesis(hypothesis_id="b", statement="a", evidence_score=0.7, round_introduced=0)
        b = Hypothesis(hypothesis_id="a", statement="b", evidence_score=0.7, round_introduced=1)
        c = Hypothesis(hypothesis_id="c", statement="c", evidence_score=0.7, round_introduced=0)
        assert select_winner([a, b, c]) is a
        d = Hypothesis(hypothesis_id="z", statement="d", evidence_score=0.9, round_introduced=2)
        assert select_winner([a, b, c, d]) is d

    def test_winner_ignores_refuted(self) -> None:
        refuted = Hypothesis(statement="x", evidence_score=0.99, status=HypothesisStatus.REFUTED)
        assert select_winner([refuted]) is None


class TestTournament:
    def test_config_requires_positive_values(self) -> None:
        with pytest.raises(ValidationError):
            TournamentConfig(parallel_sessions=0)
        with pytest.raises(ValidationError):
            TournamentConfig(max_rounds=-1)

    def test_snapshot_reports_winner(self) -> None:
        t = Tournament("issue", make_context(), TournamentConfig(), BASE_TIME)
        h = Hypothesis(statement="stale cache", evidence_score=0.8)
        t.hypotheses[h.hypothesis_id] = h
        t.winner = h.hypothesis_id
        snap = t.snapshot()
        assert snap.winner_statement == "stale cache"
        assert snap.winner_score == 0.8
        assert snap.state == TournamentState.SEEDING

    def test_snapshot_is_detached(self) -> None:
        t = Tournament("issue", make_context(), TournamentConfig(), BASE_TIME)
        h = Hypothesis(statement="stale cache")
        t.hypotheses[h.hypothesis_id] = h
        snap = t.snapshot()
        h.status = HypothesisStatus.TESTING
        assert snap.hypotheses[0].status == HypothesisStatus.PENDING


class TestErrors:
    def test_invalid_transition_payload(self) -> None:
        err = InvalidTransition(
            "s-1", expected=SessionState.ACTIVE, actual=SessionState.FINALIZING,
        )
        payload = err.to_dict()
        assert payload["error"] == ErrorKind.INVALID_TRANSITION.value
        assert payload["entity_id"] == "s-1"
        assert payload["retryable"] is False

    def test_not_found_and_busy(self) -> None:
        assert SessionNotFound("s-1").kind == ErrorKind.SESSION_NOT_FOUND
        assert SessionBusy("s-1").retryable

    def test_rate_limited_carries_hint(self) -> None:
        err = RateLimited("slow down", retry_after=3.0)
        assert err.to_dict()["retry_after"] == 3.0
        assert err.retryable
