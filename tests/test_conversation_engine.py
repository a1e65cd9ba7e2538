"""Tests for the ConversationEngine: turn-taking, failures, exclusivity, finalize."""

import asyncio
from datetime import timedelta

import pytest

from deep_reason.core.conversation_engine import CANCELLED_REASON, ConversationEngine
from deep_reason.core.memory_manager import MemoryBudgetManager
from deep_reason.domain.enums import (
    AnalysisType,
    ErrorKind,
    SessionState,
    SummaryFormat,
    TurnOutcome,
    TurnRole,
    Verdict,
)
from deep_reason.domain.errors import (
    InvalidTransition,
    RateLimited,
    SessionBusy,
    SessionNotFound,
    TransportError,
)
from deep_reason.domain.turn import CodeReference
from deep_reason.reasoning.client import ReasoningResponse, RequestPurpose
from deep_reason.store.session_store import SessionStore

from tests.fakes import FakeClock, FakeReasoningClient, make_context


# ── Helpers ──────────────────────────────────────────────────────────────────

def _engine(
    client: FakeReasoningClient | None = None,
    clock: FakeClock | None = None,
    **kw,
) -> ConversationEngine:
    store = SessionStore(clock=clock or FakeClock())
    return ConversationEngine(store, client or FakeReasoningClient(), **kw)


def _answer(content: str = "The lock is released too late.", **kw) -> ReasoningResponse:
    kw.setdefault("confidence", 0.7)
    return ReasoningResponse(content=content, **kw)


class TestSubmitTurn:
    @pytest.mark.asyncio
    async def test_answered_turn_appends_two_turns(self) -> None:
        client = FakeReasoningClient(script=[_answer(findings=["lock held across await"])])
        engine = _engine(client)
        sid = await engine.open(make_context())

        result = await engine.submit_turn(sid, "Why do retries double?")

        assert result.outcome == TurnOutcome.RESPONDED
        assert result.request_sequence == 0
        assert result.response.sequence == 1
        assert result.response.role == TurnRole.ANALYZER
        assert result.response.findings == ["lock held across await"]
        snap = await engine.status(sid)
        assert snap.state == SessionState.ACTIVE
        assert [t.role for t in snap.turns] == [TurnRole.REQUESTER, TurnRole.ANALYZER]

    @pytest.mark.asyncio
    async def test_request_carries_context_and_prior_history(self) -> None:
        client = FakeReasoningClient()
        engine = _engine(client)
        sid = await engine.open(make_context(), analysis_type=AnalysisType.PERFORMANCE)
        await engine.submit_turn(sid, "first")
        await engine.submit_turn(
            sid, "second", code_references=[CodeReference(file="src/payments/retry.py", line=42)],
        )

        request = client.requests[-1]
        assert request.purpose == RequestPurpose.TURN
        assert request.analysis_type == AnalysisType.PERFORMANCE
        assert request.message == "second"
        assert [t.sequence for t in request.history] == [0, 1]
        assert request.code_references[0].line == 42
        assert request.context.focus_area.files == ["src/payments/retry.py"]

    @pytest.mark.asyncio
    async def test_verdict_is_passed_through(self) -> None:
        client = FakeReasoningClient(script=[_answer(verdict=Verdict.REFUTED)])
        engine = _engine(client)
        sid = await engine.open(make_context())
        result = await engine.submit_turn(sid, "Is it the cache?")
        assert result.verdict == Verdict.REFUTED

    @pytest.mark.asyncio
    async def test_unknown_session(self) -> None:
        engine = _engine()
        with pytest.raises(SessionNotFound):
            await engine.submit_turn("missing", "hello")

    @pytest.mark.asyncio
    async def test_finalizing_session_rejects_turns(self) -> None:
        engine = _engine()
        sid = await engine.open(make_context())
        await engine.store.transition(sid, SessionState.ACTIVE, SessionState.FINALIZING)
        with pytest.raises(InvalidTransition):
            await engine.submit_turn(sid, "too late")
        snap = await engine.status(sid)
        assert snap.state == SessionState.FINALIZING
        assert snap.turn_count == 0

    @pytest.mark.asyncio
    async def test_memory_enforced_after_turn(self) -> None:
        client = FakeReasoningClient(default=_answer("y" * 800))
        engine = _engine(client, memory=MemoryBudgetManager(budget=300, keep_recent=2))
        sid = await engine.open(make_context())
        results = [await engine.submit_turn(sid, "x" * 800) for _ in range(3)]

        assert any(r.checkpoint_created for r in results)
        snap = await engine.status(sid)
        assert snap.turns[0].is_checkpoint
        assert snap.total_turns == 6
        sequences = [t.sequence for t in snap.turns]
        assert sequences == sorted(sequences)


class TestDispatchFailures:
    @pytest.mark.asyncio
    async def test_rate_limited_is_retryable(self) -> None:
        client = FakeReasoningClient(script=[RateLimited("slow down", retry_after=2.5)])
        engine = _engine(client)
        sid = await engine.open(make_context())

        result = await engine.submit_turn(sid, "Why?")

        assert result.outcome == TurnOutcome.RETRYABLE
        assert result.is_retryable
        assert result.error_kind == ErrorKind.RATE_LIMITED.value
        assert result.retry_after == 2.5
        assert (await engine.status(sid)).state == SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_resubmission_after_failure_succeeds(self) -> None:
        client = FakeReasoningClient(script=[TransportError("connection reset"), _answer()])
        engine = _engine(client)
        sid = await engine.open(make_context())

        first = await engine.submit_turn(sid, "Why?")
        second = await engine.submit_turn(sid, "Why?")

        assert first.outcome == TurnOutcome.RETRYABLE
        assert second.outcome == TurnOutcome.RESPONDED
        snap = await engine.status(sid)
        assert [t.sequence for t in snap.turns] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_time_budget_exceeded_is_timeout(self) -> None:
        client = FakeReasoningClient(delay=0.5)
        engine = _engine(client, time_budget=0.05)
        sid = await engine.open(make_context())

        result = await engine.submit_turn(sid, "Why?")

        assert result.outcome == TurnOutcome.RETRYABLE
        assert result.error_kind == ErrorKind.TIMEOUT.value
        assert (await engine.status(sid)).state == SessionState.ACTIVE


class TestExclusivity:
    @pytest.mark.asyncio
    async def test_concurrent_turns_are_serialised(self) -> None:
        client = FakeReasoningClient(delay=0.02)
        engine = _engine(client)
        sid = await engine.open(make_context())

        results = await asyncio.gather(
            engine.submit_turn(sid, "one"),
            engine.submit_turn(sid, "two"),
        )

        assert client.max_in_flight == 1
        assert all(r.outcome == TurnOutcome.RESPONDED for r in results)
        snap = await engine.status(sid)
        assert [t.sequence for t in snap.turns] == [0, 1, 2, 3]
        roles = [t.role for t in snap.turns]
        assert roles == [TurnRole.REQUESTER, TurnRole.ANALYZER] * 2

    @pytest.mark.asyncio
    async def test_non_blocking_mode_reports_busy(self) -> None:
        client = FakeReasoningClient(delay=0.05)
        engine = _engine(client, blocking=False)
        sid = await engine.open(make_context())

        results = await asyncio.gather(
            engine.submit_turn(sid, "one"),
            engine.submit_turn(sid, "two"),
            return_exceptions=True,
        )

        assert sum(isinstance(r, SessionBusy) for r in results) == 1
        assert (await engine.status(sid)).turn_count == 2

    @pytest.mark.asyncio
    async def test_sessions_do_not_block_each_other(self) -> None:
        client = FakeReasoningClient(delay=0.02)
        engine = _engine(client)
        a = await engine.open(make_context())
        b = await engine.open(make_context())
        await asyncio.gather(engine.submit_turn(a, "a"), engine.submit_turn(b, "b"))
        assert client.max_in_flight == 2


class TestTurnLimit:
    @pytest.mark.asyncio
    async def test_turn_limit_requires_finalize(self) -> None:
        engine = _engine(max_turns=4)
        sid = await engine.open(make_context())
        await engine.submit_turn(sid, "1")
        await engine.submit_turn(sid, "2")

        with pytest.raises(InvalidTransition) as info:
            await engine.submit_turn(sid, "3")
        assert "turn limit" in info.value.message

        summary = await engine.finalize(sid)
        assert summary.total_turns == 4


class TestFinalize:
    @pytest.mark.asyncio
    async def test_finalize_completes_session(self) -> None:
        clock = FakeClock()
        client = FakeReasoningClient(script=[
            _answer(findings=["lock held across await"]),
            _answer("Root cause: lock scope.", findings=["narrow the lock"], confidence=0.9),
        ])
        engine = _engine(client, clock=clock)
        sid = await engine.open(make_context())
        await engine.submit_turn(sid, "Why?")
        clock.advance(minutes=3)

        summary = await engine.finalize(sid, summary_format=SummaryFormat.ACTIONABLE)

        assert summary.summary == "Root cause: lock scope."
        assert summary.summary_format == SummaryFormat.ACTIONABLE
        assert summary.findings == ["narrow the lock"]
        assert summary.insights == ["lock held across await"]
        assert summary.ruled_out_approaches == ["added logging around the retry loop"]
        assert summary.total_turns == 2
        assert summary.duration_seconds == 180.0
        assert summary.confidence == 0.9
        assert (await engine.status(sid)).state == SessionState.COMPLETED
        assert client.requests[-1].purpose == RequestPurpose.FINALIZE
        assert client.requests[-1].summary_format == SummaryFormat.ACTIONABLE

    @pytest.mark.asyncio
    async def test_finalize_failure_fails_session(self) -> None:
        client = FakeReasoningClient(script=[TransportError("backend down")])
        engine = _engine(client)
        sid = await engine.open(make_context())

        with pytest.raises(TransportError):
            await engine.finalize(sid)

        snap = await engine.status(sid)
        assert snap.state == SessionState.FAILED
        assert "TransportError" in snap.failure_reason

    @pytest.mark.asyncio
    async def test_completed_session_rejects_everything(self) -> None:
        engine = _engine()
        sid = await engine.open(make_context())
        await engine.finalize(sid)
        with pytest.raises(InvalidTransition):
            await engine.submit_turn(sid, "again")
        with pytest.raises(InvalidTransition):
            await engine.finalize(sid)


class TestStartConversation:
    @pytest.mark.asyncio
    async def test_with_initial_question(self) -> None:
        engine = _engine()
        started = await engine.start_conversation(make_context(), initial_question="Where?")
        assert started.first_turn is not None
        assert started.first_turn.outcome == TurnOutcome.RESPONDED
        assert (await engine.status(started.session_id)).turn_count == 2

    @pytest.mark.asyncio
    async def test_without_initial_question(self) -> None:
        engine = _engine()
        started = await engine.start_conversation(make_context())
        assert started.first_turn is None


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_idle_session(self) -> None:
        engine = _engine()
        sid = await engine.open(make_context())
        snap = await engine.cancel(sid)
        assert snap.state == SessionState.FAILED
        assert snap.failure_reason == CANCELLED_REASON

    @pytest.mark.asyncio
    async def test_cancel_during_dispatch_lets_it_finish(self) -> None:
        client = FakeReasoningClient(delay=0.05)
        engine = _engine(client)
        sid = await engine.open(make_context())

        turn = asyncio.create_task(engine.submit_turn(sid, "Why?"))
        await asyncio.sleep(0.01)
        mid = await engine.cancel(sid)
        result = await turn

        assert mid.state == SessionState.AWAITING_RESPONSE
        assert result.outcome == TurnOutcome.RESPONDED
        snap = await engine.status(sid)
        assert snap.state == SessionState.FAILED
        assert snap.failure_reason == CANCELLED_REASON
        with pytest.raises(InvalidTransition):
            await engine.submit_turn(sid, "more")

    @pytest.mark.asyncio
    async def test_cancel_during_failed_dispatch_is_not_retryable(self) -> None:
        client = FakeReasoningClient(script=[RateLimited("slow down", retry_after=1.0)], delay=0.05)
        engine = _engine(client)
        sid = await engine.open(make_context())

        turn = asyncio.create_task(engine.submit_turn(sid, "Why?"))
        await asyncio.sleep(0.01)
        await engine.cancel(sid)

        with pytest.raises(InvalidTransition) as excinfo:
            await turn
        assert "cancelled" in excinfo.value.message
        snap = await engine.status(sid)
        assert snap.state == SessionState.FAILED
        assert snap.failure_reason == CANCELLED_REASON


class TestRetire:
    @pytest.mark.asyncio
    async def test_retire_completes_active_session(self) -> None:
        engine = _engine()
        sid = await engine.open(make_context())
        assert await engine.retire(sid, "no longer needed") is True
        assert (await engine.status(sid)).state == SessionState.COMPLETED
        assert await engine.retire(sid, "again") is False

    @pytest.mark.asyncio
    async def test_retire_unknown_session(self) -> None:
        engine = _engine()
        assert await engine.retire("missing", "gone") is False


class TestExpiryInteraction:
    @pytest.mark.asyncio
    async def test_expired_session_rejects_turns(self) -> None:
        clock = FakeClock()
        engine = _engine(clock=clock)
        sid = await engine.open(make_context(), idle_timeout=timedelta(minutes=1))
        clock.advance(minutes=2)
        await engine.store.sweep_expired()
        with pytest.raises(InvalidTransition):
            await engine.submit_turn(sid, "hello?")

    @pytest.mark.asyncio
    async def test_sweep_skips_session_with_dispatch_in_flight(self) -> None:
        clock = FakeClock()
        engine = _engine(FakeReasoningClient(delay=0.05), clock=clock)
        sid = await engine.open(make_context(), idle_timeout=timedelta(seconds=5))

        turn = asyncio.create_task(engine.submit_turn(sid, "slow question"))
        await asyncio.sleep(0.01)
        clock.advance(seconds=6)
        assert await engine.store.sweep_expired() == []

        result = await turn
        assert result.outcome == TurnOutcome.RESPONDED
        assert (await engine.status(sid)).state == SessionState.ACTIVE

        clock.advance(seconds=6)
        assert await engine.store.sweep_expired() == [sid]
