"""Tests for the SessionStore: state machine, compare-and-set, expiry."""

import asyncio
from datetime import timedelta

import pytest

from deep_reason.domain.context import AnalysisContext
from deep_reason.domain.enums import AnalysisType, SessionState, TurnRole
from deep_reason.domain.errors import InvalidContext, InvalidTransition, SessionNotFound
from deep_reason.domain.turn import TurnPayload
from deep_reason.store.session_store import SessionStore, is_permitted

from tests.fakes import FakeClock, make_context


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> SessionStore:
    return SessionStore(
        idle_timeout=timedelta(minutes=5),
        retention=timedelta(minutes=5),
        clock=clock,
    )


class TestStateMachine:
    def test_initiated_only_goes_active(self) -> None:
        assert is_permitted(SessionState.INITIATED, SessionState.ACTIVE)
        assert not is_permitted(SessionState.INITIATED, SessionState.FINALIZING)

    def test_active_moves(self) -> None:
        assert is_permitted(SessionState.ACTIVE, SessionState.AWAITING_RESPONSE)
        assert is_permitted(SessionState.ACTIVE, SessionState.FINALIZING)
        assert not is_permitted(SessionState.ACTIVE, SessionState.COMPLETED)

    def test_any_live_state_may_abort(self) -> None:
        for state in (SessionState.INITIATED, SessionState.ACTIVE,
                      SessionState.AWAITING_RESPONSE, SessionState.FINALIZING):
            assert is_permitted(state, SessionState.EXPIRED)
            assert is_permitted(state, SessionState.FAILED)

    def test_terminal_states_are_final(self) -> None:
        for state in (SessionState.COMPLETED, SessionState.EXPIRED, SessionState.FAILED):
            for target in SessionState:
                assert not is_permitted(state, target)


class TestOpen:
    @pytest.mark.asyncio
    async def test_open_lands_in_active(self, store: SessionStore) -> None:
        sid = await store.open(make_context())
        snap = await store.snapshot(sid)
        assert snap.state == SessionState.ACTIVE
        assert snap.turn_count == 0
        assert snap.analysis_type == AnalysisType.EXECUTION_TRACE

    @pytest.mark.asyncio
    async def test_empty_focus_area_rejected(self, store: SessionStore) -> None:
        with pytest.raises(InvalidContext):
            await store.open(AnalysisContext())

    @pytest.mark.asyncio
    async def test_non_positive_idle_timeout_rejected(self, store: SessionStore) -> None:
        with pytest.raises(InvalidContext):
            await store.open(make_context(), idle_timeout=timedelta(0))

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, store: SessionStore) -> None:
        ids = {await store.open(make_context()) for _ in range(10)}
        assert len(ids) == 10


class TestTransition:
    @pytest.mark.asyncio
    async def test_compare_and_set_succeeds(self, store: SessionStore) -> None:
        sid = await store.open(make_context())
        session = await store.transition(sid, SessionState.ACTIVE, SessionState.AWAITING_RESPONSE)
        assert session.state == SessionState.AWAITING_RESPONSE

    @pytest.mark.asyncio
    async def test_stale_from_state_rejected(self, store: SessionStore) -> None:
        sid = await store.open(make_context())
        with pytest.raises(InvalidTransition) as info:
            await store.transition(sid, SessionState.AWAITING_RESPONSE, SessionState.ACTIVE)
        assert info.value.entity_id == sid
        assert (await store.snapshot(sid)).state == SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_forbidden_edge_rejected(self, store: SessionStore) -> None:
        sid = await store.open(make_context())
        with pytest.raises(InvalidTransition):
            await store.transition(sid, SessionState.ACTIVE, SessionState.COMPLETED)

    @pytest.mark.asyncio
    async def test_unknown_session(self, store: SessionStore) -> None:
        with pytest.raises(SessionNotFound):
            await store.transition("nope", SessionState.ACTIVE, SessionState.FINALIZING)

    @pytest.mark.asyncio
    async def test_concurrent_cas_only_one_wins(self, store: SessionStore) -> None:
        sid = await store.open(make_context())
        results = await asyncio.gather(
            *(store.transition(sid, SessionState.ACTIVE, SessionState.AWAITING_RESPONSE)
              for _ in range(5)),
            return_exceptions=True,
        )
        assert sum(not isinstance(r, Exception) for r in results) == 1
        assert sum(isinstance(r, InvalidTransition) for r in results) == 4

    @pytest.mark.asyncio
    async def test_failure_reason_recorded(self, store: SessionStore) -> None:
        sid = await store.open(make_context())
        await store.transition(sid, SessionState.ACTIVE, SessionState.FAILED, reason="boom")
        snap = await store.snapshot(sid)
        assert snap.state == SessionState.FAILED
        assert snap.failure_reason == "boom"


class TestTurns:
    @pytest.mark.asyncio
    async def test_sequences_are_dense(self, store: SessionStore) -> None:
        sid = await store.open(make_context())
        for i in range(4):
            role = TurnRole.REQUESTER if i % 2 == 0 else TurnRole.ANALYZER
            await store.append_turn(sid, role, TurnPayload(message=f"turn {i}"))
        snap = await store.snapshot(sid)
        assert [t.sequence for t in snap.turns] == [0, 1, 2, 3]
        assert snap.total_turns == 4

    @pytest.mark.asyncio
    async def test_append_refused_when_terminal(self, store: SessionStore) -> None:
        sid = await store.open(make_context())
        await store.transition(sid, SessionState.ACTIVE, SessionState.FAILED)
        with pytest.raises(InvalidTransition):
            await store.append_turn(sid, TurnRole.REQUESTER, TurnPayload(message="late"))


class TestExpiry:
    @pytest.mark.asyncio
    async def test_not_expired_at_exactly_timeout(self, store: SessionStore, clock: FakeClock) -> None:
        sid = await store.open(make_context())
        clock.advance(minutes=5)
        assert await store.sweep_expired() == []
        assert (await store.snapshot(sid)).state == SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_expired_after_timeout(self, store: SessionStore, clock: FakeClock) -> None:
        sid = await store.open(make_context())
        clock.advance(minutes=6)
        assert await store.sweep_expired() == [sid]
        snap = await store.snapshot(sid)
        assert snap.state == SessionState.EXPIRED
        assert snap.failure_reason == "idle timeout"

    @pytest.mark.asyncio
    async def test_activity_resets_idle_clock(self, store: SessionStore, clock: FakeClock) -> None:
        sid = await store.open(make_context())
        clock.advance(minutes=4)
        await store.append_turn(sid, TurnRole.REQUESTER, TurnPayload(message="still here"))
        clock.advance(minutes=4)
        assert await store.sweep_expired() == []

    @pytest.mark.asyncio
    async def test_explicit_now_overrides_clock(self, store: SessionStore, clock: FakeClock) -> None:
        sid = await store.open(make_context())
        assert await store.sweep_expired(clock.now + timedelta(minutes=6)) == [sid]

    @pytest.mark.asyncio
    async def test_terminal_sessions_never_expire(self, store: SessionStore, clock: FakeClock) -> None:
        sid = await store.open(make_context())
        await store.transition(sid, SessionState.ACTIVE, SessionState.FAILED)
        clock.advance(hours=1)
        assert await store.sweep_expired() == []


class TestRetention:
    @pytest.mark.asyncio
    async def test_terminal_session_queryable_within_retention(
        self, store: SessionStore, clock: FakeClock,
    ) -> None:
        sid = await store.open(make_context())
        await store.transition(sid, SessionState.ACTIVE, SessionState.FAILED)
        clock.advance(minutes=4)
        assert await store.purge_terminal() == []
        assert (await store.snapshot(sid)).state == SessionState.FAILED

    @pytest.mark.asyncio
    async def test_purged_after_retention(self, store: SessionStore, clock: FakeClock) -> None:
        sid = await store.open(make_context())
        await store.transition(sid, SessionState.ACTIVE, SessionState.FAILED)
        clock.advance(minutes=6)
        assert await store.purge_terminal() == [sid]
        with pytest.raises(SessionNotFound):
            await store.snapshot(sid)
        with pytest.raises(SessionNotFound):
            store.lock_for(sid)

    @pytest.mark.asyncio
    async def test_evict(self, store: SessionStore) -> None:
        sid = await store.open(make_context())
        assert await store.evict(sid) is True
        assert await store.evict(sid) is False


class TestCounts:
    @pytest.mark.asyncio
    async def test_state_counts(self, store: SessionStore) -> None:
        a = await store.open(make_context())
        await store.open(make_context())
        await store.transition(a, SessionState.ACTIVE, SessionState.FAILED)
        counts = await store.state_counts()
        assert counts["active"] == 1
        assert counts["failed"] == 1
        assert counts["completed"] == 0
        assert await store.active_count() == 1
