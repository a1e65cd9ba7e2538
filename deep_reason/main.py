"""deep-reason: long-running analysis sessions and hypothesis tournaments.

This is the application entry point.  It wires the SessionStore,
MemoryBudgetManager, ConversationEngine, TournamentScheduler, the periodic
sweeper and the REST endpoints together.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI

from deep_reason.api.sessions import create_session_router
from deep_reason.api.tournaments import create_tournament_router
from deep_reason.config import settings
from deep_reason.core.conversation_engine import ConversationEngine
from deep_reason.core.memory_manager import ExtractiveCompactor, MemoryBudgetManager
from deep_reason.reasoning.langchain_client import LangChainReasoningClient
from deep_reason.services.sweeper import SessionSweeper
from deep_reason.store.session_store import SessionStore
from deep_reason.store.snapshot import load_snapshot, save_snapshot
from deep_reason.store.tournament_store import TournamentStore
from deep_reason.tournament.scheduler import TournamentScheduler

# ── Logging ──────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

logger = logging.getLogger(__name__)

# ── State ────────────────────────────────────────────────────────────────────

store = SessionStore(
    idle_timeout=timedelta(seconds=settings.session_idle_timeout_seconds),
    retention=timedelta(seconds=settings.session_retention_seconds),
)
tournaments = TournamentStore(
    retention=timedelta(seconds=settings.tournament_retention_seconds),
)

memory = MemoryBudgetManager(
    budget=settings.session_memory_budget,
    keep_recent=settings.memory_keep_recent_turns,
    total_budget=settings.memory_total_budget,
    max_checkpoints=settings.memory_max_checkpoints,
    compactor=ExtractiveCompactor(max_summary_chars=settings.memory_max_summary_chars),
)

# ── Orchestration ────────────────────────────────────────────────────────────

engine = ConversationEngine(
    store,
    LangChainReasoningClient(),
    memory=memory,
    time_budget=settings.dispatch_time_budget_seconds,
    max_turns=settings.max_turns_per_session,
    blocking=settings.session_lock_blocking,
)

scheduler = TournamentScheduler(
    engine,
    tournaments,
    max_consecutive_failures=settings.tournament_max_consecutive_failures,
    retry_backoff=settings.tournament_retry_backoff_seconds,
    max_backoff=settings.tournament_max_backoff_seconds,
)

sweeper = SessionSweeper(
    store,
    memory,
    interval_seconds=settings.sweep_interval_seconds,
    tournaments=tournaments,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.snapshot_path:
        await load_snapshot(settings.snapshot_path, store, tournaments)
    sweeper.start()
    try:
        yield
    finally:
        await sweeper.stop()
        await scheduler.shutdown()
        if settings.snapshot_path:
            await save_snapshot(settings.snapshot_path, store, tournaments)


# ── App ──────────────────────────────────────────────────────────────────────

app = FastAPI(
    title=settings.app_name,
    description="Stateful deep-analysis sessions and hypothesis tournaments",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Routes ───────────────────────────────────────────────────────────────────

app.include_router(create_session_router(engine))
app.include_router(create_tournament_router(
    scheduler,
    defaults={
        "max_hypotheses": settings.tournament_max_hypotheses,
        "max_rounds": settings.tournament_max_rounds,
        "parallel_sessions": settings.tournament_parallel_sessions,
    },
))


# ── Health ───────────────────────────────────────────────────────────────────

@app.get("/health")
async def health() -> dict:
    return {
        "status": "ok",
        "active_sessions": await store.active_count(),
        "sessions": await store.state_counts(),
        "tournaments": await tournaments.state_counts(),
    }
