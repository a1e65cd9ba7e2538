"""REST endpoints for hypothesis tournaments.

Paths:
    POST /api/tournaments                 seed and start (rounds run in the background)
    GET  /api/tournaments/{id}            status snapshot
    POST /api/tournaments/{id}/cancel     cancel
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, Field

from deep_reason.api.errors import to_http_exception
from deep_reason.domain.context import AnalysisContext
from deep_reason.domain.errors import DeepReasonError
from deep_reason.tournament.scheduler import TournamentScheduler

logger = logging.getLogger(__name__)


class StartTournamentRequest(BaseModel):
    issue: str = Field(..., min_length=1)
    context: AnalysisContext
    # Validated by the scheduler so bad values surface as InvalidTournamentConfig.
    config: dict[str, Any] | None = None


def _snapshot_payload(snapshot) -> dict[str, Any]:
    payload = snapshot.model_dump(mode="json")
    payload["testing_count"] = snapshot.testing_count
    return payload


def create_tournament_router(
    scheduler: TournamentScheduler,
    defaults: dict[str, Any] | None = None,
) -> APIRouter:
    """Factory that wires the tournament endpoints to a TournamentScheduler.

    Args:
        defaults: Config values applied where a request omits them.
    """

    router = APIRouter(prefix="/api/tournaments", tags=["tournaments"])

    @router.post("", status_code=202)
    async def start_tournament(body: StartTournamentRequest) -> dict[str, Any]:
        config = {**(defaults or {}), **(body.config or {})}
        try:
            tournament_id = await scheduler.start(body.issue, body.context, config)
            snapshot = await scheduler.status(tournament_id)
        except DeepReasonError as exc:
            raise to_http_exception(exc) from exc
        logger.info("Started tournament %s via API", tournament_id)
        return _snapshot_payload(snapshot)

    @router.get("/{tournament_id}")
    async def tournament_status(tournament_id: str) -> dict[str, Any]:
        try:
            snapshot = await scheduler.status(tournament_id)
        except DeepReasonError as exc:
            raise to_http_exception(exc) from exc
        return _snapshot_payload(snapshot)

    @router.post("/{tournament_id}/cancel")
    async def cancel_tournament(tournament_id: str) -> dict[str, Any]:
        try:
            snapshot = await scheduler.cancel(tournament_id)
        except DeepReasonError as exc:
            raise to_http_exception(exc) from exc
        return _snapshot_payload(snapshot)

    return router
