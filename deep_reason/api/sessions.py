"""REST endpoints for analysis sessions.

Paths:
    POST /api/sessions                      open (and optionally ask a first question)
    POST /api/sessions/{id}/turns           submit one turn
    POST /api/sessions/{id}/finalize        closing synthesis
    GET  /api/sessions/{id}                 status snapshot
    POST /api/sessions/{id}/cancel          cancel
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, Field

from deep_reason.api.errors import to_http_exception
from deep_reason.core.conversation_engine import ConversationEngine
from deep_reason.domain.context import AnalysisContext
from deep_reason.domain.enums import AnalysisType, SummaryFormat
from deep_reason.domain.errors import DeepReasonError
from deep_reason.domain.turn import CodeReference


class OpenSessionRequest(BaseModel):
    context: AnalysisContext
    analysis_type: AnalysisType = AnalysisType.EXECUTION_TRACE
    initial_question: str | None = None
    idle_timeout_seconds: float | None = Field(None, gt=0)


class SubmitTurnRequest(BaseModel):
    message: str = Field(..., min_length=1)
    code_references: list[CodeReference] = Field(default_factory=list)
    time_budget_seconds: float | None = Field(None, gt=0)


class FinalizeRequest(BaseModel):
    summary_format: SummaryFormat = SummaryFormat.DETAILED
    time_budget_seconds: float | None = Field(None, gt=0)


def create_session_router(engine: ConversationEngine) -> APIRouter:
    """Factory that wires the session endpoints to a ConversationEngine."""

    router = APIRouter(prefix="/api/sessions", tags=["sessions"])

    @router.post("", status_code=201)
    async def open_session(body: OpenSessionRequest) -> dict[str, Any]:
        idle_timeout = (
            timedelta(seconds=body.idle_timeout_seconds)
            if body.idle_timeout_seconds is not None else None
        )
        try:
            started = await engine.start_conversation(
                body.context,
                analysis_type=body.analysis_type,
                initial_question=body.initial_question,
                idle_timeout=idle_timeout,
            )
        except DeepReasonError as exc:
            raise to_http_exception(exc) from exc
        return started.model_dump(mode="json")

    @router.post("/{session_id}/turns")
    async def submit_turn(session_id: str, body: SubmitTurnRequest) -> dict[str, Any]:
        try:
            result = await engine.submit_turn(
                session_id,
                body.message,
                code_references=body.code_references,
                time_budget=body.time_budget_seconds,
            )
        except DeepReasonError as exc:
            raise to_http_exception(exc) from exc
        return result.model_dump(mode="json")

    @router.post("/{session_id}/finalize")
    async def finalize(session_id: str, body: FinalizeRequest | None = None) -> dict[str, Any]:
        body = body or FinalizeRequest()
        try:
            summary = await engine.finalize(
                session_id,
                summary_format=body.summary_format,
                time_budget=body.time_budget_seconds,
            )
        except DeepReasonError as exc:
            raise to_http_exception(exc) from exc
        return summary.model_dump(mode="json")

    @router.get("/{session_id}")
    async def session_status(session_id: str) -> dict[str, Any]:
        try:
            snapshot = await engine.status(session_id)
        except DeepReasonError as exc:
            raise to_http_exception(exc) from exc
        return snapshot.model_dump(mode="json")

    @router.post("/{session_id}/cancel")
    async def cancel_session(session_id: str) -> dict[str, Any]:
        try:
            snapshot = await engine.cancel(session_id)
        except DeepReasonError as exc:
            raise to_http_exception(exc) from exc
        return snapshot.model_dump(mode="json")

    return router
