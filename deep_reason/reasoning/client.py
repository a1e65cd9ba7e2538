"""External reasoning boundary: the only thing the core dispatches to.

The core consumes the reasoning engine through ``ReasoningClient.dispatch``
and nothing else.  Implementations must:

    1. Return a ReasoningResponse on success.
    2. Raise RateLimited, DispatchTimeout or TransportError on failure,
       attaching ``retry_after`` when the backend offers a hint.
    3. Never retry internally; retry policy belongs to the caller.
    4. Never touch the session store.
"""

from __future__ import annotations

from enum import Enum
from typing import Protocol

from pydantic import BaseModel, Field

from deep_reason.domain.context import AnalysisContext
from deep_reason.domain.enums import AnalysisType, SummaryFormat, Verdict
from deep_reason.domain.turn import CodeReference, ConversationTurn


class RequestPurpose(str, Enum):
    """Why the core is dispatching."""

    TURN = "turn"
    FINALIZE = "finalize"
    GENERATE_HYPOTHESES = "generate_hypotheses"


class ReasoningRequest(BaseModel):
    """Everything the reasoning engine needs for one exchange.

    ``history`` is the session's current turn history, which may start
    with a checkpoint turn standing in for compacted older turns.
    """

    purpose: RequestPurpose = RequestPurpose.TURN
    session_id: str | None = None
    analysis_type: AnalysisType
    context: AnalysisContext
    history: list[ConversationTurn] = Field(default_factory=list)
    message: str
    code_references: list[CodeReference] = Field(default_factory=list)
    summary_format: SummaryFormat | None = None
    hypothesis_count: int | None = Field(None, ge=1)

    model_config = {"frozen": True}


class ReasoningResponse(BaseModel):
    """What came back from the reasoning engine.

    ``verdict`` is only meaningful for hypothesis tests and ``hypotheses``
    only for hypothesis generation; both are optional otherwise.
    """

    content: str
    findings: list[str] = Field(default_factory=list)
    confidence: float | None = Field(None, ge=0.0, le=1.0)
    verdict: Verdict | None = None
    hypotheses: list[str] = Field(default_factory=list)
    code_references: list[CodeReference] = Field(default_factory=list)

    model_config = {"frozen": True}


class ReasoningClient(Protocol):
    """Request/response boundary to the outside reasoning engine."""

    async def dispatch(
        self,
        request: ReasoningRequest,
        time_budget: float,
    ) -> ReasoningResponse:
        """Send one request and wait at most *time_budget* seconds.

        Raises:
            RateLimited: The backend asked us to slow down.
            DispatchTimeout: No answer within the time budget.
            TransportError: Any other failure reaching the backend.
        """
        ...
