"""ConversationTurn: one immutable entry in a session's history.

Turns are ordered by ``sequence``, which is unique and strictly increasing
within a session.  A checkpoint turn (``is_checkpoint=True``) stands in for
a run of older turns that the memory budget manager compacted away.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from deep_reason.domain.enums import TurnRole
from deep_reason.foundation.clock import utc_now


class CodeReference(BaseModel):
    """A pointer into the code base attached to a turn."""

    file: str = Field(..., min_length=1)
    line: int | None = Field(None, ge=0)
    snippet: str | None = None

    model_config = {"frozen": True}


class TurnPayload(BaseModel):
    """Message text plus an optional set of code references."""

    message: str
    code_references: list[CodeReference] = Field(default_factory=list)

    model_config = {"frozen": True}


class ConversationTurn(BaseModel):
    """A single requester or analyzer message, immutable once appended."""

    sequence: int = Field(..., ge=0)
    role: TurnRole
    payload: TurnPayload
    timestamp: datetime = Field(default_factory=utc_now)
    confidence: float | None = Field(
        None, ge=0.0, le=1.0,
        description="Analyzer-reported confidence, when the engine gives one",
    )
    findings: list[str] = Field(default_factory=list)
    is_checkpoint: bool = False

    model_config = {"frozen": True}

    @property
    def text(self) -> str:
        return self.payload.message
