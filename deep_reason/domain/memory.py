"""MemoryCheckpoint: the record left behind when history is compacted."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from deep_reason.foundation.clock import utc_now


class MemoryCheckpoint(BaseModel):
    """Compacted summary that replaces the turns up to ``sequence_at_checkpoint``.

    Fields:
        session_id: The session whose history was compacted.
        sequence_at_checkpoint: Sequence number assigned to the compacted turn.
        compacted_context: The reduced-size summary text.
        folded_turns: How many turns the summary replaced.
        size_before / size_after: Footprint estimate around the compaction.
    """

    session_id: str
    sequence_at_checkpoint: int = Field(..., ge=0)
    compacted_context: str
    folded_turns: int = Field(..., ge=1)
    size_before: int = Field(..., ge=0)
    size_after: int = Field(..., ge=0)
    created_at: datetime = Field(default_factory=utc_now)

    model_config = {"frozen": True}
