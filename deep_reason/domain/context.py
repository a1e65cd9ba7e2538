"""AnalysisContext: what the requester already knows about the defect.

The context travels with every dispatch so the reasoning engine never
re-derives what the requester has already tried.  It is a value object:
sessions hold it, nothing mutates it after the session is opened.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class EntryPoint(BaseModel):
    """A function or method to start analysis from."""

    file: str = Field(..., min_length=1)
    line: int = Field(..., ge=0)
    column: int | None = Field(None, ge=0)
    function_name: str | None = None

    model_config = {"frozen": True}

    def __str__(self) -> str:
        location = f"{self.file}:{self.line}"
        return f"{self.function_name} ({location})" if self.function_name else location


class FocusArea(BaseModel):
    """The code scope an analysis concentrates on."""

    files: list[str] = Field(default_factory=list)
    entry_points: list[EntryPoint] = Field(default_factory=list)
    service_names: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def is_empty(self) -> bool:
        return not (self.files or self.entry_points or self.service_names)


class PartialFinding(BaseModel):
    """Something already discovered, before or during the conversation."""

    description: str = Field(..., min_length=1)
    category: str = Field(default="general")

    model_config = {"frozen": True}


class AnalysisContext(BaseModel):
    """Structured record of attempted approaches, findings and stuck points."""

    attempted_approaches: list[str] = Field(default_factory=list)
    partial_findings: list[PartialFinding] = Field(default_factory=list)
    stuck_points: list[str] = Field(default_factory=list)
    focus_area: FocusArea = Field(default_factory=FocusArea)

    model_config = {"frozen": True}
