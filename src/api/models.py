# src/api/models.py — v2
"""API-level models returned by the control facade."""

from __future__ import annotations

from pydantic import BaseModel, Field

from dealintake.core.models import (
    Clarification,
    DetectedConflict,
    DocumentTask,
    FacilityProfile,
    PipelineSession,
    ProgressSummary,
)


class SessionSnapshot(BaseModel):
    """Return value of ``get()`` — session plus everything it produced."""

    session: PipelineSession
    tasks: list[DocumentTask] = Field(default_factory=list)
    profiles: list[FacilityProfile] = Field(default_factory=list)
    conflicts: list[DetectedConflict] = Field(default_factory=list)
    clarifications: list[Clarification] = Field(default_factory=list)
    summary: ProgressSummary = Field(default_factory=ProgressSummary)

    @property
    def pending_clarifications(self) -> list[Clarification]:
        return [c for c in self.clarifications if c.status == "pending"]

    @property
    def succeeded(self) -> int:
        return sum(1 for t in self.tasks if t.status == "succeeded")

    @property
    def failed(self) -> int:
        return sum(1 for t in self.tasks if t.status == "failed")
