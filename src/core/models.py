# src/core/models.py — v2
"""Shared Pydantic domain models used across modules.

No module redefines these types — all imports come from core.models.
Covers the session/task bookkeeping, extracted fields, facility profiles
with their period records, conflicts, clarifications and progress events.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

SessionStatus = Literal["queued", "running", "complete", "failed", "cancelled"]
TaskStatus = Literal["queued", "running", "succeeded", "failed"]
TaskErrorKind = Literal["retryable_exhausted", "fatal", "cancelled", "persistence"]
Severity = Literal["low", "medium", "high", "critical"]
ConflictStatus = Literal["open", "resolved", "dismissed"]
ResolutionMethod = Literal["auto_highest_confidence", "auto_most_recent", "user_override"]
ClarificationType = Literal["conflict", "low_confidence", "missing", "out_of_range"]
ClarificationStatus = Literal["pending", "resolved", "skipped"]
ProgressKind = Literal[
    "task_done",
    "merge_applied",
    "conflict_detected",
    "clarification_created",
    "status_changed",
]
FieldValue = float | int | str

TERMINAL_SESSION_STATUSES: frozenset[str] = frozenset({"complete", "failed", "cancelled"})
TERMINAL_TASK_STATUSES: frozenset[str] = frozenset({"succeeded", "failed"})
SEVERITY_ORDER: dict[str, int] = {"low": 1, "medium": 2, "high": 3, "critical": 4}

UNDATED_PERIOD_KEY = "undated"


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# === INPUTS ===


class DocumentInput(BaseModel):
    """One raw document submitted to a session."""

    filename: str
    content: bytes
    document_id: str = Field(default_factory=_new_id)
    document_type: str | None = None
    facility_hint: str | None = None
    as_of: date | None = None


class ParsedDocument(BaseModel):
    """Ingestor output: plain text plus tabular content."""

    text: str = ""
    tables: list[list[list[str]]] = Field(default_factory=list)
    mime_type: str = "text/plain"


class FacilityHint(BaseModel):
    """What an extraction result says about the facility it describes."""

    name: str | None = None
    external_id: str | None = None


class PeriodHint(BaseModel):
    """Reporting period an extraction result belongs to (both None = undated)."""

    start: date | None = None
    end: date | None = None

    @property
    def key(self) -> str:
        if self.start is None or self.end is None:
            return UNDATED_PERIOD_KEY
        return f"{self.start.isoformat()}_{self.end.isoformat()}"


# === EXTRACTION ===


class ExtractedField(BaseModel):
    """A single field proposal with its provenance."""

    id: str = Field(default_factory=_new_id)
    field_name: str
    value: FieldValue
    confidence: float = Field(ge=0.0, le=1.0)
    source_document_id: str
    source_excerpt: str = ""
    source: Literal["extraction", "user"] = "extraction"
    source_as_of: date | None = None
    facility_name: str | None = None
    facility_external_id: str | None = None
    period_start: date | None = None
    period_end: date | None = None
    proposed_at: datetime = Field(default_factory=_utcnow)


class ExtractionOutput(BaseModel):
    """Field extractor response for one document."""

    fields: list[ExtractedField] = Field(default_factory=list)
    detected_type: str | None = None
    overall_confidence: float = Field(default=0.0, ge=0.0, le=1.0)


# === SESSION / TASKS ===


class DocumentTask(BaseModel):
    """One document's unit of extraction work."""

    id: str = Field(default_factory=_new_id)
    session_id: str
    document_id: str
    filename: str
    document_type: str | None = None
    detected_type: str | None = None
    status: TaskStatus = "queued"
    retry_count: int = 0
    fields: list[ExtractedField] = Field(default_factory=list)
    error: str | None = None
    error_kind: TaskErrorKind | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


class PipelineSession(BaseModel):
    """One batch run."""

    id: str = Field(default_factory=_new_id)
    deal_id: str | None = None
    task_ids: list[str] = Field(default_factory=list)
    current_pass: int = 0
    status: SessionStatus = "queued"
    error: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES

    @property
    def scope_id(self) -> str:
        """Key under which facility profiles are loaded and saved."""
        return self.deal_id or self.id


# === FACILITY PROFILES ===


class FinancialPeriodRecord(BaseModel):
    """Accepted values and full proposal history for one reporting period."""

    period_start: date | None = None
    period_end: date | None = None
    accepted: dict[str, ExtractedField] = Field(default_factory=dict)
    history: dict[str, list[ExtractedField]] = Field(default_factory=dict)

    @property
    def key(self) -> str:
        return PeriodHint(start=self.period_start, end=self.period_end).key

    def propose(self, proposal: ExtractedField) -> None:
        """Append a proposal to the slot history (never deduplicated)."""
        self.history.setdefault(proposal.field_name, []).append(proposal)

    def accept(self, proposal: ExtractedField) -> None:
        """Make ``proposal`` the single accepted value for its slot."""
        self.accepted[proposal.field_name] = proposal


class FacilityProfile(BaseModel):
    """Running aggregate for one physical facility across all documents."""

    id: str = Field(default_factory=_new_id)
    scope_id: str = ""
    canonical_name: str
    aliases: list[str] = Field(default_factory=list)
    external_id: str | None = None
    licensed_beds: int | None = None
    periods: list[FinancialPeriodRecord] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=_utcnow)

    def get_period(self, period_key: str) -> FinancialPeriodRecord | None:
        for record in self.periods:
            if record.key == period_key:
                return record
        return None

    def add_alias(self, name: str) -> bool:
        """Record ``name`` as an alias; returns True if it was new."""
        clean = name.strip()
        if not clean or clean == self.canonical_name or clean in self.aliases:
            return False
        self.aliases.append(clean)
        return True

    def sort_periods(self) -> None:
        """Keep period records ordered by (start, end), undated last."""
        self.periods.sort(
            key=lambda r: (
                r.period_start is None,
                r.period_start or date.max,
                r.period_end or date.max,
            )
        )


# === CONFLICTS ===


class ConflictCandidate(BaseModel):
    """One competing value inside a conflict."""

    field_id: str
    value: FieldValue
    confidence: float
    source_document_id: str
    source_excerpt: str = ""
    source_as_of: date | None = None

    @classmethod
    def from_field(cls, extracted: ExtractedField) -> ConflictCandidate:
        return cls(
            field_id=extracted.id,
            value=extracted.value,
            confidence=extracted.confidence,
            source_document_id=extracted.source_document_id,
            source_excerpt=extracted.source_excerpt,
            source_as_of=extracted.source_as_of,
        )


class DetectedConflict(BaseModel):
    """A disagreement between sources for one (facility, field, period) slot."""

    id: str = Field(default_factory=_new_id)
    facility_id: str
    field_path: str
    period_key: str
    candidates: list[ConflictCandidate] = Field(default_factory=list)
    variance_pct: float | None = None
    severity: Severity = "medium"
    status: ConflictStatus = "open"
    resolution_method: ResolutionMethod | None = None
    resolved_value: FieldValue | None = None
    detected_at: datetime = Field(default_factory=_utcnow)
    resolved_at: datetime | None = None

    @property
    def slot(self) -> tuple[str, str, str]:
        return (self.facility_id, self.field_path, self.period_key)


# === CLARIFICATIONS ===


class SuggestedValue(BaseModel):
    """A value offered to the reviewer when answering a clarification."""

    value: FieldValue
    source: str
    confidence: float
    reasoning: str = ""


class BenchmarkRange(BaseModel):
    """Industry reference range for a field."""

    min: float
    max: float
    median: float
    unit: Literal["currency", "percent", "ratio", "count", "hours"] = "ratio"


class Clarification(BaseModel):
    """A user-facing request to confirm or correct one slot."""

    id: str = Field(default_factory=_new_id)
    facility_id: str
    field_path: str
    field_label: str = ""
    period_key: str
    clarification_type: ClarificationType
    conflict_id: str | None = None
    target_field_id: str | None = None
    extracted_value: FieldValue | None = None
    extracted_confidence: float = 0.0
    suggested_values: list[SuggestedValue] = Field(default_factory=list)
    benchmark: BenchmarkRange | None = None
    priority: Severity = "medium"
    priority_score: int = 0
    explanation: str = ""
    sequence: int = 0
    status: ClarificationStatus = "pending"
    resolved_value: FieldValue | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def slot(self) -> tuple[str, str, str]:
        return (self.facility_id, self.field_path, self.period_key)


# === PROGRESS ===


class ProgressSummary(BaseModel):
    """Snapshot counts attached to every progress event."""

    status: SessionStatus = "queued"
    current_pass: int = 0
    documents_total: int = 0
    documents_processed: int = 0
    documents_failed: int = 0
    facilities_discovered: int = 0
    conflicts_open: int = 0
    clarifications_pending: int = 0
    overall_confidence: float = 0.0


class ProgressEvent(BaseModel):
    """Ordered, monotonically numbered progress event."""

    seq: int
    session_id: str
    kind: ProgressKind
    summary: ProgressSummary
    detail: dict[str, Any] = Field(default_factory=dict)
    emitted_at: datetime = Field(default_factory=_utcnow)

    def to_sse(self) -> str:
        """Render as a Server-Sent-Events frame."""
        return f"id: {self.seq}\nevent: {self.kind}\ndata: {self.model_dump_json()}\n\n"
