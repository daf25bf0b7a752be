# src/reconciliation/clarification_generator.py — v2
"""Clarification generator: turns open conflicts and weak values into requests.

Each run scans:
    - open conflicts with no clarification yet (``conflict``);
    - accepted numeric values outside their benchmark range (``out_of_range``);
    - accepted values below the low-confidence threshold (``low_confidence``);
    - accepted values that fail a cross-period, revenue reconciliation or
      component-sum check (``out_of_range``);
    - required fields a document type should have produced (``missing``).

Slots already carrying a conflict never get a low-confidence or
out-of-range request. A slot has at most one pending clarification; a run
with unchanged inputs changes nothing. Resolution writes the value back
through the aggregator; skipping leaves the accepted value alone.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from dealintake.config.settings import Settings
from dealintake.core.errors import AlreadyTerminal, NotFound, PersistenceError
from dealintake.core.fields import TIER_RANK, FieldSpec, coerce_value, get_field_spec, is_numeric_value
from dealintake.core.models import (
    SEVERITY_ORDER,
    Clarification,
    DetectedConflict,
    ExtractedField,
    FieldValue,
    Severity,
    SuggestedValue,
)
from dealintake.reconciliation.aggregator import FacilityAggregator, Slot
from dealintake.reconciliation.conflict_detector import values_equal
from dealintake.reconciliation.consistency import ConsistencyFinding, check_profiles
from dealintake.storage.base_store import BaseStore

logger = logging.getLogger(__name__)

_SEVERITY_BY_RANK = {rank: name for name, rank in SEVERITY_ORDER.items()}
_FAR_OUT_OF_RANGE = 0.20


@dataclass
class GenerationResult:
    """Changes made by one generator run."""

    created: list[Clarification] = field(default_factory=list)
    updated: list[Clarification] = field(default_factory=list)
    closed: list[Clarification] = field(default_factory=list)


def _bump(severity: Severity, spec: FieldSpec) -> Severity:
    """Core fields move one severity level up."""
    if spec.tier != "core":
        return severity
    return _SEVERITY_BY_RANK[min(SEVERITY_ORDER[severity] + 1, SEVERITY_ORDER["critical"])]  # type: ignore[return-value]


def _format_value(value: FieldValue, spec: FieldSpec) -> str:
    if not is_numeric_value(value):
        return str(value)
    if spec.kind == "currency":
        return f"${value:,.0f}"
    if spec.kind == "percentage":
        return f"{float(value) * 100:.1f}%"
    return f"{value:,}"


class ClarificationGenerator:
    """Builds and tracks clarifications for one aggregator."""

    def __init__(self, aggregator: FacilityAggregator, store: BaseStore, settings: Settings) -> None:
        self._aggregator = aggregator
        self._store = store
        self._low_confidence = settings.low_confidence_threshold
        self._clarifications: dict[str, Clarification] = {}
        self._sequence = 0
        self._lock = asyncio.Lock()

    # --- Scanning ---

    async def run(self) -> GenerationResult:
        """Scan the aggregator state and create/refresh clarifications."""
        async with self._lock:
            result = GenerationResult()
            await self._sync_conflicts(result)
            await self._close_filled_slots(result)
            await self._scan_accepted(result)
            await self._scan_consistency(result)
            await self._scan_missing(result)
            if result.created or result.updated or result.closed:
                logger.info(
                    "Clarifications: %d created, %d updated, %d closed, %d pending",
                    len(result.created), len(result.updated), len(result.closed), len(self.pending()),
                )
            return result

    async def _sync_conflicts(self, result: GenerationResult) -> None:
        for conflict in self._aggregator.open_conflicts():
            existing = self._pending_for_slot(conflict.slot)
            if existing is None:
                clar = self._build_conflict(conflict)
                if await self._save_new(clar):
                    result.created.append(clar)
                continue

            refreshed = self._build_conflict(conflict, base=existing)
            if refreshed.model_dump(exclude={"created_at"}) != existing.model_dump(exclude={"created_at"}):
                if await self._save_existing(refreshed):
                    result.updated.append(refreshed)

        # Pending conflict requests whose conflict was decided elsewhere.
        for clar in list(self._clarifications.values()):
            if clar.status != "pending" or clar.conflict_id is None:
                continue
            conflict = self._aggregator.get_conflict(clar.conflict_id)
            if conflict.status == "open":
                continue
            closed = clar.model_copy(update={
                "status": "resolved",
                "resolved_value": conflict.resolved_value,
                "resolved_by": conflict.resolution_method or "system",
                "resolved_at": datetime.now(timezone.utc),
            })
            if await self._save_existing(closed):
                result.closed.append(closed)

    async def _close_filled_slots(self, result: GenerationResult) -> None:
        for clar in list(self._clarifications.values()):
            if clar.status != "pending" or clar.clarification_type != "missing":
                continue
            accepted = self._aggregator.get_accepted(*clar.slot)
            if accepted is None:
                continue
            closed = clar.model_copy(update={
                "status": "resolved",
                "resolved_value": accepted.value,
                "resolved_by": "extraction",
                "resolved_at": datetime.now(timezone.utc),
            })
            if await self._save_existing(closed):
                result.closed.append(closed)

    async def _scan_accepted(self, result: GenerationResult) -> None:
        conflict_slots = {c.slot for c in self._aggregator.conflicts}
        for profile, record, accepted in self._aggregator.iter_accepted():
            slot = (profile.id, accepted.field_name, record.key)
            if accepted.source == "user" or slot in conflict_slots:
                continue
            if self._pending_for_slot(slot) is not None or self._targets(accepted.id):
                continue
            spec = get_field_spec(accepted.field_name, accepted.value)
            clar = self._build_out_of_range(slot, accepted, spec)
            if clar is None and accepted.confidence < self._low_confidence:
                clar = self._build_low_confidence(slot, accepted, spec)
            if clar is not None and await self._save_new(clar):
                result.created.append(clar)

    async def _scan_consistency(self, result: GenerationResult) -> None:
        conflict_slots = {c.slot for c in self._aggregator.conflicts}
        for finding in check_profiles(self._aggregator.profiles):
            accepted = finding.field
            if accepted.source == "user" or finding.slot in conflict_slots:
                continue
            if self._pending_for_slot(finding.slot) is not None or self._targets(accepted.id):
                continue
            clar = self._build_inconsistent(finding)
            if await self._save_new(clar):
                result.created.append(clar)

    async def _scan_missing(self, result: GenerationResult) -> None:
        for slot in self._aggregator.missing_expectations():
            if any(
                c.slot == slot and c.clarification_type == "missing"
                for c in self._clarifications.values()
            ) or self._pending_for_slot(slot) is not None:
                continue
            clar = self._build_missing(slot)
            if await self._save_new(clar):
                result.created.append(clar)

    # --- Builders ---

    def _build_conflict(self, conflict: DetectedConflict, base: Clarification | None = None) -> Clarification:
        spec = get_field_spec(conflict.field_path, conflict.candidates[0].value)
        ranked = sorted(conflict.candidates, key=lambda c: (-c.confidence, str(c.value)))
        suggestions: list[SuggestedValue] = []
        for cand in ranked:
            if any(values_equal(s.value, cand.value) for s in suggestions):
                continue
            suggestions.append(SuggestedValue(
                value=cand.value,
                source=f"document:{cand.source_document_id}",
                confidence=cand.confidence,
                reasoning=cand.source_excerpt or "Reported by source document",
            ))
        numeric = [float(c.value) for c in conflict.candidates if is_numeric_value(c.value)]
        if spec.is_numeric and len(numeric) == len(conflict.candidates) and len(suggestions) > 1:
            average = sum(numeric) / len(numeric)
            if spec.kind == "count":
                average = round(average)
            suggestions.append(SuggestedValue(
                value=average,
                source="calculated",
                confidence=round(sum(c.confidence for c in conflict.candidates) / len(conflict.candidates), 4),
                reasoning=f"Average of {len(numeric)} reported values",
            ))
        self._add_benchmark_suggestion(suggestions, spec)

        accepted = self._aggregator.get_accepted(*conflict.slot)
        label = conflict.severity
        values = ", ".join(_format_value(s.value, spec) for s in suggestions if s.source.startswith("document:"))
        variance = f" ({conflict.variance_pct:.1f}% variance)" if conflict.variance_pct is not None else ""
        fields = {
            "clarification_type": "conflict",
            "conflict_id": conflict.id,
            "target_field_id": accepted.id if accepted else None,
            "extracted_value": accepted.value if accepted else conflict.candidates[0].value,
            "extracted_confidence": accepted.confidence if accepted else conflict.candidates[0].confidence,
            "suggested_values": suggestions,
            "benchmark": spec.benchmark,
            "priority": label,
            "priority_score": self._score(label, spec, accepted.confidence if accepted else 1.0),
            "explanation": f"Sources disagree on {spec.label}: {values}{variance}",
        }
        if base is not None:
            return base.model_copy(update=fields)
        return self._new(conflict.facility_id, conflict.field_path, conflict.period_key, spec, **fields)

    def _build_low_confidence(self, slot: Slot, accepted: ExtractedField, spec: FieldSpec) -> Clarification:
        label: Severity = "high" if accepted.confidence < self._low_confidence / 2 else "medium"
        label = _bump(label, spec)
        suggestions = [SuggestedValue(
            value=accepted.value,
            source=f"document:{accepted.source_document_id}",
            confidence=accepted.confidence,
            reasoning=accepted.source_excerpt or "Only reported value",
        )]
        self._add_benchmark_suggestion(suggestions, spec)
        return self._new(
            *slot, spec,
            clarification_type="low_confidence",
            target_field_id=accepted.id,
            extracted_value=accepted.value,
            extracted_confidence=accepted.confidence,
            suggested_values=suggestions,
            benchmark=spec.benchmark,
            priority=label,
            priority_score=self._score(label, spec, accepted.confidence),
            explanation=(
                f"{spec.label} = {_format_value(accepted.value, spec)} was extracted with "
                f"{accepted.confidence:.0%} confidence and no other source confirms it"
            ),
        )

    def _build_out_of_range(self, slot: Slot, accepted: ExtractedField, spec: FieldSpec) -> Clarification | None:
        bm = spec.benchmark
        if bm is None or not is_numeric_value(accepted.value):
            return None
        value = float(accepted.value)
        if bm.min <= value <= bm.max:
            return None
        if value < bm.min:
            deviation = (bm.min - value) / bm.min if bm.min else 1.0
            position = "below"
        else:
            deviation = (value - bm.max) / bm.max if bm.max else 1.0
            position = "above"
        label = _bump("high" if deviation > _FAR_OUT_OF_RANGE else "medium", spec)
        suggestions = [
            SuggestedValue(
                value=accepted.value,
                source=f"document:{accepted.source_document_id}",
                confidence=accepted.confidence,
                reasoning="Extracted value",
            )
        ]
        self._add_benchmark_suggestion(suggestions, spec)
        return self._new(
            *slot, spec,
            clarification_type="out_of_range",
            target_field_id=accepted.id,
            extracted_value=accepted.value,
            extracted_confidence=accepted.confidence,
            suggested_values=suggestions,
            benchmark=bm,
            priority=label,
            priority_score=self._score(label, spec, accepted.confidence),
            explanation=(
                f"{spec.label} = {_format_value(accepted.value, spec)} is {position} the "
                f"typical range {_format_value(bm.min, spec)}–{_format_value(bm.max, spec)}"
            ),
        )

    def _build_inconsistent(self, finding: ConsistencyFinding) -> Clarification:
        accepted = finding.field
        spec = get_field_spec(accepted.field_name, accepted.value)
        label = _bump(finding.severity, spec)
        reference = round(finding.reference) if spec.kind == "count" else finding.reference
        suggestions = [
            SuggestedValue(
                value=accepted.value,
                source=f"document:{accepted.source_document_id}",
                confidence=accepted.confidence,
                reasoning="Extracted value",
            ),
            SuggestedValue(
                value=reference,
                source=finding.reference_source,
                confidence=finding.reference_confidence,
                reasoning=f"Value {finding.reference_label}",
            ),
        ]
        self._add_benchmark_suggestion(suggestions, spec)
        return self._new(
            *finding.slot, spec,
            clarification_type="out_of_range",
            target_field_id=accepted.id,
            extracted_value=accepted.value,
            extracted_confidence=accepted.confidence,
            suggested_values=suggestions,
            benchmark=spec.benchmark,
            priority=label,
            priority_score=self._score(label, spec, accepted.confidence),
            explanation=(
                f"{spec.label} = {_format_value(accepted.value, spec)} differs by "
                f"{finding.deviation:.1%} from {_format_value(reference, spec)} "
                f"({finding.reference_label})"
            ),
        )

    def _build_missing(self, slot: Slot) -> Clarification:
        spec = get_field_spec(slot[1])
        label = _bump("medium", spec)
        suggestions: list[SuggestedValue] = []
        self._add_benchmark_suggestion(suggestions, spec)
        return self._new(
            *slot, spec,
            clarification_type="missing",
            suggested_values=suggestions,
            benchmark=spec.benchmark,
            priority=label,
            priority_score=self._score(label, spec, 1.0),
            explanation=f"{spec.label} was expected but not found in the submitted documents",
        )

    def _new(self, facility_id: str, field_path: str, period_key: str, spec: FieldSpec, **fields) -> Clarification:
        return Clarification(
            facility_id=facility_id,
            field_path=field_path,
            field_label=spec.label,
            period_key=period_key,
            sequence=self._sequence + 1,
            **fields,
        )

    @staticmethod
    def _add_benchmark_suggestion(suggestions: list[SuggestedValue], spec: FieldSpec) -> None:
        if spec.benchmark is None or any(s.source == "benchmark" for s in suggestions):
            return
        suggestions.append(SuggestedValue(
            value=spec.benchmark.median,
            source="benchmark",
            confidence=0.3,
            reasoning=f"Industry median for {spec.label}",
        ))

    def _score(self, label: Severity, spec: FieldSpec, confidence: float) -> int:
        bump = 2 if confidence < self._low_confidence else 0
        return SEVERITY_ORDER[label] * 10 + TIER_RANK[spec.tier] * 3 + bump

    # --- Persistence helpers ---

    async def _save_new(self, clar: Clarification) -> bool:
        try:
            await self._store.save_clarification(clar)
        except Exception as exc:
            logger.error(
                "Failed to persist clarification for %s/%s [%s]: %s",
                clar.facility_id, clar.field_path, clar.period_key, exc,
                extra={"data": {"facility_id": clar.facility_id, "field": clar.field_path, "period": clar.period_key}},
            )
            return False
        self._sequence = clar.sequence
        self._clarifications[clar.id] = clar
        return True

    async def _save_existing(self, clar: Clarification) -> bool:
        try:
            await self._store.save_clarification(clar)
        except Exception as exc:
            logger.error(
                "Failed to persist clarification %s: %s", clar.id, exc,
                extra={"data": {"facility_id": clar.facility_id, "field": clar.field_path, "period": clar.period_key}},
            )
            return False
        self._clarifications[clar.id] = clar
        return True

    async def _write(self, clar: Clarification) -> None:
        """Store-only write; in-memory state is left to the caller."""
        try:
            await self._store.save_clarification(clar)
        except Exception as exc:
            raise PersistenceError(
                f"Failed to persist clarification {clar.id}: {exc}",
                context={"facility_id": clar.facility_id, "field": clar.field_path, "period": clar.period_key},
            ) from exc

    async def _restore(self, clar: Clarification) -> None:
        """Put the pending version back after its follow-up step failed."""
        try:
            await self._store.save_clarification(clar)
        except Exception as exc:
            logger.error(
                "Could not restore clarification %s to pending: %s", clar.id, exc,
                extra={"data": {"facility_id": clar.facility_id, "field": clar.field_path, "period": clar.period_key}},
            )

    # --- Resolution ---

    async def resolve(self, clarification_id: str, value: FieldValue, resolved_by: str) -> Clarification:
        """Accept ``value`` for the clarification's slot.

        The resolved clarification is stored first, then the value is written
        back through the aggregator; if the write-back fails the stored
        clarification is put back to pending and nothing changes in memory.

        Raises:
            NotFound: Unknown clarification id.
            AlreadyTerminal: Clarification already resolved or skipped.
            PersistenceError: If either write cannot be persisted.
        """
        async with self._lock:
            clar = self._get_pending(clarification_id)
            resolved = clar.model_copy(update={
                "status": "resolved",
                "resolved_value": coerce_value(clar.field_path, value),
                "resolved_by": resolved_by,
                "resolved_at": datetime.now(timezone.utc),
            })
            await self._write(resolved)
            try:
                await self._aggregator.apply_user_value(
                    clar.facility_id, clar.field_path, clar.period_key, value, resolved_by
                )
            except Exception:
                await self._restore(clar)
                raise
            self._clarifications[clar.id] = resolved
            logger.info("Clarification %s resolved by %s", clarification_id, resolved_by)
            return resolved

    async def skip(self, clarification_id: str) -> Clarification:
        """Mark a clarification skipped; its conflict (if any) is dismissed.

        Raises:
            NotFound: Unknown clarification id.
            AlreadyTerminal: Clarification already resolved or skipped.
            PersistenceError: If either write cannot be persisted.
        """
        async with self._lock:
            clar = self._get_pending(clarification_id)
            skipped = clar.model_copy(update={"status": "skipped", "resolved_at": datetime.now(timezone.utc)})
            await self._write(skipped)
            if clar.conflict_id is not None:
                try:
                    await self._aggregator.dismiss_conflict(clar.conflict_id)
                except Exception:
                    await self._restore(clar)
                    raise
            self._clarifications[clar.id] = skipped
            logger.info("Clarification %s skipped", clarification_id)
            return skipped

    # --- Accessors ---

    def get(self, clarification_id: str) -> Clarification:
        clar = self._clarifications.get(clarification_id)
        if clar is None:
            raise NotFound("clarification", clarification_id)
        return clar

    @property
    def clarifications(self) -> list[Clarification]:
        return sorted(self._clarifications.values(), key=lambda c: c.sequence)

    def pending(self) -> list[Clarification]:
        """Pending clarifications, highest priority first, then oldest first."""
        return sorted(
            (c for c in self._clarifications.values() if c.status == "pending"),
            key=lambda c: (-c.priority_score, c.sequence),
        )

    def _get_pending(self, clarification_id: str) -> Clarification:
        clar = self.get(clarification_id)
        if clar.status != "pending":
            raise AlreadyTerminal("clarification", clarification_id, clar.status)
        return clar

    def _pending_for_slot(self, slot: Slot) -> Clarification | None:
        for clar in self._clarifications.values():
            if clar.status == "pending" and clar.slot == slot:
                return clar
        return None

    def _targets(self, field_id: str) -> bool:
        return any(c.target_field_id == field_id for c in self._clarifications.values())

