# src/reconciliation/aggregator.py — v2
"""Facility aggregator: the single serialization point for extraction results.

``merge()`` resolves the facility and period a batch of fields belongs to,
then, per field, accepts it when the slot is empty, records it as
corroboration when it agrees with the accepted value, or hands it to the
conflict detector when it disagrees. Every proposal lands in the slot
history whatever happens to it.

Concurrency: facility lookup and creation run under one registry lock;
writes to a profile run under that profile's own lock, so different
facilities merge in parallel. Each merge works on a deep copy of the
profile and of every conflict it touches, persists them, and only then
swaps them in, so a failed write leaves in-memory state untouched. A
facility registered by a merge whose first write fails is dropped again.

A slot keeps one conflict per disagreement: a later value that repeats a
candidate of the slot's closed conflict joins that conflict. Auto-resolved
conflicts are re-evaluated with the new candidate; conflicts closed by a
user (resolved or dismissed) only record it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from dealintake.config.settings import Settings
from dealintake.core.errors import NotFound, PersistenceError
from dealintake.core.fields import coerce_value
from dealintake.core.models import (
    ConflictCandidate,
    DetectedConflict,
    ExtractedField,
    FacilityHint,
    FacilityProfile,
    FieldValue,
    FinancialPeriodRecord,
    PeriodHint,
)
from dealintake.reconciliation.conflict_detector import ConflictDetector, values_equal
from dealintake.reconciliation.facility_matcher import UNIDENTIFIED_FACILITY, match_facility
from dealintake.reconciliation.periods import match_period, parse_period_key
from dealintake.storage.base_store import BaseStore

logger = logging.getLogger(__name__)

Slot = tuple[str, str, str]

_AUTO_METHODS = frozenset({"auto_highest_confidence", "auto_most_recent"})


@dataclass
class MergeOutcome:
    """What a single merge call changed."""

    facility_id: str
    period_key: str
    created_facility: bool = False
    accepted: list[ExtractedField] = field(default_factory=list)
    corroborated: list[ExtractedField] = field(default_factory=list)
    history_only: list[ExtractedField] = field(default_factory=list)
    opened_conflicts: list[DetectedConflict] = field(default_factory=list)
    updated_conflicts: list[DetectedConflict] = field(default_factory=list)
    auto_resolved: list[DetectedConflict] = field(default_factory=list)

    @property
    def conflicts(self) -> list[DetectedConflict]:
        return self.opened_conflicts + self.updated_conflicts


class FacilityAggregator:
    """Owns the facility profiles and conflicts of one deal (or session)."""

    def __init__(
        self,
        scope_id: str,
        store: BaseStore,
        settings: Settings,
        detector: ConflictDetector | None = None,
    ) -> None:
        self.scope_id = scope_id
        self._store = store
        self._match_threshold = settings.facility_match_threshold
        self._period_ratio = settings.period_overlap_ratio
        self._detector = detector or ConflictDetector(settings)
        self._profiles: dict[str, FacilityProfile] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._registry_lock = asyncio.Lock()
        self._conflicts: dict[str, DetectedConflict] = {}
        self._open_by_slot: dict[Slot, str] = {}
        self._closed_by_slot: dict[Slot, str] = {}
        self._uncommitted: set[str] = set()
        self._expectations: set[Slot] = set()

    # --- Loading / facility registry ---

    async def load(self) -> int:
        """Seed the registry with profiles already stored for this scope."""
        loaded = await self._store.load_profiles(self.scope_id)
        async with self._registry_lock:
            for profile in loaded:
                self._profiles.setdefault(profile.id, profile)
        logger.info("Loaded %d stored profiles for scope %s", len(loaded), self.scope_id)
        return len(loaded)

    async def resolve_facility(self, hint: FacilityHint) -> tuple[FacilityProfile, bool]:
        """Return the profile ``hint`` refers to, registering a new one if needed."""
        async with self._registry_lock:
            match = match_facility(hint, list(self._profiles.values()), self._match_threshold)
            if match is not None:
                return match.profile, False
            profile = FacilityProfile(
                scope_id=self.scope_id,
                canonical_name=(hint.name or UNIDENTIFIED_FACILITY).strip(),
                external_id=hint.external_id,
            )
            self._profiles[profile.id] = profile
            self._locks[profile.id] = asyncio.Lock()
            self._uncommitted.add(profile.id)
            logger.info("New facility %s (%s)", profile.canonical_name, profile.id)
            return profile, True

    def _lock_for(self, facility_id: str) -> asyncio.Lock:
        return self._locks.setdefault(facility_id, asyncio.Lock())

    # --- Merge ---

    async def merge(
        self,
        facility_hint: FacilityHint,
        period_hint: PeriodHint,
        fields: list[ExtractedField],
    ) -> MergeOutcome:
        """Fold ``fields`` into the matching facility/period.

        Raises:
            PersistenceError: If the store rejects the write; nothing changes.
        """
        while True:
            profile, created = await self.resolve_facility(facility_hint)
            async with self._lock_for(profile.id):
                current = self._profiles.get(profile.id)
                if current is None:
                    # Dropped after its first write failed; resolve again.
                    continue
                working = current.model_copy(deep=True)
                if facility_hint.name:
                    working.add_alias(facility_hint.name)
                if facility_hint.external_id and not working.external_id:
                    working.external_id = facility_hint.external_id

                record = match_period(working.periods, period_hint, self._period_ratio)
                if record is None:
                    record = FinancialPeriodRecord(period_start=period_hint.start, period_end=period_hint.end)
                    working.periods.append(record)

                outcome = MergeOutcome(facility_id=working.id, period_key=record.key, created_facility=created)
                touched: dict[str, DetectedConflict] = {}

                for proposal in fields:
                    proposal = proposal.model_copy(
                        update={"value": coerce_value(proposal.field_name, proposal.value)}
                    )
                    self._merge_field(working, record, proposal, touched, outcome)

                working.sort_periods()
                self._sync_licensed_beds(working)
                working.updated_at = datetime.now(timezone.utc)

                await self._commit(
                    working, touched, field_names=[f.field_name for f in fields], period_key=record.key
                )
            break

        logger.info(
            "Merged %d fields into %s [%s]: %d accepted, %d corroborated, %d conflicts",
            len(fields), working.canonical_name, outcome.period_key,
            len(outcome.accepted), len(outcome.corroborated), len(outcome.conflicts),
        )
        return outcome

    def _merge_field(
        self,
        working: FacilityProfile,
        record: FinancialPeriodRecord,
        proposal: ExtractedField,
        touched: dict[str, DetectedConflict],
        outcome: MergeOutcome,
    ) -> None:
        name = proposal.field_name
        record.propose(proposal)
        accepted = record.accepted.get(name)

        if accepted is None:
            record.accept(proposal)
            outcome.accepted.append(proposal)
            return
        if accepted.source == "user":
            outcome.history_only.append(proposal)
            return
        if values_equal(accepted.value, proposal.value):
            outcome.corroborated.append(proposal)
            return

        slot = (working.id, name, record.key)
        existing = self._working_open_conflict(slot, touched)
        if existing is None:
            closed = self._working_closed_conflict(slot, touched, proposal.value)
            if closed is not None and closed.resolution_method not in _AUTO_METHODS:
                _add_candidate(closed, proposal)
                touched[closed.id] = closed
                if not any(c.id == closed.id for c in outcome.conflicts):
                    outcome.updated_conflicts.append(closed)
                return
            if closed is not None:
                closed.status = "open"
                closed.resolution_method = None
                closed.resolved_value = None
                closed.resolved_at = None
                existing = closed
        conflict = self._detector.evaluate(working.id, record.key, accepted, proposal, existing)
        touched[conflict.id] = conflict

        if existing is None and not any(c.id == conflict.id for c in outcome.opened_conflicts):
            outcome.opened_conflicts.append(conflict)
        elif not any(c.id == conflict.id for c in outcome.conflicts):
            outcome.updated_conflicts.append(conflict)

        if conflict.status == "resolved":
            outcome.auto_resolved.append(conflict)
            winner = _find_winner(record.history.get(name, []), conflict)
            if winner is not None and winner.id != accepted.id:
                record.accept(winner)

    def _working_open_conflict(
        self, slot: Slot, touched: dict[str, DetectedConflict]
    ) -> DetectedConflict | None:
        for conflict in touched.values():
            if conflict.slot == slot and conflict.status == "open":
                return conflict
        conflict_id = self._open_by_slot.get(slot)
        if conflict_id is None or conflict_id in touched:
            return None
        return self._conflicts[conflict_id].model_copy(deep=True)

    def _working_closed_conflict(
        self, slot: Slot, touched: dict[str, DetectedConflict], value: FieldValue
    ) -> DetectedConflict | None:
        """The slot's latest closed conflict, if ``value`` is one of its candidates."""
        conflict = next(
            (c for c in touched.values() if c.slot == slot and c.status != "open"), None
        )
        if conflict is None:
            conflict_id = self._closed_by_slot.get(slot)
            if conflict_id is None:
                return None
            conflict = self._conflicts[conflict_id].model_copy(deep=True)
        if any(values_equal(c.value, value) for c in conflict.candidates):
            return conflict
        return None

    @staticmethod
    def _sync_licensed_beds(profile: FacilityProfile) -> None:
        """Profile bed count follows the latest period that reports one."""
        beds: int | None = None
        for record in profile.periods:
            accepted = record.accepted.get("licensed_beds")
            if accepted is not None and isinstance(accepted.value, (int, float)):
                beds = int(accepted.value)
        if beds is not None:
            profile.licensed_beds = beds

    async def _commit(
        self,
        working: FacilityProfile,
        touched: dict[str, DetectedConflict],
        field_names: list[str],
        period_key: str,
    ) -> None:
        """Persist then swap in. Caller holds the profile lock."""
        try:
            await self._store.save_profile(working)
            for conflict in touched.values():
                await self._store.save_conflict(conflict)
        except Exception as exc:
            logger.error(
                "Persistence failed for %s [%s], merge discarded: %s",
                working.id, period_key, exc,
                extra={"data": {
                    "facility_id": working.id,
                    "fields": field_names,
                    "period": period_key,
                }},
            )
            if working.id in self._uncommitted:
                self._uncommitted.discard(working.id)
                self._profiles.pop(working.id, None)
                self._locks.pop(working.id, None)
                logger.info("Dropped unsaved facility %s (%s)", working.canonical_name, working.id)
            raise PersistenceError(
                f"Failed to persist merge for facility {working.id}: {exc}",
                context={"facility_id": working.id, "fields": field_names, "period": period_key},
            ) from exc

        self._uncommitted.discard(working.id)
        self._profiles[working.id] = working
        for conflict in touched.values():
            self._index_conflict(conflict)

    def _index_conflict(self, conflict: DetectedConflict) -> None:
        self._conflicts[conflict.id] = conflict
        if conflict.status == "open":
            self._open_by_slot[conflict.slot] = conflict.id
            if self._closed_by_slot.get(conflict.slot) == conflict.id:
                del self._closed_by_slot[conflict.slot]
            return
        if self._open_by_slot.get(conflict.slot) == conflict.id:
            del self._open_by_slot[conflict.slot]
        self._closed_by_slot[conflict.slot] = conflict.id

    # --- Resolution write-back ---

    async def apply_user_value(
        self,
        facility_id: str,
        field_name: str,
        period_key: str,
        value: FieldValue,
        resolved_by: str,
    ) -> ExtractedField:
        """Accept a human-supplied value for a slot and close its open conflict.

        Raises:
            NotFound: Unknown facility.
            PersistenceError: If the store rejects the write; nothing changes.
        """
        if facility_id not in self._profiles:
            raise NotFound("facility", facility_id)

        async with self._lock_for(facility_id):
            working = self._profiles[facility_id].model_copy(deep=True)
            record = working.get_period(period_key)
            if record is None:
                hint = parse_period_key(period_key)
                record = FinancialPeriodRecord(period_start=hint.start, period_end=hint.end)
                working.periods.append(record)
                working.sort_periods()

            user_field = ExtractedField(
                field_name=field_name,
                value=coerce_value(field_name, value),
                confidence=1.0,
                source_document_id=f"user:{resolved_by}",
                source="user",
                period_start=record.period_start,
                period_end=record.period_end,
            )
            record.propose(user_field)
            record.accept(user_field)
            self._sync_licensed_beds(working)
            working.updated_at = datetime.now(timezone.utc)

            touched: dict[str, DetectedConflict] = {}
            conflict_id = self._open_by_slot.get((facility_id, field_name, period_key))
            if conflict_id is not None:
                conflict = self._conflicts[conflict_id].model_copy(deep=True)
                conflict.status = "resolved"
                conflict.resolution_method = "user_override"
                conflict.resolved_value = user_field.value
                conflict.resolved_at = datetime.now(timezone.utc)
                touched[conflict.id] = conflict

            await self._commit(working, touched, field_names=[field_name], period_key=period_key)

        logger.info(
            "User value applied to %s/%s [%s] by %s", facility_id, field_name, period_key, resolved_by
        )
        return user_field

    async def dismiss_conflict(self, conflict_id: str) -> DetectedConflict:
        """Mark an open conflict dismissed; the accepted value stays as is."""
        current = self._conflicts.get(conflict_id)
        if current is None:
            raise NotFound("conflict", conflict_id)
        if current.status != "open":
            return current
        async with self._lock_for(current.facility_id):
            working = self._conflicts[conflict_id].model_copy(deep=True)
            working.status = "dismissed"
            working.resolved_at = datetime.now(timezone.utc)
            try:
                await self._store.save_conflict(working)
            except Exception as exc:
                logger.error(
                    "Persistence failed dismissing conflict %s: %s", conflict_id, exc,
                    extra={"data": {
                        "facility_id": working.facility_id,
                        "field": working.field_path,
                        "period": working.period_key,
                    }},
                )
                raise PersistenceError(
                    f"Failed to persist conflict {conflict_id}: {exc}",
                    context={"conflict_id": conflict_id},
                ) from exc
            self._index_conflict(working)
        return working

    # --- Missing-field expectations ---

    def expect_fields(self, facility_id: str, period_key: str, field_names: list[str]) -> None:
        """Register fields a document type should have produced for this slot."""
        for name in field_names:
            self._expectations.add((facility_id, name, period_key))

    def missing_expectations(self) -> list[Slot]:
        """Expected slots that still have no accepted value."""
        missing: list[Slot] = []
        for facility_id, name, period_key in sorted(self._expectations):
            profile = self._profiles.get(facility_id)
            record = profile.get_period(period_key) if profile else None
            if record is None or name not in record.accepted:
                missing.append((facility_id, name, period_key))
        return missing

    # --- Accessors ---

    @property
    def profiles(self) -> list[FacilityProfile]:
        return list(self._profiles.values())

    def get_profile(self, facility_id: str) -> FacilityProfile:
        profile = self._profiles.get(facility_id)
        if profile is None:
            raise NotFound("facility", facility_id)
        return profile

    @property
    def conflicts(self) -> list[DetectedConflict]:
        return sorted(self._conflicts.values(), key=lambda c: c.detected_at)

    def get_conflict(self, conflict_id: str) -> DetectedConflict:
        conflict = self._conflicts.get(conflict_id)
        if conflict is None:
            raise NotFound("conflict", conflict_id)
        return conflict

    def open_conflicts(self) -> list[DetectedConflict]:
        return [c for c in self.conflicts if c.status == "open"]

    def get_accepted(self, facility_id: str, field_name: str, period_key: str) -> ExtractedField | None:
        profile = self._profiles.get(facility_id)
        record = profile.get_period(period_key) if profile else None
        return record.accepted.get(field_name) if record else None

    def iter_accepted(self) -> list[tuple[FacilityProfile, FinancialPeriodRecord, ExtractedField]]:
        rows = []
        for profile in self._profiles.values():
            for record in profile.periods:
                for accepted in record.accepted.values():
                    rows.append((profile, record, accepted))
        return rows

    def overall_confidence(self) -> float:
        """Mean confidence of accepted fields (0.0 when none)."""
        values = [f.confidence for _, _, f in self.iter_accepted()]
        return round(sum(values) / len(values), 4) if values else 0.0


def _add_candidate(conflict: DetectedConflict, proposal: ExtractedField) -> None:
    if not any(
        values_equal(c.value, proposal.value) and c.source_document_id == proposal.source_document_id
        for c in conflict.candidates
    ):
        conflict.candidates.append(ConflictCandidate.from_field(proposal))


def _find_winner(history: list[ExtractedField], conflict: DetectedConflict) -> ExtractedField | None:
    """Most confident history entry carrying the conflict's resolved value."""
    matches = [
        f for f in history
        if conflict.resolved_value is not None and values_equal(f.value, conflict.resolved_value)
    ]
    if not matches:
        return None
    return max(matches, key=lambda f: f.confidence)
