# src/reconciliation/conflict_detector.py — v1
"""Cross-source conflict detection for a single (facility, field, period) slot.

Numeric values conflict on any inequality; the variance of the new value is
measured against the median of the values already competing for the slot
and mapped to a severity band. Categorical values conflict on inequality
after case/whitespace folding and carry no variance.

Auto-resolution:
    - highest confidence wins when the confidence gap between the best and
      the runner-up value reaches the margin and severity is below ``high``;
    - otherwise, when both leading candidates carry a document date, the
      variance is below the ``medium`` band and their confidence is within
      the margin, the later-dated document wins;
    - otherwise the conflict stays open for a human.
Arrival order never decides a conflict.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import numpy as np

from dealintake.config.settings import Settings
from dealintake.core.fields import get_field_spec, is_numeric_value, normalize_categorical
from dealintake.core.models import (
    SEVERITY_ORDER,
    ConflictCandidate,
    DetectedConflict,
    ExtractedField,
    FieldValue,
    Severity,
)

logger = logging.getLogger(__name__)

_GAP_EPSILON = 1e-9


def values_equal(a: FieldValue, b: FieldValue) -> bool:
    """Numeric equality for numbers, folded string equality otherwise."""
    if is_numeric_value(a) and is_numeric_value(b):
        return float(a) == float(b)
    return normalize_categorical(a) == normalize_categorical(b)


def compute_variance(value: FieldValue, prior_values: list[FieldValue]) -> float | None:
    """Relative distance of ``value`` from the median of numeric prior values.

    Returns None when either side is non-numeric.
    """
    numeric = [float(v) for v in prior_values if is_numeric_value(v)]
    if not numeric or not is_numeric_value(value):
        return None
    median = float(np.median(numeric))
    if median == 0.0:
        return 0.0 if float(value) == 0.0 else 1.0
    return abs(float(value) - median) / abs(median)


class ConflictDetector:
    """Detects, grows and auto-resolves slot conflicts.

    The detector never persists anything; the aggregator owns the returned
    conflict objects and commits them together with the profile.
    """

    def __init__(self, settings: Settings) -> None:
        self.band_medium = settings.variance_band_medium
        self.band_high = settings.variance_band_high
        self.band_critical = settings.variance_band_critical
        self.margin = settings.auto_resolve_confidence_margin

    def classify_severity(self, variance: float | None) -> Severity:
        if variance is None:
            return "medium"
        if variance >= self.band_critical:
            return "critical"
        if variance >= self.band_high:
            return "high"
        if variance >= self.band_medium:
            return "medium"
        return "low"

    def evaluate(
        self,
        facility_id: str,
        period_key: str,
        accepted: ExtractedField,
        proposal: ExtractedField,
        existing: DetectedConflict | None = None,
    ) -> DetectedConflict:
        """Open a conflict for the slot, or fold ``proposal`` into the open one.

        ``existing`` must be the slot's open conflict (already copied by the
        caller) when there is one. Auto-resolution is attempted afterwards.
        """
        if existing is None:
            conflict = DetectedConflict(
                facility_id=facility_id,
                field_path=proposal.field_name,
                period_key=period_key,
                candidates=[ConflictCandidate.from_field(accepted)],
            )
            is_new = True
        else:
            conflict = existing
            is_new = False

        prior = [c.value for c in conflict.candidates]
        if not any(
            values_equal(c.value, proposal.value)
            and c.source_document_id == proposal.source_document_id
            for c in conflict.candidates
        ):
            conflict.candidates.append(ConflictCandidate.from_field(proposal))

        spec = get_field_spec(proposal.field_name, proposal.value)
        variance = compute_variance(proposal.value, prior) if spec.is_numeric else None
        if variance is not None:
            pct = round(variance * 100.0, 2)
            conflict.variance_pct = pct if conflict.variance_pct is None else max(conflict.variance_pct, pct)
            conflict.severity = self.classify_severity(conflict.variance_pct / 100.0)
        elif conflict.variance_pct is None:
            conflict.severity = "medium"

        logger.info(
            "%s conflict on %s/%s [%s]: %d candidates, variance=%s, severity=%s",
            "New" if is_new else "Updated",
            facility_id, conflict.field_path, period_key,
            len(conflict.candidates), conflict.variance_pct, conflict.severity,
        )
        self.try_auto_resolve(conflict)
        return conflict

    def try_auto_resolve(self, conflict: DetectedConflict) -> ConflictCandidate | None:
        """Resolve ``conflict`` in place if policy allows; returns the winner."""
        if conflict.status != "open":
            return None
        ranked = _rank_by_value(conflict.candidates)
        if len(ranked) < 2:
            return None
        top, runner_up = ranked[0], ranked[1]
        gap = top.confidence - runner_up.confidence

        if gap + _GAP_EPSILON >= self.margin and SEVERITY_ORDER[conflict.severity] < SEVERITY_ORDER["high"]:
            self._resolve(conflict, top, "auto_highest_confidence")
            return top

        variance = (conflict.variance_pct or 0.0) / 100.0
        if (
            conflict.variance_pct is not None
            and variance < self.band_medium
            and gap + _GAP_EPSILON < self.margin
            and top.source_as_of is not None
            and runner_up.source_as_of is not None
            and top.source_as_of != runner_up.source_as_of
        ):
            latest = max((top, runner_up), key=lambda c: c.source_as_of)  # type: ignore[arg-type,return-value]
            self._resolve(conflict, latest, "auto_most_recent")
            return latest
        return None

    @staticmethod
    def _resolve(conflict: DetectedConflict, winner: ConflictCandidate, method: str) -> None:
        conflict.status = "resolved"
        conflict.resolution_method = method  # type: ignore[assignment]
        conflict.resolved_value = winner.value
        conflict.resolved_at = datetime.now(timezone.utc)
        logger.info(
            "Auto-resolved %s/%s [%s] → %r via %s",
            conflict.facility_id, conflict.field_path, conflict.period_key, winner.value, method,
        )


def _rank_by_value(candidates: list[ConflictCandidate]) -> list[ConflictCandidate]:
    """Best candidate per distinct value, ordered by confidence (desc)."""
    best: list[ConflictCandidate] = []
    for cand in candidates:
        for i, seen in enumerate(best):
            if values_equal(seen.value, cand.value):
                if cand.confidence > seen.confidence:
                    best[i] = cand
                break
        else:
            best.append(cand)
    return sorted(best, key=lambda c: -c.confidence)
