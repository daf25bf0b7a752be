# src/reconciliation/consistency.py — v1
"""Cross-period and internal consistency checks over accepted values.

Each check reads a facility's accepted values and reports findings; it
never changes anything. The clarification generator turns findings into
``out_of_range`` requests.

Checks:
    - period_change: a field moved more than its threshold between two
      consecutive dated periods of comparable length (revenue 20%,
      expenses 25%, occupancy 15%, per-diem rates 10%);
    - revenue_reconciliation: reported revenue is more than 5% away from
      payer days × per-diem rates;
    - component_sum: a total is more than 5% away from the sum of its
      components, checked only when every component is reported.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from dealintake.core.fields import is_numeric_value
from dealintake.core.models import ExtractedField, FacilityProfile, FinancialPeriodRecord, Severity

logger = logging.getLogger(__name__)

CheckKind = Literal["period_change", "revenue_reconciliation", "component_sum"]

PERIOD_CHANGE_THRESHOLDS: dict[str, float] = {
    "total_revenue": 0.20,
    "total_expenses": 0.25,
    "occupancy_rate": 0.15,
    "medicare_rate": 0.10,
    "medicaid_rate": 0.10,
    "private_pay_rate": 0.10,
}
PERIOD_CHANGE_HIGH = 0.50
RECONCILIATION_TOLERANCE = 0.05
COMPONENT_TOLERANCE = 0.05
HIGH_DEVIATION = 0.15

# Payer days paired with the per-diem rate that prices them.
PAYER_CENSUS: tuple[tuple[str, str], ...] = (
    ("medicare_days", "medicare_rate"),
    ("medicaid_days", "medicaid_rate"),
    ("private_pay_days", "private_pay_rate"),
)

_LENGTH_TOLERANCE = 0.10


@dataclass(frozen=True)
class ComponentRule:
    total: str
    parts: tuple[str, ...]
    escalates: bool = True


COMPONENT_RULES: tuple[ComponentRule, ...] = (
    ComponentRule("total_expenses", ("labor_cost", "non_labor_expenses", "fixed_charges")),
    ComponentRule("labor_cost", ("core_labor_cost", "agency_labor_cost", "benefits_cost"), escalates=False),
)


@dataclass(frozen=True)
class ConsistencyFinding:
    """One accepted value that disagrees with a value derived elsewhere."""

    kind: CheckKind
    facility_id: str
    period_key: str
    field: ExtractedField
    reference: float
    reference_label: str
    reference_source: str
    reference_confidence: float
    deviation: float
    severity: Severity

    @property
    def slot(self) -> tuple[str, str, str]:
        return (self.facility_id, self.field.field_name, self.period_key)


def check_profiles(profiles: list[FacilityProfile]) -> list[ConsistencyFinding]:
    """Run every check over every profile."""
    findings: list[ConsistencyFinding] = []
    for profile in profiles:
        findings.extend(check_period_changes(profile))
        findings.extend(check_revenue_reconciliation(profile))
        findings.extend(check_component_sums(profile))
    if findings:
        logger.debug("Consistency checks: %d findings", len(findings))
    return findings


def _number(record: FinancialPeriodRecord, field_name: str) -> float | None:
    accepted = record.accepted.get(field_name)
    if accepted is None or not is_numeric_value(accepted.value):
        return None
    return float(accepted.value)


def _length_days(record: FinancialPeriodRecord) -> int:
    return (record.period_end - record.period_start).days + 1  # type: ignore[operator]


def _comparable(a: FinancialPeriodRecord, b: FinancialPeriodRecord) -> bool:
    la, lb = _length_days(a), _length_days(b)
    return abs(la - lb) / max(la, lb) <= _LENGTH_TOLERANCE


def check_period_changes(profile: FacilityProfile) -> list[ConsistencyFinding]:
    """Flag the later value of consecutive comparable periods that moved too far."""
    dated = [r for r in profile.periods if r.period_start is not None and r.period_end is not None]
    dated.sort(key=lambda r: (r.period_start, r.period_end))
    findings: list[ConsistencyFinding] = []
    for prev, curr in zip(dated, dated[1:]):
        if not _comparable(prev, curr):
            continue
        for field_name, threshold in PERIOD_CHANGE_THRESHOLDS.items():
            before, after = _number(prev, field_name), _number(curr, field_name)
            if before is None or after is None or before == 0.0:
                continue
            change = abs(after - before) / abs(before)
            if change <= threshold:
                continue
            findings.append(ConsistencyFinding(
                kind="period_change",
                facility_id=profile.id,
                period_key=curr.key,
                field=curr.accepted[field_name],
                reference=before,
                reference_label=f"reported for {prev.key}",
                reference_source=f"period:{prev.key}",
                reference_confidence=prev.accepted[field_name].confidence,
                deviation=change,
                severity="high" if change > PERIOD_CHANGE_HIGH else "medium",
            ))
    return findings


def _latest_rate(
    profile: FacilityProfile, record: FinancialPeriodRecord, rate_field: str
) -> ExtractedField | None:
    """The record's own rate, else the latest one reported for an earlier period."""
    own = record.accepted.get(rate_field)
    if own is not None or record.period_start is None:
        return own
    for earlier in reversed(profile.periods):
        if earlier.period_start is None or earlier.period_start >= record.period_start:
            continue
        rate = earlier.accepted.get(rate_field)
        if rate is not None:
            return rate
    return None


def check_revenue_reconciliation(profile: FacilityProfile) -> list[ConsistencyFinding]:
    """Compare reported revenue with payer days priced at per-diem rates."""
    findings: list[ConsistencyFinding] = []
    for record in profile.periods:
        reported = _number(record, "total_revenue")
        if reported is None or reported <= 0.0:
            continue
        calculated = 0.0
        confidences: list[float] = []
        for days_field, rate_field in PAYER_CENSUS:
            days = record.accepted.get(days_field)
            rate = _latest_rate(profile, record, rate_field)
            if days is None or rate is None:
                continue
            if not (is_numeric_value(days.value) and is_numeric_value(rate.value)):
                continue
            calculated += float(days.value) * float(rate.value)
            confidences.extend((days.confidence, rate.confidence))
        if not confidences:
            continue
        deviation = abs(reported - calculated) / reported
        if deviation <= RECONCILIATION_TOLERANCE:
            continue
        findings.append(ConsistencyFinding(
            kind="revenue_reconciliation",
            facility_id=profile.id,
            period_key=record.key,
            field=record.accepted["total_revenue"],
            reference=round(calculated, 2),
            reference_label="payer days × per-diem rates",
            reference_source="calculated",
            reference_confidence=min(confidences),
            deviation=deviation,
            severity="high" if deviation > HIGH_DEVIATION else "medium",
        ))
    return findings


def check_component_sums(profile: FacilityProfile) -> list[ConsistencyFinding]:
    """Compare totals with the sum of their reported components."""
    findings: list[ConsistencyFinding] = []
    for record in profile.periods:
        for rule in COMPONENT_RULES:
            total = _number(record, rule.total)
            parts = [_number(record, name) for name in rule.parts]
            if total is None or total <= 0.0 or any(p is None for p in parts):
                continue
            summed = sum(parts)  # type: ignore[arg-type]
            deviation = abs(total - summed) / total
            if deviation <= COMPONENT_TOLERANCE:
                continue
            if rule.escalates:
                severity: Severity = "high" if deviation > HIGH_DEVIATION else "medium"
            else:
                severity = "low"
            findings.append(ConsistencyFinding(
                kind="component_sum",
                facility_id=profile.id,
                period_key=record.key,
                field=record.accepted[rule.total],
                reference=summed,
                reference_label="the sum of " + ", ".join(rule.parts),
                reference_source="calculated",
                reference_confidence=min(record.accepted[name].confidence for name in rule.parts),
                deviation=deviation,
                severity=severity,
            ))
    return findings
