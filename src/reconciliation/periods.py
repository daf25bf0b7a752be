# src/reconciliation/periods.py — v1
"""Reporting-period matching.

Two dated periods are the same period when their day ranges overlap by at
least ``min_ratio`` (intersection over union, inclusive of both ends).
Undated records only ever match undated proposals.
"""

from __future__ import annotations

from datetime import date

from dealintake.core.models import UNDATED_PERIOD_KEY, FinancialPeriodRecord, PeriodHint


def overlap_ratio(a_start: date, a_end: date, b_start: date, b_end: date) -> float:
    """Intersection-over-union of two inclusive date ranges (0.0 when disjoint)."""
    if a_end < a_start:
        a_start, a_end = a_end, a_start
    if b_end < b_start:
        b_start, b_end = b_end, b_start
    inter = (min(a_end, b_end) - max(a_start, b_start)).days + 1
    if inter <= 0:
        return 0.0
    union = (max(a_end, b_end) - min(a_start, b_start)).days + 1
    return inter / union


def match_period(
    records: list[FinancialPeriodRecord],
    hint: PeriodHint,
    min_ratio: float = 0.8,
) -> FinancialPeriodRecord | None:
    """Return the best-overlapping record for ``hint``, or None."""
    if hint.key == UNDATED_PERIOD_KEY:
        for record in records:
            if record.key == UNDATED_PERIOD_KEY:
                return record
        return None

    best: FinancialPeriodRecord | None = None
    best_ratio = 0.0
    for record in records:
        if record.period_start is None or record.period_end is None:
            continue
        ratio = overlap_ratio(record.period_start, record.period_end, hint.start, hint.end)  # type: ignore[arg-type]
        if ratio >= min_ratio and ratio > best_ratio:
            best, best_ratio = record, ratio
    return best


def parse_period_key(period_key: str) -> PeriodHint:
    """Inverse of ``PeriodHint.key``."""
    if period_key == UNDATED_PERIOD_KEY:
        return PeriodHint()
    try:
        start, end = period_key.split("_", 1)
        return PeriodHint(start=date.fromisoformat(start), end=date.fromisoformat(end))
    except ValueError as exc:
        raise ValueError(f"Invalid period key: {period_key!r}") from exc
