# src/core/fields.py — v1
"""Field catalog: kind, label, importance tier and benchmark per field.

Kinds drive how values are compared (numeric variance vs exact mismatch),
tiers drive clarification priority, and benchmarks drive out-of-range
checks. Benchmarks (skilled-nursing industry ranges) are only defined for
scale-free fields so that monthly, quarterly and annual periods can share
them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

from dealintake.core.models import BenchmarkRange, FieldValue

FieldKind = Literal["currency", "percentage", "ratio", "count", "categorical", "text"]
ImportanceTier = Literal["core", "standard", "ancillary"]

NUMERIC_KINDS: frozenset[str] = frozenset({"currency", "percentage", "ratio", "count"})
TIER_RANK: dict[str, int] = {"ancillary": 0, "standard": 1, "core": 2}


@dataclass(frozen=True)
class FieldSpec:
    """Static description of one extractable field."""

    name: str
    label: str
    kind: FieldKind
    tier: ImportanceTier = "standard"
    benchmark: BenchmarkRange | None = None

    @property
    def is_numeric(self) -> bool:
        return self.kind in NUMERIC_KINDS


def _bm(lo: float, hi: float, median: float, unit: str) -> BenchmarkRange:
    return BenchmarkRange(min=lo, max=hi, median=median, unit=unit)  # type: ignore[arg-type]


FIELD_CATALOG: dict[str, FieldSpec] = {
    spec.name: spec
    for spec in [
        # Core financials
        FieldSpec("total_revenue", "Total Revenue", "currency", "core"),
        FieldSpec("total_expenses", "Total Expenses", "currency", "core"),
        FieldSpec("net_operating_income", "Net Operating Income", "currency", "core"),
        FieldSpec("ebitdar", "EBITDAR", "currency", "core"),
        FieldSpec("occupancy_rate", "Occupancy Rate", "percentage", "core", _bm(0.60, 0.98, 0.82, "percent")),
        FieldSpec("licensed_beds", "Licensed Beds", "count", "core"),
        # Revenue detail
        FieldSpec("medicare_revenue", "Medicare Revenue", "currency"),
        FieldSpec("medicaid_revenue", "Medicaid Revenue", "currency"),
        FieldSpec("private_pay_revenue", "Private Pay Revenue", "currency"),
        FieldSpec("medicare_rate", "Medicare Per-Diem Rate", "currency"),
        FieldSpec("medicaid_rate", "Medicaid Per-Diem Rate", "currency"),
        FieldSpec("private_pay_rate", "Private Pay Per-Diem Rate", "currency"),
        FieldSpec("medicare_pct", "Medicare % of Revenue", "percentage", benchmark=_bm(0.05, 0.35, 0.15, "percent")),
        FieldSpec("medicaid_pct", "Medicaid % of Revenue", "percentage", benchmark=_bm(0.40, 0.85, 0.60, "percent")),
        FieldSpec("managed_care_pct", "Managed Care % of Revenue", "percentage", benchmark=_bm(0.05, 0.30, 0.12, "percent")),
        FieldSpec("private_pay_pct", "Private Pay % of Revenue", "percentage", benchmark=_bm(0.02, 0.25, 0.08, "percent")),
        # Expense detail
        FieldSpec("labor_cost", "Total Labor Cost", "currency"),
        FieldSpec("core_labor_cost", "Core Labor Cost", "currency"),
        FieldSpec("agency_labor_cost", "Agency Labor Cost", "currency"),
        FieldSpec("benefits_cost", "Employee Benefits", "currency"),
        FieldSpec("non_labor_expenses", "Non-Labor Operating Expenses", "currency"),
        FieldSpec("fixed_charges", "Fixed Charges", "currency"),
        FieldSpec("labor_cost_pct", "Labor % of Revenue", "percentage", benchmark=_bm(0.45, 0.70, 0.55, "percent")),
        FieldSpec("agency_labor_pct", "Agency % of Labor", "percentage", benchmark=_bm(0.0, 0.30, 0.08, "percent")),
        FieldSpec("management_fee_pct", "Management Fee %", "percentage", benchmark=_bm(0.03, 0.08, 0.05, "percent")),
        FieldSpec("noi_margin", "NOI Margin", "percentage", benchmark=_bm(0.05, 0.25, 0.12, "percent")),
        FieldSpec("ebitdar_margin", "EBITDAR Margin", "percentage", benchmark=_bm(0.08, 0.30, 0.15, "percent")),
        # Census / staffing
        FieldSpec("patient_days", "Patient Days", "count"),
        FieldSpec("medicare_days", "Medicare Patient Days", "count"),
        FieldSpec("medicaid_days", "Medicaid Patient Days", "count"),
        FieldSpec("private_pay_days", "Private Pay Patient Days", "count"),
        FieldSpec("average_daily_census", "Average Daily Census", "ratio"),
        FieldSpec("total_hppd", "Nursing Hours per Patient Day", "ratio", benchmark=_bm(3.0, 5.5, 4.0, "hours")),
        FieldSpec("rn_hppd", "RN Hours per Patient Day", "ratio", benchmark=_bm(0.4, 1.5, 0.75, "hours")),
        FieldSpec("total_fte", "Total FTEs", "ratio", "ancillary"),
        # Survey / identity
        FieldSpec("deficiency_count", "Survey Deficiencies", "count"),
        FieldSpec("star_rating", "CMS Star Rating", "count", "ancillary"),
        FieldSpec("asking_price", "Asking Price", "currency"),
        FieldSpec("facility_type", "Facility Type", "categorical", "ancillary"),
        FieldSpec("operator_name", "Operator", "categorical", "ancillary"),
        FieldSpec("address", "Address", "text", "ancillary"),
    ]
}


def get_field_spec(field_name: str, value: FieldValue | None = None) -> FieldSpec:
    """Return the catalog entry for ``field_name``.

    Unknown fields get a ``standard`` tier spec typed from the sample value.
    """
    spec = FIELD_CATALOG.get(field_name)
    if spec is not None:
        return spec
    kind: FieldKind = "ratio" if is_numeric_value(value) else "categorical"
    return FieldSpec(field_name, format_field_label(field_name), kind)


def format_field_label(field_name: str) -> str:
    spec = FIELD_CATALOG.get(field_name)
    if spec is not None:
        return spec.label
    return field_name.replace("_", " ").replace(".", " ").strip().title()


def is_numeric_value(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


_NUMBER_CLEANUP = re.compile(r"[\s$€£,]")


def coerce_value(field_name: str, value: FieldValue) -> FieldValue:
    """Normalize a value for ``field_name``.

    Strings on numeric fields are parsed ("$420,000", "82%", "(1,200)");
    unparseable strings are returned unchanged.
    """
    spec = FIELD_CATALOG.get(field_name)
    if not isinstance(value, str) or spec is None or not spec.is_numeric:
        return value
    raw = _NUMBER_CLEANUP.sub("", value.strip())
    negative = raw.startswith("(") and raw.endswith(")")
    raw = raw.strip("()")
    percent = raw.endswith("%")
    raw = raw.rstrip("%")
    try:
        number = float(raw)
    except ValueError:
        return value
    if percent:
        number /= 100.0
    if negative:
        number = -number
    if spec.kind == "count" and number.is_integer():
        return int(number)
    return number


def normalize_categorical(value: FieldValue) -> str:
    return " ".join(str(value).split()).casefold()
