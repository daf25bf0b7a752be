# src/extraction/profiles.py — v1
"""Document-type instruction profiles.

A profile tells the extractor what to look for in one kind of document.
Required fields feed the ``missing`` clarification check: when a document
of that type succeeds without yielding one of them, the gap is flagged.
"""

from __future__ import annotations

from dataclasses import dataclass, field

GENERIC_PROFILE_NAME = "other"


@dataclass(frozen=True)
class InstructionProfile:
    """Extraction instructions for one document type."""

    document_type: str
    instructions: str
    expected_fields: tuple[str, ...] = ()
    required_fields: tuple[str, ...] = ()
    tags: frozenset[str] = field(default_factory=frozenset)


_FINANCIAL_FIELDS = (
    "total_revenue",
    "total_expenses",
    "net_operating_income",
    "ebitdar",
    "medicare_revenue",
    "medicaid_revenue",
    "private_pay_revenue",
    "labor_cost",
    "core_labor_cost",
    "agency_labor_cost",
    "benefits_cost",
    "non_labor_expenses",
    "fixed_charges",
    "noi_margin",
    "ebitdar_margin",
)

PROFILES: dict[str, InstructionProfile] = {
    p.document_type: p
    for p in [
        InstructionProfile(
            "offering_memorandum",
            "Extract facility identity, bed count, asking price, headline "
            "financials and occupancy. Note the period each figure covers.",
            ("licensed_beds", "asking_price", "address", "operator_name", "facility_type",
             "occupancy_rate", "total_revenue", "net_operating_income"),
            ("licensed_beds", "asking_price", "address"),
        ),
        InstructionProfile(
            "rent_roll",
            "Extract unit counts, occupancy and payer mix per facility.",
            ("licensed_beds", "occupancy_rate", "average_daily_census",
             "medicare_pct", "medicaid_pct", "private_pay_pct"),
            ("occupancy_rate",),
        ),
        InstructionProfile(
            "trailing_12",
            "Extract trailing twelve month revenue, expenses and NOI. Use the "
            "T12 window as the reporting period.",
            _FINANCIAL_FIELDS,
            ("total_revenue", "total_expenses", "net_operating_income"),
        ),
        InstructionProfile(
            "historical_pnl",
            "Extract revenue, expense and NOI lines for every reported period. "
            "Emit one set of fields per period column.",
            _FINANCIAL_FIELDS,
            ("total_revenue", "total_expenses"),
        ),
        InstructionProfile(
            "financial_statement",
            "Extract income statement totals, expense components and payer "
            "revenue detail, with per-diem rates where reported.",
            _FINANCIAL_FIELDS + ("labor_cost_pct", "management_fee_pct",
                                 "medicare_rate", "medicaid_rate", "private_pay_rate"),
            ("total_revenue", "total_expenses"),
        ),
        InstructionProfile(
            "medicare_cost_report",
            "Extract bed count, patient days, payer revenue and total costs "
            "from the cost report worksheets.",
            ("licensed_beds", "patient_days", "medicare_revenue", "medicaid_revenue",
             "total_revenue", "total_expenses"),
            ("licensed_beds", "patient_days"),
        ),
        InstructionProfile(
            "survey_report",
            "Extract the survey date, deficiency count and star rating.",
            ("deficiency_count", "star_rating"),
            ("deficiency_count",),
        ),
        InstructionProfile(
            "census_report",
            "Extract census, patient days, occupancy and payer mix.",
            ("average_daily_census", "patient_days", "occupancy_rate", "licensed_beds",
             "medicare_days", "medicaid_days", "private_pay_days",
             "medicare_pct", "medicaid_pct", "managed_care_pct", "private_pay_pct"),
            ("occupancy_rate",),
        ),
        InstructionProfile(
            "staffing_report",
            "Extract nursing hours per patient day, FTEs and agency usage.",
            ("total_hppd", "rn_hppd", "total_fte", "agency_labor_pct", "labor_cost"),
            ("total_hppd",),
        ),
        InstructionProfile(
            "quality_report",
            "Extract star ratings and quality measure highlights.",
            ("star_rating", "deficiency_count"),
            ("star_rating",),
        ),
        InstructionProfile(
            GENERIC_PROFILE_NAME,
            "Extract any facility financial or operational figures present, "
            "with the facility name and reporting period for each.",
        ),
    ]
}


def get_profile(document_type: str | None) -> InstructionProfile:
    """Return the profile for ``document_type``; unknown types get the generic one."""
    if document_type is None:
        return PROFILES[GENERIC_PROFILE_NAME]
    return PROFILES.get(document_type, PROFILES[GENERIC_PROFILE_NAME])
