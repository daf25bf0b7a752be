# src/ingestion/classifier.py — v1
"""Keyword-based document type classifier.

Scores every known document type from filename patterns and weighted
content patterns; the best type wins when its score clears
``MIN_CLASSIFICATION_SCORE``, otherwise the document degrades to ``other``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DOCUMENT_TYPES: tuple[str, ...] = (
    "offering_memorandum",
    "rent_roll",
    "trailing_12",
    "historical_pnl",
    "financial_statement",
    "medicare_cost_report",
    "survey_report",
    "census_report",
    "staffing_report",
    "quality_report",
    "other",
)

FILENAME_WEIGHT = 1.0
MIN_CLASSIFICATION_SCORE = 0.8


@dataclass(frozen=True)
class _TypePattern:
    document_type: str
    filename_patterns: tuple[str, ...]
    text_patterns: tuple[tuple[str, float], ...]


_PATTERNS: tuple[_TypePattern, ...] = (
    _TypePattern(
        "offering_memorandum",
        (r"offering\s*mem", r"\bom\b", r"investment\s*summary", r"deal\s*summary"),
        (
            (r"offering\s+memorandum", 0.9),
            (r"investment\s+highlights", 0.8),
            (r"asking\s+price", 0.8),
            (r"cap\s+rate", 0.6),
            (r"property\s+overview", 0.7),
        ),
    ),
    _TypePattern(
        "rent_roll",
        (r"rent\s*roll", r"resident\s*roster", r"unit\s*list"),
        (
            (r"rent\s+roll", 0.9),
            (r"monthly\s+rent", 0.8),
            (r"move[- ]in\s+date", 0.7),
            (r"unit\s+(number|#|no)", 0.7),
        ),
    ),
    _TypePattern(
        "trailing_12",
        (r"t-?12", r"trailing", r"ttm", r"12[- ]month"),
        (
            (r"trailing\s+(12|twelve)", 0.9),
            (r"t-?12\s+month", 0.9),
            (r"ebitda", 0.5),
        ),
    ),
    _TypePattern(
        "historical_pnl",
        (r"historical", r"p\s*&\s*l", r"pnl", r"profit\s*and\s*loss"),
        (
            (r"profit\s+(and|&)\s+loss", 0.9),
            (r"year[- ]over[- ]year", 0.6),
            (r"fy\s*20\d\d", 0.4),
        ),
    ),
    _TypePattern(
        "financial_statement",
        (r"financial", r"income\s*statement", r"balance\s*sheet", r"audited"),
        (
            (r"income\s+statement", 0.8),
            (r"statement\s+of\s+operations", 0.8),
            (r"total\s+revenue", 0.5),
            (r"net\s+operating\s+income", 0.6),
            (r"operating\s+expenses", 0.5),
        ),
    ),
    _TypePattern(
        "medicare_cost_report",
        (r"cost\s*report", r"hcris", r"cms[- ]?2540"),
        (
            (r"medicare\s+cost\s+report", 0.9),
            (r"worksheet\s+[a-g]-?\d*", 0.6),
            (r"provider\s+(number|ccn)", 0.6),
        ),
    ),
    _TypePattern(
        "survey_report",
        (r"survey", r"2567", r"inspection"),
        (
            (r"statement\s+of\s+deficiencies", 0.9),
            (r"\bf-?tag\b", 0.7),
            (r"scope\s+and\s+severity", 0.7),
        ),
    ),
    _TypePattern(
        "census_report",
        (r"census", r"occupancy", r"patient\s*days"),
        (
            (r"average\s+daily\s+census", 0.9),
            (r"patient\s+days", 0.7),
            (r"payer\s+mix", 0.6),
            (r"occupancy", 0.4),
        ),
    ),
    _TypePattern(
        "staffing_report",
        (r"staffing", r"pbj", r"labor\s*report", r"payroll"),
        (
            (r"hours\s+per\s+patient\s+day", 0.9),
            (r"\bhppd\b", 0.8),
            (r"agency\s+(staff|labor)", 0.6),
            (r"\bfte", 0.5),
        ),
    ),
    _TypePattern(
        "quality_report",
        (r"quality", r"star\s*rating", r"care\s*compare"),
        (
            (r"quality\s+measures?", 0.8),
            (r"star\s+rating", 0.8),
            (r"five[- ]star", 0.7),
        ),
    ),
)


@dataclass
class ClassificationResult:
    """Best document type plus the scores that produced it."""

    document_type: str
    score: float = 0.0
    indicators: list[str] = field(default_factory=list)
    alternatives: dict[str, float] = field(default_factory=dict)


def classify_document(filename: str, text: str = "") -> ClassificationResult:
    """Classify a document from its filename and (leading) text content."""
    sample = text[:20000]
    name = re.sub(r"[_.]+", " ", filename)
    scores: dict[str, float] = {}
    indicators: dict[str, list[str]] = {}

    for pattern in _PATTERNS:
        score = 0.0
        hits: list[str] = []
        for fp in pattern.filename_patterns:
            if re.search(fp, name, re.IGNORECASE):
                score += FILENAME_WEIGHT
                hits.append(f"filename:{fp}")
                break
        for tp, weight in pattern.text_patterns:
            if re.search(tp, sample, re.IGNORECASE):
                score += weight
                hits.append(f"text:{tp}")
        if score > 0:
            scores[pattern.document_type] = score
            indicators[pattern.document_type] = hits

    if not scores:
        return ClassificationResult(document_type="other")

    best = max(scores, key=lambda t: (scores[t], -DOCUMENT_TYPES.index(t)))
    if scores[best] < MIN_CLASSIFICATION_SCORE:
        logger.debug("Weak classification for %s (%s=%.2f)", filename, best, scores[best])
        return ClassificationResult(document_type="other", score=scores[best], alternatives=scores)

    return ClassificationResult(
        document_type=best,
        score=scores[best],
        indicators=indicators[best],
        alternatives={t: s for t, s in scores.items() if t != best},
    )


def normalize_document_type(value: str | None) -> str:
    """Map arbitrary type labels onto known document types (unknown → other)."""
    if not value:
        return "other"
    key = re.sub(r"[\s\-]+", "_", value.strip().lower())
    return key if key in DOCUMENT_TYPES else "other"
