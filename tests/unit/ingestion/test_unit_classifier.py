# tests/unit/ingestion/test_unit_classifier.py — v1
"""Tests for ingestion/classifier.py — document type scoring."""

from __future__ import annotations

import pytest

from dealintake.ingestion.classifier import (
    DOCUMENT_TYPES,
    classify_document,
    normalize_document_type,
)


class TestClassifyDocument:
    def test_filename_and_content(self):
        result = classify_document(
            "Oakview_T12_2024.xlsx", "Trailing 12 month operating statement. EBITDA 1.2M"
        )
        assert result.document_type == "trailing_12"
        assert result.score >= 1.0
        assert result.indicators

    def test_content_only(self):
        result = classify_document(
            "scan_0042.txt",
            "OFFERING MEMORANDUM — Investment Highlights. Asking price $12.5M.",
        )
        assert result.document_type == "offering_memorandum"

    def test_survey_report(self):
        result = classify_document("cms_2567.txt", "Statement of Deficiencies, F-tag 689")
        assert result.document_type == "survey_report"

    def test_unknown_falls_back_to_other(self):
        result = classify_document("notes.txt", "Lunch menu for Tuesday")
        assert result.document_type == "other"
        assert result.score == 0.0

    def test_weak_signal_falls_back_to_other(self):
        result = classify_document("notes.txt", "The occupancy was discussed")
        assert result.document_type == "other"
        assert "census_report" in result.alternatives


class TestNormalizeDocumentType:
    @pytest.mark.parametrize("raw,expected", [
        ("Rent Roll", "rent_roll"),
        ("trailing-12", "trailing_12"),
        ("survey_report", "survey_report"),
        ("brochure", "other"),
        (None, "other"),
        ("", "other"),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_document_type(raw) == expected

    def test_other_is_known(self):
        assert "other" in DOCUMENT_TYPES
