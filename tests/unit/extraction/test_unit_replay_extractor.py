# tests/unit/extraction/test_unit_replay_extractor.py — v1
"""Tests for extraction/replay_extractor.py."""

from __future__ import annotations

import json
from datetime import date

import pytest

from dealintake.core.errors import InvalidResponse
from dealintake.extraction.profiles import get_profile
from dealintake.extraction.replay_extractor import (
    ReplayExtractor,
    content_key,
    parse_response,
)

_RESPONSE = {
    "detected_type": "trailing_12",
    "overall_confidence": 0.8,
    "fields": [
        {
            "field_name": "total_revenue",
            "value": 420000,
            "confidence": 0.9,
            "facility_name": "Oakview Manor",
            "period_start": "2024-01-01",
            "period_end": "2024-03-31",
        }
    ],
}


class TestContentKey:
    def test_whitespace_and_case_folded(self):
        assert content_key("Total  Revenue\n420,000") == content_key("total revenue 420,000")


class TestParseResponse:
    def test_valid(self):
        output = parse_response(_RESPONSE)
        assert output.detected_type == "trailing_12"
        assert output.fields[0].period_start == date(2024, 1, 1)
        assert output.fields[0].source_document_id == ""

    @pytest.mark.parametrize("payload", [
        [],
        {"fields": "nope"},
        {"fields": [{"field_name": "x", "value": 1, "confidence": 3.0}]},
        {"fields": [{"value": 1, "confidence": 0.5}]},
    ])
    def test_malformed(self, payload):
        with pytest.raises(InvalidResponse):
            parse_response(payload)


class TestReplayExtractor:
    @pytest.mark.asyncio
    async def test_registered_response(self):
        extractor = ReplayExtractor()
        extractor.register("T12 for Oakview", _RESPONSE)
        output = await extractor.extract("trailing_12", "T12 for Oakview", [], get_profile("trailing_12"))
        assert output.fields[0].value == 420000

    @pytest.mark.asyncio
    async def test_missing_response(self):
        with pytest.raises(InvalidResponse, match="No recorded response"):
            await ReplayExtractor().extract("other", "unknown", [], get_profile("other"))

    @pytest.mark.asyncio
    async def test_detected_type_defaults_to_requested(self):
        extractor = ReplayExtractor()
        extractor.register("doc", {"fields": []})
        output = await extractor.extract("census_report", "doc", [], get_profile("census_report"))
        assert output.detected_type == "census_report"

    @pytest.mark.asyncio
    async def test_sidecar(self, tmp_path):
        doc = tmp_path / "t12.txt"
        doc.write_text("T12 for Oakview", encoding="utf-8")
        (tmp_path / "t12.txt.fields.json").write_text(json.dumps(_RESPONSE), encoding="utf-8")
        extractor = ReplayExtractor()
        assert extractor.register_sidecar(doc) is True
        assert extractor.register_sidecar(tmp_path / "other.txt") is False
        output = await extractor.extract("other", "T12 for Oakview", [], get_profile("other"))
        assert len(output.fields) == 1

    def test_bad_sidecar(self, tmp_path):
        doc = tmp_path / "om.txt"
        doc.write_text("OM", encoding="utf-8")
        (tmp_path / "om.txt.fields.json").write_text("{oops", encoding="utf-8")
        with pytest.raises(InvalidResponse, match="Invalid sidecar"):
            ReplayExtractor().register_sidecar(doc)

    @pytest.mark.asyncio
    async def test_default_detect_type_uses_classifier(self):
        detected = await ReplayExtractor().detect_type("rent_roll_june.csv", "Unit number, monthly rent")
        assert detected == "rent_roll"
