# tests/unit/core/test_unit_models.py — v2
"""Tests for core/models.py — domain models and their helpers."""

from __future__ import annotations

from datetime import date

import pytest
from pydantic import ValidationError

from dealintake.core.models import (
    UNDATED_PERIOD_KEY,
    ConflictCandidate,
    DocumentTask,
    ExtractedField,
    FacilityProfile,
    FinancialPeriodRecord,
    PeriodHint,
    PipelineSession,
    ProgressEvent,
    ProgressSummary,
)


def _field(value=420_000, confidence=0.9, **kwargs) -> ExtractedField:
    return ExtractedField(
        field_name="total_revenue", value=value, confidence=confidence,
        source_document_id="doc-a", **kwargs,
    )


class TestExtractedField:
    def test_confidence_bounds(self):
        with pytest.raises(ValidationError):
            _field(confidence=1.2)
        with pytest.raises(ValidationError):
            _field(confidence=-0.1)

    def test_defaults(self):
        f = _field()
        assert f.source == "extraction"
        assert f.id
        assert f.proposed_at.tzinfo is not None


class TestPeriodHint:
    def test_dated_key(self):
        hint = PeriodHint(start=date(2024, 1, 1), end=date(2024, 3, 31))
        assert hint.key == "2024-01-01_2024-03-31"

    def test_partial_is_undated(self):
        assert PeriodHint(start=date(2024, 1, 1)).key == UNDATED_PERIOD_KEY
        assert PeriodHint().key == UNDATED_PERIOD_KEY


class TestFinancialPeriodRecord:
    def test_history_keeps_duplicates(self):
        record = FinancialPeriodRecord()
        f = _field()
        record.propose(f)
        record.propose(f)
        assert len(record.history["total_revenue"]) == 2

    def test_accept_replaces(self):
        record = FinancialPeriodRecord()
        record.accept(_field(420_000))
        record.accept(_field(430_000))
        assert record.accepted["total_revenue"].value == 430_000


class TestFacilityProfile:
    def test_add_alias(self):
        profile = FacilityProfile(canonical_name="Oakview Manor")
        assert profile.add_alias("Oakview Manor SNF") is True
        assert profile.add_alias("Oakview Manor SNF") is False
        assert profile.add_alias("Oakview Manor") is False
        assert profile.add_alias("  ") is False
        assert profile.aliases == ["Oakview Manor SNF"]

    def test_get_period(self):
        record = FinancialPeriodRecord(period_start=date(2024, 1, 1), period_end=date(2024, 3, 31))
        profile = FacilityProfile(canonical_name="X", periods=[record])
        assert profile.get_period("2024-01-01_2024-03-31") is record
        assert profile.get_period(UNDATED_PERIOD_KEY) is None

    def test_sort_periods_undated_last(self):
        profile = FacilityProfile(
            canonical_name="X",
            periods=[
                FinancialPeriodRecord(),
                FinancialPeriodRecord(period_start=date(2024, 4, 1), period_end=date(2024, 6, 30)),
                FinancialPeriodRecord(period_start=date(2024, 1, 1), period_end=date(2024, 3, 31)),
            ],
        )
        profile.sort_periods()
        assert [r.key for r in profile.periods] == [
            "2024-01-01_2024-03-31", "2024-04-01_2024-06-30", UNDATED_PERIOD_KEY,
        ]


class TestSessionAndTask:
    def test_session_scope_defaults_to_id(self):
        session = PipelineSession()
        assert session.scope_id == session.id
        assert PipelineSession(deal_id="deal-9").scope_id == "deal-9"

    def test_terminal_flags(self):
        assert PipelineSession(status="cancelled").is_terminal
        assert not PipelineSession(status="running").is_terminal
        task = DocumentTask(session_id="s", document_id="d", filename="a.txt")
        assert not task.is_terminal
        task.status = "failed"
        assert task.is_terminal


class TestConflictCandidate:
    def test_from_field(self):
        f = _field(610_000, 0.4, source_excerpt="Revenue: $610,000", source_as_of=date(2024, 5, 1))
        cand = ConflictCandidate.from_field(f)
        assert cand.field_id == f.id
        assert cand.value == 610_000
        assert cand.source_as_of == date(2024, 5, 1)


class TestProgressEvent:
    def test_to_sse(self):
        event = ProgressEvent(seq=3, session_id="s1", kind="task_done", summary=ProgressSummary())
        frame = event.to_sse()
        assert frame.startswith("id: 3\nevent: task_done\ndata: {")
        assert frame.endswith("\n\n")
