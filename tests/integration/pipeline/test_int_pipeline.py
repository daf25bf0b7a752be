# tests/integration/pipeline/test_int_pipeline.py — v1
"""Integration tests for the full intake pipeline.

Covers: ingestion (text/markdown/csv parsing, type detection), extraction
dispatch with replayed responses, facility/period reconciliation, conflict
handling, clarification generation and write-back, JSON persistence across
sessions.

No external services: the extraction provider is always a ReplayExtractor.
"""

from __future__ import annotations

import asyncio

import pytest

from dealintake.api.facade import PipelineService
from dealintake.config.settings import Settings
from dealintake.core.models import DocumentInput
from dealintake.extraction.replay_extractor import ReplayExtractor
from dealintake.storage.json_store import JsonStore

pytestmark = pytest.mark.integration

Q1 = {"period_start": "2024-01-01", "period_end": "2024-03-31"}
Q2 = {"period_start": "2024-04-01", "period_end": "2024-06-30"}
Q1_KEY = "2024-01-01_2024-03-31"


def _settings(**overrides) -> Settings:
    base = {"retry_base_delay_s": 0.0, "retry_jitter": False, "max_workers": 3}
    base.update(overrides)
    return Settings(_env_file=None, **base)


def _field(name, value, confidence=0.9, facility="Oakview Manor", period=Q1) -> dict:
    return {"field_name": name, "value": value, "confidence": confidence,
            "facility_name": facility, **period}


def _register(
    replay: ReplayExtractor, filename: str, text: str, fields: list[dict], document_type: str | None = "other"
) -> DocumentInput:
    replay.register(text, {"fields": fields, "overall_confidence": 0.8})
    return DocumentInput(
        filename=filename, content=text.encode("utf-8"), document_id=filename, document_type=document_type,
    )


def _deal_documents(replay: ReplayExtractor) -> list[DocumentInput]:
    return [
        _register(replay, "oakview_om.md",
                  "# Offering Memorandum\nOakview Manor, 120 licensed beds. Asking price $14.5M.",
                  [_field("licensed_beds", 120),
                   _field("asking_price", "$14,500,000"),
                   _field("address", "12 Elm St, Dayton OH"),
                   _field("total_revenue", 420_000, 0.9)],
                  document_type="offering_memorandum"),
        _register(replay, "oakview_t12.csv",
                  "Trailing 12 month income statement\nline,amount\nTotal revenue,610000\n",
                  [_field("total_revenue", 610_000, 0.4),
                   _field("total_expenses", 350_000, 0.85),
                   _field("net_operating_income", 70_000, 0.8)],
                  document_type="trailing_12"),
        _register(replay, "census.csv",
                  "Census report\nfacility,occupancy\nOakview Manor,1.2\nCedar Ridge LLC,0.81\n",
                  [_field("occupancy_rate", 1.2, 0.9, period=Q2),
                   _field("occupancy_rate", 0.81, 0.9, facility="Cedar Ridge LLC", period=Q2)],
                  document_type="census_report"),
    ]


class TestFullSession:
    @pytest.mark.asyncio
    async def test_deal_intake(self, tmp_path):
        replay = ReplayExtractor()
        unrecorded = DocumentInput(filename="notes.txt", content=b"no response recorded", document_id="notes.txt")
        docs = _deal_documents(replay) + [unrecorded]
        service = PipelineService(replay, settings=_settings(), store=JsonStore(tmp_path))

        session_id = await service.start(docs, deal_id="deal-42")
        snapshot = await service.wait(session_id, timeout=10)

        assert snapshot.session.status == "complete"
        assert snapshot.session.current_pass == 3
        assert snapshot.succeeded == 3 and snapshot.failed == 1
        assert snapshot.tasks[-1].error_kind == "fatal"
        assert snapshot.tasks[-1].detected_type == "other"
        assert {p.canonical_name for p in snapshot.profiles} == {"Oakview Manor", "Cedar Ridge LLC"}

        oakview = next(p for p in snapshot.profiles if p.canonical_name == "Oakview Manor")
        assert oakview.licensed_beds == 120
        assert [r.key for r in oakview.periods] == [Q1_KEY, "2024-04-01_2024-06-30"]
        assert oakview.get_period(Q1_KEY).accepted["asking_price"].value == 14_500_000.0

        open_conflicts = [c for c in snapshot.conflicts if c.status == "open"]
        assert len(open_conflicts) == 1
        assert open_conflicts[0].field_path == "total_revenue"
        assert open_conflicts[0].severity == "high"

        types = sorted(c.clarification_type for c in snapshot.pending_clarifications)
        assert types == ["conflict", "out_of_range"]
        scores = [c.priority_score for c in snapshot.pending_clarifications]
        assert scores == sorted(scores, reverse=True)

        stored = await JsonStore(tmp_path).load_profiles("deal-42")
        assert len(stored) == 2
        assert len(list((tmp_path / "clarifications").glob("*.json"))) == 2

    @pytest.mark.asyncio
    async def test_resolution_is_persisted(self, tmp_path):
        replay = ReplayExtractor()
        store = JsonStore(tmp_path)
        service = PipelineService(replay, settings=_settings(), store=store)
        session_id = await service.start(_deal_documents(replay)[:2], deal_id="deal-42")
        snapshot = await service.wait(session_id, timeout=10)
        conflict_clar = next(c for c in snapshot.pending_clarifications if c.clarification_type == "conflict")

        await service.resolve_clarification(conflict_clar.id, 430_000, "analyst@fund")

        profiles = await store.load_profiles("deal-42")
        q1 = profiles[0].get_period(Q1_KEY)
        assert q1.accepted["total_revenue"].value == 430_000
        assert q1.accepted["total_revenue"].source == "user"
        conflicts = await store.list_conflicts()
        assert [c.resolution_method for c in conflicts] == ["user_override"]
        assert service.get(session_id).pending_clarifications == []


class TestAcrossSessions:
    @pytest.mark.asyncio
    async def test_second_session_extends_stored_profiles(self, tmp_path):
        settings = _settings()

        first_replay = ReplayExtractor()
        first = PipelineService(first_replay, settings=settings, store=JsonStore(tmp_path))
        sid = await first.start(_deal_documents(first_replay)[:1], deal_id="deal-42")
        await first.wait(sid, timeout=10)

        second_replay = ReplayExtractor()
        later = _register(second_replay, "oakview_q1_update.txt", "Updated Q1 income statement",
                          [_field("total_revenue", 420_000, 0.95, facility="Oakview Manor, LLC")])
        second = PipelineService(second_replay, settings=settings, store=JsonStore(tmp_path))
        sid2 = await second.start([later], deal_id="deal-42")
        snapshot = await second.wait(sid2, timeout=10)

        assert len(snapshot.profiles) == 1
        profile = snapshot.profiles[0]
        assert "Oakview Manor, LLC" in profile.aliases
        q1 = profile.get_period(Q1_KEY)
        assert len(q1.history["total_revenue"]) == 2
        assert q1.accepted["total_revenue"].source_document_id == "oakview_om.md"
        assert snapshot.conflicts == []


class TestConcurrentSessions:
    @pytest.mark.asyncio
    async def test_sessions_share_worker_pool(self, tmp_path):
        replay = ReplayExtractor()
        service = PipelineService(replay, settings=_settings(max_workers=2), store=JsonStore(tmp_path))
        batches = [
            [_register(replay, f"deal{d}_doc{i}.txt", f"Deal {d} statement {i}",
                       [_field("total_revenue", 400_000 + d, 0.9, facility=f"Facility {d}")])
             for i in range(3)]
            for d in range(3)
        ]

        session_ids = [await service.start(batch, deal_id=f"deal-{d}") for d, batch in enumerate(batches)]
        snapshots = await asyncio.gather(*(service.wait(sid, timeout=10) for sid in session_ids))

        for d, snap in enumerate(snapshots):
            assert snap.session.status == "complete"
            assert snap.succeeded == 3
            assert [p.canonical_name for p in snap.profiles] == [f"Facility {d}"]
            assert snap.conflicts == []
