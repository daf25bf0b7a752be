# tests/unit/storage/test_unit_stores.py — v1
"""Tests for storage/memory_store.py, storage/json_store.py and the factory."""

from __future__ import annotations

import pytest

from dealintake.config.settings import Settings
from dealintake.core.models import Clarification, DetectedConflict, FacilityProfile
from dealintake.storage.json_store import JsonStore
from dealintake.storage.memory_store import MemoryStore
from dealintake.storage.store_factory import create_store


def _profile(scope: str = "deal-1", name: str = "Oakview Manor") -> FacilityProfile:
    return FacilityProfile(scope_id=scope, canonical_name=name)


def _conflict(facility_id: str) -> DetectedConflict:
    return DetectedConflict(facility_id=facility_id, field_path="total_revenue", period_key="undated")


def _clarification(facility_id: str) -> Clarification:
    return Clarification(
        facility_id=facility_id, field_path="total_revenue", period_key="undated",
        clarification_type="missing",
    )


@pytest.fixture(params=["memory", "json"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return MemoryStore()
    return JsonStore(tmp_path / "store")


class TestStoreContract:
    @pytest.mark.asyncio
    async def test_profiles_scoped(self, any_store):
        a, b = _profile("deal-1"), _profile("deal-2", "Cedar Ridge")
        await any_store.save_profile(a)
        await any_store.save_profile(b)

        loaded = await any_store.load_profiles("deal-1")

        assert [p.id for p in loaded] == [a.id]
        assert await any_store.list_scopes() == ["deal-1", "deal-2"]
        assert await any_store.load_profiles("deal-9") == []

    @pytest.mark.asyncio
    async def test_upsert_last_write_wins(self, any_store):
        profile = _profile()
        await any_store.save_profile(profile)
        profile.aliases.append("Oakview Manor LLC")
        await any_store.save_profile(profile)

        loaded = await any_store.load_profiles("deal-1")

        assert len(loaded) == 1
        assert loaded[0].aliases == ["Oakview Manor LLC"]

    @pytest.mark.asyncio
    async def test_conflicts_and_clarifications_filtered(self, any_store):
        await any_store.save_conflict(_conflict("f1"))
        await any_store.save_conflict(_conflict("f2"))
        await any_store.save_clarification(_clarification("f1"))

        assert len(await any_store.list_conflicts()) == 2
        assert [c.facility_id for c in await any_store.list_conflicts("f2")] == ["f2"]
        assert len(await any_store.list_clarifications("f1")) == 1
        assert await any_store.list_clarifications("f2") == []


class TestMemoryStore:
    @pytest.mark.asyncio
    async def test_returns_copies(self):
        store = MemoryStore()
        profile = _profile()
        await store.save_profile(profile)
        profile.canonical_name = "Changed"

        loaded = (await store.load_profiles("deal-1"))[0]
        loaded.aliases.append("mutated")

        again = (await store.load_profiles("deal-1"))[0]
        assert again.canonical_name == "Oakview Manor"
        assert again.aliases == []


class TestJsonStore:
    @pytest.mark.asyncio
    async def test_layout(self, tmp_path):
        store = JsonStore(tmp_path)
        profile = _profile()
        await store.save_profile(profile)
        await store.save_conflict(_conflict(profile.id))

        assert (tmp_path / "profiles" / "deal-1" / f"{profile.id}.json").is_file()
        assert len(list((tmp_path / "conflicts").glob("*.json"))) == 1
        assert list(tmp_path.rglob("*.tmp")) == []

    @pytest.mark.asyncio
    async def test_survives_reopen(self, tmp_path):
        profile = _profile()
        await JsonStore(tmp_path).save_profile(profile)
        loaded = await JsonStore(tmp_path).load_profiles("deal-1")
        assert loaded[0].model_dump() == profile.model_dump()

    @pytest.mark.asyncio
    async def test_skips_unreadable_record(self, tmp_path):
        store = JsonStore(tmp_path)
        await store.save_profile(_profile())
        (tmp_path / "profiles" / "deal-1" / "broken.json").write_text("{not json", encoding="utf-8")

        assert len(await store.load_profiles("deal-1")) == 1


class TestCreateStore:
    def test_default_memory(self):
        assert isinstance(create_store(), MemoryStore)

    def test_json(self, tmp_path):
        settings = Settings(_env_file=None, store_backend="json", store_root=tmp_path)
        store = create_store(settings)
        assert isinstance(store, JsonStore)
        assert store.root == tmp_path

    def test_unknown_backend(self):
        settings = Settings(_env_file=None).model_copy(update={"store_backend": "redis"})
        with pytest.raises(ValueError, match="Unsupported store backend"):
            create_store(settings)
