# src/storage/memory_store.py — v1
"""In-process store (default STORE_BACKEND=memory).

Keeps deep copies so callers can never mutate stored state by reference.
"""

from __future__ import annotations

from dealintake.core.models import Clarification, DetectedConflict, FacilityProfile
from dealintake.storage.base_store import BaseStore


class MemoryStore(BaseStore):
    """Dict-backed store, lost on process exit."""

    def __init__(self) -> None:
        self._profiles: dict[str, FacilityProfile] = {}
        self._conflicts: dict[str, DetectedConflict] = {}
        self._clarifications: dict[str, Clarification] = {}

    async def load_profiles(self, scope_id: str) -> list[FacilityProfile]:
        return [
            p.model_copy(deep=True) for p in self._profiles.values() if p.scope_id == scope_id
        ]

    async def save_profile(self, profile: FacilityProfile) -> None:
        self._profiles[profile.id] = profile.model_copy(deep=True)

    async def save_conflict(self, conflict: DetectedConflict) -> None:
        self._conflicts[conflict.id] = conflict.model_copy(deep=True)

    async def save_clarification(self, clarification: Clarification) -> None:
        self._clarifications[clarification.id] = clarification.model_copy(deep=True)

    async def list_scopes(self) -> list[str]:
        return sorted({p.scope_id for p in self._profiles.values()})

    async def list_conflicts(self, facility_id: str | None = None) -> list[DetectedConflict]:
        return [
            c.model_copy(deep=True)
            for c in self._conflicts.values()
            if facility_id is None or c.facility_id == facility_id
        ]

    async def list_clarifications(self, facility_id: str | None = None) -> list[Clarification]:
        return [
            c.model_copy(deep=True)
            for c in self._clarifications.values()
            if facility_id is None or c.facility_id == facility_id
        ]
