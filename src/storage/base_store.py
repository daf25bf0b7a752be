# src/storage/base_store.py — v1
"""Abstract persistence interface for profiles, conflicts and clarifications.

Backends are assumed durable with last-write-wins semantics per entity id.
Write methods may raise any exception; the aggregator wraps failures into
``PersistenceError`` and discards the in-memory merge.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from dealintake.core.models import Clarification, DetectedConflict, FacilityProfile


class BaseStore(ABC):
    """Unified interface for persistence backends."""

    @abstractmethod
    async def load_profiles(self, scope_id: str) -> list[FacilityProfile]:
        """Load every facility profile stored under a deal or session id."""

    @abstractmethod
    async def save_profile(self, profile: FacilityProfile) -> None:
        """Upsert a facility profile."""

    @abstractmethod
    async def save_conflict(self, conflict: DetectedConflict) -> None:
        """Upsert a conflict record."""

    @abstractmethod
    async def save_clarification(self, clarification: Clarification) -> None:
        """Upsert a clarification record."""

    @abstractmethod
    async def list_scopes(self) -> list[str]:
        """List scope ids that have stored profiles."""

    @abstractmethod
    async def list_conflicts(self, facility_id: str | None = None) -> list[DetectedConflict]:
        """List stored conflicts, optionally for one facility."""

    @abstractmethod
    async def list_clarifications(self, facility_id: str | None = None) -> list[Clarification]:
        """List stored clarifications, optionally for one facility."""
