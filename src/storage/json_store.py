# src/storage/json_store.py — v1
"""JSON file-based store (STORE_BACKEND=json).

Layout under STORE_ROOT::

    profiles/<scope_id>/<profile_id>.json
    conflicts/<conflict_id>.json
    clarifications/<clarification_id>.json

Writes go to a temp file and are renamed into place so a crash never
leaves a half-written entity.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from dealintake.core.models import Clarification, DetectedConflict, FacilityProfile
from dealintake.storage.base_store import BaseStore

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class JsonStore(BaseStore):
    """File-based store using one JSON file per entity."""

    def __init__(self, store_root: Path | str) -> None:
        self._root = Path(store_root).expanduser()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    async def load_profiles(self, scope_id: str) -> list[FacilityProfile]:
        return self._read_all(self._root / "profiles" / _safe(scope_id), FacilityProfile)

    async def save_profile(self, profile: FacilityProfile) -> None:
        scope = _safe(profile.scope_id or "_unscoped")
        self._write(self._root / "profiles" / scope / f"{_safe(profile.id)}.json", profile)

    async def save_conflict(self, conflict: DetectedConflict) -> None:
        self._write(self._root / "conflicts" / f"{_safe(conflict.id)}.json", conflict)

    async def save_clarification(self, clarification: Clarification) -> None:
        self._write(
            self._root / "clarifications" / f"{_safe(clarification.id)}.json", clarification
        )

    async def list_scopes(self) -> list[str]:
        base = self._root / "profiles"
        if not base.is_dir():
            return []
        return sorted(p.name for p in base.iterdir() if p.is_dir())

    async def list_conflicts(self, facility_id: str | None = None) -> list[DetectedConflict]:
        items = self._read_all(self._root / "conflicts", DetectedConflict)
        return [c for c in items if facility_id is None or c.facility_id == facility_id]

    async def list_clarifications(self, facility_id: str | None = None) -> list[Clarification]:
        items = self._read_all(self._root / "clarifications", Clarification)
        return [c for c in items if facility_id is None or c.facility_id == facility_id]

    @staticmethod
    def _write(path: Path, model: BaseModel) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(model.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp, path)

    @staticmethod
    def _read_all(directory: Path, model_cls: type[M]) -> list[M]:
        items: list[M] = []
        if not directory.is_dir():
            return items
        for path in sorted(directory.glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                items.append(model_cls(**data))
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning("Skipping unreadable record %s: %s", path.name, e)
        return items


def _safe(key: str) -> str:
    return key.replace("/", "_").replace("\\", "_")
