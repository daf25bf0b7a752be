# src/storage/store_factory.py — v1
"""Factory for persistence store instantiation."""

from __future__ import annotations

from dealintake.config.settings import Settings
from dealintake.storage.base_store import BaseStore


def create_store(settings: Settings | None = None) -> BaseStore:
    """Instantiate the configured store backend.

    Args:
        settings: Application settings. Defaults to the memory backend.

    Returns:
        Configured BaseStore implementation.
    """
    backend = "memory" if settings is None else settings.store_backend

    if backend == "memory":
        from dealintake.storage.memory_store import MemoryStore
        return MemoryStore()

    if backend == "json":
        from dealintake.storage.json_store import JsonStore
        return JsonStore(store_root=settings.store_root)  # type: ignore[union-attr]

    raise ValueError(f"Unsupported store backend: {backend!r}")
