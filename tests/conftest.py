# tests/conftest.py — v2
"""Shared test fixtures for all unit and integration tests.

Provides settings with instant retries, an in-memory store, field and
document factories, and a replay extractor. No external dependencies — the
extraction provider is always replayed or mocked.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Callable

import pytest

from dealintake.config.settings import Settings
from dealintake.core.models import DocumentInput, ExtractedField
from dealintake.extraction.replay_extractor import ReplayExtractor
from dealintake.reconciliation.aggregator import FacilityAggregator
from dealintake.reconciliation.clarification_generator import ClarificationGenerator
from dealintake.storage.memory_store import MemoryStore

Q1_START = date(2024, 1, 1)
Q1_END = date(2024, 3, 31)


# === FIXTURES: Configuration / infrastructure ===


@pytest.fixture
def settings() -> Settings:
    """Default policy, no .env, retries without delay."""
    return Settings(_env_file=None, retry_base_delay_s=0.0, retry_jitter=False)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def aggregator(settings: Settings, store: MemoryStore) -> FacilityAggregator:
    return FacilityAggregator("deal-1", store, settings)


@pytest.fixture
def generator(
    aggregator: FacilityAggregator, store: MemoryStore, settings: Settings
) -> ClarificationGenerator:
    return ClarificationGenerator(aggregator, store, settings)


# === FIXTURES: Sample data ===


@pytest.fixture
def make_field() -> Callable[..., ExtractedField]:
    """Factory for Q1 2024 field proposals about Oakview Manor."""

    def _make(
        field_name: str = "total_revenue",
        value: Any = 420_000,
        confidence: float = 0.9,
        source_document_id: str = "doc-a",
        **kwargs: Any,
    ) -> ExtractedField:
        kwargs.setdefault("facility_name", "Oakview Manor")
        kwargs.setdefault("period_start", Q1_START)
        kwargs.setdefault("period_end", Q1_END)
        return ExtractedField(
            field_name=field_name,
            value=value,
            confidence=confidence,
            source_document_id=source_document_id,
            **kwargs,
        )

    return _make


@pytest.fixture
def replay() -> ReplayExtractor:
    return ReplayExtractor()


@pytest.fixture
def make_document(replay: ReplayExtractor) -> Callable[..., DocumentInput]:
    """Create a text document and register its extractor response."""

    def _make(
        filename: str,
        fields: list[dict[str, Any]],
        text: str | None = None,
        document_type: str | None = "financial_statement",
        **kwargs: Any,
    ) -> DocumentInput:
        body = text or f"Income statement for {filename}"
        replay.register(body, {"fields": fields, "overall_confidence": 0.8})
        return DocumentInput(
            filename=filename,
            content=body.encode("utf-8"),
            document_type=document_type,
            **kwargs,
        )

    return _make

