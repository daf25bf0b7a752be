# src/pipeline/session_store.py — v1
"""Explicit registry of live sessions keyed by session id.

Sessions are added on start and become evictable once terminal for longer
than the retention window; nothing here grows without bound.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from dealintake.core.errors import NotFound
from dealintake.core.models import DocumentInput, DocumentTask, PipelineSession
from dealintake.progress.emitter import ProgressEmitter
from dealintake.reconciliation.aggregator import FacilityAggregator
from dealintake.reconciliation.clarification_generator import ClarificationGenerator

logger = logging.getLogger(__name__)


@dataclass
class SessionRecord:
    """Everything one running (or finished) session owns."""

    session: PipelineSession
    tasks: dict[str, DocumentTask]
    documents: dict[str, DocumentInput]
    aggregator: FacilityAggregator
    generator: ClarificationGenerator
    emitter: ProgressEmitter
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    runner: asyncio.Task[None] | None = None

    @property
    def ordered_tasks(self) -> list[DocumentTask]:
        return [self.tasks[task_id] for task_id in self.session.task_ids]


class SessionStore:
    """In-memory session registry with a retention window for finished sessions."""

    def __init__(self, retention_s: int = 3600) -> None:
        self._retention = timedelta(seconds=retention_s)
        self._records: dict[str, SessionRecord] = {}

    def add(self, record: SessionRecord) -> None:
        self._records[record.session.id] = record

    def get(self, session_id: str) -> SessionRecord:
        record = self._records.get(session_id)
        if record is None:
            raise NotFound("session", session_id)
        return record

    def find_by_clarification(self, clarification_id: str) -> SessionRecord:
        """Return the session whose generator owns ``clarification_id``."""
        for record in self._records.values():
            try:
                record.generator.get(clarification_id)
            except NotFound:
                continue
            return record
        raise NotFound("clarification", clarification_id)

    def evict_expired(self, now: datetime | None = None) -> list[str]:
        """Drop terminal sessions completed more than ``retention_s`` ago."""
        now = now or datetime.now(timezone.utc)
        expired = [
            sid
            for sid, record in self._records.items()
            if record.session.is_terminal
            and record.session.completed_at is not None
            and now - record.session.completed_at >= self._retention
        ]
        for sid in expired:
            del self._records[sid]
        if expired:
            logger.info("Evicted %d expired sessions", len(expired))
        return expired

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._records

    @property
    def session_ids(self) -> list[str]:
        return list(self._records)
