# src/api/facade.py — v2
"""Public API facade — control surface for the extraction pipeline.

Usage:
    from dealintake.api.facade import PipelineService
    service = PipelineService(extractor)
    session_id = await service.start(documents, deal_id="deal-42")
    snapshot = await service.wait(session_id)

Or, for a one-shot batch:
    snapshot = await run_batch(documents, extractor)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from dealintake.api.models import SessionSnapshot
from dealintake.config.settings import Settings
from dealintake.core.models import Clarification, DocumentInput, FieldValue, PipelineSession
from dealintake.pipeline.session_manager import SessionManager
from dealintake.progress.emitter import Subscription

if TYPE_CHECKING:
    from dealintake.extraction.base_extractor import BaseFieldExtractor
    from dealintake.ingestion.base_ingestor import BaseIngestor
    from dealintake.storage.base_store import BaseStore

logger = logging.getLogger(__name__)


class PipelineService:
    """Control API: start, get, cancel, resolve and skip."""

    def __init__(
        self,
        extractor: BaseFieldExtractor,
        settings: Settings | None = None,
        store: BaseStore | None = None,
        ingestor: BaseIngestor | None = None,
    ) -> None:
        self._manager = SessionManager(extractor, settings=settings, store=store, ingestor=ingestor)

    async def start(self, documents: list[DocumentInput], deal_id: str | None = None) -> str:
        return await self._manager.start(documents, deal_id=deal_id)

    def get(self, session_id: str) -> SessionSnapshot:
        """Session state with profiles, conflicts and clarifications.

        Raises:
            NotFound: Unknown or evicted session.
        """
        record = self._manager.get_record(session_id)
        return SessionSnapshot(
            session=record.session.model_copy(deep=True),
            tasks=[t.model_copy(deep=True) for t in record.ordered_tasks],
            profiles=[p.model_copy(deep=True) for p in record.aggregator.profiles],
            conflicts=[c.model_copy(deep=True) for c in record.aggregator.conflicts],
            clarifications=[
                c.model_copy(deep=True)
                for c in record.generator.pending()
                + [c for c in record.generator.clarifications if c.status != "pending"]
            ],
            summary=self._manager.summary(session_id),
        )

    async def cancel(self, session_id: str) -> PipelineSession:
        return await self._manager.cancel(session_id)

    async def wait(self, session_id: str, timeout: float | None = None) -> SessionSnapshot:
        await self._manager.wait(session_id, timeout=timeout)
        return self.get(session_id)

    def subscribe(self, session_id: str) -> Subscription:
        return self._manager.subscribe(session_id)

    async def resolve_clarification(
        self, clarification_id: str, value: FieldValue, resolved_by: str
    ) -> Clarification:
        return await self._manager.resolve_clarification(clarification_id, value, resolved_by)

    async def skip_clarification(self, clarification_id: str) -> Clarification:
        return await self._manager.skip_clarification(clarification_id)


async def run_batch(
    documents: list[DocumentInput],
    extractor: BaseFieldExtractor,
    settings: Settings | None = None,
    store: BaseStore | None = None,
    deal_id: str | None = None,
) -> SessionSnapshot:
    """Run one batch to completion and return its snapshot.

    Raises:
        InvalidInput: If ``documents`` is empty.
    """
    service = PipelineService(extractor, settings=settings, store=store)
    session_id = await service.start(documents, deal_id=deal_id)
    snapshot = await service.wait(session_id)
    logger.info(
        "Batch %s finished: %s (%d succeeded, %d failed)",
        session_id, snapshot.session.status, snapshot.succeeded, snapshot.failed,
    )
    return snapshot
