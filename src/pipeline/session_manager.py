# src/pipeline/session_manager.py — v2
"""Session manager: owns the pipeline lifecycle and state machine.

    queued → running → {complete, failed, cancelled}

``start()`` registers a session with one task per document and schedules
its runner; the runner loads stored profiles for the deal, lets the
dispatcher work through the tasks and consolidates each result (merge →
conflicts → clarifications). Every consolidation is one pass. Individual
document failures never fail the session; ``failed`` is reserved for a
session that cannot run at all.

Status changes and progress events are issued together without yielding,
so the event sequence is a total order over the session's history.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Any

from dealintake.config.settings import Settings, load_settings
from dealintake.core.errors import AlreadyTerminal, InvalidInput
from dealintake.core.models import (
    Clarification,
    DocumentInput,
    DocumentTask,
    ExtractedField,
    ExtractionOutput,
    FacilityHint,
    FieldValue,
    PeriodHint,
    PipelineSession,
    ProgressSummary,
    SessionStatus,
)
from dealintake.extraction.base_extractor import BaseFieldExtractor
from dealintake.extraction.dispatcher import ExtractionDispatcher
from dealintake.extraction.profiles import InstructionProfile
from dealintake.ingestion.base_ingestor import BaseIngestor
from dealintake.ingestion.classifier import normalize_document_type
from dealintake.ingestion.text_ingestor import TextIngestor
from dealintake.logging.context import set_component, set_session_context
from dealintake.pipeline.session_store import SessionRecord, SessionStore
from dealintake.progress.emitter import ProgressEmitter, Subscription
from dealintake.reconciliation.aggregator import FacilityAggregator, MergeOutcome
from dealintake.reconciliation.clarification_generator import ClarificationGenerator
from dealintake.reconciliation.conflict_detector import ConflictDetector
from dealintake.storage.base_store import BaseStore
from dealintake.storage.store_factory import create_store

logger = logging.getLogger(__name__)

_GroupKey = tuple[str | None, str | None, date | None, date | None]


class SessionManager:
    """Creates, runs, cancels and answers for pipeline sessions."""

    def __init__(
        self,
        extractor: BaseFieldExtractor,
        settings: Settings | None = None,
        store: BaseStore | None = None,
        ingestor: BaseIngestor | None = None,
    ) -> None:
        self._settings = settings or load_settings()
        self._store = store or create_store(self._settings)
        self._detector = ConflictDetector(self._settings)
        self._dispatcher = ExtractionDispatcher(extractor, ingestor or TextIngestor(), self._settings)
        self._sessions = SessionStore(self._settings.session_retention_s)

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    # --- Control ---

    async def start(self, documents: list[DocumentInput], deal_id: str | None = None) -> str:
        """Create a session for ``documents`` and start processing it.

        Raises:
            InvalidInput: Empty batch or duplicate document ids.
        """
        if not documents:
            raise InvalidInput("Document batch is empty")
        seen: set[str] = set()
        for doc in documents:
            if doc.document_id in seen:
                raise InvalidInput(f"Duplicate document_id in batch: {doc.document_id}")
            seen.add(doc.document_id)

        self._sessions.evict_expired()

        session = PipelineSession(deal_id=deal_id)
        tasks: dict[str, DocumentTask] = {}
        for doc in documents:
            task = DocumentTask(
                session_id=session.id,
                document_id=doc.document_id,
                filename=doc.filename,
                document_type=normalize_document_type(doc.document_type) if doc.document_type else None,
            )
            tasks[task.id] = task
            session.task_ids.append(task.id)

        aggregator = FacilityAggregator(session.scope_id, self._store, self._settings, self._detector)
        record = SessionRecord(
            session=session,
            tasks=tasks,
            documents={doc.document_id: doc for doc in documents},
            aggregator=aggregator,
            generator=ClarificationGenerator(aggregator, self._store, self._settings),
            emitter=ProgressEmitter(session.id, lambda: self._summary(record)),
        )
        self._sessions.add(record)
        record.runner = asyncio.create_task(self._run(record), name=f"session-{session.id}")
        logger.info(
            "Session %s started: %d documents (deal=%s, workers=%d)",
            session.id, len(documents), deal_id, self._dispatcher.max_workers,
        )
        return session.id

    def get(self, session_id: str) -> PipelineSession:
        """Raises NotFound for unknown or evicted sessions."""
        return self._sessions.get(session_id).session

    def get_record(self, session_id: str) -> SessionRecord:
        return self._sessions.get(session_id)

    def tasks(self, session_id: str) -> list[DocumentTask]:
        return self._sessions.get(session_id).ordered_tasks

    def summary(self, session_id: str) -> ProgressSummary:
        return self._summary(self._sessions.get(session_id))

    async def cancel(self, session_id: str) -> PipelineSession:
        """Request cooperative cancellation.

        Undispatched tasks are dropped; in-flight tasks finish and are merged.
        The session reaches ``cancelled`` once they have.

        Raises:
            NotFound: Unknown session.
            AlreadyTerminal: Session already complete, failed or cancelled.
        """
        record = self._sessions.get(session_id)
        if record.session.is_terminal:
            raise AlreadyTerminal("session", session_id, record.session.status)
        record.cancel_event.set()
        logger.info("Cancellation requested for session %s", session_id)
        return record.session

    async def wait(self, session_id: str, timeout: float | None = None) -> PipelineSession:
        """Wait for the session to reach a terminal status."""
        record = self._sessions.get(session_id)
        if record.runner is not None:
            await asyncio.wait_for(asyncio.shield(record.runner), timeout=timeout)
        return record.session

    def subscribe(self, session_id: str) -> Subscription:
        """Progress events from now on (no replay)."""
        return self._sessions.get(session_id).emitter.subscribe()

    async def resolve_clarification(
        self, clarification_id: str, value: FieldValue, resolved_by: str
    ) -> Clarification:
        record = self._sessions.find_by_clarification(clarification_id)
        clarification = await record.generator.resolve(clarification_id, value, resolved_by)
        self._emit(record, "merge_applied", {
            "facility_id": clarification.facility_id,
            "field": clarification.field_path,
            "period_key": clarification.period_key,
            "source": "user",
            "clarification_id": clarification.id,
        })
        return clarification

    async def skip_clarification(self, clarification_id: str) -> Clarification:
        record = self._sessions.find_by_clarification(clarification_id)
        return await record.generator.skip(clarification_id)

    # --- Runner ---

    async def _run(self, record: SessionRecord) -> None:
        session = record.session
        set_session_context(session.id)
        set_component("session_manager")
        self._set_status(record, "running")

        try:
            await record.aggregator.load()
        except Exception as exc:
            logger.exception("Session %s cannot load stored profiles", session.id)
            self._abort(record, f"Cannot load stored profiles: {exc}")
            return

        try:
            await self._dispatcher.run(
                record.ordered_tasks,
                record.documents,
                on_result=lambda task, doc, output, profile: self._consolidate(
                    record, task, doc, output, profile
                ),
                on_task_done=lambda task: self._on_task_done(record, task),
                cancel_event=record.cancel_event,
            )
        except Exception as exc:
            logger.exception("Session %s aborted", session.id)
            self._abort(record, f"{type(exc).__name__}: {exc}")
            return

        # A cancel that arrived after the last dispatch changed nothing.
        dropped = any(t.error_kind == "cancelled" for t in record.ordered_tasks)
        final: SessionStatus = "cancelled" if dropped else "complete"
        self._set_status(record, final)
        summary = self._summary(record)
        logger.info(
            "Session %s %s: %d/%d processed, %d failed, %d facilities, %d open conflicts, "
            "%d pending clarifications",
            session.id, final, summary.documents_processed, summary.documents_total,
            summary.documents_failed, summary.facilities_discovered, summary.conflicts_open,
            summary.clarifications_pending,
        )
        record.emitter.close()

    async def _consolidate(
        self,
        record: SessionRecord,
        task: DocumentTask,
        document: DocumentInput,
        output: ExtractionOutput,
        profile: InstructionProfile,
    ) -> None:
        """One consolidation pass for a finished extraction."""
        groups = _group_fields(output.fields, document)
        outcomes: list[MergeOutcome] = []
        for (name, external_id, start, end), fields in groups.items():
            outcome = await record.aggregator.merge(
                FacilityHint(name=name, external_id=external_id),
                PeriodHint(start=start, end=end),
                fields,
            )
            outcomes.append(outcome)
            self._emit(record, "merge_applied", {
                "task_id": task.id,
                "facility_id": outcome.facility_id,
                "period_key": outcome.period_key,
                "accepted": len(outcome.accepted),
                "corroborated": len(outcome.corroborated),
                "new_facility": outcome.created_facility,
            })
            for conflict in outcome.conflicts:
                self._emit(record, "conflict_detected", {
                    "conflict_id": conflict.id,
                    "facility_id": conflict.facility_id,
                    "field": conflict.field_path,
                    "period_key": conflict.period_key,
                    "severity": conflict.severity,
                    "status": conflict.status,
                    "variance_pct": conflict.variance_pct,
                })

        targets = {(o.facility_id, o.period_key) for o in outcomes}
        if len(targets) == 1 and profile.required_fields:
            yielded = {f.field_name for f in output.fields}
            facility_id, period_key = targets.pop()
            record.aggregator.expect_fields(
                facility_id, period_key, [f for f in profile.required_fields if f not in yielded]
            )

        record.session.current_pass += 1
        record.session.updated_at = datetime.now(timezone.utc)
        generated = await record.generator.run()
        for clarification in generated.created:
            self._emit(record, "clarification_created", {
                "clarification_id": clarification.id,
                "facility_id": clarification.facility_id,
                "field": clarification.field_path,
                "period_key": clarification.period_key,
                "type": clarification.clarification_type,
                "priority": clarification.priority,
            })

    def _on_task_done(self, record: SessionRecord, task: DocumentTask) -> None:
        record.session.updated_at = datetime.now(timezone.utc)
        self._emit(record, "task_done", {
            "task_id": task.id,
            "document_id": task.document_id,
            "status": task.status,
            "error_kind": task.error_kind,
        })

    # --- State helpers ---

    def _set_status(self, record: SessionRecord, status: SessionStatus, error: str | None = None) -> None:
        session = record.session
        now = datetime.now(timezone.utc)
        previous = session.status
        session.status = status
        session.updated_at = now
        if error is not None:
            session.error = error
        if session.is_terminal:
            session.completed_at = now
        self._emit(record, "status_changed", {"from": previous, "to": status})

    def _abort(self, record: SessionRecord, error: str) -> None:
        now = datetime.now(timezone.utc)
        for task in record.ordered_tasks:
            if not task.is_terminal:
                task.status = "failed"
                task.error = "Session aborted"
                task.error_kind = "fatal"
                task.finished_at = now
        self._set_status(record, "failed", error=error)
        record.emitter.close()

    @staticmethod
    def _emit(record: SessionRecord, kind: Any, detail: dict[str, Any]) -> None:
        if not record.emitter.closed:
            record.emitter.emit(kind, detail)

    @staticmethod
    def _summary(record: SessionRecord) -> ProgressSummary:
        tasks = list(record.tasks.values())
        return ProgressSummary(
            status=record.session.status,
            current_pass=record.session.current_pass,
            documents_total=len(tasks),
            documents_processed=sum(1 for t in tasks if t.is_terminal),
            documents_failed=sum(1 for t in tasks if t.status == "failed"),
            facilities_discovered=len(record.aggregator.profiles),
            conflicts_open=len(record.aggregator.open_conflicts()),
            clarifications_pending=len(record.generator.pending()),
            overall_confidence=record.aggregator.overall_confidence(),
        )


def _group_fields(
    fields: list[ExtractedField], document: DocumentInput
) -> dict[_GroupKey, list[ExtractedField]]:
    """Split a document's fields by the facility and period each one names.

    Fields without a facility fall back to the document's facility hint, or
    to the single facility the document names; fields without a period fall
    back to the single period the document names.
    """
    names = {f.facility_name for f in fields if f.facility_name}
    default_name = document.facility_hint or (next(iter(names)) if len(names) == 1 else None)
    periods = {(f.period_start, f.period_end) for f in fields if f.period_start and f.period_end}
    default_period = next(iter(periods)) if len(periods) == 1 else (None, None)

    groups: dict[_GroupKey, list[ExtractedField]] = defaultdict(list)
    for f in fields:
        start, end = (f.period_start, f.period_end) if f.period_start and f.period_end else default_period
        key = (f.facility_name or default_name, f.facility_external_id, start, end)
        groups[key].append(f)
    return dict(groups)
