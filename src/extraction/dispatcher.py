# src/extraction/dispatcher.py — v1
"""Extraction dispatcher: runs document tasks on a bounded worker pool.

Each task parses its document, detects the document type when the caller
supplied none, calls the field extractor under a per-call timeout with
bounded retry, and hands the result to the session's result handler. The
pool semaphore bounds in-flight extraction calls only; merging happens
after the slot is released.

One failing document never aborts the batch: failures are recorded on the
task and the remaining tasks keep running. Cancellation is cooperative:
tasks not yet dispatched are marked failed with ``error_kind="cancelled"``,
in-flight tasks run to completion and their results are still merged.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable

from dealintake.config.settings import Settings
from dealintake.core.errors import (
    ExtractionTimeout,
    PersistenceError,
    PipelineError,
    RetryExhausted,
)
from dealintake.core.models import DocumentInput, DocumentTask, ExtractionOutput, ParsedDocument
from dealintake.extraction.base_extractor import BaseFieldExtractor
from dealintake.extraction.profiles import InstructionProfile, get_profile
from dealintake.extraction.retry import RetryPolicy, classify_error, with_retry
from dealintake.ingestion.base_ingestor import BaseIngestor
from dealintake.ingestion.classifier import normalize_document_type
from dealintake.logging.context import set_document_context

logger = logging.getLogger(__name__)

ResultHandler = Callable[
    [DocumentTask, DocumentInput, ExtractionOutput, InstructionProfile], Awaitable[None]
]
TaskCallback = Callable[[DocumentTask], None]


class ExtractionDispatcher:
    """Bounded-concurrency executor for DocumentTasks.

    The semaphore is shared by every session run through this dispatcher,
    so ``max_workers`` caps in-flight extraction calls process-wide.
    """

    def __init__(
        self,
        extractor: BaseFieldExtractor,
        ingestor: BaseIngestor,
        settings: Settings,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._extractor = extractor
        self._ingestor = ingestor
        self._timeout_s = settings.extraction_timeout_s
        self._policy = policy or RetryPolicy.from_settings(settings)
        self._max_workers = settings.max_workers
        self._semaphore = asyncio.Semaphore(settings.max_workers)

    @property
    def max_workers(self) -> int:
        return self._max_workers

    async def run(
        self,
        tasks: list[DocumentTask],
        documents: dict[str, DocumentInput],
        on_result: ResultHandler,
        on_task_done: TaskCallback,
        cancel_event: asyncio.Event,
    ) -> None:
        """Run every task to a terminal status.

        Args:
            tasks: Tasks in submission order.
            documents: Input documents keyed by document_id.
            on_result: Awaited with each successful extraction (merge step).
            on_task_done: Called once per task after it reaches a terminal status.
            cancel_event: When set, undispatched tasks are not started.
        """
        await asyncio.gather(
            *(
                self._run_task(task, documents[task.document_id], on_result, on_task_done, cancel_event)
                for task in tasks
            )
        )

    async def _run_task(
        self,
        task: DocumentTask,
        document: DocumentInput,
        on_result: ResultHandler,
        on_task_done: TaskCallback,
        cancel_event: asyncio.Event,
    ) -> None:
        set_document_context(document.document_id, component="dispatcher")
        try:
            async with self._semaphore:
                if cancel_event.is_set():
                    self._fail(task, "Session cancelled before dispatch", "cancelled")
                    return
                task.status = "running"
                task.started_at = datetime.now(timezone.utc)
                output, profile = await self._extract_document(task, document)

            task.detected_type = normalize_document_type(
                output.detected_type or profile.document_type
            )
            task.fields = [
                f.model_copy(
                    update={
                        "source_document_id": document.document_id,
                        "source_as_of": f.source_as_of or document.as_of,
                    }
                )
                for f in output.fields
            ]
            output = output.model_copy(update={"fields": task.fields})
            await on_result(task, document, output, profile)
            task.status = "succeeded"
            task.finished_at = datetime.now(timezone.utc)
            logger.info(
                "Task %s succeeded: %d fields (%s)",
                task.id, len(task.fields), task.detected_type,
            )
        except RetryExhausted as e:
            self._fail(task, str(e), "retryable_exhausted")
        except PersistenceError as e:
            self._fail(task, str(e), "persistence")
        except Exception as e:
            if not isinstance(e, PipelineError):
                logger.exception("Unexpected error in task %s (%s)", task.id, classify_error(e))
            self._fail(task, f"{type(e).__name__}: {e}", "fatal")
        finally:
            on_task_done(task)

    async def _extract_document(
        self, task: DocumentTask, document: DocumentInput
    ) -> tuple[ExtractionOutput, InstructionProfile]:
        parsed = await self._ingestor.parse(document.content, document.filename)

        document_type = task.document_type
        if document_type is None:
            document_type = await self._detect_type(document, parsed)
            task.detected_type = document_type
        profile = get_profile(document_type)

        def _count_retry(attempt: int, error_type: str, delay: float) -> None:
            task.retry_count = attempt

        output = await with_retry(
            self._call_extractor,
            profile.document_type,
            parsed,
            profile,
            operation=f"extract:{document.filename}",
            policy=self._policy,
            on_retry=_count_retry,
        )
        return output, profile

    async def _detect_type(self, document: DocumentInput, parsed: ParsedDocument) -> str:
        """Detection sub-step; any failure degrades to the generic profile."""
        try:
            detected = await asyncio.wait_for(
                self._extractor.detect_type(document.filename, parsed.text),
                timeout=self._timeout_s,
            )
        except Exception as e:
            logger.warning(
                "Type detection failed for %s, using generic profile: %s",
                document.filename, e,
            )
            return "other"
        return normalize_document_type(detected)

    async def _call_extractor(
        self, document_type: str, parsed: ParsedDocument, profile: InstructionProfile
    ) -> ExtractionOutput:
        try:
            return await asyncio.wait_for(
                self._extractor.extract(document_type, parsed.text, parsed.tables, profile),
                timeout=self._timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise ExtractionTimeout(
                f"Extraction exceeded {self._timeout_s:.1f}s"
            ) from e

    @staticmethod
    def _fail(task: DocumentTask, error: str, kind: str) -> None:
        task.status = "failed"
        task.error = error
        task.error_kind = kind  # type: ignore[assignment]
        task.finished_at = datetime.now(timezone.utc)
        if kind != "cancelled":
            logger.warning("Task %s failed [%s]: %s", task.id, kind, error)
