# src/core/errors.py — v1
"""Pipeline exception hierarchy.

Caller errors (InvalidInput, NotFound, AlreadyTerminal) surface immediately
and never mutate state. Extraction errors carry a ``retryable`` flag that
the dispatcher uses to decide between bounded retry and a fatal task
failure.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    retryable: bool = False


class InvalidInput(PipelineError):
    """Caller supplied an unusable request (e.g. an empty batch)."""


class NotFound(PipelineError):
    """Unknown session, clarification or facility id."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class AlreadyTerminal(PipelineError):
    """Operation targets an entity that already reached a terminal status."""

    def __init__(self, kind: str, identifier: str, status: str) -> None:
        self.kind = kind
        self.identifier = identifier
        self.status = status
        super().__init__(f"{kind} {identifier} is already {status}")


class ProviderUnavailable(PipelineError):
    """Extraction provider temporarily unavailable (rate limit, 5xx)."""

    retryable = True


class ExtractionTimeout(PipelineError):
    """A single extraction call exceeded its timeout."""

    retryable = True


class InvalidResponse(PipelineError):
    """Extraction provider returned an unusable response."""


class UnsupportedFormat(PipelineError):
    """Document format cannot be parsed by the ingestor."""


class PersistenceError(PipelineError):
    """A write to the persistence layer failed; the in-memory merge was discarded."""

    def __init__(self, message: str, context: dict | None = None) -> None:
        self.context = context or {}
        super().__init__(message)


class RetryExhausted(PipelineError):
    """All retries exhausted for an extraction call."""

    def __init__(self, operation: str, error_type: str, attempts: int, last_error: Exception):
        self.operation = operation
        self.error_type = error_type
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"'{operation}' failed after {attempts} attempts ({error_type}): {last_error}"
        )
