# src/logging/context.py — v2
"""Contextual logging support — attach session_id, document_id and the
active pipeline component to log records.

Context variables are per asyncio task, so each extraction worker carries
its own document_id without leaking into sibling workers.
"""

from __future__ import annotations

import contextvars
from dataclasses import dataclass
from typing import Any

_session_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "session_id", default=None
)
_document_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "document_id", default=None
)
_component: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "component", default=None
)


@dataclass
class LogContext:
    """Immutable snapshot of current logging context."""

    session_id: str | None = None
    document_id: str | None = None
    component: str | None = None

    def as_dict(self) -> dict[str, Any]:
        """Return non-None fields as dict for JSON log injection."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


def get_context() -> LogContext:
    """Snapshot current context variables."""
    return LogContext(
        session_id=_session_id.get(),
        document_id=_document_id.get(),
        component=_component.get(),
    )


def set_session_context(session_id: str) -> None:
    """Set session-level context (called once by the session runner)."""
    _session_id.set(session_id)


def set_document_context(document_id: str, component: str | None = None) -> None:
    """Set document-level context (called once per extraction worker)."""
    _document_id.set(document_id)
    if component is not None:
        _component.set(component)


def set_component(component: str | None) -> None:
    _component.set(component)


def clear_context() -> None:
    """Reset all context variables."""
    _session_id.set(None)
    _document_id.set(None)
    _component.set(None)
