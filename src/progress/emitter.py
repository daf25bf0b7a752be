# src/progress/emitter.py — v1
"""Ordered progress event stream for one session.

``emit()`` is synchronous: the sequence number is assigned and the event is
queued to every subscriber without yielding to the event loop, so events
reach each subscriber in exactly the order they were numbered. Late
subscribers only see events emitted after they joined; ``latest`` keeps the
most recent event for anyone who needs the current snapshot.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable

from dealintake.core.models import ProgressEvent, ProgressKind, ProgressSummary

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """Async iterator over one subscriber's events; ends when the stream closes."""

    def __init__(self, emitter: ProgressEmitter) -> None:
        self._emitter = emitter
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._done = False

    def _deliver(self, item: Any) -> None:
        self._queue.put_nowait(item)

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        return self

    async def __anext__(self) -> ProgressEvent:
        if self._done:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._done = True
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        """Stop receiving events."""
        self._emitter._unsubscribe(self)
        if not self._done:
            self._deliver(_CLOSED)


class ProgressEmitter:
    """Monotonically numbered event fan-out for a session."""

    def __init__(self, session_id: str, summary_provider: Callable[[], ProgressSummary]) -> None:
        self.session_id = session_id
        self._summary_provider = summary_provider
        self._seq = 0
        self._subscribers: list[Subscription] = []
        self._latest: ProgressEvent | None = None
        self._closed = False

    @property
    def latest(self) -> ProgressEvent | None:
        return self._latest

    @property
    def seq(self) -> int:
        return self._seq

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self) -> Subscription:
        """Join the stream from the next event on."""
        sub = Subscription(self)
        if self._closed:
            sub._deliver(_CLOSED)
        else:
            self._subscribers.append(sub)
        return sub

    def emit(self, kind: ProgressKind, detail: dict[str, Any] | None = None) -> ProgressEvent:
        """Number and publish an event carrying a fresh summary snapshot."""
        if self._closed:
            raise RuntimeError(f"Progress stream for session {self.session_id} is closed")
        self._seq += 1
        event = ProgressEvent(
            seq=self._seq,
            session_id=self.session_id,
            kind=kind,
            summary=self._summary_provider(),
            detail=detail or {},
        )
        self._latest = event
        for sub in self._subscribers:
            sub._deliver(event)
        logger.debug("event #%d %s", event.seq, kind)
        return event

    def close(self) -> None:
        """End the stream for every subscriber."""
        if self._closed:
            return
        self._closed = True
        for sub in self._subscribers:
            sub._deliver(_CLOSED)
        self._subscribers.clear()

    def _unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)
