"""Event bus for real-time audit progress.

The orchestrator publishes stage, chunk and status events; the HTTP layer
consumes them via ``async for`` iteration and forwards them as SSE.

A session's event sequence is ``started``, then ``step`` and ``chunk`` events
(one ``chunk`` per evaluated checklist chunk of a chunked page), ``status``
transitions and ``page_completed`` / ``page_failed`` per page, and finally one
terminal event:

``completed``
    the run finished; carries the final status and progress.
``error``
    the run failed; ``message`` holds the error shown to the user.
``reset``
    the session was discarded.  History is cleared right after, so a new
    subscriber never replays a reset session's events; events from the
    abandoned run are dropped by the session before they get here.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

import structlog

from store_audit.models import AnalysisEvent, PageType

logger = structlog.get_logger(__name__)

# Canonical event type constants
EVENT_STARTED = "started"
EVENT_STEP = "step"
EVENT_CHUNK = "chunk"
EVENT_STATUS = "status"
EVENT_PAGE_COMPLETED = "page_completed"
EVENT_PAGE_FAILED = "page_failed"
EVENT_COMPLETED = "completed"
EVENT_ERROR = "error"
EVENT_RESET = "reset"

_TERMINAL_EVENTS = (EVENT_COMPLETED, EVENT_ERROR, EVENT_RESET)


class AnalysisEventStream:
    """In-memory pub/sub for audit session events.

    Each subscriber gets its own ``asyncio.Queue`` so several consumers can
    follow one session independently.  History is kept per session so a
    client that opens the SSE stream after the audit finished still gets
    every step and the terminal event.  History lives until ``clear()``,
    which the session calls on reset and the session manager calls when it
    evicts an idle session.
    """

    def __init__(self, max_queue_size: int = 256) -> None:
        self._queues: dict[str, list[asyncio.Queue[AnalysisEvent | None]]] = {}
        self._max_queue_size = max_queue_size
        self._history: dict[str, list[AnalysisEvent]] = {}

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def emit(
        self,
        session_id: str,
        event_type: str,
        data: dict[str, Any] | None = None,
        message: str = "",
        page_type: PageType | None = None,
        step: str | None = None,
        completed: bool | None = None,
        status: str | None = None,
        progress: int | None = None,
    ) -> AnalysisEvent:
        """Record an event for *session_id* and push it to live subscribers.

        A full subscriber queue drops the event for that subscriber only; the
        history still has it.
        """
        event = AnalysisEvent(
            event_type=event_type,
            session_id=session_id,
            page_type=page_type,
            step=step,
            completed=completed,
            status=status,
            progress=progress,
            data=data or {},
            message=message,
        )

        self._history.setdefault(session_id, []).append(event)

        queues = self._queues.get(session_id, [])
        for queue in queues:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "event_queue_full",
                    session_id=session_id,
                    event_type=event_type,
                )

        logger.debug(
            "event_emitted",
            session_id=session_id,
            event_type=event_type,
            step=step,
            subscribers=len(queues),
        )
        return event

    # ------------------------------------------------------------------
    # Subscribing
    # ------------------------------------------------------------------

    async def subscribe(self, session_id: str) -> AsyncIterator[AnalysisEvent]:
        """Yield events for *session_id* as they arrive.

        Terminates after a ``completed``, ``error`` or ``reset`` event, or
        when ``close(session_id)`` pushes the ``None`` sentinel.  A session
        whose last recorded event is terminal yields its history and stops.
        """
        queue: asyncio.Queue[AnalysisEvent | None] = asyncio.Queue(
            maxsize=self._max_queue_size
        )
        self._queues.setdefault(session_id, []).append(queue)

        try:
            # Replay history so late joiners catch up
            history = list(self._history.get(session_id, []))
            for past_event in history:
                yield past_event
            if history and history[-1].event_type in _TERMINAL_EVENTS:
                return

            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
                if event.event_type in _TERMINAL_EVENTS:
                    break
        finally:
            session_queues = self._queues.get(session_id, [])
            if queue in session_queues:
                session_queues.remove(queue)

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------

    def close(self, session_id: str) -> None:
        """Signal all subscribers of *session_id* to stop iterating."""
        for queue in self._queues.get(session_id, []):
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                logger.warning("event_queue_full_on_close", session_id=session_id)
        self._queues.pop(session_id, None)

    def get_history(self, session_id: str) -> list[AnalysisEvent]:
        """Return all events emitted for a session."""
        return list(self._history.get(session_id, []))

    def clear(self, session_id: str) -> None:
        """Drop the history of *session_id* and end its live subscribers."""
        self.close(session_id)
        self._history.pop(session_id, None)
