"""Per-interaction audit session.

An ``AnalysisSession`` is created for each user-initiated audit.  It owns the
session state, wires the orchestrator and coordinator to the event stream,
and is the outermost error boundary: any failure is logged, recorded as the
session's user-visible ``error`` and published as an ``error`` event before
being re-raised.

``reset()`` discards the state; results of runs started before the reset are
dropped on arrival.  ``restart()`` builds a brand-new session and re-runs
the pipeline from the first stage.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from functools import partial
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from store_audit.config import Settings
from store_audit.errors import StoreAuditError
from store_audit.models import (
    PAGE_ORDER,
    ChunkProgress,
    PagewiseAnalysisResult,
    PageType,
    ReportSummary,
    StepState,
    StepwiseRunResult,
)
from store_audit.orchestrator.coordinator import MultiPageCoordinator
from store_audit.orchestrator.sequential import SequentialOrchestrator
from store_audit.orchestrator.state import AnalysisState
from store_audit.progress import (
    STATUS_COMPLETE,
    STATUS_ERROR,
    STATUS_STARTING,
    calculate_progress,
    describe_status,
    step_label,
)
from store_audit.protocols.analysis_client import StepwiseAnalysisClient
from store_audit.report import summarize_report
from store_audit.streaming import (
    EVENT_COMPLETED,
    EVENT_ERROR,
    EVENT_RESET,
    EVENT_STARTED,
    AnalysisEventStream,
)
from store_audit.urls import normalize_url

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_GENERIC_ERROR = "An error occurred during analysis"


class AnalysisSession:
    """One user's audit: state, operations and event publishing."""

    def __init__(
        self,
        client: StepwiseAnalysisClient,
        settings: Settings,
        stream: AnalysisEventStream | None = None,
        session_id: str | None = None,
    ) -> None:
        self.id = session_id or str(uuid.uuid4())
        self._client = client
        self._settings = settings
        self._stream = stream or AnalysisEventStream(settings.event_queue_size)
        self._orchestrator = SequentialOrchestrator(client, settings)
        self._generation = 0
        self.state = AnalysisState()
        self.created_at = datetime.now(tz=timezone.utc)
        self.updated_at = self.created_at

    # ------------------------------------------------------------------
    # Read-only projections
    # ------------------------------------------------------------------

    @property
    def stream(self) -> AnalysisEventStream:
        return self._stream

    @property
    def report(self) -> dict[PageType, PagewiseAnalysisResult]:
        return self.state.report

    @property
    def steps(self) -> list[StepState]:
        return self.state.steps

    @property
    def current_step(self) -> str | None:
        return self.state.current_step

    @property
    def status(self) -> str | None:
        return self.state.status

    @property
    def error(self) -> str | None:
        return self.state.error

    @property
    def loading(self) -> bool:
        return self.state.loading

    @property
    def chunk_progress(self) -> ChunkProgress | None:
        return self.state.chunk_progress

    @property
    def analysis_in_progress(self) -> dict[PageType, bool]:
        return self.state.analysis_in_progress

    @property
    def result(self) -> PagewiseAnalysisResult | None:
        return self.state.result

    def progress(self) -> int:
        return calculate_progress(self.state.status)

    def status_message(self) -> str:
        return describe_status(self.state.status)

    def summary(self, performance_score: int | None = None) -> ReportSummary:
        return summarize_report(self.state.report, performance_score)

    def snapshot(self) -> dict[str, Any]:
        """JSON-ready view of the session for the HTTP layer."""
        state = self.state
        return {
            "id": self.id,
            "url": state.url,
            "page_type": state.page_type.value if state.page_type else None,
            "loading": state.loading,
            "status": state.status,
            "progress": self.progress(),
            "message": self.status_message(),
            "step_label": step_label(state.status),
            "current_step": state.current_step,
            "steps": [step.model_dump() for step in state.steps],
            "chunk_progress": state.chunk_progress.model_dump(by_alias=True) if state.chunk_progress else None,
            "analysis_in_progress": {page.value: busy for page, busy in state.analysis_in_progress.items()},
            "report": {page.value: entry.model_dump(by_alias=True) for page, entry in state.report.items()},
            "result": state.result.model_dump(by_alias=True) if state.result else None,
            "error": state.error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def handle_submit(self, url: str) -> dict[PageType, PagewiseAnalysisResult]:
        """Run the full four-page audit for a submitted store URL."""
        state = self.state
        state.report = {}
        state.analysis_in_progress = {}

        async def runner(coordinator: MultiPageCoordinator) -> dict[PageType, PagewiseAnalysisResult]:
            return await coordinator.run(state.url or url, PAGE_ORDER)

        return await self._run(url, None, runner)

    async def start_analysis_after_payment(self, url: str) -> dict[PageType, PagewiseAnalysisResult]:
        """Full audit once payment has been verified upstream."""
        logger.info("paid_analysis_requested", session_id=self.id, url=url)
        return await self.handle_submit(url)

    async def start_stepwise_analysis(
        self,
        url: str,
        page_type: PageType | str = PageType.HOMEPAGE,
    ) -> StepwiseRunResult:
        """Run every stage for a single page type."""
        page = PageType(page_type)
        state = self.state

        async def runner(coordinator: MultiPageCoordinator) -> StepwiseRunResult:
            run = await coordinator.run_page(state.url or url, page)
            await coordinator.set_status(STATUS_COMPLETE)
            return run

        return await self._run(url, page, runner)

    async def analyze_page(
        self,
        url: str,
        page_type: PageType | str = PageType.HOMEPAGE,
        require_auth: bool = False,
        category: str | None = None,
    ) -> PagewiseAnalysisResult:
        """Single-page flow used by the free teaser and its continuation.

        - no *category*: validate, screenshot and AI analysis only; the
          partial result is kept in ``state.result`` and not added to the
          report.
        - *category* with a prior AI analysis in this session: resume at the
          checklist stage, keeping the earlier screenshot and analysis.  Only
          the checklist is evaluated; the page is not persisted.
        - *category* without a prior analysis: full single-page run.

        Every write goes to the state object current at call time, so a
        ``reset()`` while awaiting leaves the fresh state untouched.
        """
        page = PageType(page_type)
        state = self.state
        previous = state.result
        state.require_auth = require_auth

        if category and previous is not None and previous.image_analysis:

            async def resume(coordinator: MultiPageCoordinator) -> PagewiseAnalysisResult:
                result = await coordinator.resume_page(state.url or url, page, previous, category)
                await coordinator.set_status(STATUS_COMPLETE)
                return result

            logger.info("analysis_resumed_from_checklist", session_id=self.id, page_type=page.value)
            return await self._run(url, page, resume, category=category)

        if category:

            async def full(coordinator: MultiPageCoordinator) -> PagewiseAnalysisResult:
                run = await coordinator.run_page(state.url or url, page, category=category)
                await coordinator.set_status(STATUS_COMPLETE)
                return run.result

            return await self._run(url, page, full, category=category)

        async def teaser(coordinator: MultiPageCoordinator) -> PagewiseAnalysisResult:
            return await coordinator.run_teaser(state.url or url, page)

        return await self._run(url, page, teaser)

    async def reset(self) -> None:
        """Discard all local state; in-flight results are ignored on arrival."""
        self._generation += 1
        self.state = AnalysisState()
        self.updated_at = datetime.now(tz=timezone.utc)
        await self._stream.emit(self.id, EVENT_RESET, message="Session reset")
        self._stream.clear(self.id)
        logger.info("session_reset", session_id=self.id)

    async def renew(self) -> AnalysisSession:
        """Reset this session and hand back a fresh one sharing its backend."""
        await self.reset()
        fresh = AnalysisSession(self._client, self._settings, stream=self._stream)
        logger.info("session_renewed", previous=self.id, session_id=fresh.id)
        return fresh

    async def restart(
        self,
        url: str | None = None,
        page_type: PageType | str | None = None,
    ) -> AnalysisSession:
        """Discard this session and re-run the pipeline in a new one.

        Without *page_type* the full four-page audit is re-run.  Pipeline
        failures are reported on the returned session's ``error``.
        """
        target = url or self.state.url
        if not target:
            raise ValueError("No URL to restart the analysis with")

        fresh = await self.renew()
        try:
            if page_type is None:
                await fresh.handle_submit(target)
            else:
                await fresh.start_stepwise_analysis(target, page_type)
        except StoreAuditError as exc:
            logger.warning("restarted_analysis_failed", session_id=fresh.id, error=str(exc))
        return fresh

    # ------------------------------------------------------------------
    # Run boundary
    # ------------------------------------------------------------------

    async def _publish(self, generation: int, event_type: str, **fields: Any) -> None:
        if generation != self._generation:
            return
        self.updated_at = datetime.now(tz=timezone.utc)
        await self._stream.emit(self.id, event_type, **fields)

    async def _run(
        self,
        url: str,
        page_type: PageType | None,
        runner: Callable[[MultiPageCoordinator], Awaitable[T]],
        category: str | None = None,
    ) -> T:
        generation = self._generation
        state = self.state
        publish = partial(self._publish, generation)

        state.url = normalize_url(url)
        state.page_type = page_type
        state.category = category
        state.loading = True
        state.error = None
        state.current_step = None
        state.chunk_progress = None
        state.status = STATUS_STARTING

        coordinator = MultiPageCoordinator(self._orchestrator, state, publish=publish)
        log = logger.bind(session_id=self.id, url=state.url)
        log.info("analysis_started", page_type=page_type.value if page_type else "all")
        await publish(
            EVENT_STARTED,
            page_type=page_type,
            status=state.status,
            progress=0,
            data={"url": state.url},
            message=describe_status(state.status),
        )

        try:
            result = await runner(coordinator)
        except Exception as exc:
            message = str(exc) or _GENERIC_ERROR
            state.error = message
            state.current_step = None
            state.chunk_progress = None
            state.status = STATUS_ERROR
            state.loading = False
            log.exception("analysis_failed", error=message)
            await publish(EVENT_ERROR, page_type=page_type, status=STATUS_ERROR, progress=0, message=message)
            raise

        state.current_step = None
        state.chunk_progress = None
        state.loading = False
        log.info("analysis_completed", pages=len(state.report))
        await publish(
            EVENT_COMPLETED,
            page_type=page_type,
            status=state.status,
            progress=calculate_progress(state.status),
            data={"pages": [page.value for page in state.report]},
            message=describe_status(state.status),
        )
        return result
