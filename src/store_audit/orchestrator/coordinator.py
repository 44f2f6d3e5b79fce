"""Multi-page coordinator.

Runs the sequential pipeline across page types one at a time in the fixed
order homepage -> collection -> product -> cart, keeping one report entry per
completed page.  A page's entry is inserted only once its whole pipeline has
succeeded.  When a page fails, pages already in the report are kept and the
pages not yet started are abandoned.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Sequence

import structlog
from pydantic import BaseModel

from store_audit.errors import PageAnalysisError
from store_audit.models import (
    PAGE_ORDER,
    ChunkUpdate,
    PagewiseAnalysisResult,
    PageType,
    StageName,
    StepwiseRunResult,
    is_chunk_stage,
)
from store_audit.orchestrator.sequential import ProgressCallback, SequentialOrchestrator
from store_audit.orchestrator.state import AnalysisState
from store_audit.progress import (
    STATUS_ALL_STEPS_COMPLETE,
    STATUS_CLEANUP,
    calculate_progress,
    describe_status,
    page_complete_status,
    page_status,
)
from store_audit.streaming import (
    EVENT_CHUNK,
    EVENT_PAGE_COMPLETED,
    EVENT_PAGE_FAILED,
    EVENT_STATUS,
    EVENT_STEP,
)

logger = structlog.get_logger(__name__)

Publisher = Callable[..., Awaitable[None]]


async def _no_publish(event_type: str, **fields: Any) -> None:
    return None


class MultiPageCoordinator:
    """Runs page types sequentially and merges them into one report.

    Parameters
    ----------
    orchestrator:
        Single-page pipeline runner.
    state:
        Session state the coordinator writes to.
    publish:
        Async callable ``publish(event_type, **fields)`` forwarding events to
        the session's stream.
    include_store:
        Persist each page (``store_analysis`` stage) after its checklist.
    """

    def __init__(
        self,
        orchestrator: SequentialOrchestrator,
        state: AnalysisState,
        publish: Publisher | None = None,
        include_store: bool = True,
    ) -> None:
        self._orchestrator = orchestrator
        self._state = state
        self._publish = publish or _no_publish
        self._include_store = include_store

    async def run(
        self,
        url: str,
        page_types: Sequence[PageType] = PAGE_ORDER,
        category: str | None = None,
    ) -> dict[PageType, PagewiseAnalysisResult]:
        """Analyze *page_types* in order and return the assembled report.

        Raises :class:`PageAnalysisError` on the first failing page.
        """
        logger.info("multi_page_run_started", url=url, pages=[p.value for p in page_types])
        for page in page_types:
            await self.run_page(url, page, category=category)

        await self.set_status(STATUS_CLEANUP)
        await self.set_status(STATUS_ALL_STEPS_COMPLETE)
        logger.info("multi_page_run_completed", url=url, pages=len(self._state.report))
        return dict(self._state.report)

    async def run_page(
        self,
        url: str,
        page_type: PageType | str,
        category: str | None = None,
    ) -> StepwiseRunResult:
        """Run the full pipeline for one page and insert its report entry."""
        page = PageType(page_type)
        state = self._state
        state.analysis_in_progress[page] = True
        state.reset_steps(self._include_store)

        try:
            run = await self._orchestrator.run(
                url,
                page,
                on_progress=self.page_progress(page),
                category=category,
                include_store=self._include_store,
            )
        except Exception as exc:
            state.analysis_in_progress[page] = False
            state.fail_current_step(str(exc))
            logger.warning(
                "page_analysis_failed",
                url=url,
                page_type=page.value,
                error=str(exc),
                abandoned=[p.value for p in state.pages_remaining() if p is not page],
            )
            await self._publish(EVENT_PAGE_FAILED, page_type=page, message=str(exc))
            raise PageAnalysisError(page.value, exc) from exc

        self.complete_page(page, run.result)
        await self.set_status(page_complete_status(page))
        await self._publish(
            EVENT_PAGE_COMPLETED,
            page_type=page,
            data=run.result.model_dump(by_alias=True),
            message=f"{page.value} analysis complete: {len(run.result.checklist_analysis)} finding(s)",
        )
        return run

    async def run_teaser(self, url: str, page_type: PageType | str) -> PagewiseAnalysisResult:
        """Run *page_type* up to the AI analysis without touching the report."""
        page = PageType(page_type)
        state = self._state
        state.reset_steps()
        state.analysis_in_progress[page] = True
        try:
            result = await self._orchestrator.run_up_to_gemini(
                url, page, on_progress=self.page_progress(page)
            )
        finally:
            state.analysis_in_progress[page] = False
        state.result = result
        return result

    async def resume_page(
        self,
        url: str,
        page_type: PageType | str,
        previous: PagewiseAnalysisResult,
        category: str | None,
    ) -> PagewiseAnalysisResult:
        """Finish *page_type* from its checklist using an earlier AI analysis."""
        page = PageType(page_type)
        state = self._state
        state.reopen_steps({StageName.ANALYZE_CHECKLIST.value})
        state.analysis_in_progress[page] = True
        try:
            run = await self._orchestrator.continue_from_checklist(
                previous.image_analysis,
                page,
                category,
                url=url,
                screenshot_path=previous.screenshot_path,
                on_progress=self.page_progress(page),
            )
        except Exception as exc:
            state.analysis_in_progress[page] = False
            state.fail_current_step(str(exc))
            logger.warning("page_resume_failed", url=url, page_type=page.value, error=str(exc))
            raise

        self.complete_page(page, run.result)
        return run.result

    def complete_page(self, page: PageType, result: PagewiseAnalysisResult) -> None:
        state = self._state
        state.insert_page(page, result)
        state.result = result
        state.analysis_in_progress[page] = False

    # ------------------------------------------------------------------
    # Progress plumbing
    # ------------------------------------------------------------------

    def page_progress(self, page: PageType) -> ProgressCallback:
        """Progress callback that folds *page*'s events into the state."""

        async def on_progress(step: str, completed: bool, data: Any = None) -> None:
            state = self._state
            state.apply_progress(step, completed, data)
            status = page_status(page, step, completed)
            if status is not None:
                state.status = status

            payload = data.model_dump(by_alias=True) if isinstance(data, BaseModel) else {}
            if isinstance(data, ChunkUpdate):
                message = f"Checklist chunk {data.chunk_number} of {data.total_chunks} evaluated"
            else:
                message = describe_status(state.status)

            await self._publish(
                EVENT_CHUNK if is_chunk_stage(step) else EVENT_STEP,
                page_type=page,
                step=step,
                completed=completed,
                status=state.status,
                progress=calculate_progress(state.status),
                data=payload,
                message=message,
            )

        return on_progress

    async def set_status(self, status: str) -> None:
        self._state.status = status
        await self._publish(
            EVENT_STATUS,
            status=status,
            progress=calculate_progress(status),
            message=describe_status(status),
        )
