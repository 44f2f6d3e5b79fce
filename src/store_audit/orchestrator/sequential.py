"""Single-page sequential pipeline.

Walks the stage registry for one (url, page type) pair, one awaited backend
call at a time.  Each stage reports a start event (``completed=False``) and,
on success, an end event (``completed=True``) carrying its typed result.
Large checklists are evaluated in chunks, each chunk reported under a
synthetic ``analyze_checklist_chunk_<n>`` step before the parent checklist
stage completes.

Entry points
------------
run                      -- full pipeline (validate through store)
run_up_to_gemini         -- teaser flow, stops after the AI analysis
continue_from_checklist  -- resume with a prior AI analysis, re-running only
                            the checklist (and store) stages
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import structlog

from store_audit.config import Settings
from store_audit.errors import InvalidStoreError, StepwiseAnalysisError
from store_audit.models import (
    ChecklistItem,
    ChecklistResult,
    ChunkUpdate,
    GeminiResult,
    PagewiseAnalysisResult,
    PageType,
    ScreenshotResult,
    StageName,
    StageResult,
    StepCompletion,
    StepsSummary,
    StepwiseRunResult,
    StoreAnalysisResult,
    ValidateShopifyResult,
    chunk_stage_name,
)
from store_audit.protocols.analysis_client import StepwiseAnalysisClient
from store_audit.stages import get_stages, get_stages_up_to

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[str, bool, Any], Awaitable[None]]


async def _ignore_progress(step: str, completed: bool, data: Any = None) -> None:
    return None


@dataclass
class _RunContext:
    """Values threaded from one stage to the next."""

    url: str
    page_type: PageType
    category: str | None = None
    screenshot_path: str | None = None
    image_analysis: str | None = None
    checklist_analysis: list[ChecklistItem] = field(default_factory=list)
    item_count: int = 0
    slug: str | None = None
    completed: set[StageName] = field(default_factory=set)


class SequentialOrchestrator:
    """Drives one page type through the stage registry."""

    def __init__(self, client: StepwiseAnalysisClient, settings: Settings) -> None:
        self._client = client
        self._chunk_count = settings.checklist_chunk_count
        self._chunked_page_types = {PageType(p) for p in settings.chunked_page_types}
        self._handlers: dict[StageName, Callable[[_RunContext, ProgressCallback], Awaitable[StageResult]]] = {
            StageName.VALIDATE_SHOPIFY: self._validate,
            StageName.TAKE_SCREENSHOT: self._screenshot,
            StageName.ANALYZE_GEMINI: self._analyze_image,
            StageName.ANALYZE_CHECKLIST: self._analyze_checklist,
            StageName.STORE_ANALYSIS: self._store,
        }

    def uses_chunks(self, page_type: PageType | str) -> bool:
        return PageType(page_type) in self._chunked_page_types

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(
        self,
        url: str,
        page_type: PageType | str,
        on_progress: ProgressCallback | None = None,
        category: str | None = None,
        include_store: bool = True,
    ) -> StepwiseRunResult:
        """Run every stage for *page_type* in registry order."""
        ctx = _RunContext(url=url, page_type=PageType(page_type), category=category)
        stages = get_stages(ctx.page_type, include_store=include_store)
        await self._execute(stages, ctx, on_progress or _ignore_progress)
        return self._finish(ctx)

    async def run_up_to_gemini(
        self,
        url: str,
        page_type: PageType | str,
        on_progress: ProgressCallback | None = None,
    ) -> PagewiseAnalysisResult:
        """Run validation, screenshot and AI analysis only.

        Used before the store category is known; the checklist is evaluated
        later through :meth:`continue_from_checklist`.
        """
        ctx = _RunContext(url=url, page_type=PageType(page_type))
        stages = get_stages_up_to(ctx.page_type, StageName.ANALYZE_GEMINI)
        await self._execute(stages, ctx, on_progress or _ignore_progress)
        return PagewiseAnalysisResult(
            screenshot_path=ctx.screenshot_path or "",
            image_analysis=ctx.image_analysis or "",
            checklist_analysis=[],
        )

    async def continue_from_checklist(
        self,
        image_analysis: str,
        page_type: PageType | str,
        category: str | None,
        url: str,
        screenshot_path: str,
        on_progress: ProgressCallback | None = None,
        include_store: bool = False,
    ) -> StepwiseRunResult:
        """Resume a run at the checklist stage with an existing AI analysis.

        Validation, screenshot and AI analysis are not re-invoked; the given
        *screenshot_path* and *image_analysis* are carried into the result
        unchanged.  Only ``analyze_checklist`` runs unless *include_store* is set.
        """
        ctx = _RunContext(
            url=url,
            page_type=PageType(page_type),
            category=category,
            screenshot_path=screenshot_path,
            image_analysis=image_analysis,
            completed={
                StageName.VALIDATE_SHOPIFY,
                StageName.TAKE_SCREENSHOT,
                StageName.ANALYZE_GEMINI,
            },
        )
        stages = get_stages(
            ctx.page_type,
            include_store=include_store,
            start_at=StageName.ANALYZE_CHECKLIST,
        )
        await self._execute(stages, ctx, on_progress or _ignore_progress)
        return self._finish(ctx)

    # ------------------------------------------------------------------
    # Engine
    # ------------------------------------------------------------------

    async def _execute(
        self,
        stages: list[StageName],
        ctx: _RunContext,
        on_progress: ProgressCallback,
    ) -> None:
        log = logger.bind(url=ctx.url, page_type=ctx.page_type.value)
        for stage in stages:
            log.info("stage_started", stage=stage.value)
            await on_progress(stage.value, False, None)
            try:
                result = await self._handlers[stage](ctx, on_progress)
            except Exception as exc:
                log.warning("stage_failed", stage=stage.value, error=str(exc))
                raise
            ctx.completed.add(stage)
            log.info("stage_completed", stage=stage.value)
            await on_progress(stage.value, True, result)

    def _finish(self, ctx: _RunContext) -> StepwiseRunResult:
        done = ctx.completed
        return StepwiseRunResult(
            result=PagewiseAnalysisResult(
                screenshot_path=ctx.screenshot_path or "",
                image_analysis=ctx.image_analysis or "",
                checklist_analysis=ctx.checklist_analysis,
                slug=ctx.slug,
            ),
            steps=StepsSummary(
                validate_shopify=StepCompletion(completed=StageName.VALIDATE_SHOPIFY in done),
                take_screenshot=StepCompletion(
                    completed=StageName.TAKE_SCREENSHOT in done,
                    screenshot_path=ctx.screenshot_path,
                ),
                analyze_gemini=StepCompletion(completed=StageName.ANALYZE_GEMINI in done),
                analyze_checklist=StepCompletion(
                    completed=StageName.ANALYZE_CHECKLIST in done,
                    item_count=ctx.item_count,
                ),
                store_analysis=StepCompletion(completed=StageName.STORE_ANALYSIS in done),
            ),
        )

    # ------------------------------------------------------------------
    # Stage handlers
    # ------------------------------------------------------------------

    async def _validate(self, ctx: _RunContext, on_progress: ProgressCallback) -> ValidateShopifyResult:
        result = await self._client.validate_shopify(ctx.url)
        if not result.is_shopify:
            raise InvalidStoreError(result.error or "Invalid Shopify store", url=ctx.url)
        return result

    async def _screenshot(self, ctx: _RunContext, on_progress: ProgressCallback) -> ScreenshotResult:
        result = await self._client.take_screenshot(ctx.url, ctx.page_type)
        if not result.screenshot_path:
            raise StepwiseAnalysisError(
                result.error or "Screenshot was not captured",
                stage=StageName.TAKE_SCREENSHOT.value,
            )
        ctx.screenshot_path = result.screenshot_path
        return result

    async def _analyze_image(self, ctx: _RunContext, on_progress: ProgressCallback) -> GeminiResult:
        result = await self._client.analyze_with_gemini(ctx.screenshot_path or "")
        ctx.image_analysis = result.image_analysis
        return result

    async def _analyze_checklist(self, ctx: _RunContext, on_progress: ProgressCallback) -> ChecklistResult:
        image_analysis = ctx.image_analysis or ""
        result: ChecklistResult
        if self.uses_chunks(ctx.page_type):

            async def on_chunk(update: ChunkUpdate) -> None:
                await on_progress(chunk_stage_name(update.chunk_number), True, update)

            result = await self._client.analyze_with_checklist_chunked(
                image_analysis,
                ctx.page_type,
                self._chunk_count,
                on_chunk=on_chunk,
                category=ctx.category,
            )
        else:
            result = await self._client.analyze_with_checklist(
                image_analysis, ctx.page_type, category=ctx.category
            )
        ctx.checklist_analysis = list(result.checklist_analysis)
        ctx.item_count = result.item_count
        return result

    async def _store(self, ctx: _RunContext, on_progress: ProgressCallback) -> StoreAnalysisResult:
        result = await self._client.store_analysis(
            url=ctx.url,
            page_type=ctx.page_type,
            screenshot_path=ctx.screenshot_path or "",
            image_analysis=ctx.image_analysis or "",
            checklist_analysis=ctx.checklist_analysis,
        )
        ctx.slug = result.slug
        return result
