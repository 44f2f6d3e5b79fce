"""Shared test fixtures for the store audit orchestrator."""

from __future__ import annotations

from typing import Any

import pytest
from httpx import ASGITransport

from store_audit.config import Settings
from store_audit.errors import StepwiseAnalysisError
from store_audit.mock_backend.backend_app import MockAnalysisBackend
from store_audit.models import (
    ChecklistItem,
    ChecklistResult,
    ChunkUpdate,
    GeminiResult,
    PageType,
    ScreenshotResult,
    StoreAnalysisResult,
    ValidateShopifyResult,
)
from store_audit.protocols.analysis_client import StepwiseAnalysisClient

BACKEND_URL = "http://backend.test"


def make_item(name: str, status: str = "FAIL") -> ChecklistItem:
    return ChecklistItem(
        checklist_item=name,
        status=status,
        reason="r",
        problem="p",
        solution="s",
    )


class RecordingClient:
    """Stand-in for ``StepwiseAnalysisClient`` returning canned stage results.

    Every stage call is appended to ``calls``; ``fail_stage`` makes that stage
    raise.  ``chunks`` drives the chunked checklist path.
    """

    def __init__(
        self,
        is_shopify: bool = True,
        validate_error: str | None = None,
        screenshot_path: str = "/s/h.png",
        image_analysis: str = "...",
        checklist: list[ChecklistItem] | None = None,
        chunks: list[list[ChecklistItem]] | None = None,
        fail_stage: str | None = None,
        slug: str = "example-shop-1",
    ) -> None:
        self.is_shopify = is_shopify
        self.validate_error = validate_error
        self.screenshot_path = screenshot_path
        self.image_analysis = image_analysis
        self.checklist = checklist if checklist is not None else [make_item("X")]
        self.chunks = chunks
        self.fail_stage = fail_stage
        self.slug = slug
        self.calls: list[str] = []
        self.categories: list[str | None] = []

    def _enter(self, stage: str) -> None:
        self.calls.append(stage)
        if stage == self.fail_stage:
            raise StepwiseAnalysisError(f"{stage} failed", stage=stage)

    async def validate_shopify(self, url: str) -> ValidateShopifyResult:
        self._enter("validate_shopify")
        return ValidateShopifyResult(is_shopify=self.is_shopify, error=self.validate_error)

    async def take_screenshot(self, url: str, page_type: PageType | str) -> ScreenshotResult:
        self._enter("take_screenshot")
        return ScreenshotResult(
            screenshot_path=self.screenshot_path,
            page_type=PageType(page_type),
            url=url,
        )

    async def analyze_with_gemini(self, screenshot_path: str) -> GeminiResult:
        self._enter("analyze_gemini")
        return GeminiResult(image_analysis=self.image_analysis, screenshot_path=screenshot_path)

    async def analyze_with_checklist(
        self,
        image_analysis: str,
        page_type: PageType | str,
        category: str | None = None,
    ) -> ChecklistResult:
        self._enter("analyze_checklist")
        self.categories.append(category)
        return ChecklistResult(
            checklist_analysis=self.checklist,
            page_type=PageType(page_type),
            item_count=len(self.checklist),
        )

    async def analyze_with_checklist_chunked(
        self,
        image_analysis: str,
        page_type: PageType | str,
        total_chunks: int,
        on_chunk: Any = None,
        category: str | None = None,
    ) -> ChecklistResult:
        self._enter("analyze_checklist")
        self.categories.append(category)
        chunks = self.chunks or [self.checklist]
        items: list[ChecklistItem] = []
        for number, chunk in enumerate(chunks, start=1):
            items.extend(chunk)
            if on_chunk is not None:
                await on_chunk(
                    ChunkUpdate(
                        chunk_number=number,
                        total_chunks=len(chunks),
                        chunk_results=chunk,
                        item_count=len(chunk),
                        is_complete=number == len(chunks),
                    )
                )
        return ChecklistResult(
            checklist_analysis=items,
            page_type=PageType(page_type),
            item_count=len(items),
            is_chunked=True,
            total_chunks=len(chunks),
        )

    async def store_analysis(self, **kwargs: Any) -> StoreAnalysisResult:
        self._enter("store_analysis")
        return StoreAnalysisResult(slug=self.slug)


class ProgressRecorder:
    """Collects ``(step, completed, data)`` progress callbacks."""

    def __init__(self) -> None:
        self.events: list[tuple[str, bool, Any]] = []

    async def __call__(self, step: str, completed: bool, data: Any = None) -> None:
        self.events.append((step, completed, data))

    def completed_steps(self) -> list[str]:
        return [step for step, completed, _ in self.events if completed]


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(environment="testing", backend_url=BACKEND_URL)


@pytest.fixture
def backend():
    """In-process mock analysis backend."""
    return MockAnalysisBackend()


@pytest.fixture
async def analysis_client(backend, settings):
    """Real HTTP client bound to the mock backend."""
    client = StepwiseAnalysisClient(
        settings.backend_url,
        transport=ASGITransport(app=backend.app),
    )
    yield client
    await client.close()


@pytest.fixture
def recorder():
    return ProgressRecorder()
