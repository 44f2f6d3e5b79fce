"""Pydantic models for the store audit orchestrator.

Covers page types and stage names, checklist items and their reference
objects, the tagged per-stage results returned by the stepwise analysis API,
chunk progress, page results, streamed events and the report summary.

Wire payloads use camelCase keys; every model accepts both the wire alias and
the Python field name, and ``model_dump(by_alias=True)`` produces the wire
shape.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class PageType(str, enum.Enum):
    """Store page categories that can be audited."""

    HOMEPAGE = "homepage"
    COLLECTION = "collection"
    PRODUCT = "product"
    CART = "cart"


# Fixed order for multi-page runs
PAGE_ORDER: tuple[PageType, ...] = (
    PageType.HOMEPAGE,
    PageType.COLLECTION,
    PageType.PRODUCT,
    PageType.CART,
)


class StageName(str, enum.Enum):
    """Pipeline stages, in execution order."""

    VALIDATE_SHOPIFY = "validate_shopify"
    TAKE_SCREENSHOT = "take_screenshot"
    ANALYZE_GEMINI = "analyze_gemini"
    ANALYZE_CHECKLIST = "analyze_checklist"
    STORE_ANALYSIS = "store_analysis"


CHUNK_STAGE_PREFIX = "analyze_checklist_chunk_"


def chunk_stage_name(chunk_number: int) -> str:
    """Synthetic stage name reported for one checklist chunk."""
    return f"{CHUNK_STAGE_PREFIX}{chunk_number}"


def is_chunk_stage(step: str) -> bool:
    return step.startswith(CHUNK_STAGE_PREFIX)


class WireModel(BaseModel):
    """Base for models exchanged with the analysis API."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Checklist items
# ---------------------------------------------------------------------------


class ImageRef(WireModel):
    """Reference image attached to a failed checklist item."""

    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)

    id: str | None = Field(default=None, alias="_id")
    title: str | None = None
    url: str | None = None
    description: str | None = None


class AppRef(WireModel):
    """Shopify app suggested as a fix for a failed checklist item."""

    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)

    id: str | None = Field(default=None, alias="_id")
    name: str | None = None
    url: str | None = None
    description: str | None = None


class ChecklistItem(WireModel):
    """One CRO checklist rule evaluated against a page.

    Immutable once received; only FAIL items carry problem/solution detail.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    checklist_item: str = Field(alias="checklistItem")
    status: Literal["PASS", "FAIL"]
    reason: str = ""
    problem_name: str | None = Field(default=None, alias="problemName")
    problem: str | None = None
    solution: str | None = None
    image_reference: str | None = None
    image_reference_object: ImageRef | None = Field(default=None, alias="imageReferenceObject")
    app_reference: str | None = None
    app_reference_object: AppRef | None = Field(default=None, alias="appReferenceObject")

    @field_validator("status", mode="before")
    @classmethod
    def _upper_status(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @property
    def failed(self) -> bool:
        return self.status == "FAIL"


# ---------------------------------------------------------------------------
# Stage results (tagged by ``step``)
# ---------------------------------------------------------------------------


class StoreInfo(WireModel):
    """Store details returned by Shopify validation."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    url: str = ""
    domain: str = ""
    has_browser_instance: bool = Field(default=False, alias="hasBrowserInstance")


class ValidateShopifyResult(WireModel):
    step: Literal["validate_shopify"] = "validate_shopify"
    is_shopify: bool = Field(default=False, alias="isShopify")
    store_info: StoreInfo | None = Field(default=None, alias="storeInfo")
    error: str | None = None


class ScreenshotResult(WireModel):
    step: Literal["take_screenshot"] = "take_screenshot"
    screenshot_path: str = Field(alias="screenshotPath")
    page_type: PageType = Field(alias="pageType")
    url: str = ""
    error: str | None = None


class GeminiResult(WireModel):
    step: Literal["analyze_gemini"] = "analyze_gemini"
    image_analysis: str = Field(alias="imageAnalysis")
    screenshot_path: str = Field(default="", alias="screenshotPath")
    error: str | None = None


class ChecklistResult(WireModel):
    step: Literal["analyze_checklist"] = "analyze_checklist"
    checklist_analysis: list[ChecklistItem] = Field(default_factory=list, alias="checklistAnalysis")
    page_type: PageType = Field(alias="pageType")
    item_count: int = Field(default=0, alias="itemCount")
    is_chunked: bool = Field(default=False, alias="isChunked")
    total_chunks: int | None = Field(default=None, alias="totalChunks")
    failed_chunks: list[int] = Field(default_factory=list, alias="failedChunks")
    error: str | None = None


class StoreAnalysisResult(WireModel):
    step: Literal["store_analysis"] = "store_analysis"
    slug: str
    report_url: str | None = Field(default=None, alias="reportUrl")
    error: str | None = None


StageResult = Annotated[
    Union[
        ValidateShopifyResult,
        ScreenshotResult,
        GeminiResult,
        ChecklistResult,
        StoreAnalysisResult,
    ],
    Field(discriminator="step"),
]


class ChecklistChunkResult(WireModel):
    """Response for a single chunk of a chunked checklist evaluation."""

    checklist_analysis: list[ChecklistItem] = Field(default_factory=list, alias="checklistAnalysis")
    page_type: PageType = Field(alias="pageType")
    chunk_number: int = Field(alias="chunkNumber")
    total_chunks: int | None = Field(default=None, alias="totalChunks")
    item_count: int = Field(default=0, alias="itemCount")


class ChunkUpdate(WireModel):
    """Progress payload emitted once per successfully evaluated chunk."""

    chunk_number: int = Field(alias="chunkNumber")
    total_chunks: int = Field(alias="totalChunks")
    chunk_results: list[ChecklistItem] = Field(default_factory=list, alias="chunkResults")
    item_count: int = Field(default=0, alias="itemCount")
    is_complete: bool = Field(default=False, alias="isComplete")


# ---------------------------------------------------------------------------
# Pipeline state
# ---------------------------------------------------------------------------


class StepState(BaseModel):
    """Progress of one stage for one page-type run."""

    name: str
    completed: bool = False
    error: str | None = None
    data: dict[str, Any] | None = None


class ChunkProgress(BaseModel):
    """Accumulated progress of a chunked checklist evaluation."""

    current_chunk: int = 0
    total_chunks: int
    chunk_results: list[ChecklistItem] = Field(default_factory=list)
    is_complete: bool = False
    failed_chunks: list[int] = Field(default_factory=list)


class PagewiseAnalysisResult(WireModel):
    """Completed analysis of one page type."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    screenshot_path: str = Field(alias="screenshotPath")
    image_analysis: str = Field(alias="imageAnalysis")
    checklist_analysis: list[ChecklistItem] = Field(default_factory=list, alias="checklistAnalysis")
    slug: str | None = None


class StepCompletion(WireModel):
    completed: bool = False
    screenshot_path: str | None = Field(default=None, alias="screenshotPath")
    item_count: int | None = Field(default=None, alias="itemCount")


class StepsSummary(WireModel):
    """Per-stage completion record returned alongside a page result."""

    validate_shopify: StepCompletion = Field(default_factory=StepCompletion)
    take_screenshot: StepCompletion = Field(default_factory=StepCompletion)
    analyze_gemini: StepCompletion = Field(default_factory=StepCompletion)
    analyze_checklist: StepCompletion = Field(default_factory=StepCompletion)
    store_analysis: StepCompletion = Field(default_factory=StepCompletion)


class StepwiseRunResult(BaseModel):
    """Outcome of a full (or resumed) single-page run."""

    result: PagewiseAnalysisResult
    steps: StepsSummary


Report = dict[PageType, PagewiseAnalysisResult]


# ---------------------------------------------------------------------------
# Streamed events and summaries
# ---------------------------------------------------------------------------


class AnalysisEvent(BaseModel):
    """Event published while an audit session runs."""

    event_type: str
    session_id: str
    page_type: PageType | None = None
    step: str | None = None
    completed: bool | None = None
    status: str | None = None
    progress: int | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    message: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))


class ReportSummary(BaseModel):
    """Derived totals shown in the four-quadrant report overview."""

    total_problems: int
    performance_score: int
    report_completed: bool
    problems_by_page: dict[PageType, int]
    score_color: str
    pages_analyzed: int
