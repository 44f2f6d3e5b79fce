"""HTTP client for the stepwise analysis backend.

One call per pipeline stage (validate, screenshot, AI analysis, checklist,
store) plus the chunked checklist variant used for large pages and the
report read-back by slug.  Every response is wrapped in a
``{success, message, data}`` envelope; failures are raised as
:class:`StepwiseAnalysisError` and are never retried here.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable

import httpx
import structlog

from store_audit.errors import StepwiseAnalysisError
from store_audit.models import (
    ChecklistChunkResult,
    ChecklistItem,
    ChecklistResult,
    ChunkUpdate,
    GeminiResult,
    PageType,
    ScreenshotResult,
    StoreAnalysisResult,
    ValidateShopifyResult,
)
from store_audit.urls import normalize_url

logger = structlog.get_logger(__name__)

_DEFAULT_TIMEOUT = 180.0

ChunkCallback = Callable[[ChunkUpdate], Awaitable[None]]

# Fallback messages when the backend does not supply one
_FALLBACK_MESSAGES = {
    "validate_shopify": "Failed to validate Shopify store",
    "take_screenshot": "Failed to take screenshot",
    "analyze_gemini": "Failed to analyze",
    "analyze_checklist": "Failed to analyze",
    "analyze_checklist_chunk": "Failed to analyze checklist chunk",
    "store_analysis": "Failed to store analysis",
    "get_report": "Failed to get report",
}


class StepwiseAnalysisClient:
    """Async HTTP client for the stepwise analysis API.

    Parameters
    ----------
    base_url:
        API root, e.g. ``https://server.fixmystore.com/api``.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional httpx transport (``httpx.ASGITransport`` in tests).
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = _DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _get_client(self) -> httpx.AsyncClient:
        """Lazy-initialise the shared ``httpx.AsyncClient``."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        """Shut down the underlying HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self) -> StepwiseAnalysisClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Request helper
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        stage: str,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute one request and unwrap the ``data`` member of the envelope."""
        client = await self._get_client()
        url = f"{self._base_url}{path}"
        fallback = _FALLBACK_MESSAGES[stage]

        try:
            response = await client.request(method, url, json=json_body)
        except httpx.TimeoutException as exc:
            logger.warning("analysis_request_timeout", url=url, stage=stage)
            raise StepwiseAnalysisError(f"{fallback}: request timed out", stage=stage) from exc
        except httpx.RequestError as exc:
            logger.warning("analysis_request_error", url=url, stage=stage, error=str(exc))
            raise StepwiseAnalysisError(f"{fallback}: {exc}", stage=stage) from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not isinstance(payload, dict):
            logger.warning(
                "analysis_response_unreadable",
                url=url,
                stage=stage,
                status=response.status_code,
            )
            message = fallback
            if response.is_error:
                message = f"{fallback} (HTTP {response.status_code})"
            raise StepwiseAnalysisError(message, stage=stage, status_code=response.status_code)

        if response.is_error or payload.get("success") is False:
            message = payload.get("message") or fallback
            logger.warning(
                "analysis_request_failed",
                url=url,
                stage=stage,
                status=response.status_code,
                message=message,
            )
            raise StepwiseAnalysisError(message, stage=stage, status_code=response.status_code)

        data = payload.get("data")
        if not isinstance(data, dict):
            # Report read-back returns the document at the top level
            return payload
        return data

    # ------------------------------------------------------------------
    # Stage 1: Shopify validation
    # ------------------------------------------------------------------

    async def validate_shopify(self, url: str) -> ValidateShopifyResult:
        """Check whether *url* is a Shopify store.

        ``is_shopify=False`` is a business outcome and is returned, not
        raised; callers must inspect the flag.
        """
        data = await self._request(
            "POST",
            "/stepwise-analysis/validate-shopify",
            "validate_shopify",
            json_body={"url": normalize_url(url)},
        )
        return ValidateShopifyResult.model_validate(data)

    # ------------------------------------------------------------------
    # Stage 2: Screenshot
    # ------------------------------------------------------------------

    async def take_screenshot(self, url: str, page_type: PageType | str) -> ScreenshotResult:
        """Capture *page_type* of the store at *url*.

        Product and cart URLs are discovered by the capture service from the
        store root.
        """
        page = PageType(page_type)
        data = await self._request(
            "POST",
            "/stepwise-analysis/take-screenshot",
            "take_screenshot",
            json_body={"url": normalize_url(url), "pageType": page.value},
        )
        data.setdefault("pageType", page.value)
        return ScreenshotResult.model_validate(data)

    # ------------------------------------------------------------------
    # Stage 3: AI image analysis
    # ------------------------------------------------------------------

    async def analyze_with_gemini(self, screenshot_path: str) -> GeminiResult:
        """Run the vision model over a freshly captured screenshot."""
        data = await self._request(
            "POST",
            "/stepwise-analysis/analyze-gemini",
            "analyze_gemini",
            json_body={"screenshotPath": screenshot_path},
        )
        data.setdefault("screenshotPath", screenshot_path)
        return GeminiResult.model_validate(data)

    # ------------------------------------------------------------------
    # Stage 4: Checklist matching
    # ------------------------------------------------------------------

    async def analyze_with_checklist(
        self,
        image_analysis: str,
        page_type: PageType | str,
        category: str | None = None,
    ) -> ChecklistResult:
        """Evaluate the AI description against the page's CRO checklist."""
        page = PageType(page_type)
        body: dict[str, Any] = {"imageAnalysis": image_analysis, "pageType": page.value}
        if category:
            body["category"] = category
        data = await self._request(
            "POST",
            "/stepwise-analysis/analyze-checklist",
            "analyze_checklist",
            json_body=body,
        )
        data.setdefault("pageType", page.value)
        result = ChecklistResult.model_validate(data)
        if "itemCount" not in data and "item_count" not in data:
            result = result.model_copy(update={"item_count": len(result.checklist_analysis)})
        return result

    async def analyze_checklist_chunk(
        self,
        image_analysis: str,
        page_type: PageType | str,
        chunk_number: int,
        category: str | None = None,
    ) -> ChecklistChunkResult:
        """Evaluate one chunk (1-based) of a large checklist."""
        page = PageType(page_type)
        body: dict[str, Any] = {
            "imageAnalysis": image_analysis,
            "pageType": page.value,
            "chunkNumber": chunk_number,
        }
        if category:
            body["category"] = category
        data = await self._request(
            "POST",
            "/stepwise-analysis/analyze-checklist-chunked",
            "analyze_checklist_chunk",
            json_body=body,
        )
        data.setdefault("pageType", page.value)
        data.setdefault("chunkNumber", chunk_number)
        return ChecklistChunkResult.model_validate(data)

    async def analyze_with_checklist_chunked(
        self,
        image_analysis: str,
        page_type: PageType | str,
        total_chunks: int,
        on_chunk: ChunkCallback | None = None,
        category: str | None = None,
    ) -> ChecklistResult:
        """Evaluate the checklist chunk by chunk.

        Chunks run sequentially.  Each successful chunk is surfaced through
        *on_chunk* before the aggregate is returned.  A failing chunk is
        logged and recorded in ``failed_chunks``; evaluation continues with
        the next chunk.  ``is_complete`` is set on the final chunk number.
        """
        page = PageType(page_type)
        items: list[ChecklistItem] = []
        item_count = 0
        failed: list[int] = []

        for chunk_number in range(1, total_chunks + 1):
            try:
                chunk = await self.analyze_checklist_chunk(
                    image_analysis, page, chunk_number, category=category
                )
            except StepwiseAnalysisError as exc:
                failed.append(chunk_number)
                logger.warning(
                    "checklist_chunk_failed",
                    page_type=page.value,
                    chunk=chunk_number,
                    error=exc.message,
                )
                continue

            items.extend(chunk.checklist_analysis)
            item_count += chunk.item_count or len(chunk.checklist_analysis)

            if on_chunk is not None:
                await on_chunk(
                    ChunkUpdate(
                        chunk_number=chunk_number,
                        total_chunks=total_chunks,
                        chunk_results=chunk.checklist_analysis,
                        item_count=chunk.item_count,
                        is_complete=chunk_number == total_chunks,
                    )
                )

        logger.info(
            "checklist_chunks_finished",
            page_type=page.value,
            items=len(items),
            failed_chunks=failed,
        )
        return ChecklistResult(
            checklist_analysis=items,
            page_type=page,
            item_count=item_count,
            is_chunked=True,
            total_chunks=total_chunks,
            failed_chunks=failed,
        )

    # ------------------------------------------------------------------
    # Stage 5: Persist and mint slug
    # ------------------------------------------------------------------

    async def store_analysis(
        self,
        url: str,
        page_type: PageType | str,
        screenshot_path: str,
        image_analysis: str,
        checklist_analysis: list[ChecklistItem],
    ) -> StoreAnalysisResult:
        """Persist a finished page analysis and return its report slug."""
        body = {
            "url": normalize_url(url),
            "pageType": PageType(page_type).value,
            "screenshotPath": screenshot_path,
            "imageAnalysis": image_analysis,
            "checklistAnalysis": [
                item.model_dump(by_alias=True, exclude_none=True)
                for item in checklist_analysis
            ],
        }
        data = await self._request(
            "POST",
            "/stepwise-analysis/store-analysis",
            "store_analysis",
            json_body=body,
        )
        return StoreAnalysisResult.model_validate(data)

    # ------------------------------------------------------------------
    # Report read-back
    # ------------------------------------------------------------------

    async def get_report_by_slug(self, slug: str) -> dict[str, Any]:
        """Fetch a persisted report for the report-viewing page."""
        data = await self._request("GET", f"/reports/slug/{slug}", "get_report")
        return data.get("report", data)
