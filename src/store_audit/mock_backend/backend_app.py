"""Mock stepwise analysis backend.

Creates a self-contained FastAPI sub-app that implements the stepwise
analysis endpoints (validation, screenshot, AI analysis, checklist, chunked
checklist, persistence and report read-back) using in-memory state.  Used
for local development and as the in-process backend in tests.
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from store_audit.urls import store_domain


# ---------------------------------------------------------------------------
# Request models (lightweight, internal to the mock)
# ---------------------------------------------------------------------------


class ValidateRequest(BaseModel):
    url: str


class ScreenshotRequest(BaseModel):
    url: str
    pageType: str


class GeminiRequest(BaseModel):
    screenshotPath: str


class ChecklistRequest(BaseModel):
    imageAnalysis: str
    pageType: str
    category: str | None = None
    chunkNumber: int | None = None


class StoreRequest(BaseModel):
    url: str
    pageType: str
    screenshotPath: str
    imageAnalysis: str
    checklistAnalysis: list[dict[str, Any]] = []


# ---------------------------------------------------------------------------
# Built-in checklist
# ---------------------------------------------------------------------------

DEFAULT_CHECKLIST: dict[str, list[str]] = {
    "homepage": [
        "Clear value proposition above the fold",
        "Primary call to action is visible",
        "Navigation exposes main collections",
        "Trust badges near the hero section",
        "Search bar is easy to find",
        "Announcement bar states shipping policy",
    ],
    "collection": [
        "Filters are available and usable",
        "Sort options are offered",
        "Product cards show price",
        "Product cards show ratings",
        "Quick add to cart on product cards",
    ],
    "product": [
        "Product title is prominent",
        "Price is visible near the title",
        "Add to cart button stands out",
        "Multiple product images are shown",
        "Reviews are displayed on the page",
        "Shipping information near the buy box",
        "Return policy is linked",
        "Variant selectors are clear",
        "Stock urgency is communicated",
        "Cross-sell recommendations are present",
        "Trust badges near the buy box",
        "Size guide is available",
    ],
    "cart": [
        "Checkout button is prominent",
        "Order subtotal is clear",
        "Shipping cost is estimated",
        "Express checkout options are offered",
        "Upsell offers in the cart",
    ],
}


class MockAnalysisBackend:
    """A self-contained mock of the stepwise analysis API.

    Parameters
    ----------
    checklist:
        Checklist rules per page type; every other rule fails.
    non_shopify_domains:
        Domains that validate as not being Shopify stores.
    fail_stages:
        Stage names (``validate_shopify``, ``take_screenshot``,
        ``analyze_gemini``, ``analyze_checklist``, ``store_analysis``) that
        answer with a failure envelope.
    fail_pages:
        Page types whose screenshot capture fails.
    fail_chunks:
        Checklist chunk numbers that answer with a failure envelope.
    chunk_count:
        Number of chunks the checklist is split into.
    """

    def __init__(
        self,
        checklist: dict[str, list[str]] | None = None,
        non_shopify_domains: set[str] | None = None,
        fail_stages: set[str] | None = None,
        fail_pages: set[str] | None = None,
        fail_chunks: set[int] | None = None,
        chunk_count: int = 4,
    ) -> None:
        self.checklist = checklist or DEFAULT_CHECKLIST
        self.non_shopify_domains = non_shopify_domains or set()
        self.fail_stages = fail_stages or set()
        self.fail_pages = fail_pages or set()
        self.fail_chunks = fail_chunks or set()
        self.chunk_count = chunk_count

        # In-memory state
        self.calls: list[str] = []
        self.requests: list[dict[str, Any]] = []
        self.reports: dict[str, dict[str, Any]] = {}

        self.app = self._build_app()

    # ------------------------------------------------------------------
    # Checklist evaluation
    # ------------------------------------------------------------------

    def evaluate(self, page_type: str, rules: list[str] | None = None) -> list[dict[str, Any]]:
        """Return the FAIL items for *page_type* (every other rule fails)."""
        rules = self.checklist.get(page_type, []) if rules is None else rules
        items = []
        for rule in rules:
            index = self.checklist.get(page_type, []).index(rule)
            if index % 2:
                continue
            items.append(
                {
                    "checklistItem": rule,
                    "status": "FAIL",
                    "reason": f"{rule} was not found on the {page_type} page",
                    "problemName": rule,
                    "problem": f"Missing: {rule.lower()}",
                    "solution": f"Add {rule.lower()} to the {page_type} template",
                }
            )
        return items

    def chunk_rules(self, page_type: str, chunk_number: int) -> list[str]:
        rules = self.checklist.get(page_type, [])
        size = -(-len(rules) // self.chunk_count) if rules else 0
        start = (chunk_number - 1) * size
        return rules[start : start + size]

    # ------------------------------------------------------------------
    # App builder
    # ------------------------------------------------------------------

    def _build_app(self) -> FastAPI:
        """Construct the FastAPI sub-app with all stepwise endpoints."""
        app = FastAPI(title="Mock Stepwise Analysis Backend")

        backend = self  # capture for closures

        def ok(data: dict[str, Any]) -> dict[str, Any]:
            return {"success": True, "message": "OK", "data": data}

        def failure(message: str, status_code: int = 500) -> JSONResponse:
            return JSONResponse(
                status_code=status_code,
                content={"success": False, "message": message},
            )

        def record(stage: str, body: BaseModel) -> None:
            backend.calls.append(stage)
            backend.requests.append({"stage": stage, **body.model_dump()})

        # -- Stage 1 ---------------------------------------------------

        @app.post("/stepwise-analysis/validate-shopify")
        async def validate_shopify(req: ValidateRequest) -> Any:
            record("validate_shopify", req)
            if "validate_shopify" in backend.fail_stages:
                return failure("Simulated validation failure")

            domain = store_domain(req.url)
            if domain in backend.non_shopify_domains:
                return ok({"isShopify": False, "error": "Not a Shopify store"})
            return ok(
                {
                    "isShopify": True,
                    "storeInfo": {
                        "url": req.url,
                        "domain": domain,
                        "hasBrowserInstance": True,
                    },
                }
            )

        # -- Stage 2 ---------------------------------------------------

        @app.post("/stepwise-analysis/take-screenshot")
        async def take_screenshot(req: ScreenshotRequest) -> Any:
            record("take_screenshot", req)
            if "take_screenshot" in backend.fail_stages or req.pageType in backend.fail_pages:
                return failure(f"Could not capture the {req.pageType} page")
            domain = store_domain(req.url)
            return ok(
                {
                    "screenshotPath": f"screenshots/{domain}-{req.pageType}.png",
                    "pageType": req.pageType,
                    "url": req.url,
                }
            )

        # -- Stage 3 ---------------------------------------------------

        @app.post("/stepwise-analysis/analyze-gemini")
        async def analyze_gemini(req: GeminiRequest) -> Any:
            record("analyze_gemini", req)
            if "analyze_gemini" in backend.fail_stages:
                return failure("Simulated AI analysis failure")
            return ok(
                {
                    "imageAnalysis": f"Layout description of {req.screenshotPath}",
                    "screenshotPath": req.screenshotPath,
                }
            )

        # -- Stage 4 ---------------------------------------------------

        @app.post("/stepwise-analysis/analyze-checklist")
        async def analyze_checklist(req: ChecklistRequest) -> Any:
            record("analyze_checklist", req)
            if "analyze_checklist" in backend.fail_stages:
                return failure("Simulated checklist failure")
            items = backend.evaluate(req.pageType)
            return ok(
                {
                    "checklistAnalysis": items,
                    "pageType": req.pageType,
                    "itemCount": len(items),
                }
            )

        @app.post("/stepwise-analysis/analyze-checklist-chunked")
        async def analyze_checklist_chunked(req: ChecklistRequest) -> Any:
            record("analyze_checklist_chunk", req)
            chunk_number = req.chunkNumber or 1
            if chunk_number in backend.fail_chunks:
                return failure(f"Chunk {chunk_number} evaluation failed")
            if chunk_number > backend.chunk_count:
                return failure(f"Chunk {chunk_number} out of range", status_code=400)
            items = backend.evaluate(req.pageType, backend.chunk_rules(req.pageType, chunk_number))
            return ok(
                {
                    "checklistAnalysis": items,
                    "pageType": req.pageType,
                    "chunkNumber": chunk_number,
                    "totalChunks": backend.chunk_count,
                    "itemCount": len(items),
                }
            )

        # -- Stage 5 ---------------------------------------------------

        @app.post("/stepwise-analysis/store-analysis")
        async def store_analysis(req: StoreRequest) -> Any:
            record("store_analysis", req)
            if "store_analysis" in backend.fail_stages:
                return failure("Simulated persistence failure")
            slug = f"{store_domain(req.url).replace('.', '-')}-{len(backend.reports) + 1}"
            backend.reports[slug] = {
                "slug": slug,
                "url": req.url,
                "pageType": req.pageType,
                "screenshotPath": req.screenshotPath,
                "imageAnalysis": req.imageAnalysis,
                "checklistAnalysis": req.checklistAnalysis,
            }
            return ok({"slug": slug, "reportUrl": f"/report/{slug}"})

        # -- Reports ---------------------------------------------------

        @app.get("/reports/slug/{slug}")
        async def get_report(slug: str) -> Any:
            backend.calls.append("get_report")
            report = backend.reports.get(slug)
            if report is None:
                return failure(f"Report {slug} not found", status_code=404)
            return ok({"report": report})

        return app
