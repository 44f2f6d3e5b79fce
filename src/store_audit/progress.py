"""Projection of pipeline status strings onto a progress bar and copy.

Each page type occupies roughly a 20-point band of the bar (homepage 0-20,
collection 20-40, product 40-65, cart 65-90, cleanup 95).  100 is reserved for
the two terminal statuses; everything else is capped at 95.
"""

from __future__ import annotations

from dataclasses import dataclass

from store_audit.models import PAGE_ORDER, PageType, StageName, is_chunk_stage

STATUS_COMPLETE = "complete"
STATUS_ALL_STEPS_COMPLETE = "all-steps-complete"
STATUS_ERROR = "error-occurred"
STATUS_CLEANUP = "cleanup"
STATUS_STARTING = "starting"

TERMINAL_STATUSES = frozenset({STATUS_COMPLETE, STATUS_ALL_STEPS_COMPLETE})

# Number of phases used by the step-based fallback
TOTAL_PHASES = 5
MAX_IN_PROGRESS = 95


@dataclass(frozen=True)
class StatusMessage:
    description: str
    step: int


STEP_PROGRESS_MAP: dict[str, int] = {
    # Homepage (0-20%)
    "step-1-homepage-start": 5,
    "screenshot-homepage": 10,
    "analyze-homepage": 15,
    "step-1-homepage-complete": 20,
    # Collection (20-40%)
    "step-2-collection-start": 25,
    "screenshot-collection": 30,
    "analyze-collection": 35,
    "step-2-collection-complete": 40,
    # Product (40-65%)
    "step-3-product-start": 45,
    "search-product-page": 50,
    "screenshot-product": 55,
    "analyze-product": 60,
    "step-3-product-complete": 65,
    # Cart (65-90%)
    "step-4-cart-start": 70,
    "add-cart": 75,
    "screenshot-cart": 80,
    "analyze-cart": 85,
    "step-4-cart-complete": 90,
    # Final steps
    STATUS_CLEANUP: 95,
    "wait-between-steps": 0,
    "wait-for-previous-analyses": 0,
    "fallback-to-puppeteer": 0,
    STATUS_STARTING: 0,
}

STATUS_MESSAGES: dict[str, StatusMessage] = {
    STATUS_STARTING: StatusMessage("Starting your analysis...", 0),
    "step-1-homepage-start": StatusMessage("Starting home page analysis...", 1),
    "screenshot-homepage": StatusMessage("Checking the home page...", 1),
    "analyze-homepage": StatusMessage("Analyzing home page...", 1),
    "step-1-homepage-complete": StatusMessage("Home page analysis complete", 1),
    "step-2-collection-start": StatusMessage("Starting collection page analysis...", 2),
    "screenshot-collection": StatusMessage("Checking the collection page...", 2),
    "analyze-collection": StatusMessage("Analyzing collection page...", 2),
    "step-2-collection-complete": StatusMessage("Collection page analysis complete", 2),
    "step-3-product-start": StatusMessage("Starting product page analysis...", 3),
    "search-products": StatusMessage("Searching for available products...", 3),
    "search-product-page": StatusMessage("Looking for a product page...", 3),
    "no-products": StatusMessage("No in-stock products found", 3),
    "screenshot-product": StatusMessage("Checking the product page...", 3),
    "analyze-product": StatusMessage("Analyzing product page...", 3),
    "step-3-product-complete": StatusMessage("Product page analysis complete", 3),
    "step-4-cart-start": StatusMessage("Starting cart page analysis...", 4),
    "add-cart": StatusMessage("Adding product to cart...", 4),
    "cart-error": StatusMessage("Could not add product to cart", 4),
    "screenshot-cart": StatusMessage("Checking the cart page...", 4),
    "analyze-cart": StatusMessage("Analyzing cart page...", 4),
    "step-4-cart-complete": StatusMessage("Cart page analysis complete", 4),
    STATUS_CLEANUP: StatusMessage("Cleaning up temporary files...", 5),
    "wait-between-steps": StatusMessage("Preparing the next page...", 0),
    "wait-for-previous-analyses": StatusMessage("Waiting for previous analyses to finish...", 0),
    "fallback-to-puppeteer": StatusMessage("Retrying capture with a different browser...", 0),
    STATUS_COMPLETE: StatusMessage("Analysis complete!", 5),
    STATUS_ALL_STEPS_COMPLETE: StatusMessage("All pages analyzed!", 5),
    STATUS_ERROR: StatusMessage("Something went wrong during the analysis", 0),
}

# Status emitted when a page's screenshot stage starts, for pages whose
# capture needs a discovery step first
_SCREENSHOT_PRELUDE = {
    PageType.PRODUCT: "search-product-page",
    PageType.CART: "add-cart",
}


def calculate_progress(status: str | None) -> int:
    """Map a status string to a 0-100 progress percentage.

    Rules, in order: terminal statuses give 100, ``error-occurred`` gives 0,
    then the hand-tuned table, then a step-based fallback
    (``round(step / 5 * 100)``, +10 for ``-complete``, +5 for ``-start``,
    capped at 95).  Unknown statuses and step-0 waiting states give 0.
    """
    if not status:
        return 0
    if status in TERMINAL_STATUSES:
        return 100
    if status == STATUS_ERROR:
        return 0

    if status in STEP_PROGRESS_MAP:
        return STEP_PROGRESS_MAP[status]

    message = STATUS_MESSAGES.get(status)
    if message is None or message.step == 0:
        return 0

    progress = round(message.step / TOTAL_PHASES * 100)
    if status.endswith("-complete"):
        progress += 10
    elif status.endswith("-start"):
        progress += 5
    return min(progress, MAX_IN_PROGRESS)


def describe_status(status: str | None) -> str:
    """Human-readable copy for *status* (the raw string when unknown)."""
    if not status:
        return "Initializing analysis..."
    message = STATUS_MESSAGES.get(status)
    return message.description if message else status


def step_label(status: str | None) -> str:
    if status in TERMINAL_STATUSES or status == STATUS_CLEANUP:
        return "Finalizing results..."
    message = STATUS_MESSAGES.get(status or "")
    step = message.step if message else 0
    return f"Step {step} of {TOTAL_PHASES}"


def _page_number(page_type: PageType) -> int:
    return PAGE_ORDER.index(page_type) + 1


def page_start_status(page_type: PageType | str) -> str:
    page = PageType(page_type)
    return f"step-{_page_number(page)}-{page.value}-start"


def page_complete_status(page_type: PageType | str) -> str:
    page = PageType(page_type)
    return f"step-{_page_number(page)}-{page.value}-complete"


def page_status(page_type: PageType | str, step: str, completed: bool) -> str | None:
    """Status string for a stage event of *page_type*.

    Returns ``None`` when the event does not move the status (for example
    the completion of Shopify validation).
    """
    page = PageType(page_type)
    if is_chunk_stage(step):
        return f"analyze-{page.value}"

    stage = StageName(step)
    if stage is StageName.VALIDATE_SHOPIFY:
        return None if completed else page_start_status(page)
    if stage is StageName.TAKE_SCREENSHOT:
        if not completed and page in _SCREENSHOT_PRELUDE:
            return _SCREENSHOT_PRELUDE[page]
        return f"screenshot-{page.value}"
    return f"analyze-{page.value}"
