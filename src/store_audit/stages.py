"""Static registry of pipeline stages.

Every page-type run walks the same ordered stage list; ``store_analysis`` is
appended only when the run should persist its result and mint a report slug.
"""

from __future__ import annotations

from dataclasses import dataclass

from store_audit.models import PageType, StageName, StepState


@dataclass(frozen=True)
class StageDefinition:
    """Display metadata for one stage."""

    name: StageName
    title: str
    description: str
    weight: int


STAGE_DEFINITIONS: tuple[StageDefinition, ...] = (
    StageDefinition(
        name=StageName.VALIDATE_SHOPIFY,
        title="Validate store",
        description="Checking that the URL is a Shopify store...",
        weight=10,
    ),
    StageDefinition(
        name=StageName.TAKE_SCREENSHOT,
        title="Capture page",
        description="Taking a full-page screenshot...",
        weight=20,
    ),
    StageDefinition(
        name=StageName.ANALYZE_GEMINI,
        title="AI analysis",
        description="Analyzing the page with AI...",
        weight=30,
    ),
    StageDefinition(
        name=StageName.ANALYZE_CHECKLIST,
        title="Checklist review",
        description="Matching findings against the CRO checklist...",
        weight=35,
    ),
    StageDefinition(
        name=StageName.STORE_ANALYSIS,
        title="Save report",
        description="Saving your report...",
        weight=5,
    ),
)

_BY_NAME: dict[StageName, StageDefinition] = {d.name: d for d in STAGE_DEFINITIONS}


def get_definition(name: StageName | str) -> StageDefinition:
    """Look up a stage definition; unknown names raise ``KeyError``."""
    return _BY_NAME[StageName(name)]


def get_stages(
    page_type: PageType | str,
    include_store: bool = True,
    start_at: StageName | None = None,
) -> list[StageName]:
    """Return the ordered stage list for *page_type*.

    Parameters
    ----------
    page_type:
        Page being analyzed.  Every page type currently shares one sequence.
    include_store:
        Append ``store_analysis`` (persist and mint a slug).
    start_at:
        Drop every stage before this one, used when resuming a run.
    """
    PageType(page_type)
    stages = [d.name for d in STAGE_DEFINITIONS]
    if not include_store:
        stages.remove(StageName.STORE_ANALYSIS)
    if start_at is not None:
        stages = stages[stages.index(start_at):]
    return stages


def get_stages_up_to(page_type: PageType | str, last: StageName) -> list[StageName]:
    """Return the stage prefix ending with *last* (inclusive)."""
    stages = get_stages(page_type, include_store=False)
    return stages[: stages.index(last) + 1]


def initial_steps(include_store: bool = True) -> list[StepState]:
    """Fresh, all-pending step states for a new run."""
    return [
        StepState(name=name.value)
        for name in get_stages(PageType.HOMEPAGE, include_store=include_store)
    ]
