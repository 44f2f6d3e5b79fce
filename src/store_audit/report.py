"""Read-only derivations over an assembled report."""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from store_audit.models import (
    PAGE_ORDER,
    ChecklistItem,
    PagewiseAnalysisResult,
    PageType,
    ReportSummary,
)

ReportLike = Mapping[PageType, PagewiseAnalysisResult]


def failed_items(items: Iterable[ChecklistItem]) -> list[ChecklistItem]:
    """Keep only FAIL items, the ones shown with problem and solution."""
    return [item for item in items if item.failed]


def problems_by_page(report: ReportLike) -> dict[PageType, int]:
    """Problem count per page type; pages not yet analyzed count 0."""
    return {
        page: len(report[page].checklist_analysis) if page in report else 0
        for page in PAGE_ORDER
    }


def total_problems(report: ReportLike) -> int:
    # Only FAIL items are persisted upstream, so every entry is a problem
    return sum(len(entry.checklist_analysis) for entry in report.values())


def performance_score(report: ReportLike, override: int | None = None) -> int:
    """The 0-100 store score: one point lost per problem, floor 0.

    A truthy server-supplied *override* wins; ``0`` falls back to the formula.
    """
    if override:
        return override
    return max(0, round(100 - total_problems(report)))


def report_completed(report: ReportLike) -> bool:
    """True when all four pages are present with at least one finding.

    A page analyzed with zero findings keeps this False; the download button
    is gated on this exact rule.
    """
    return all(
        page in report and len(report[page].checklist_analysis) > 0
        for page in PAGE_ORDER
    )


def score_color(score: int) -> str:
    if score >= 80:
        return "#22C55E"
    if score >= 60:
        return "#F59E0B"
    if score >= 40:
        return "#F97316"
    return "#EF4444"


def summarize_report(report: ReportLike, override: int | None = None) -> ReportSummary:
    """Bundle every derivation for the overview display."""
    score = performance_score(report, override)
    return ReportSummary(
        total_problems=total_problems(report),
        performance_score=score,
        report_completed=report_completed(report),
        problems_by_page=problems_by_page(report),
        score_color=score_color(score),
        pages_analyzed=len(report),
    )
