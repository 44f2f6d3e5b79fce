"""Mutable per-session state of an audit run.

``AnalysisState`` holds everything the presentation layer reads: the report
keyed by page type, step states, chunk progress, the current status string
and error.  Only the orchestration layer writes to it.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from store_audit.models import (
    PAGE_ORDER,
    ChecklistResult,
    ChunkProgress,
    ChunkUpdate,
    PagewiseAnalysisResult,
    PageType,
    StageName,
    StepState,
    is_chunk_stage,
)
from store_audit.stages import initial_steps


class AnalysisState(BaseModel):
    """Typed state of one audit session."""

    # --- Input ----------------------------------------------------------------
    url: str | None = None
    page_type: PageType | None = None
    category: str | None = None
    require_auth: bool = False

    # --- Progress -------------------------------------------------------------
    loading: bool = False
    current_step: str | None = None
    status: str | None = None
    steps: list[StepState] = Field(default_factory=initial_steps)
    chunk_progress: ChunkProgress | None = None
    analysis_in_progress: dict[PageType, bool] = Field(default_factory=dict)

    # --- Results --------------------------------------------------------------
    report: dict[PageType, PagewiseAnalysisResult] = Field(default_factory=dict)
    result: PagewiseAnalysisResult | None = None

    # --- Error handling -------------------------------------------------------
    error: str | None = None

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def reset_steps(self, include_store: bool = True) -> None:
        self.steps = initial_steps(include_store)
        self.chunk_progress = None
        self.current_step = None

    def reopen_steps(self, names: set[str]) -> None:
        """Mark *names* pending again, keeping every other step as is."""
        self.steps = [
            step.model_copy(update={"completed": False, "error": None})
            if step.name in names
            else step
            for step in self.steps
        ]

    def get_step(self, name: str) -> StepState | None:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def _set_step(self, name: str, completed: bool, data: dict[str, Any] | None = None) -> None:
        self.steps = [
            step.model_copy(update={"completed": completed, "error": None, "data": data})
            if step.name == name
            else step
            for step in self.steps
        ]

    def fail_current_step(self, message: str) -> None:
        if self.current_step is None or is_chunk_stage(self.current_step):
            return
        self.steps = [
            step.model_copy(update={"error": message})
            if step.name == self.current_step
            else step
            for step in self.steps
        ]

    def apply_progress(self, step: str, completed: bool, data: Any = None) -> None:
        """Fold one orchestrator progress event into the state.

        Chunk events accumulate into ``chunk_progress``; the chunk flagged
        ``is_complete`` marks the parent checklist step completed exactly
        once.  Every other event moves ``current_step`` and updates the
        matching step state.
        """
        if is_chunk_stage(step) and isinstance(data, ChunkUpdate):
            self._apply_chunk(data)
            return

        self.current_step = step
        payload = data.model_dump(by_alias=True) if isinstance(data, BaseModel) else data
        if isinstance(data, ChecklistResult) and self.chunk_progress is not None:
            self.chunk_progress.failed_chunks = list(data.failed_chunks)
        if step == StageName.ANALYZE_CHECKLIST.value and completed:
            existing = self.get_step(step)
            if existing is not None and existing.completed:
                # Already folded from the final chunk
                self.steps = [
                    s.model_copy(update={"data": payload}) if s.name == step else s
                    for s in self.steps
                ]
                return
        self._set_step(step, completed, payload if completed else None)

    def _apply_chunk(self, update: ChunkUpdate) -> None:
        progress = self.chunk_progress
        if progress is None or progress.is_complete:
            progress = ChunkProgress(total_chunks=update.total_chunks)

        progress.current_chunk = max(progress.current_chunk, update.chunk_number)
        progress.total_chunks = update.total_chunks
        progress.chunk_results = [*progress.chunk_results, *update.chunk_results]
        self.chunk_progress = progress

        if update.is_complete and not progress.is_complete:
            progress.is_complete = True
            self._set_step(
                StageName.ANALYZE_CHECKLIST.value,
                True,
                {"itemCount": len(progress.chunk_results), "isChunked": True},
            )

    # ------------------------------------------------------------------
    # Report
    # ------------------------------------------------------------------

    def insert_page(self, page_type: PageType, result: PagewiseAnalysisResult) -> None:
        """Insert or wholesale-replace the report entry for *page_type*."""
        self.report[page_type] = result

    def pages_remaining(self) -> list[PageType]:
        return [page for page in PAGE_ORDER if page not in self.report]
