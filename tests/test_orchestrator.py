"""Tests for the single-page sequential pipeline and multi-page coordinator."""

import pytest
from conftest import RecordingClient, make_item

from store_audit.errors import InvalidStoreError, PageAnalysisError, StepwiseAnalysisError
from store_audit.models import PAGE_ORDER, ChecklistResult, ChunkUpdate, PageType
from store_audit.orchestrator.coordinator import MultiPageCoordinator
from store_audit.orchestrator.sequential import SequentialOrchestrator
from store_audit.orchestrator.state import AnalysisState

URL = "https://example-shop.myshopify.com"


@pytest.fixture
def chunked_settings(settings):
    return settings.model_copy(update={"checklist_chunk_count": 3})


class TestSequentialRun:
    async def test_homepage_happy_path(self, settings, recorder):
        client = RecordingClient()
        orchestrator = SequentialOrchestrator(client, settings)

        run = await orchestrator.run(URL, "homepage", on_progress=recorder, include_store=False)

        assert run.result.screenshot_path == "/s/h.png"
        assert run.result.image_analysis == "..."
        assert len(run.result.checklist_analysis) == 1
        assert run.result.checklist_analysis[0].checklist_item == "X"
        assert run.steps.validate_shopify.completed
        assert run.steps.take_screenshot.completed
        assert run.steps.take_screenshot.screenshot_path == "/s/h.png"
        assert run.steps.analyze_gemini.completed
        assert run.steps.analyze_checklist.completed
        assert run.steps.analyze_checklist.item_count == 1
        assert not run.steps.store_analysis.completed

    async def test_completions_follow_registry_order(self, settings, recorder):
        client = RecordingClient()
        orchestrator = SequentialOrchestrator(client, settings)

        run = await orchestrator.run(URL, PageType.COLLECTION, on_progress=recorder)

        order = [
            "validate_shopify",
            "take_screenshot",
            "analyze_gemini",
            "analyze_checklist",
            "store_analysis",
        ]
        assert client.calls == order
        assert recorder.completed_steps() == order
        # Each start is immediately followed by its own completion
        pairs = [(step, completed) for step, completed, _ in recorder.events]
        assert pairs == [(s, flag) for s in order for flag in (False, True)]
        assert run.result.slug == "example-shop-1"

    async def test_typed_stage_results(self, settings, recorder):
        orchestrator = SequentialOrchestrator(RecordingClient(), settings)
        await orchestrator.run(URL, "homepage", on_progress=recorder)

        results = {step: data for step, completed, data in recorder.events if completed}
        assert results["validate_shopify"].step == "validate_shopify"
        assert results["take_screenshot"].screenshot_path == "/s/h.png"
        assert results["analyze_checklist"].item_count == 1
        assert results["store_analysis"].slug == "example-shop-1"

    async def test_invalid_store_stops_pipeline(self, settings, recorder):
        client = RecordingClient(is_shopify=False, validate_error="Not a Shopify store")
        orchestrator = SequentialOrchestrator(client, settings)

        with pytest.raises(InvalidStoreError, match="Not a Shopify store"):
            await orchestrator.run(URL, "homepage", on_progress=recorder)

        assert client.calls == ["validate_shopify"]
        assert recorder.completed_steps() == []

    async def test_invalid_store_default_message(self, settings):
        orchestrator = SequentialOrchestrator(RecordingClient(is_shopify=False), settings)
        with pytest.raises(InvalidStoreError, match="Invalid Shopify store"):
            await orchestrator.run(URL, "homepage")

    async def test_stage_failure_aborts_remaining(self, settings, recorder):
        client = RecordingClient(fail_stage="analyze_gemini")
        orchestrator = SequentialOrchestrator(client, settings)

        with pytest.raises(StepwiseAnalysisError, match="analyze_gemini failed"):
            await orchestrator.run(URL, "homepage", on_progress=recorder)

        assert client.calls == ["validate_shopify", "take_screenshot", "analyze_gemini"]
        assert recorder.completed_steps() == ["validate_shopify", "take_screenshot"]

    async def test_missing_screenshot_path_fails(self, settings):
        client = RecordingClient(screenshot_path="")
        orchestrator = SequentialOrchestrator(client, settings)
        with pytest.raises(StepwiseAnalysisError):
            await orchestrator.run(URL, "homepage")
        assert "analyze_gemini" not in client.calls


class TestChunkedChecklist:
    async def test_chunks_reported_before_parent(self, chunked_settings, recorder):
        chunks = [[make_item("a"), make_item("b")], [make_item("c")], [make_item("d")]]
        client = RecordingClient(chunks=chunks)
        orchestrator = SequentialOrchestrator(client, chunked_settings)

        run = await orchestrator.run(URL, PageType.PRODUCT, on_progress=recorder, include_store=False)

        completed = recorder.completed_steps()
        assert completed == [
            "validate_shopify",
            "take_screenshot",
            "analyze_gemini",
            "analyze_checklist_chunk_1",
            "analyze_checklist_chunk_2",
            "analyze_checklist_chunk_3",
            "analyze_checklist",
        ]
        updates = [data for step, _, data in recorder.events if isinstance(data, ChunkUpdate)]
        assert [u.is_complete for u in updates] == [False, False, True]
        assert [i.checklist_item for i in run.result.checklist_analysis] == ["a", "b", "c", "d"]

    async def test_non_product_pages_are_not_chunked(self, chunked_settings, recorder):
        client = RecordingClient(chunks=[[make_item("a")], [make_item("b")]])
        orchestrator = SequentialOrchestrator(client, chunked_settings)

        await orchestrator.run(URL, PageType.CART, on_progress=recorder)

        assert not any(step.startswith("analyze_checklist_chunk_") for step, _, _ in recorder.events)

    async def test_chunks_fold_into_state_once(self, chunked_settings):
        chunks = [[make_item("a")], [make_item("b"), make_item("c")], [make_item("d")]]
        client = RecordingClient(chunks=chunks)
        orchestrator = SequentialOrchestrator(client, chunked_settings)
        state = AnalysisState()
        folds = []

        async def on_progress(step, completed, data=None):
            before = state.get_step("analyze_checklist").completed
            state.apply_progress(step, completed, data)
            after = state.get_step("analyze_checklist").completed
            if after and not before:
                folds.append(step)

        await orchestrator.run(URL, PageType.PRODUCT, on_progress=on_progress)

        assert folds == ["analyze_checklist_chunk_3"]
        progress = state.chunk_progress
        assert progress.current_chunk == 3
        assert progress.is_complete is True
        assert [i.checklist_item for i in progress.chunk_results] == ["a", "b", "c", "d"]
        assert state.get_step("analyze_checklist").data["itemCount"] == 4

    def test_failed_last_chunk_completes_on_end_event(self):
        state = AnalysisState()
        state.apply_progress(
            "analyze_checklist_chunk_1",
            True,
            ChunkUpdate(chunkNumber=1, totalChunks=2, chunkResults=[make_item("a")]),
        )
        assert state.get_step("analyze_checklist").completed is False

        state.apply_progress(
            "analyze_checklist",
            True,
            ChecklistResult(
                checklistAnalysis=[make_item("a")],
                pageType=PageType.PRODUCT,
                itemCount=1,
                isChunked=True,
                totalChunks=2,
                failedChunks=[2],
            ),
        )

        assert state.get_step("analyze_checklist").completed is True
        assert state.chunk_progress.failed_chunks == [2]
        assert state.chunk_progress.is_complete is False


class TestPartialFlows:
    async def test_run_up_to_gemini(self, settings, recorder):
        client = RecordingClient()
        orchestrator = SequentialOrchestrator(client, settings)

        result = await orchestrator.run_up_to_gemini(URL, "homepage", on_progress=recorder)

        assert client.calls == ["validate_shopify", "take_screenshot", "analyze_gemini"]
        assert result.screenshot_path == "/s/h.png"
        assert result.image_analysis == "..."
        assert result.checklist_analysis == []

    async def test_continue_from_checklist_skips_earlier_stages(self, settings, recorder):
        client = RecordingClient(screenshot_path="/other.png", image_analysis="new")
        orchestrator = SequentialOrchestrator(client, settings)

        run = await orchestrator.continue_from_checklist(
            "earlier analysis",
            "homepage",
            "fashion",
            url=URL,
            screenshot_path="/s/h.png",
            on_progress=recorder,
        )

        assert client.calls == ["analyze_checklist"]
        assert client.categories == ["fashion"]
        assert run.result.screenshot_path == "/s/h.png"
        assert run.result.image_analysis == "earlier analysis"
        assert run.steps.validate_shopify.completed
        assert run.steps.analyze_gemini.completed
        assert recorder.completed_steps() == ["analyze_checklist"]

    async def test_continue_with_store(self, settings):
        client = RecordingClient()
        orchestrator = SequentialOrchestrator(client, settings)

        run = await orchestrator.continue_from_checklist(
            "earlier",
            "homepage",
            "fashion",
            url=URL,
            screenshot_path="/s/h.png",
            include_store=True,
        )

        assert client.calls == ["analyze_checklist", "store_analysis"]
        assert run.result.slug == "example-shop-1"


class TestMultiPageCoordinator:
    async def test_full_run_in_page_order(self, settings):
        client = RecordingClient()
        state = AnalysisState()
        published = []

        async def publish(event_type, **fields):
            published.append((event_type, fields.get("page_type"), fields.get("status")))

        coordinator = MultiPageCoordinator(SequentialOrchestrator(client, settings), state, publish)
        report = await coordinator.run(URL)

        assert list(report) == list(PAGE_ORDER)
        assert client.calls.count("validate_shopify") == 4
        assert state.status == "all-steps-complete"
        assert all(not busy for busy in state.analysis_in_progress.values())
        page_events = [page for event, page, _ in published if event == "page_completed"]
        assert page_events == list(PAGE_ORDER)

    async def test_failed_page_keeps_earlier_pages(self, settings):
        class FailOnProduct(RecordingClient):
            async def take_screenshot(self, url, page_type):
                if PageType(page_type) is PageType.PRODUCT:
                    self.fail_stage = "take_screenshot"
                return await super().take_screenshot(url, page_type)

        client = FailOnProduct()
        state = AnalysisState()
        coordinator = MultiPageCoordinator(SequentialOrchestrator(client, settings), state)

        with pytest.raises(PageAnalysisError) as exc_info:
            await coordinator.run(URL)

        assert exc_info.value.page_type == "product"
        assert list(state.report) == [PageType.HOMEPAGE, PageType.COLLECTION]
        assert PageType.CART not in state.analysis_in_progress
        assert state.analysis_in_progress[PageType.PRODUCT] is False
        assert state.get_step("take_screenshot").error == "take_screenshot failed"

    async def test_checklist_failure_leaves_no_entry(self, settings):
        client = RecordingClient(fail_stage="analyze_checklist")
        state = AnalysisState()
        coordinator = MultiPageCoordinator(SequentialOrchestrator(client, settings), state)

        with pytest.raises(PageAnalysisError):
            await coordinator.run_page(URL, PageType.PRODUCT)

        assert PageType.PRODUCT not in state.report
        assert state.result is None
