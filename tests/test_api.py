"""Tests for the store audit HTTP API."""

import json
from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from store_audit.api import create_app
from store_audit.main import MOCK_BACKEND_PATH, build_app


@pytest.fixture
def app(settings, analysis_client):
    return create_app(settings, client=analysis_client)


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _finish(app, session_id):
    await app.state.app_state.session_manager.wait(session_id)


class TestHealth:
    async def test_health_check(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["service"] == "store-audit-orchestrator"


class TestAudits:
    async def test_full_audit(self, app, client, backend):
        resp = await client.post("/api/v1/audits", json={"url": "example-shop.myshopify.com"})
        assert resp.status_code == 202
        data = resp.json()
        assert data["status"] == "started"
        session_id = data["session_id"]
        assert data["stream_url"] == f"/api/v1/audits/{session_id}/stream"

        await _finish(app, session_id)

        resp = await client.get(f"/api/v1/audits/{session_id}")
        assert resp.status_code == 200
        session = resp.json()
        assert session["status"] == "all-steps-complete"
        assert session["progress"] == 100
        assert list(session["report"]) == ["homepage", "collection", "product", "cart"]
        assert session["report"]["product"]["checklistAnalysis"][0]["status"] == "FAIL"
        assert backend.calls.count("analyze_checklist_chunk") == 4

    async def test_summary(self, app, client):
        resp = await client.post("/api/v1/audits", json={"url": "example-shop.myshopify.com"})
        session_id = resp.json()["session_id"]
        await _finish(app, session_id)

        resp = await client.get(f"/api/v1/audits/{session_id}/summary")
        assert resp.status_code == 200
        summary = resp.json()
        assert summary["total_problems"] == 15
        assert summary["performance_score"] == 85
        assert summary["report_completed"] is True
        assert summary["problems_by_page"]["product"] == 6

        resp = await client.get(
            f"/api/v1/audits/{session_id}/summary", params={"performance_score": 70}
        )
        assert resp.json()["performance_score"] == 70

    async def test_invalid_store(self, app, client, backend):
        backend.non_shopify_domains.add("plainsite.com")
        resp = await client.post(
            "/api/v1/audits",
            json={"url": "plainsite.com", "mode": "stepwise", "page_type": "homepage"},
        )
        session_id = resp.json()["session_id"]
        await _finish(app, session_id)

        session = (await client.get(f"/api/v1/audits/{session_id}")).json()
        assert session["error"] == "Not a Shopify store"
        assert session["status"] == "error-occurred"
        assert session["report"] == {}
        assert backend.calls == ["validate_shopify"]

    async def test_teaser_then_continue(self, app, client, backend):
        resp = await client.post(
            "/api/v1/audits",
            json={"url": "example-shop.myshopify.com", "mode": "page", "page_type": "homepage"},
        )
        session_id = resp.json()["session_id"]
        await _finish(app, session_id)

        session = (await client.get(f"/api/v1/audits/{session_id}")).json()
        assert session["report"] == {}
        assert session["result"]["imageAnalysis"]
        backend.calls.clear()

        resp = await client.post(
            f"/api/v1/audits/{session_id}/continue", json={"category": "fashion"}
        )
        assert resp.status_code == 202
        await _finish(app, session_id)

        assert backend.calls == ["analyze_checklist"]
        session = (await client.get(f"/api/v1/audits/{session_id}")).json()
        assert session["status"] == "complete"
        assert session["analysis_in_progress"] == {"homepage": False}
        assert session["report"]["homepage"]["checklistAnalysis"]

    async def test_reset(self, app, client):
        resp = await client.post(
            "/api/v1/audits",
            json={"url": "example-shop.myshopify.com", "mode": "stepwise", "page_type": "cart"},
        )
        session_id = resp.json()["session_id"]
        await _finish(app, session_id)

        resp = await client.post(f"/api/v1/audits/{session_id}/reset")
        assert resp.status_code == 200

        session = (await client.get(f"/api/v1/audits/{session_id}")).json()
        assert session["report"] == {}
        assert session["status"] is None

    async def test_restart(self, app, client, backend):
        resp = await client.post(
            "/api/v1/audits",
            json={"url": "example-shop.myshopify.com", "mode": "stepwise", "page_type": "collection"},
        )
        session_id = resp.json()["session_id"]
        await _finish(app, session_id)

        resp = await client.post(f"/api/v1/audits/{session_id}/restart", json={})
        assert resp.status_code == 202
        data = resp.json()
        assert data["previous_session_id"] == session_id
        new_id = data["session_id"]
        await _finish(app, new_id)

        assert (await client.get(f"/api/v1/audits/{session_id}")).status_code == 404
        session = (await client.get(f"/api/v1/audits/{new_id}")).json()
        assert list(session["report"]) == ["collection"]
        assert backend.calls.count("validate_shopify") == 2

    async def test_list_audits(self, app, client):
        resp = await client.post("/api/v1/audits", json={"url": "shop.com", "mode": "page"})
        await _finish(app, resp.json()["session_id"])

        resp = await client.get("/api/v1/audits")
        assert resp.status_code == 200
        assert resp.json()["total"] == 1

    async def test_idle_sessions_are_evicted(self, app, client):
        resp = await client.post("/api/v1/audits", json={"url": "shop.com", "mode": "page"})
        old_id = resp.json()["session_id"]
        await _finish(app, old_id)
        app_state = app.state.app_state
        old = app_state.session_manager.get_session(old_id)
        old.updated_at -= timedelta(seconds=app_state.settings.session_ttl_seconds + 1)

        resp = await client.post("/api/v1/audits", json={"url": "shop.com", "mode": "page"})
        await _finish(app, resp.json()["session_id"])

        assert (await client.get(f"/api/v1/audits/{old_id}")).status_code == 404
        assert app_state.event_stream.get_history(old_id) == []
        assert (await client.get("/api/v1/audits")).json()["total"] == 1

    async def test_get_nonexistent_session(self, client):
        resp = await client.get("/api/v1/audits/nonexistent-id")
        assert resp.status_code == 404

    async def test_empty_url_rejected(self, client):
        resp = await client.post("/api/v1/audits", json={"url": "   "})
        assert resp.status_code == 422

    async def test_unknown_page_type_rejected(self, client):
        resp = await client.post(
            "/api/v1/audits", json={"url": "shop.com", "mode": "stepwise", "page_type": "checkout"}
        )
        assert resp.status_code == 422


class TestStream:
    async def test_stream_replays_finished_session(self, app, client):
        resp = await client.post(
            "/api/v1/audits",
            json={"url": "example-shop.myshopify.com", "mode": "stepwise", "page_type": "homepage"},
        )
        session_id = resp.json()["session_id"]
        await _finish(app, session_id)

        events = []
        async with client.stream("GET", f"/api/v1/audits/{session_id}/stream") as resp:
            assert resp.status_code == 200
            async for line in resp.aiter_lines():
                if line.startswith("event:"):
                    events.append(line.split(":", 1)[1].strip())
                elif line.startswith("data:") and events[-1] == "completed":
                    payload = json.loads(line.split(":", 1)[1])
                    assert payload["progress"] == 100

        assert events[0] == "started"
        assert "step" in events
        assert events[-1] == "completed"


class TestReports:
    async def test_report_by_slug(self, app, client):
        resp = await client.post(
            "/api/v1/audits",
            json={"url": "example-shop.myshopify.com", "mode": "stepwise", "page_type": "homepage"},
        )
        session_id = resp.json()["session_id"]
        await _finish(app, session_id)
        slug = (await client.get(f"/api/v1/audits/{session_id}")).json()["report"]["homepage"]["slug"]

        resp = await client.get(f"/api/v1/reports/{slug}")
        assert resp.status_code == 200
        assert resp.json()["pageType"] == "homepage"

    async def test_missing_report(self, client):
        resp = await client.get("/api/v1/reports/does-not-exist")
        assert resp.status_code == 404


class TestMockBackendMount:
    async def test_mock_backend_mounted(self, settings):
        app = build_app(settings.model_copy(update={"mount_mock_backend": True}))
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as c:
            resp = await c.post(
                f"{MOCK_BACKEND_PATH}/stepwise-analysis/validate-shopify",
                json={"url": "shop.com"},
            )
        assert resp.status_code == 200
        assert resp.json()["data"]["isShopify"] is True
        assert app.state.settings.backend_url.endswith(MOCK_BACKEND_PATH)
