"""FastAPI application for the store audit orchestrator.

Exposes REST endpoints for:
- Audit session management (create, status, continue, reset, restart)
- SSE streaming of pipeline progress
- Report summaries and persisted report read-back by slug
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Coroutine, Literal

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from common import ErrorResponse, HealthResponse

from store_audit.config import Settings
from store_audit.errors import StepwiseAnalysisError
from store_audit.models import PageType
from store_audit.protocols.analysis_client import StepwiseAnalysisClient
from store_audit.session import AnalysisSession
from store_audit.streaming import AnalysisEventStream
from store_audit.urls import normalize_url

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class AuditRequest(BaseModel):
    """Incoming audit request.

    ``mode`` selects the entry point: ``full`` runs all four pages,
    ``paid`` does the same after payment, ``stepwise`` runs every stage for
    ``page_type``, and ``page`` runs the teaser flow (or a full page run when
    ``category`` is given).
    """

    url: str
    mode: Literal["full", "paid", "stepwise", "page"] = "full"
    page_type: PageType = PageType.HOMEPAGE
    category: str | None = None
    require_auth: bool = False


class ContinueRequest(BaseModel):
    """Continue a teaser run once the store category is known."""

    category: str
    page_type: PageType | None = None


class RestartRequest(BaseModel):
    """Re-run an audit from the first stage in a new session."""

    page_type: PageType | None = None


# ---------------------------------------------------------------------------
# Session manager (in-memory)
# ---------------------------------------------------------------------------


class SessionManager:
    """In-memory audit session store with one background task per session.

    Sessions idle for longer than *ttl_seconds* are evicted together with
    their event history whenever a new session is added.
    """

    def __init__(self, event_stream: AnalysisEventStream, ttl_seconds: float = 3600.0) -> None:
        self._sessions: dict[str, AnalysisSession] = {}
        self._tasks: dict[str, asyncio.Task[Any]] = {}
        self._event_stream = event_stream
        self._ttl = timedelta(seconds=ttl_seconds)

    def add_session(self, session: AnalysisSession) -> AnalysisSession:
        self.prune()
        self._sessions[session.id] = session
        return session

    def prune(self) -> list[str]:
        """Evict idle sessions past the TTL; returns the evicted IDs."""
        cutoff = datetime.now(tz=timezone.utc) - self._ttl
        expired = [
            session_id
            for session_id, session in self._sessions.items()
            if session.updated_at < cutoff and not self.is_running(session_id)
        ]
        for session_id in expired:
            self.remove_session(session_id)
            self._event_stream.clear(session_id)
        if expired:
            logger.info("sessions_evicted", count=len(expired))
        return expired

    def get_session(self, session_id: str) -> AnalysisSession | None:
        """Retrieve a session by ID."""
        return self._sessions.get(session_id)

    def remove_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        task = self._tasks.pop(session_id, None)
        if task and not task.done():
            task.cancel()

    def list_sessions(self) -> list[AnalysisSession]:
        """Return all sessions."""
        return list(self._sessions.values())

    def is_running(self, session_id: str) -> bool:
        task = self._tasks.get(session_id)
        return task is not None and not task.done()

    def launch(self, session_id: str, work: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """Run *work* in the background on behalf of *session_id*."""
        task = asyncio.create_task(work)
        self._tasks[session_id] = task
        task.add_done_callback(lambda t: self._on_done(session_id, t))
        return task

    async def wait(self, session_id: str) -> None:
        """Block until the session's background run has finished."""
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def _on_done(self, session_id: str, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            logger.info("audit_task_cancelled", session_id=session_id)
            return
        exc = task.exception()
        if exc is not None:
            # Already recorded on the session and published as an error event
            logger.info("audit_task_failed", session_id=session_id, error=str(exc))

    async def shutdown(self) -> None:
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


# ---------------------------------------------------------------------------
# Application state container
# ---------------------------------------------------------------------------


class AppState:
    """Shared application state accessible from route handlers."""

    def __init__(self, settings: Settings, client: StepwiseAnalysisClient | None = None) -> None:
        self.settings = settings
        self.client = client or StepwiseAnalysisClient(
            settings.backend_url, timeout=settings.request_timeout
        )
        self.event_stream = AnalysisEventStream(settings.event_queue_size)
        self.session_manager = SessionManager(self.event_stream, settings.session_ttl_seconds)

    def new_session(self) -> AnalysisSession:
        session = AnalysisSession(self.client, self.settings, stream=self.event_stream)
        return self.session_manager.add_session(session)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    settings: Settings | None = None,
    client: StepwiseAnalysisClient | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    *client* overrides the backend client built from settings (tests pass
    one bound to an in-process transport).
    """
    settings = settings or Settings()
    state = AppState(settings, client)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await state.session_manager.shutdown()
        await state.client.close()

    app = FastAPI(
        title="Store Audit Orchestrator",
        description=(
            "Runs the stepwise CRO audit of Shopify stores (validation, "
            "screenshot, AI analysis, checklist, persistence) and streams "
            "its progress."
        ),
        version=settings.service_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.app_state = state
    app.state.settings = settings

    def _require_session(session_id: str) -> AnalysisSession:
        session = state.session_manager.get_session(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
        return session

    def _require_idle(session: AnalysisSession) -> None:
        if state.session_manager.is_running(session.id):
            raise HTTPException(
                status_code=409,
                detail="An analysis is already running for this session.",
            )

    # -------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    async def health() -> HealthResponse:
        return HealthResponse(
            status="healthy",
            service=settings.service_name,
            version=settings.service_version,
        )

    # -------------------------------------------------------------------
    # Audit session endpoints
    # -------------------------------------------------------------------

    @app.post("/api/v1/audits", status_code=202, tags=["audits"])
    async def create_audit(req: AuditRequest) -> dict[str, Any]:
        """Submit a store URL for auditing.

        Creates a session and starts the pipeline in the background.  Use the
        ``/stream`` endpoint to follow progress.
        """
        try:
            url = normalize_url(req.url)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

        session = state.new_session()
        if req.mode == "full":
            work = session.handle_submit(url)
        elif req.mode == "paid":
            work = session.start_analysis_after_payment(url)
        elif req.mode == "stepwise":
            work = session.start_stepwise_analysis(url, req.page_type)
        else:
            work = session.analyze_page(
                url,
                req.page_type,
                require_auth=req.require_auth,
                category=req.category,
            )
        state.session_manager.launch(session.id, work)

        logger.info("audit_created", session_id=session.id, url=url, mode=req.mode)
        return {
            "session_id": session.id,
            "status": "started",
            "message": f"Audit started for: {url}",
            "stream_url": f"/api/v1/audits/{session.id}/stream",
        }

    @app.get("/api/v1/audits", tags=["audits"])
    async def list_audits() -> dict[str, Any]:
        sessions = state.session_manager.list_sessions()
        return {
            "sessions": [
                {"id": s.id, "url": s.state.url, "status": s.status, "loading": s.loading}
                for s in sessions
            ],
            "total": len(sessions),
        }

    @app.get("/api/v1/audits/{session_id}", tags=["audits"])
    async def get_audit(session_id: str) -> dict[str, Any]:
        """Get the current state of an audit session."""
        return _require_session(session_id).snapshot()

    @app.get("/api/v1/audits/{session_id}/stream", tags=["audits"])
    async def stream_audit(session_id: str) -> EventSourceResponse:
        """SSE stream of pipeline events."""
        _require_session(session_id)

        async def event_generator():  # type: ignore[no-untyped-def]
            async for event in state.event_stream.subscribe(session_id):
                yield {
                    "event": event.event_type,
                    "data": json.dumps(event.model_dump(mode="json"), default=str),
                }

        return EventSourceResponse(event_generator())

    @app.post("/api/v1/audits/{session_id}/continue", status_code=202, tags=["audits"])
    async def continue_audit(session_id: str, req: ContinueRequest) -> dict[str, Any]:
        """Resume a teaser run at the checklist stage with a store category."""
        session = _require_session(session_id)
        _require_idle(session)
        if not session.state.url:
            raise HTTPException(status_code=400, detail="Session has no store URL yet.")

        page_type = req.page_type or session.state.page_type or PageType.HOMEPAGE
        state.session_manager.launch(
            session.id,
            session.analyze_page(
                session.state.url,
                page_type,
                require_auth=session.state.require_auth,
                category=req.category,
            ),
        )
        return {
            "session_id": session.id,
            "status": "continuing",
            "message": f"Checklist analysis started for category: {req.category}",
        }

    @app.post("/api/v1/audits/{session_id}/reset", tags=["audits"])
    async def reset_audit(session_id: str) -> dict[str, Any]:
        """Discard all state of a session; in-flight results are dropped."""
        session = _require_session(session_id)
        await session.reset()
        return {"session_id": session.id, "status": "reset"}

    @app.post("/api/v1/audits/{session_id}/restart", status_code=202, tags=["audits"])
    async def restart_audit(session_id: str, req: RestartRequest) -> dict[str, Any]:
        """Discard a session and re-run its audit from the first stage."""
        session = _require_session(session_id)
        url = session.state.url
        if not url:
            raise HTTPException(status_code=400, detail="Session has no store URL to restart.")

        page_type = req.page_type or session.state.page_type
        fresh = await session.renew()
        state.session_manager.remove_session(session.id)
        state.session_manager.add_session(fresh)
        if page_type is None:
            work = fresh.handle_submit(url)
        else:
            work = fresh.start_stepwise_analysis(url, page_type)
        state.session_manager.launch(fresh.id, work)

        return {
            "session_id": fresh.id,
            "previous_session_id": session.id,
            "status": "started",
            "stream_url": f"/api/v1/audits/{fresh.id}/stream",
        }

    @app.get("/api/v1/audits/{session_id}/summary", tags=["audits"])
    async def audit_summary(session_id: str, performance_score: int | None = None) -> dict[str, Any]:
        """Problem counts, score and completion flag for the session's report."""
        session = _require_session(session_id)
        return session.summary(performance_score).model_dump(mode="json")

    # -------------------------------------------------------------------
    # Persisted reports
    # -------------------------------------------------------------------

    @app.get("/api/v1/reports/{slug}", tags=["reports"])
    async def get_report(slug: str) -> dict[str, Any]:
        """Read back a persisted report from the analysis backend."""
        try:
            return await state.client.get_report_by_slug(slug)
        except StepwiseAnalysisError as exc:
            status = 404 if exc.status_code == 404 else 502
            raise HTTPException(status_code=status, detail=exc.message) from exc

    # -------------------------------------------------------------------
    # Error handlers
    # -------------------------------------------------------------------

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "unhandled_exception", error=str(exc), path=request.url.path
        )
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="Internal server error",
                detail=str(exc),
                status_code=500,
            ).model_dump(),
        )

    return app
