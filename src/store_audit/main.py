"""Entry point for the store audit orchestrator service.

Creates the main FastAPI application, optionally mounts the mock analysis
backend, configures logging, and starts the uvicorn server.
"""

from __future__ import annotations

import structlog
import uvicorn
from fastapi import FastAPI

from common import setup_logging

from store_audit.api import create_app
from store_audit.config import Settings, get_settings
from store_audit.mock_backend.backend_app import MockAnalysisBackend

logger = structlog.get_logger(__name__)

MOCK_BACKEND_PATH = "/mock-backend"


def build_app(settings: Settings | None = None) -> FastAPI:
    """Construct the fully-configured application.

    With ``mount_mock_backend`` enabled, the mock analysis backend is mounted
    at ``/mock-backend`` and the orchestrator is pointed at it.
    """
    settings = settings or get_settings()
    setup_logging(settings.log_level, json_logs=settings.json_logs)

    base_url = f"http://{settings.host}:{settings.port}"
    if settings.host == "0.0.0.0":
        base_url = f"http://localhost:{settings.port}"

    backend: MockAnalysisBackend | None = None
    if settings.mount_mock_backend:
        backend = MockAnalysisBackend(chunk_count=settings.checklist_chunk_count)
        settings = settings.model_copy(update={"backend_url": f"{base_url}{MOCK_BACKEND_PATH}"})

    app = create_app(settings)

    if backend is not None:
        app.mount(MOCK_BACKEND_PATH, backend.app, name="mock-backend")
        logger.info("mock_backend_mounted", path=MOCK_BACKEND_PATH)

    logger.info(
        "application_ready",
        service=settings.service_name,
        version=settings.service_version,
        backend_url=settings.backend_url,
        docs_url=f"{base_url}/docs",
    )

    return app


def main() -> None:
    """Launch the store audit orchestrator server."""
    settings = get_settings()
    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
