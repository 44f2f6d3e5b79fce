"""Configuration management for the store audit orchestrator."""

from __future__ import annotations

from common.config import Settings as BaseSettings


class Settings(BaseSettings):
    """Store audit configuration.

    Inherits logging and environment settings from ``common.config.Settings``
    and adds the analysis backend location and pipeline tuning options.
    """

    # Service identity
    service_name: str = "store-audit-orchestrator"
    service_version: str = "0.1.0"
    host: str = "0.0.0.0"
    port: int = 8030

    # Stepwise analysis backend
    backend_url: str = "https://server.fixmystore.com/api"
    request_timeout: float = 180.0

    # Chunked checklist evaluation
    checklist_chunk_count: int = 4
    chunked_page_types: list[str] = ["product"]

    # Local development: serve a mock analysis backend at /mock-backend
    mount_mock_backend: bool = False

    # Event streaming
    event_queue_size: int = 256

    # Idle sessions (and their event history) are dropped after this many seconds
    session_ttl_seconds: float = 3600.0


def get_settings() -> Settings:
    """Return a settings instance."""
    return Settings()
