"""Common shared utilities for the store audit services."""

from common.config import Settings
from common.logging import setup_logging
from common.models import HealthResponse, ErrorResponse

__all__ = ["Settings", "setup_logging", "HealthResponse", "ErrorResponse"]
