"""Exception hierarchy for the audit pipeline."""

from __future__ import annotations


class StoreAuditError(Exception):
    """Base class for every error raised by the audit pipeline."""


class StepwiseAnalysisError(StoreAuditError):
    """Raised when a stepwise analysis request fails.

    Covers non-2xx responses, ``success: false`` envelopes, network errors and
    unreadable response bodies.
    """

    def __init__(
        self,
        message: str,
        stage: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.status_code = status_code


class InvalidStoreError(StoreAuditError):
    """The submitted URL is not a Shopify store."""

    def __init__(self, message: str = "Invalid Shopify store", url: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.url = url


class PageAnalysisError(StoreAuditError):
    """A page type failed during a multi-page run."""

    def __init__(self, page_type: str, cause: Exception) -> None:
        super().__init__(str(cause))
        self.page_type = page_type
        self.cause = cause
