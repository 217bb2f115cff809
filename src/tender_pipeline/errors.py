"""
Custom exceptions for the tender pipeline.

Only ArchiveError and NoTendersEnrichedError are meant to reach the caller of
a run. Everything else is absorbed per document or per entry.
"""

from typing import Any, Optional


class TenderPipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ArchiveError(TenderPipelineError):
    """The bulk payload could not be read or holds no feed documents."""

    pass


class ExtractionSkip(TenderPipelineError):
    """A single archive member could not be read. Other members continue."""

    pass


# =============================================================================
# Enrichment
# =============================================================================


class EnrichmentError(TenderPipelineError):
    """Base exception for the external structuring call."""

    pass


class EnrichmentRetryable(EnrichmentError):
    """Transient failure; retried by the retry policy."""

    def __init__(
        self,
        message: str,
        rate_limited: bool = False,
        retry_after: Optional[float] = None,
    ) -> None:
        details: dict[str, Any] = {"rate_limited": rate_limited}
        if retry_after is not None:
            details["retry_after"] = retry_after
        super().__init__(message, details)
        self.rate_limited = rate_limited
        self.retry_after = retry_after


class EnrichmentFatal(EnrichmentError):
    """The entry cannot be enriched. It is dropped; the run continues."""

    pass


class QuotaExhausted(EnrichmentFatal):
    """The daily call quota has been reached."""

    def __init__(self, calls_today: int, daily_limit: int) -> None:
        super().__init__(
            f"Daily call limit reached ({calls_today}/{daily_limit})",
            {"calls_today": calls_today, "daily_limit": daily_limit},
        )


class RetryExhausted(EnrichmentFatal):
    """Every allowed attempt failed."""

    def __init__(self, attempts: int, last_error: Exception) -> None:
        super().__init__(
            f"Giving up after {attempts} attempts: {last_error}",
            {"attempts": attempts},
        )
        self.attempts = attempts
        self.last_error = last_error


class NoTendersEnrichedError(TenderPipelineError):
    """Relevant entries existed but none could be enriched."""

    def __init__(self, relevant: int) -> None:
        super().__init__(
            f"None of the {relevant} relevant entries could be enriched. "
            "Check the API key and the daily quota.",
            {"relevant": relevant},
        )
