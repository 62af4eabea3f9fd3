"""Error taxonomy shared by every stage of the planning pipeline."""
from __future__ import annotations


class PlannerError(RuntimeError):
    pass


class ConfigurationMissing(PlannerError):
    """A required credential or endpoint is not configured."""


class TransientUpstream(PlannerError):
    """Rate limit or 5xx from an upstream service, after retries ran out."""

    def __init__(self, message: str, *, status_code: int | None = None, retry_after: float | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class UpstreamError(PlannerError):
    """Non-retryable upstream failure (4xx other than 429, network error)."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class InvalidResponse(PlannerError):
    """Structured output was malformed or did not match the declared schema."""


class NotFound(PlannerError):
    pass


class ValidationFailure(PlannerError):
    pass


class InvalidTransition(PlannerError):
    pass


class EvidenceUnavailable(PlannerError):
    """Neither the curated store nor live search produced any evidence."""
