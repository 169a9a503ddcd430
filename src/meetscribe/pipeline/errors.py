"""Pipeline error taxonomy.

Services raise these; the API layer maps them to HTTP responses using the
``status_code`` and ``code`` class attributes.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline failures surfaced to callers."""

    status_code: int = 500
    code: str = "pipeline_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class InvalidInput(PipelineError):
    """Bad sequence number, bad payload, or unknown meeting. Never retried."""

    status_code = 400
    code = "invalid_input"


class PayloadTooLarge(InvalidInput):
    status_code = 413
    code = "payload_too_large"


class MeetingNotFound(InvalidInput):
    status_code = 404
    code = "meeting_not_found"


class DuplicateRequest(PipelineError):
    """A request that was already satisfied (same chunk sequence number)."""

    status_code = 409
    code = "duplicate"


class NotReady(PipelineError):
    """The meeting is not in a state that allows the operation yet."""

    status_code = 409
    code = "not_ready"


class ShareLinkNotFound(PipelineError):
    status_code = 404
    code = "share_link_not_found"


class UpstreamError(PipelineError):
    """Failure reported by an external collaborator (STT or text generation)."""

    status_code = 502
    code = "upstream_error"


class UpstreamRateLimited(UpstreamError):
    """Retryable: the upstream asked us to slow down."""

    status_code = 429
    code = "upstream_rate_limited"


class UpstreamUnavailable(UpstreamError):
    """Non-retryable upstream failure."""

    status_code = 503
    code = "upstream_unavailable"
