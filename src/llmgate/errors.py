"""Exception classes for the gateway.

Primary-path failures (admission, quota, upstream) derive from GatewayError
and carry everything the HTTP layer needs to render a structured error body.
Storage failures raise StoreError and are absorbed by the best-effort
subsystems that call the repository.
"""

from llmgate.models import ErrorBody


class GatewayError(Exception):
    """Base exception for errors surfaced to callers.

    Attributes:
        error_kind: Stable machine-readable identifier of the failure.
        status_code: HTTP status the error maps to.
        retry_after: Seconds the caller should wait before retrying, if known.
    """

    error_kind = "gateway_error"
    status_code = 500

    def __init__(self, message: str, retry_after: int | None = None):
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after

    def to_body(self) -> ErrorBody:
        """Build the caller-visible error payload."""
        return ErrorBody(
            error_kind=self.error_kind,
            message=self.message,
            retry_after=self.retry_after,
        )


class AdmissionDenied(GatewayError):
    """Raised when the rate limiter refuses a caller."""

    error_kind = "admission_denied"
    status_code = 429

    def __init__(self, retry_after: int, window: str | None = None):
        message = "Rate limit exceeded"
        if window:
            message = f"Rate limit exceeded for {window} window"
        super().__init__(message, retry_after=retry_after)
        self.window = window


class UpstreamError(GatewayError):
    """Base class for failures reported by the provider.

    Every UpstreamError counts as a failed dispatch for the circuit breaker.
    """

    error_kind = "upstream_error"
    status_code = 503


class UpstreamRateLimited(UpstreamError):
    """Provider answered 429."""

    error_kind = "upstream_rate_limited"
    status_code = 429


class QuotaExhausted(UpstreamError):
    """Provider answered 402."""

    error_kind = "quota_exhausted"
    status_code = 402


class UpstreamUnavailable(UpstreamError):
    """Provider answered with another non-2xx status, timed out or was unreachable."""

    error_kind = "upstream_unavailable"
    status_code = 503


class ConfigurationError(GatewayError):
    """Raised when the gateway is missing required configuration."""

    error_kind = "configuration_error"
    status_code = 500


class StoreError(RuntimeError):
    """Raised by the repository when the backing store cannot be used."""
