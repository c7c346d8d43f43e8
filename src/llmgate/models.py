"""Domain models for the gateway."""

from datetime import datetime, time
from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Priority(StrEnum):
    """Caller-declared request priority."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class WindowKind(StrEnum):
    """Fixed rate-limit window."""

    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"

    @property
    def seconds(self) -> int:
        return _WINDOW_SECONDS[self]

    def start(self, now: float) -> int:
        """Truncate a unix timestamp to the start of its window."""
        ts = int(now)
        return ts - (ts % self.seconds)


_WINDOW_SECONDS = {
    WindowKind.MINUTE: 60,
    WindowKind.HOUR: 3600,
    WindowKind.DAY: 86400,
}


class BreakerState(StrEnum):
    """Circuit breaker state."""

    CLOSED = "closed"
    HALF_OPEN = "half_open"
    OPEN = "open"


class ChatMessage(BaseModel):
    """A single chat message."""

    role: str = Field(..., min_length=1)
    content: str


class ChatRequest(BaseModel):
    """Inbound gateway request."""

    messages: list[ChatMessage] = Field(..., min_length=1)
    model: str | None = Field(None, min_length=1)
    stream: bool = False
    max_tokens: int | None = Field(None, ge=1)
    temperature: float | None = Field(None, ge=0, le=2)
    caller_identity: str = Field(..., min_length=1, max_length=255)
    priority: Priority = Priority.MEDIUM
    cache_ttl_seconds: int | None = Field(None, ge=1)
    skip_cache: bool = False


class RateLimitConfig(BaseModel):
    """Per-caller admission policy.

    A null limit leaves that window unlimited. Off-hours bounds are UTC
    times of day; the range may wrap past midnight.
    """

    caller_identity: str = Field(..., min_length=1, max_length=255)
    requests_per_minute: int | None = Field(None, ge=1)
    requests_per_hour: int | None = Field(None, ge=1)
    requests_per_day: int | None = Field(None, ge=1)
    off_hours_multiplier: float = Field(1.0, gt=0)
    off_hours_start: time | None = None
    off_hours_end: time | None = None
    is_active: bool = True

    def get_key(self) -> str:
        """Generate the storage key for this config."""
        return f"ratelimit:config:{self.caller_identity}"

    def limit_for(self, window: WindowKind) -> int | None:
        return {
            WindowKind.MINUTE: self.requests_per_minute,
            WindowKind.HOUR: self.requests_per_hour,
            WindowKind.DAY: self.requests_per_day,
        }[window]

    def in_off_hours(self, moment: datetime) -> bool:
        """Check whether a moment falls inside the off-hours range."""
        if self.off_hours_start is None or self.off_hours_end is None:
            return False
        start = self.off_hours_start.replace(tzinfo=None)
        end = self.off_hours_end.replace(tzinfo=None)
        current = moment.time()
        if start == end:
            return False
        if start < end:
            return start <= current < end
        # Range wraps past midnight
        return current >= start or current < end


class AdmissionDecision(BaseModel):
    """Outcome of a rate limiter check."""

    allowed: bool
    retry_after_seconds: int = 0
    window: WindowKind | None = None


class CacheEntry(BaseModel):
    """A memoized completed response."""

    cache_key: str
    model: str
    response: dict[str, Any]
    input_tokens: int = 0
    output_tokens: int = 0
    cost_estimate: Decimal = Decimal("0")
    created_at: float
    expires_at: float
    hit_count: int = 0
    last_accessed_at: float | None = None

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class CostLogEntry(BaseModel):
    """Immutable accounting record, one per processed request."""

    caller_identity: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: Decimal = Decimal("0")
    cached: bool = False
    priority: Priority = Priority.MEDIUM
    latency_ms: int = 0
    success: bool
    error_message: str | None = None
    created_at: datetime

    model_config = ConfigDict(frozen=True)


class CostSummary(BaseModel):
    """Monthly spend for one caller."""

    caller_identity: str
    month: str
    request_count: int = 0
    cached_count: int = 0
    failed_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_cost_usd: Decimal = Decimal("0")


class BreakerSnapshot(BaseModel):
    """Point-in-time view of the circuit breaker."""

    state: BreakerState
    failure_count: int
    last_failure_at: float | None = None
    cooldown_remaining_seconds: float = 0.0


class ErrorBody(BaseModel):
    """Structured error returned to callers."""

    error_kind: str
    message: str
    retry_after: int | None = None
