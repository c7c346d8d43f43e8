"""Per-caller fixed-window admission control."""

import math
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog
from redis.exceptions import RedisError

from llmgate.errors import StoreError
from llmgate.metrics import metrics
from llmgate.models import AdmissionDecision, Priority, RateLimitConfig, WindowKind

logger = structlog.get_logger()

ALLOWED = AdmissionDecision(allowed=True)


def effective_limit(config: RateLimitConfig, window: WindowKind, moment: datetime) -> int | None:
    """Limit for a window after applying the off-hours multiplier."""
    limit = config.limit_for(window)
    if limit is None:
        return None
    if config.in_off_hours(moment):
        return max(1, int(limit * config.off_hours_multiplier))
    return limit


def retry_after(window: WindowKind, now: float) -> int:
    """Whole seconds until the window containing ``now`` rolls over."""
    remaining = window.start(now) + window.seconds - now
    return min(window.seconds, max(1, math.ceil(remaining)))


class RateLimiter:
    """Admission control over minute, hour and day windows.

    Callers without an active config are always admitted. High priority
    bypasses the minute window only. Counter store failures fail open.
    """

    def __init__(self, repository: Any, clock: Callable[[], float] = time.time) -> None:
        self._repository = repository
        self._clock = clock

    async def admit(self, caller_identity: str, priority: Priority) -> AdmissionDecision:
        """Decide whether a caller may proceed, counting the request if so."""
        try:
            config = await self._repository.get_rate_limit_config(caller_identity)
        except (RedisError, StoreError) as e:
            return self._fail_open(caller_identity, "config_read", e)

        if config is None or not config.is_active:
            metrics.admission_total.labels(result="allowed", window="none").inc()
            return ALLOWED

        now = self._clock()
        moment = datetime.fromtimestamp(now, tz=UTC)

        try:
            counts = await self._repository.get_window_counts(caller_identity, now)
        except (RedisError, StoreError) as e:
            return self._fail_open(caller_identity, "counter_read", e)

        for window in WindowKind:
            if window is WindowKind.MINUTE and priority is Priority.HIGH:
                continue
            limit = effective_limit(config, window, moment)
            if limit is None:
                continue
            if counts.get(window, 0) >= limit:
                decision = AdmissionDecision(
                    allowed=False,
                    retry_after_seconds=retry_after(window, now),
                    window=window,
                )
                metrics.admission_total.labels(result="denied", window=window.value).inc()
                logger.info(
                    "admission_denied",
                    caller_identity=caller_identity,
                    priority=priority.value,
                    window=window.value,
                    count=counts.get(window, 0),
                    limit=limit,
                    retry_after=decision.retry_after_seconds,
                )
                return decision

        try:
            await self._repository.increment_windows(caller_identity, now)
        except (RedisError, StoreError) as e:
            metrics.store_errors_total.labels(subsystem="rate_limiter").inc()
            logger.warning(
                "rate_limit_increment_failed", caller_identity=caller_identity, error=str(e)
            )

        metrics.admission_total.labels(result="allowed", window="none").inc()
        return ALLOWED

    def _fail_open(self, caller_identity: str, stage: str, error: Exception) -> AdmissionDecision:
        metrics.store_errors_total.labels(subsystem="rate_limiter").inc()
        metrics.admission_total.labels(result="allowed", window="none").inc()
        logger.warning(
            "rate_limit_store_unavailable",
            caller_identity=caller_identity,
            stage=stage,
            error=str(error),
        )
        return ALLOWED
