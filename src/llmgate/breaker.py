"""Process-wide circuit breaker with fallback model selection."""

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

import structlog

from llmgate.metrics import metrics
from llmgate.models import BreakerSnapshot, BreakerState

logger = structlog.get_logger()

AuditSink = Callable[..., Awaitable[Any]]

_STATE_GAUGE = {
    BreakerState.CLOSED: 0,
    BreakerState.HALF_OPEN: 1,
    BreakerState.OPEN: 2,
}


class CircuitBreaker:
    """Tracks consecutive dispatch failures against the single upstream.

    Transitions:
        closed    -> open       failure count reaches the threshold
        open      -> half_open  cool-down elapsed since the last failure
        half_open -> closed     success (failure count reset)
        half_open -> open       failure (failure count kept)

    A success in any state closes the breaker. ``state``, ``failure_count``
    and ``last_failure_at`` are only read or written under ``_lock``.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        fallback_models: Sequence[str] = (),
        audit: AuditSink | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._failure_threshold = failure_threshold
        self._cooldown_seconds = cooldown_seconds
        self._fallback_models = list(fallback_models)
        self._audit = audit
        self._clock = clock
        self._lock = asyncio.Lock()

        self._state = BreakerState.CLOSED
        self._failure_count = 0
        self._last_failure_at: float | None = None
        metrics.breaker_state.set(_STATE_GAUGE[self._state])

    async def select_model(self, requested: str) -> str:
        """Pick the model to dispatch to.

        While open, the first fallback differing from ``requested`` is used.
        """
        async with self._lock:
            transition = self._refresh_locked(self._clock())
            state = self._state

        await self._emit(transition)

        if state is not BreakerState.OPEN:
            return requested

        for candidate in self._fallback_models:
            if candidate != requested:
                logger.info("breaker_fallback_selected", requested=requested, model=candidate)
                return candidate

        logger.warning("breaker_no_fallback_available", requested=requested)
        return requested

    async def record_success(self) -> None:
        async with self._lock:
            previous = self._state
            self._state = BreakerState.CLOSED
            self._failure_count = 0
            transition = self._transition_locked(previous)

        await self._emit(transition)

    async def record_failure(self, model: str, error_kind: str) -> None:
        async with self._lock:
            now = self._clock()
            self._refresh_locked(now)
            previous = self._state
            self._failure_count += 1
            self._last_failure_at = now
            if previous is BreakerState.HALF_OPEN or self._failure_count >= self._failure_threshold:
                self._state = BreakerState.OPEN
            transition = self._transition_locked(previous)
            failure_count = self._failure_count
            state = self._state

        logger.warning(
            "dispatch_failure_recorded",
            model=model,
            error_kind=error_kind,
            failure_count=failure_count,
            state=state.value,
        )
        await self._emit(transition, model=model, error_kind=error_kind)

    async def snapshot(self) -> BreakerSnapshot:
        async with self._lock:
            now = self._clock()
            transition = self._refresh_locked(now)
            remaining = 0.0
            if self._state is BreakerState.OPEN and self._last_failure_at is not None:
                remaining = max(0.0, self._cooldown_seconds - (now - self._last_failure_at))
            snap = BreakerSnapshot(
                state=self._state,
                failure_count=self._failure_count,
                last_failure_at=self._last_failure_at,
                cooldown_remaining_seconds=remaining,
            )

        await self._emit(transition)
        return snap

    def _refresh_locked(self, now: float) -> tuple[BreakerState, BreakerState] | None:
        """Move open to half_open once the cool-down has elapsed."""
        if (
            self._state is BreakerState.OPEN
            and self._last_failure_at is not None
            and now - self._last_failure_at >= self._cooldown_seconds
        ):
            previous = self._state
            self._state = BreakerState.HALF_OPEN
            return self._transition_locked(previous)
        return None

    def _transition_locked(self, previous: BreakerState) -> tuple[BreakerState, BreakerState] | None:
        if previous is self._state:
            return None
        metrics.breaker_state.set(_STATE_GAUGE[self._state])
        metrics.breaker_transitions_total.labels(
            from_state=previous.value, to_state=self._state.value
        ).inc()
        return previous, self._state

    async def _emit(
        self, transition: tuple[BreakerState, BreakerState] | None, **context: Any
    ) -> None:
        if transition is None:
            return
        previous, current = transition
        event = f"breaker_{current.value}"
        logger.warning(event, from_state=previous.value, to_state=current.value, **context)

        if self._audit is None:
            return
        try:
            await self._audit(event, from_state=previous.value, to_state=current.value, **context)
        except Exception as e:
            logger.error("breaker_audit_failed", audit_event=event, error=str(e))
