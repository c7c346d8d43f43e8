"""Prometheus metrics for the gateway."""

from prometheus_client import Counter, Gauge, Histogram, Info

from llmgate import __version__


class GatewayMetrics:
    """Metrics collection for the gateway."""

    def __init__(self) -> None:
        # Application info
        self.info = Info("llmgate", "LLM Request Gateway")
        self.info.info({"version": __version__, "rate_limiting": "fixed_window"})

        # Request counters
        self.requests_total = Counter(
            "llmgate_requests_total",
            "Total gateway requests by terminal outcome",
            ["outcome", "priority"],
        )

        self.admission_total = Counter(
            "llmgate_admission_total",
            "Total admission decisions",
            ["result", "window"],
        )

        self.cache_lookups_total = Counter(
            "llmgate_cache_lookups_total",
            "Total response cache lookups",
            ["result"],
        )

        self.dispatch_total = Counter(
            "llmgate_dispatch_total",
            "Total provider dispatches",
            ["model", "result"],
        )

        self.http_requests_total = Counter(
            "llmgate_http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status"],
        )

        # Accounting
        self.tokens_total = Counter(
            "llmgate_tokens_total",
            "Estimated or reported tokens",
            ["model", "direction"],
        )

        self.cost_usd_total = Counter(
            "llmgate_cost_usd_total",
            "Estimated spend in USD",
            ["model"],
        )

        # Circuit breaker
        self.breaker_state = Gauge(
            "llmgate_breaker_state",
            "Circuit breaker state (0=closed, 1=half_open, 2=open)",
        )

        self.breaker_transitions_total = Counter(
            "llmgate_breaker_transitions_total",
            "Circuit breaker state transitions",
            ["from_state", "to_state"],
        )

        # Latency histograms
        self.dispatch_duration = Histogram(
            "llmgate_dispatch_duration_seconds",
            "Duration of provider calls",
            ["model"],
            buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
        )

        self.http_request_duration = Histogram(
            "llmgate_http_request_duration_seconds",
            "Duration of HTTP requests",
            ["method", "endpoint"],
            buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0, 30.0],
        )

        # Store metrics
        self.store_errors_total = Counter(
            "llmgate_store_errors_total",
            "Backing store failures absorbed by best-effort subsystems",
            ["subsystem"],
        )


# Singleton instance
metrics = GatewayMetrics()
