"""Prometheus metric definitions for the checkout flow."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


checkout_attempts_total = Counter("checkout_attempts_total", "Total checkout attempts started", ["service"])
checkout_outcomes_total = Counter(
    "checkout_outcomes_total",
    "Terminal checkout outcomes by kind",
    ["service", "kind"],
)
checkout_e2e_seconds = Histogram(
    "checkout_e2e_seconds",
    "Checkout duration seconds from INITIATED to terminal",
    ["service", "terminal_state"],
)
verification_latency_seconds = Histogram(
    "verification_latency_seconds",
    "Verification authority round-trip seconds",
    ["service"],
)
verification_fallback_total = Counter(
    "verification_fallback_total",
    "Verifications resolved by the fallback policy instead of the authority",
    ["service", "policy"],
)
gateway_errors_total = Counter(
    "gateway_errors_total",
    "Gateway errors normalized into dismissals",
    ["service", "gateway"],
)
grant_delivery_failures_total = Counter(
    "grant_delivery_failures_total",
    "Granted outcomes the outcome sink failed to process",
    ["service"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
