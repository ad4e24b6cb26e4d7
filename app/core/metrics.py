"""Prometheus metrics for the analysis pipeline."""

import logging

from prometheus_client import Counter, Histogram, Info, generate_latest, start_http_server

logger = logging.getLogger(__name__)

# --- Metrics ---

APP_INFO = Info("brand_pulse", "Brand Pulse analysis pipeline info")
APP_INFO.info({"version": "0.1.0", "name": "brand_pulse"})

GATEWAY_CALLS = Counter(
    "gateway_calls_total",
    "Model gateway calls by provider and outcome",
    ["provider", "status"],
)

GATEWAY_LATENCY = Histogram(
    "gateway_call_duration_seconds",
    "Model gateway call duration in seconds",
    ["provider"],
    buckets=[0.5, 1, 2.5, 5, 10, 30, 60, 120, 300],
)

CLASSIFIER_FALLBACKS = Counter(
    "classifier_fallback_sources_total",
    "Sources classified by the domain heuristic instead of the model",
)

JOB_RUNS = Counter(
    "analysis_jobs_total",
    "Analysis jobs by entry point and terminal status",
    ["mode", "status"],
)

OPPORTUNITIES_GENERATED = Counter(
    "opportunities_generated_total",
    "Opportunities written by the scoring engine",
    ["tier"],
)


def metrics_payload() -> bytes:
    """Render the current registry in the Prometheus text format."""
    return generate_latest()


def start_metrics_server(port: int) -> bool:
    """Expose /metrics on ``port`` from a background thread. 0 disables it."""
    if not port:
        return False
    start_http_server(port)
    logger.info("Prometheus metrics on :%d", port)
    return True
