"""
Middleware Package

Contains FastAPI middleware and Prometheus metric definitions for:
- HTTP request monitoring
- Embedding, prediction and training telemetry
- A/B test assignment and conversion counters
"""

from talentml.middleware.metrics import (
    PrometheusMiddleware,
    setup_metrics,
    REQUEST_LATENCY,
    REQUEST_COUNT,
    ACTIVE_REQUESTS,
    CACHE_HITS,
    CACHE_MISSES,
)

__all__ = [
    "PrometheusMiddleware",
    "setup_metrics",
    "REQUEST_LATENCY",
    "REQUEST_COUNT",
    "ACTIVE_REQUESTS",
    "CACHE_HITS",
    "CACHE_MISSES",
]
