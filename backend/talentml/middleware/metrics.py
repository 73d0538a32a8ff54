"""
Prometheus Metrics

Provides process metrics for the matching core and its API:
- HTTP request latency, count and in-flight gauge
- Embedding latency and cache hit/miss rates
- Prediction latency per model
- Training runs per algorithm and outcome
- A/B assignments and conversions per group

Usage:
    from talentml.middleware.metrics import setup_metrics

    app = FastAPI()
    setup_metrics(app)

Metrics Endpoint:
    GET /metrics - Prometheus-format metrics
"""

import time
import logging
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    CONTENT_TYPE_LATEST,
    generate_latest,
    REGISTRY,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.routing import Match

logger = logging.getLogger(__name__)

# ==================== Prometheus Metrics ====================

REQUEST_LATENCY = Histogram(
    "talentml_http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint", "status"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

REQUEST_COUNT = Counter(
    "talentml_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"]
)

ACTIVE_REQUESTS = Gauge(
    "talentml_http_requests_active",
    "Number of active HTTP requests",
    ["method", "endpoint"]
)

CACHE_HITS = Counter(
    "talentml_cache_hits_total",
    "Total cache hits",
    ["layer"]
)

CACHE_MISSES = Counter(
    "talentml_cache_misses_total",
    "Total cache misses",
    ["layer"]
)

EMBEDDING_LATENCY = Histogram(
    "talentml_embedding_generation_seconds",
    "Time to generate embeddings",
    ["provider"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0]
)

EMBEDDING_FAILURES = Counter(
    "talentml_embedding_failures_total",
    "Embedding provider calls that timed out or failed",
    ["provider"]
)

PREDICTION_LATENCY = Histogram(
    "talentml_prediction_seconds",
    "Time to score a candidate/job pair",
    ["model_id"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5]
)

TRAINING_RUNS = Counter(
    "talentml_training_runs_total",
    "Training runs by algorithm and outcome",
    ["algorithm", "outcome"]  # completed, failed, cancelled
)

AB_ASSIGNMENTS = Counter(
    "talentml_ab_assignments_total",
    "A/B test participant assignments",
    ["test_id", "group"]
)

AB_CONVERSIONS = Counter(
    "talentml_ab_conversions_total",
    "A/B test conversion events",
    ["test_id", "group", "conversion_type"]
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    FastAPI middleware for Prometheus metrics collection.

    Records:
    - Request latency
    - Request count by status code
    - Active request count
    """

    def __init__(self, app: FastAPI, app_name: str = "talentml"):
        super().__init__(app)
        self.app_name = app_name

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        """Process request and record metrics."""
        endpoint = self._get_endpoint(request)
        method = request.method

        if endpoint == "/metrics":
            return await call_next(request)

        ACTIVE_REQUESTS.labels(method=method, endpoint=endpoint).inc()
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            status = str(response.status_code)
        except Exception as e:
            status = "500"
            logger.error(f"Request error: {e}")
            raise
        finally:
            duration = time.perf_counter() - start_time

            REQUEST_LATENCY.labels(
                method=method,
                endpoint=endpoint,
                status=status
            ).observe(duration)

            REQUEST_COUNT.labels(
                method=method,
                endpoint=endpoint,
                status=status
            ).inc()

            ACTIVE_REQUESTS.labels(
                method=method,
                endpoint=endpoint
            ).dec()

        return response

    def _get_endpoint(self, request: Request) -> str:
        """
        Get normalized endpoint path from request.

        Uses route pattern (e.g., /ab-tests/{test_id}) instead of
        actual path to avoid high cardinality.
        """
        for route in request.app.routes:
            match, _ = route.matches(request.scope)
            if match == Match.FULL:
                return route.path

        return request.url.path


def metrics_endpoint(request: Request) -> Response:
    """Endpoint handler for Prometheus metrics scraping."""
    return PlainTextResponse(
        content=generate_latest(REGISTRY),
        media_type=CONTENT_TYPE_LATEST
    )


def setup_metrics(app: FastAPI) -> None:
    """
    Configure Prometheus metrics for FastAPI app.

    Args:
        app: FastAPI application instance
    """
    app.add_middleware(PrometheusMiddleware, app_name="talentml")
    app.add_route("/metrics", metrics_endpoint, methods=["GET"])

    logger.info("Prometheus metrics configured")


# ==================== Helper Functions ====================

def record_cache_hit(layer: str) -> None:
    """Record a cache hit for the specified layer."""
    CACHE_HITS.labels(layer=layer).inc()


def record_cache_miss(layer: str) -> None:
    """Record a cache miss for the specified layer."""
    CACHE_MISSES.labels(layer=layer).inc()


def record_embedding_latency(provider: str, duration: float) -> None:
    """Record embedding generation latency."""
    EMBEDDING_LATENCY.labels(provider=provider).observe(duration)


def record_embedding_failure(provider: str) -> None:
    EMBEDDING_FAILURES.labels(provider=provider).inc()


def record_prediction_latency(model_id: str, duration: float) -> None:
    """Record scoring latency for one model."""
    PREDICTION_LATENCY.labels(model_id=model_id).observe(duration)


def record_training_run(algorithm: str, outcome: str) -> None:
    TRAINING_RUNS.labels(algorithm=algorithm, outcome=outcome).inc()


def record_ab_assignment(test_id: str, group: str) -> None:
    AB_ASSIGNMENTS.labels(test_id=test_id, group=group).inc()


def record_ab_conversion(test_id: str, group: str, conversion_type: str) -> None:
    AB_CONVERSIONS.labels(
        test_id=test_id,
        group=group,
        conversion_type=conversion_type
    ).inc()
