"""
TalentML API - Main Application Entry Point

This module initializes the FastAPI application with:
- A/B test rehydration from the model registry
- Background scheduler for periodic A/B evaluation
- Prometheus metrics middleware and /metrics endpoint
- Mapping of matching-core errors to HTTP status codes

Architecture:
    FastAPI App
    ├── Lifespan Management (startup/shutdown)
    ├── Prometheus Middleware
    └── API Router
        ├── /features - Feature extraction
        ├── /models - Training, registry, activation
        ├── /ab-tests - A/B test lifecycle, predictions, conversions
        └── /serving-metrics - Per-model and per-test serving metrics
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from talentml.api import api_router
from talentml.config import get_settings
from talentml.exceptions import (
    ConfigurationError,
    InvalidTestStateError,
    MatchingError,
    NoActiveTestError,
    RegistryError,
    TestNotFoundError,
    TrainingCancelledError,
    TrainingDataError,
    TrainingInProgressError,
)
from talentml.middleware.metrics import setup_metrics
from talentml.scheduler import start_scheduler, stop_scheduler
from talentml.services.ab_testing import get_ab_testing_framework
from talentml.services.registry import get_registry

settings = get_settings()
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS = [
    (TestNotFoundError, 404),
    (NoActiveTestError, 404),
    (TrainingInProgressError, 409),
    (InvalidTestStateError, 409),
    (TrainingCancelledError, 409),
    (TrainingDataError, 400),
    (ConfigurationError, 422),
    (RegistryError, 503),
]


def status_for(error: MatchingError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle events.

    Startup:
        1. Reload A/B tests persisted by a previous process
        2. Start background evaluation scheduler

    Shutdown:
        1. Stop the scheduler
        2. Close the registry connection
    """
    loaded = await get_ab_testing_framework().load_tests()
    logger.info(f"Startup: {loaded} A/B tests restored")
    start_scheduler()
    yield
    stop_scheduler()
    await get_registry().close()


app = FastAPI(
    title="TalentML API",
    description="Candidate/job match scoring, model training and A/B testing",
    version="0.1.0",
    lifespan=lifespan,
)

setup_metrics(app)
app.include_router(api_router)


@app.exception_handler(MatchingError)
async def matching_error_handler(request: Request, exc: MatchingError):
    status = status_for(exc)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status, content={"detail": str(exc)})


@app.get("/health")
async def health_check():
    registry_ok = await get_registry().health_check()
    return {"status": "healthy" if registry_ok else "degraded", "registry": registry_ok}
