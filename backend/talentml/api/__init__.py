from fastapi import APIRouter
from talentml.api import ab_tests, features, models, serving_metrics

api_router = APIRouter()
api_router.include_router(features.router, prefix="/features", tags=["features"])
api_router.include_router(models.router, prefix="/models", tags=["models"])
api_router.include_router(ab_tests.router, prefix="/ab-tests", tags=["ab-tests"])
api_router.include_router(serving_metrics.router, prefix="/serving-metrics", tags=["serving-metrics"])
