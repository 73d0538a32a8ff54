"""
Scoring feature vectors with trained models.

Used directly by serving code for the active model and by the A/B
framework for control/treatment models. ModelCache keeps recently used
models in process so repeated scoring does not hit the registry.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Sequence, Union

from talentml.config import get_settings
from talentml.exceptions import ConfigurationError
from talentml.middleware.metrics import record_cache_hit, record_cache_miss, record_prediction_latency
from talentml.schemas.ml import MLModel, PredictionResult
from talentml.services.algorithms import predict_scores
from talentml.services.feature_extractor import FeatureVector
from talentml.services.registry import ModelRegistry, get_registry

logger = logging.getLogger(__name__)

Features = Union[FeatureVector, Sequence[float]]


def _as_vector(features: Features) -> List[float]:
    return features.vector if isinstance(features, FeatureVector) else list(features)


def _result(model: MLModel, score: float, metadata: Dict) -> PredictionResult:
    return PredictionResult(
        score=score,
        confidence=abs(score - 0.5) * 2,
        metadata={
            "model_id": model.id,
            "model_version": model.version,
            "algorithm": model.algorithm.value,
            **metadata,
        },
    )


class ModelScorer:
    """
    Scores vectors with an MLModel's serialised parameters.

    Confidence is the distance of the score from the 0.5 decision
    boundary, scaled to [0, 1].
    """

    @staticmethod
    def _check_width(model: MLModel, vector: List[float]) -> None:
        expected = model.parameters.get("feature_count")
        if expected is not None and len(vector) != expected:
            raise ConfigurationError(
                f"Model {model.id} expects {expected} features, got {len(vector)}"
            )

    def score(self, model: MLModel, features: Features) -> PredictionResult:
        vector = _as_vector(features)
        self._check_width(model, vector)

        start = time.perf_counter()
        score = float(predict_scores(model.algorithm, model.parameters, [vector])[0])
        duration = time.perf_counter() - start
        record_prediction_latency(model.id, duration)

        logger.debug(f"Scored with model {model.id}: {score:.4f}")

        return _result(model, score, {"processing_time_ms": duration * 1000})

    def score_batch(self, model: MLModel, batch: Sequence[Features]) -> List[PredictionResult]:
        """
        Score many vectors with one pass over the model.

        Every vector is width-checked before anything is scored, so a bad
        row fails the whole batch.
        """
        vectors = [_as_vector(features) for features in batch]
        if not vectors:
            return []
        for vector in vectors:
            self._check_width(model, vector)

        start = time.perf_counter()
        scores = predict_scores(model.algorithm, model.parameters, vectors)
        duration = time.perf_counter() - start
        record_prediction_latency(model.id, duration)

        logger.debug(f"Scored batch of {len(vectors)} with model {model.id} in {duration * 1000:.1f}ms")

        metadata = {"processing_time_ms": duration * 1000, "batch_size": len(vectors)}
        return [_result(model, float(score), metadata) for score in scores]


class ModelCache:
    """
    Bounded cache of models by id, loaded through the registry on a miss.

    Least recently used models are evicted first. Models are immutable,
    so cached instances are shared with callers.

    Usage:
        cache = ModelCache(registry, capacity=16)
        model = await cache.get_model("model_abc")
        results = ModelScorer().score_batch(model, vectors)
    """

    def __init__(self, registry: ModelRegistry, capacity: int = 16):
        if capacity < 1:
            raise ValueError("Model cache capacity must be at least 1")
        self.registry = registry
        self.capacity = capacity
        self._models: "OrderedDict[str, MLModel]" = OrderedDict()
        self._lock = asyncio.Lock()

    async def get_model(self, model_id: str) -> Optional[MLModel]:
        """Cached model, or the registry's copy; None if the registry has none."""
        async with self._lock:
            model = self._models.get(model_id)
            if model is not None:
                self._models.move_to_end(model_id)
                record_cache_hit("model")
                return model

            record_cache_miss("model")
            model = await self.registry.load_model(model_id)
            if model is None:
                return None

            self._models[model_id] = model
            while len(self._models) > self.capacity:
                evicted, _ = self._models.popitem(last=False)
                logger.debug(f"Evicted model {evicted} from cache")
            return model

    async def preload(self, model_ids: Iterable[str]) -> int:
        """Load models ahead of traffic; returns how many are now cached."""
        loaded = 0
        for model_id in model_ids:
            if await self.get_model(model_id) is not None:
                loaded += 1
            else:
                logger.warning(f"Cannot preload unknown model {model_id}")
        return loaded

    def cached_models(self) -> List[str]:
        """Cached ids, least recently used first."""
        return list(self._models)

    def invalidate(self, model_id: str) -> None:
        self._models.pop(model_id, None)

    def clear(self) -> None:
        self._models.clear()


_model_cache_instance: Optional[ModelCache] = None


def get_model_cache() -> ModelCache:
    global _model_cache_instance

    if _model_cache_instance is None:
        _model_cache_instance = ModelCache(get_registry(), capacity=get_settings().model_cache_size)

    return _model_cache_instance
