"""
Tests for batch scoring and the model cache.
"""

from unittest.mock import AsyncMock

import pytest

from talentml.exceptions import ConfigurationError
from talentml.schemas.ml import Algorithm, MLModel
from talentml.services.registry import InMemoryRegistry
from talentml.services.scoring import ModelCache, ModelScorer


def linear_model(model_id: str, bias: float = 0.0) -> MLModel:
    return MLModel(
        id=model_id,
        name=model_id,
        version="1.0.0",
        algorithm=Algorithm.LOGISTIC_REGRESSION,
        parameters={"weights": [2.0, -2.0], "bias": bias, "feature_count": 2},
    )


class TestScoreBatch:
    """Tests for ModelScorer.score_batch."""

    def test_matches_single_scores(self):
        """Each batch row scores the same as scoring it alone."""
        model = linear_model("model-1")
        scorer = ModelScorer()
        vectors = [[0.9, 0.1], [0.1, 0.9], [0.5, 0.5]]

        batch = scorer.score_batch(model, vectors)

        assert [p.score for p in batch] == pytest.approx([scorer.score(model, v).score for v in vectors])
        assert batch[2].score == pytest.approx(0.5)
        assert all(p.metadata["batch_size"] == 3 for p in batch)
        assert all(p.metadata["model_id"] == "model-1" for p in batch)

    def test_empty_batch(self):
        assert ModelScorer().score_batch(linear_model("model-1"), []) == []

    def test_one_bad_row_fails_the_batch(self):
        with pytest.raises(ConfigurationError):
            ModelScorer().score_batch(linear_model("model-1"), [[0.1, 0.2], [0.1, 0.2, 0.3]])


class TestModelCache:
    """Tests for the bounded model cache."""

    @pytest.mark.asyncio
    async def test_loads_once_through_registry(self):
        """A second lookup is served from the cache."""
        registry = InMemoryRegistry()
        await registry.save_model(linear_model("model-1"))
        registry.load_model = AsyncMock(wraps=registry.load_model)
        cache = ModelCache(registry)

        first = await cache.get_model("model-1")
        second = await cache.get_model("model-1")

        assert first is second
        registry.load_model.assert_awaited_once_with("model-1")

    @pytest.mark.asyncio
    async def test_unknown_model(self):
        cache = ModelCache(InMemoryRegistry())

        assert await cache.get_model("missing") is None
        assert cache.cached_models() == []

    @pytest.mark.asyncio
    async def test_evicts_least_recently_used(self):
        """With capacity 2, touching a model keeps it over a newer one."""
        registry = InMemoryRegistry()
        for model_id in ("a", "b", "c"):
            await registry.save_model(linear_model(model_id))
        cache = ModelCache(registry, capacity=2)

        await cache.get_model("a")
        await cache.get_model("b")
        await cache.get_model("a")
        await cache.get_model("c")

        assert cache.cached_models() == ["a", "c"]

    @pytest.mark.asyncio
    async def test_preload_and_clear(self):
        registry = InMemoryRegistry()
        await registry.save_model(linear_model("a"))
        await registry.save_model(linear_model("b"))
        cache = ModelCache(registry)

        assert await cache.preload(["a", "b", "missing"]) == 2
        assert cache.cached_models() == ["a", "b"]

        cache.invalidate("a")
        assert cache.cached_models() == ["b"]

        cache.clear()
        assert cache.cached_models() == []

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            ModelCache(InMemoryRegistry(), capacity=0)
