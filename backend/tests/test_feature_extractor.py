"""
Tests for the feature extraction service.

Tests cover:
- Vector layout: fixed widths, stable names, deterministic output
- Category encodings (skills, experience level, degree, location)
- Degraded input: missing sections and failing category builders
- Pair features: interaction, similarity and text similarity blocks
- Embedding timeout/failure fallback and caching
- Similarity helpers (cosine, Jaccard, alignment functions)
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from talentml.exceptions import ConfigurationError
from talentml.schemas.profile import CandidateProfile, Education, Experience, JobProfile, Location, SalaryRange, Skill
from talentml.services.cache import EmbeddingCache
from talentml.services.feature_extractor import (
    CATEGORY_WIDTHS,
    FeatureExtractionOptions,
    FeatureExtractor,
    cosine_similarity,
    education_match,
    experience_alignment,
    jaccard_similarity,
    location_compatibility,
    map_experience_level,
    min_max_normalize,
    salary_alignment,
)


def fixed_clock():
    return datetime(2024, 1, 1, tzinfo=timezone.utc)


def value_at(extractor, features, name):
    return features.vector[extractor.profile_feature_names().index(name)]


class TestLayout:
    """Vector widths and names are fixed by the options alone."""

    def test_profile_dimension_matches_category_widths(self, extractor):
        """Profile width is the sum of the category widths."""
        assert extractor.profile_dimension == sum(CATEGORY_WIDTHS.values())
        assert len(extractor.profile_feature_names()) == extractor.profile_dimension

    def test_metadata_block_is_optional(self):
        """Disabling metadata features drops exactly that block."""
        extractor = FeatureExtractor(options=FeatureExtractionOptions(include_metadata_features=False))
        assert extractor.profile_dimension == sum(CATEGORY_WIDTHS.values()) - CATEGORY_WIDTHS["metadata"]
        assert "metadata" not in extractor.profile_widths()

    def test_pair_dimension(self, extractor):
        """Pair = candidate + job + 3 interaction blocks + 5 similarity + 2 text."""
        size = extractor.profile_dimension
        assert extractor.pair_dimension == 5 * size + 5 + 2
        assert len(extractor.pair_feature_names()) == extractor.pair_dimension

    def test_text_similarity_block_is_optional(self):
        """Without text embeddings the pair vector loses its last two entries."""
        extractor = FeatureExtractor(options=FeatureExtractionOptions(use_text_embeddings=False))
        assert extractor.pair_dimension == 5 * extractor.profile_dimension + 5


class TestProfileFeatures:
    """Tests for single-profile extraction."""

    def test_candidate_encoding(self):
        """Skills, junior level, bachelor degree and US location are set."""
        extractor = FeatureExtractor(options=FeatureExtractionOptions(), now=fixed_clock)
        candidate = CandidateProfile(
            id="c1",
            skills=[Skill(name="javascript"), Skill(name="react")],
            experience=[
                Experience(
                    company="Acme",
                    start_date=datetime(2020, 1, 1, tzinfo=timezone.utc),
                    end_date=datetime(2023, 1, 1, tzinfo=timezone.utc),
                )
            ],
            education=[Education(degree="Bachelor of Arts")],
            location=Location(country="United States"),
        )

        features = extractor.extract_profile_features(candidate, "candidate")

        assert value_at(extractor, features, "skills.javascript") == 1.0
        assert value_at(extractor, features, "skills.react") == 1.0
        assert value_at(extractor, features, "skills.python") == 0.0
        assert value_at(extractor, features, "experience.level.junior") == 1.0
        assert sum(features.category("experience")[1:8]) == 1.0
        assert value_at(extractor, features, "education.degree.bachelor") == 1.0
        assert sum(features.category("education")[:6]) == 1.0
        assert value_at(extractor, features, "location.country.united states") == 1.0

    def test_fixed_width_and_bounds(self, extractor, candidate, job):
        """Every profile gives the same width with values in [0, 1]."""
        for profile, kind in ((candidate, "candidate"), (job, "job"), (CandidateProfile(id="empty"), "candidate")):
            features = extractor.extract_profile_features(profile, kind)
            assert len(features) == extractor.profile_dimension
            assert all(0.0 <= v <= 1.0 for v in features.vector)

    def test_deterministic(self, extractor, candidate):
        """Same profile and clock give the same vector."""
        first = extractor.extract_profile_features(candidate, "candidate")
        second = extractor.extract_profile_features(candidate, "candidate")
        assert first.vector == second.vector

    def test_missing_location_is_zero_block(self, extractor, candidate):
        """A profile without a location gets an all-zero location block."""
        candidate.location = None
        features = extractor.extract_profile_features(candidate, "candidate")
        assert features.category("location") == [0.0] * CATEGORY_WIDTHS["location"]

    def test_failing_category_is_zero_filled(self, extractor, candidate):
        """A builder that raises is logged and zero-filled at its width."""
        with patch.object(extractor, "_skills_features", side_effect=RuntimeError("boom")):
            features = extractor.extract_profile_features(candidate, "candidate")

        assert len(features) == extractor.profile_dimension
        assert features.category("skills") == [0.0] * CATEGORY_WIDTHS["skills"]
        assert value_at(extractor, features, "experience.level.junior") == 1.0

    def test_job_uses_required_experience(self, extractor, job):
        """Jobs are levelled by experience_required."""
        features = extractor.extract_profile_features(job, "job")
        assert value_at(extractor, features, "experience.level.junior") == 1.0
        assert value_at(extractor, features, "skills.aws") == 1.0

    def test_unknown_profile_type_raises(self, extractor, candidate):
        """Only candidate and job are valid profile types."""
        with pytest.raises(ConfigurationError):
            extractor.extract_profile_features(candidate, "recruiter")

    def test_recent_update_is_active(self, extractor, candidate):
        """Updated two days ago counts as fully active."""
        features = extractor.extract_profile_features(candidate, "candidate")
        assert value_at(extractor, features, "metadata.activity") == 1.0
        assert value_at(extractor, features, "metadata.verified") == 1.0

    def test_metadata_offsets(self, extractor, candidate):
        """Offsets and widths in metadata describe the vector."""
        features = extractor.extract_profile_features(candidate, "candidate")
        assert features.metadata["offsets"]["skills"] == 0
        assert features.metadata["offsets"]["experience"] == CATEGORY_WIDTHS["skills"]
        assert features.metadata["feature_count"] == len(features)


class TestPairFeatures:
    """Tests for candidate/job pair extraction."""

    @pytest.mark.asyncio
    async def test_pair_width_and_similarity(self, extractor, candidate, job):
        """Pair vector has the declared width and sensible similarity values."""
        features = await extractor.extract_pair_features(candidate, job)

        assert len(features) == extractor.pair_dimension
        similarity = features.category("similarity")
        # python, sql shared out of python, sql, docker, aws
        assert similarity[0] == pytest.approx(0.5)
        assert similarity[1] == 1.0  # 3 years vs 3 required
        assert similarity[2] == 1.0  # bachelor meets bachelor
        assert similarity[3] == 1.0  # same city and country
        assert similarity[4] == 1.0  # salary ranges overlap

    @pytest.mark.asyncio
    async def test_text_similarity_in_range(self, extractor, candidate, job):
        """Cosine and normalised distance are both in [0, 1]."""
        features = await extractor.extract_pair_features(candidate, job)
        cosine, distance = features.category("text_similarity")
        assert 0.0 <= cosine <= 1.0
        assert 0.0 <= distance <= 1.0

    @pytest.mark.asyncio
    async def test_embedding_timeout_falls_back_to_zeros(self, candidate, job):
        """A provider slower than the timeout yields [0, 0] without raising."""
        async def slow_embed(text):
            await asyncio.sleep(1)
            return [1.0, 0.0]

        provider = AsyncMock()
        provider.name = "slow"
        provider.embed = slow_embed
        extractor = FeatureExtractor(
            options=FeatureExtractionOptions(embedding_timeout=0.01),
            embedding_provider=provider,
            now=fixed_clock,
        )

        features = await extractor.extract_pair_features(candidate, job)

        assert features.category("text_similarity") == [0.0, 0.0]
        assert len(features) == extractor.pair_dimension

    @pytest.mark.asyncio
    async def test_embedding_failure_falls_back_to_zeros(self, candidate, job):
        """A provider error yields [0, 0] without raising."""
        provider = AsyncMock()
        provider.name = "broken"
        provider.embed = AsyncMock(side_effect=RuntimeError("API down"))
        extractor = FeatureExtractor(embedding_provider=provider, now=fixed_clock)

        features = await extractor.extract_pair_features(candidate, job)
        assert features.category("text_similarity") == [0.0, 0.0]

    @pytest.mark.asyncio
    async def test_embeddings_are_cached(self, candidate, job):
        """The provider is called once per distinct text."""
        provider = AsyncMock()
        provider.name = "counting"
        provider.embed = AsyncMock(return_value=[0.6, 0.8])
        extractor = FeatureExtractor(embedding_provider=provider, now=fixed_clock)

        await extractor.extract_pair_features(candidate, job)
        await extractor.extract_pair_features(candidate, job)

        assert provider.embed.await_count == 2
        assert len(extractor.cache) == 2

    @pytest.mark.asyncio
    async def test_empty_text_skips_provider(self):
        """Profiles without text never reach the provider."""
        provider = AsyncMock()
        provider.name = "counting"
        provider.embed = AsyncMock(return_value=[1.0])
        extractor = FeatureExtractor(embedding_provider=provider, now=fixed_clock)

        features = await extractor.extract_pair_features(CandidateProfile(id="c"), JobProfile(id="j"))

        provider.embed.assert_not_awaited()
        assert features.category("text_similarity") == [0.0, 0.0]

    def test_interaction_features(self):
        """Product, absolute difference and safe ratio."""
        result = FeatureExtractor.interaction_features([0.5, 1.0], [0.25, 0.0])
        assert result == [0.125, 0.0, 0.25, 1.0, 2.0, 0.0]

    @pytest.mark.asyncio
    async def test_normalization_rescales_pair(self, candidate, job):
        """With normalization on, the pair vector spans [0, 1]."""
        extractor = FeatureExtractor(
            options=FeatureExtractionOptions(use_vector_normalization=True),
            now=fixed_clock,
        )
        features = await extractor.extract_pair_features(candidate, job)
        assert min(features.vector) == 0.0
        assert max(features.vector) == 1.0


class TestHelpers:
    """Tests for similarity and mapping helpers."""

    def test_jaccard_bounds(self):
        """Jaccard is 0 for disjoint or empty sets and 1 for equal sets."""
        assert jaccard_similarity([], []) == 0.0
        assert jaccard_similarity(["a"], ["b"]) == 0.0
        assert jaccard_similarity(["a", "b"], ["b", "a"]) == 1.0
        assert jaccard_similarity(["a", "b"], ["b", "c"]) == pytest.approx(1 / 3)

    def test_cosine_edge_cases(self):
        """Mismatched lengths and zero vectors give 0."""
        assert cosine_similarity([1, 0], [1, 0, 0]) == 0.0
        assert cosine_similarity([0, 0], [1, 1]) == 0.0
        assert cosine_similarity([1, 1], [2, 2]) == pytest.approx(1.0)

    @pytest.mark.parametrize("years,level", [
        (0.0, "entry"),
        (0.94, "entry"),
        (0.96, "junior"),
        (3.0, "junior"),
        (3.04, "junior"),
        (4.0, "mid"),
        (8.0, "senior"),
        (12.0, "lead"),
        (15.0, "principal"),
        (20.0, "executive"),
    ])
    def test_experience_levels(self, years, level):
        """Years map to levels with inclusive upper bounds after rounding."""
        assert map_experience_level(years) == level

    def test_experience_alignment(self):
        """Within 0.8-1.5x is full, within 0.5-2x is partial."""
        assert experience_alignment(5, 0) == 1.0
        assert experience_alignment(4, 4) == 1.0
        assert experience_alignment(2.5, 4) == 0.7
        assert experience_alignment(0, 4) == 0.0

    def test_education_match(self):
        """A lower degree than required does not match."""
        assert education_match("master", ["Bachelor's degree"]) == 1.0
        assert education_match("bachelor", ["PhD in Physics"]) == 0.0
        assert education_match("none", []) == 1.0

    def test_location_compatibility(self):
        """Remote always matches; otherwise city and country decide."""
        london = Location(city="London", country="UK")
        leeds = Location(city="Leeds", country="UK")
        paris = Location(city="Paris", country="France")
        assert location_compatibility(None, None, "remote") == 1.0
        assert location_compatibility(london, london, "on-site") == 1.0
        assert location_compatibility(london, leeds, None) == 0.8
        assert location_compatibility(london, paris, None) == 0.3
        assert location_compatibility(None, paris, None) == 0.0

    def test_salary_alignment(self):
        """Overlap is full; disjoint ranges fall off with distance."""
        assert salary_alignment(SalaryRange(min=50, max=70), SalaryRange(min=60, max=80)) == 1.0
        assert salary_alignment(SalaryRange(min=10, max=20), SalaryRange(min=100, max=110)) == 0.0
        assert salary_alignment(None, SalaryRange(min=1, max=2)) == 0.0

    def test_min_max_normalize_idempotent(self):
        """Normalising twice equals normalising once."""
        once = min_max_normalize([2.0, 4.0, 6.0])
        assert once == [0.0, 0.5, 1.0]
        assert min_max_normalize(once) == once
        assert min_max_normalize([3.0, 3.0]) == [3.0, 3.0]


class TestEmbeddingCache:
    """Tests for the bounded embedding cache."""

    def test_oldest_first_eviction(self):
        """Inserting past capacity evicts the oldest key."""
        cache = EmbeddingCache(capacity=2)
        cache.set("a", [1.0])
        cache.set("b", [2.0])
        cache.set("c", [3.0])

        assert "a" not in cache
        assert cache.get("b") == [2.0]
        assert cache.get("c") == [3.0]
        assert cache.get_stats()["evictions"] == 1

    def test_values_are_copied(self):
        """Mutating a returned value does not change the cache."""
        cache = EmbeddingCache(capacity=2)
        cache.set("a", [1.0, 2.0])
        value = cache.get("a")
        value.append(3.0)
        assert cache.get("a") == [1.0, 2.0]

    def test_hit_rate(self):
        """Stats count hits and misses."""
        cache = EmbeddingCache(capacity=2)
        cache.get("missing")
        cache.set("a", [1.0])
        cache.get("a")
        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5

    def test_invalid_capacity(self):
        """Capacity must be positive."""
        with pytest.raises(ValueError):
            EmbeddingCache(capacity=0)

    def test_concurrent_writers_stay_bounded(self):
        """Parallel writers never push the cache past capacity."""
        from concurrent.futures import ThreadPoolExecutor

        cache = EmbeddingCache(capacity=50)
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda i: cache.set(f"key-{i}", [float(i)]), range(500)))

        assert len(cache) == 50
