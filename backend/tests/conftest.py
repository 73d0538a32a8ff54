"""
Shared fixtures: sample profiles, a fixed clock and small separable datasets.
"""

from datetime import datetime, timezone

import numpy as np
import pytest

from talentml.schemas.ml import DataSplit, TrainingData
from talentml.schemas.profile import (
    CandidateProfile,
    Education,
    Experience,
    JobProfile,
    Location,
    Preferences,
    SalaryRange,
    Skill,
)
from talentml.services.feature_extractor import FeatureExtractionOptions, FeatureExtractor
from talentml.services.embedding_providers import MockEmbeddingProvider

FIXED_NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return FIXED_NOW


@pytest.fixture
def extractor():
    return FeatureExtractor(
        options=FeatureExtractionOptions(),
        embedding_provider=MockEmbeddingProvider(dimensions=16),
        now=fixed_clock,
    )


@pytest.fixture
def candidate():
    return CandidateProfile(
        id="cand-1",
        user_id="user-1",
        title="Backend Engineer",
        summary="Python developer building data services",
        skills=[Skill(name="Python", level=4), Skill(name="SQL", level=3), Skill(name="Docker")],
        experience=[
            Experience(
                title="Engineer",
                company="Acme",
                industry="Software",
                start_date=datetime(2020, 1, 1, tzinfo=timezone.utc),
                end_date=datetime(2023, 1, 1, tzinfo=timezone.utc),
            )
        ],
        education=[Education(degree="Bachelor of Science", field="Computer Science")],
        location=Location(city="London", country="United Kingdom", type="urban", timezone_offset=0),
        salary_expectation=SalaryRange(min=60000, max=80000, currency="GBP"),
        preferences=Preferences(employment_types=["full-time"], work_style="hybrid", remote_work=True),
        completion_score=80,
        verified=True,
        last_updated=datetime(2023, 12, 30, tzinfo=timezone.utc),
    )


@pytest.fixture
def job():
    return JobProfile(
        id="job-1",
        title="Senior Python Engineer",
        description="Build Python APIs on AWS",
        required_skills=["Python", "AWS", "SQL"],
        experience_required=3,
        education_requirements=["Bachelor's degree in Computer Science"],
        location=Location(city="London", country="United Kingdom", type="urban"),
        remote_work_policy="hybrid",
        salary_range=SalaryRange(min=70000, max=90000, currency="GBP"),
    )


def make_split(n: int, width: int = 2, seed: int = 0) -> DataSplit:
    """Linearly separable data: label is 1 when the first feature is above 0.5."""
    rng = np.random.default_rng(seed)
    features = rng.uniform(0.0, 1.0, size=(n, width))
    # Push points away from the boundary
    features[:, 0] = np.where(features[:, 0] > 0.5, features[:, 0] * 0.5 + 0.5, features[:, 0] * 0.5)
    labels = (features[:, 0] > 0.5).astype(float)
    return DataSplit(features=features.tolist(), labels=labels.tolist())


@pytest.fixture
def separable_data():
    return TrainingData(
        train=make_split(80, seed=1),
        validation=make_split(30, seed=2),
        test=make_split(30, seed=3),
    )
