"""
Feature Extraction Service - Profiles to Fixed-Width Numeric Vectors

Turns candidate and job profiles into feature vectors that the model
trainer (offline, batch) and the A/B framework (online, per request)
consume. Both paths call the same code, so vectors are comparable.

Profile Vector Layout (stable order, fixed widths):
    | Category    | Width | Contents                                        |
    |-------------|-------|-------------------------------------------------|
    | skills      | 19    | 16 common skills, count, diversity, avg level   |
    | experience  | 9     | years, 7-level one-hot, industry diversity      |
    | education   | 8     | 6-degree one-hot, record count, field relevance |
    | location    | 11    | 5 countries, remote, 4 location types, timezone |
    | salary      | 8     | min, max, width, 5 currencies                   |
    | preferences | 14    | employment type, work style, company size, growth|
    | metadata    | 5     | completion, age, verified, featured, activity   |

Pair Vector Layout:
    candidate ‖ job ‖ interaction (3 × profile width) ‖ similarity (5)
    ‖ text similarity (2, optional)

Every value is min-max clamped to [0, 1] against fixed bounds, so a single
profile can be scored without seeing a dataset. A failing category is
logged and zero-filled at its declared width; extraction never raises on
malformed profile content.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

import numpy as np

from talentml.config import Settings, get_settings
from talentml.exceptions import ConfigurationError
from talentml.middleware.metrics import record_embedding_failure, record_embedding_latency
from talentml.schemas.profile import CandidateProfile, JobProfile, ProfileType
from talentml.services.cache import EmbeddingCache
from talentml.services.embedding_providers import EmbeddingProvider, MockEmbeddingProvider, get_embedding_provider

logger = logging.getLogger(__name__)

Profile = Union[CandidateProfile, JobProfile]

DAYS_PER_YEAR = 365.25

COMMON_SKILLS = [
    "javascript", "python", "java", "react", "node.js", "sql", "aws",
    "leadership", "communication", "project management", "data analysis",
    "machine learning", "docker", "kubernetes", "typescript", "angular",
]

SKILL_CATEGORIES = ["frontend", "backend", "database", "cloud", "devops", "mobile", "ml", "other"]

SKILL_CATEGORY_MAP = {
    "javascript": "frontend", "react": "frontend", "angular": "frontend",
    "vue": "frontend", "typescript": "frontend", "html": "frontend", "css": "frontend",
    "python": "backend", "java": "backend", "node.js": "backend", "c#": "backend",
    "go": "backend", "ruby": "backend", "php": "backend",
    "sql": "database", "mongodb": "database", "postgresql": "database",
    "mysql": "database", "redis": "database",
    "aws": "cloud", "azure": "cloud", "gcp": "cloud", "docker": "cloud",
    "kubernetes": "devops", "jenkins": "devops", "git": "devops", "terraform": "devops",
    "ios": "mobile", "android": "mobile", "flutter": "mobile", "swift": "mobile",
    "machine learning": "ml", "tensorflow": "ml", "pytorch": "ml", "data analysis": "ml",
}

# (level, upper bound in years, inclusive)
EXPERIENCE_LEVELS = [
    ("entry", 1.0),
    ("junior", 3.0),
    ("mid", 5.0),
    ("senior", 8.0),
    ("lead", 12.0),
    ("principal", 15.0),
    ("executive", float("inf")),
]

DEGREE_LEVELS = ["none", "high-school", "associate", "bachelor", "master", "phd"]

# Checked highest tier first
DEGREE_PATTERNS = [
    ("phd", [r"\bph\.?\s?d\b", r"\bdoctor"]),
    ("master", [r"\bmaster", r"\bmba\b", r"\bm\.?sc?\b"]),
    ("bachelor", [r"\bbachelor", r"\bb\.?sc?\b", r"\bb\.?a\b", r"\bundergraduate"]),
    ("associate", [r"\bassociate"]),
    ("high-school", [r"\bhigh[\s-]school", r"\bged\b", r"\bsecondary"]),
]

COMMON_COUNTRIES = ["united states", "canada", "united kingdom", "germany", "france"]
LOCATION_TYPES = ["urban", "suburban", "rural", "unknown"]
CURRENCIES = ["USD", "EUR", "GBP", "CAD", "AUD"]
EMPLOYMENT_TYPES = ["full-time", "part-time", "contract", "internship"]
WORK_STYLES = ["remote", "hybrid", "on-site", "flexible"]
COMPANY_SIZES = ["startup", "small", "medium", "large", "enterprise"]

SALARY_CAP = 300_000
SALARY_WIDTH_CAP = 100_000

CATEGORY_WIDTHS: Dict[str, int] = {
    "skills": len(COMMON_SKILLS) + 3,
    "experience": 1 + len(EXPERIENCE_LEVELS) + 1,
    "education": len(DEGREE_LEVELS) + 2,
    "location": len(COMMON_COUNTRIES) + 1 + len(LOCATION_TYPES) + 1,
    "salary": 3 + len(CURRENCIES),
    "preferences": len(EMPLOYMENT_TYPES) + len(WORK_STYLES) + len(COMPANY_SIZES) + 1,
    "metadata": 5,
}

PROFILE_CATEGORIES = ["skills", "experience", "education", "location", "salary", "preferences"]

SIMILARITY_FEATURES = [
    "skills_jaccard",
    "experience_alignment",
    "education_match",
    "location_compatibility",
    "salary_alignment",
]
TEXT_SIMILARITY_FEATURES = ["text_cosine", "text_euclidean"]


# ==================== Helpers ====================

def normalize_value(value: float, minimum: float, maximum: float) -> float:
    """Min-max scale a value into [0, 1] against fixed bounds."""
    if maximum == minimum:
        return 0.0
    return float(max(0.0, min(1.0, (value - minimum) / (maximum - minimum))))


def min_max_normalize(features: Sequence[float]) -> List[float]:
    """
    Rescale a whole vector to [0, 1] using its own min and max.

    Stateless and idempotent: applying it twice gives the same result.
    A constant vector is returned unchanged.
    """
    values = np.asarray(features, dtype=np.float64)
    if values.size == 0:
        return []
    low, high = values.min(), values.max()
    if high == low:
        return values.tolist()
    return ((values - low) / (high - low)).tolist()


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """
    Cosine similarity between two vectors.

    Returns 0.0 if the lengths differ or either vector has zero magnitude.
    """
    if len(vec1) != len(vec2):
        return 0.0
    a = np.asarray(vec1, dtype=np.float64)
    b = np.asarray(vec2, dtype=np.float64)

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(a, b) / (norm_a * norm_b))


def euclidean_distance(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    if len(vec1) != len(vec2):
        return float("inf")
    a = np.asarray(vec1, dtype=np.float64)
    b = np.asarray(vec2, dtype=np.float64)
    return float(np.linalg.norm(a - b))


def jaccard_similarity(set1: Iterable[str], set2: Iterable[str]) -> float:
    """Jaccard index of two sets; 0.0 when both are empty."""
    a, b = set(set1), set(set2)
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clean(values: Iterable[Any]) -> List[str]:
    return [str(v).lower().strip() for v in values if v is not None and str(v).strip()]


def map_experience_level(years: float) -> str:
    """Map total years of experience to a level bucket."""
    rounded = round(years, 1)
    for level, upper in EXPERIENCE_LEVELS:
        if level == "entry":
            if rounded < upper:
                return level
        elif rounded <= upper:
            return level
    return "executive"


def detect_degree(texts: Iterable[str]) -> str:
    """Highest degree mentioned in any of the given strings."""
    joined = " ".join(_clean(texts))
    if not joined:
        return "none"
    for degree, patterns in DEGREE_PATTERNS:
        if any(re.search(pattern, joined) for pattern in patterns):
            return degree
    return "none"


def experience_alignment(candidate_years: float, job_years: float) -> float:
    if job_years <= 0:
        return 1.0
    ratio = candidate_years / job_years
    if 0.8 <= ratio <= 1.5:
        return 1.0
    if 0.5 <= ratio <= 2.0:
        return 0.7
    return max(0.0, 1.0 - abs(ratio - 1.0))


def education_match(candidate_degree: str, job_requirements: Iterable[str]) -> float:
    """1.0 unless the job asks for a degree tier above the candidate's."""
    if candidate_degree not in DEGREE_LEVELS:
        return 0.0
    candidate_index = DEGREE_LEVELS.index(candidate_degree)

    for requirement in job_requirements:
        required = detect_degree([requirement])
        if required in ("phd", "master", "bachelor") and candidate_index < DEGREE_LEVELS.index(required):
            return 0.0
    return 1.0


def location_compatibility(candidate_location, job_location, remote_policy: Optional[str]) -> float:
    if (remote_policy or "").lower() == "remote":
        return 1.0
    if candidate_location is None or job_location is None:
        return 0.0

    same_country = (
        (candidate_location.country or "").lower().strip()
        == (job_location.country or "").lower().strip()
    )
    same_city = (
        (candidate_location.city or "").lower().strip()
        == (job_location.city or "").lower().strip()
    )

    if same_country and same_city:
        return 1.0
    if same_country:
        return 0.8
    return 0.3


def salary_alignment(candidate_salary, job_salary) -> float:
    """1.0 when ranges overlap, otherwise falls off with centre distance."""
    if candidate_salary is None or job_salary is None:
        return 0.0

    candidate_min = candidate_salary.min or 0.0
    candidate_max = candidate_salary.max or candidate_min
    job_min = job_salary.min or 0.0
    job_max = job_salary.max or job_min

    if candidate_max >= job_min and candidate_min <= job_max:
        return 1.0

    centre_distance = abs((candidate_min + candidate_max) / 2 - (job_min + job_max) / 2)
    average_width = ((candidate_max - candidate_min) + (job_max - job_min)) / 2
    if average_width <= 0:
        return 0.0
    return max(0.0, 1.0 - centre_distance / average_width)


# ==================== Types ====================

@dataclass
class FeatureExtractionOptions:
    """Knobs that change the shape or content of extracted vectors."""
    use_text_embeddings: bool = True
    include_metadata_features: bool = True
    use_vector_normalization: bool = False
    max_text_length: int = 5000
    embedding_cache_size: int = 1000
    embedding_cache_key_length: int = 100
    embedding_timeout: float = 2.0

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "FeatureExtractionOptions":
        settings = settings or get_settings()
        return cls(
            use_text_embeddings=settings.use_text_embeddings,
            include_metadata_features=settings.include_metadata_features,
            use_vector_normalization=settings.use_vector_normalization,
            max_text_length=settings.max_text_length,
            embedding_cache_size=settings.embedding_cache_size,
            embedding_cache_key_length=settings.embedding_cache_key_length,
            embedding_timeout=settings.embedding_timeout_seconds,
        )


@dataclass
class FeatureVector:
    """
    Numeric encoding of a profile or a candidate/job pair.

    Attributes:
        vector: Feature values
        metadata: feature_count, processing_time_ms, categories (widths)
            and offsets (start index per category)
    """
    vector: List[float]
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.vector)

    def category(self, name: str) -> List[float]:
        """Slice of the vector that belongs to one category."""
        offset = self.metadata["offsets"][name]
        width = self.metadata["categories"][name]
        return self.vector[offset:offset + width]


def _layout(widths: Dict[str, int]) -> Dict[str, int]:
    offsets, position = {}, 0
    for name, width in widths.items():
        offsets[name] = position
        position += width
    return offsets


# ==================== Extractor ====================

class FeatureExtractor:
    """
    Converts profiles and profile pairs into fixed-width feature vectors.

    Profile extraction is a pure function of the profile and the clock.
    Pair extraction additionally consults the embedding provider through a
    bounded cache; a slow or failing provider degrades the text-similarity
    block to zeros instead of failing the request.

    Example:
        >>> extractor = FeatureExtractor()
        >>> fv = extractor.extract_profile_features(candidate, "candidate")
        >>> pair = await extractor.extract_pair_features(candidate, job)
    """

    def __init__(
        self,
        options: Optional[FeatureExtractionOptions] = None,
        embedding_provider: Optional[EmbeddingProvider] = None,
        cache: Optional[EmbeddingCache] = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.options = options or FeatureExtractionOptions.from_settings()
        self.embedding_provider = embedding_provider or MockEmbeddingProvider()
        self.cache = cache or EmbeddingCache(capacity=self.options.embedding_cache_size)
        self._now = now

    # ---------- Layout ----------

    def profile_widths(self) -> Dict[str, int]:
        widths = {name: CATEGORY_WIDTHS[name] for name in PROFILE_CATEGORIES}
        if self.options.include_metadata_features:
            widths["metadata"] = CATEGORY_WIDTHS["metadata"]
        return widths

    @property
    def profile_dimension(self) -> int:
        return sum(self.profile_widths().values())

    def pair_widths(self) -> Dict[str, int]:
        size = self.profile_dimension
        widths = {
            "candidate": size,
            "job": size,
            "interaction": 3 * size,
            "similarity": len(SIMILARITY_FEATURES),
        }
        if self.options.use_text_embeddings:
            widths["text_similarity"] = len(TEXT_SIMILARITY_FEATURES)
        return widths

    @property
    def pair_dimension(self) -> int:
        return sum(self.pair_widths().values())

    def profile_feature_names(self) -> List[str]:
        names = [f"skills.{skill}" for skill in COMMON_SKILLS]
        names += ["skills.count", "skills.diversity", "skills.average_level"]
        names += ["experience.years"]
        names += [f"experience.level.{level}" for level, _ in EXPERIENCE_LEVELS]
        names += ["experience.industry_diversity"]
        names += [f"education.degree.{degree}" for degree in DEGREE_LEVELS]
        names += ["education.count", "education.field_relevance"]
        names += [f"location.country.{country}" for country in COMMON_COUNTRIES]
        names += ["location.remote"]
        names += [f"location.type.{kind}" for kind in LOCATION_TYPES]
        names += ["location.timezone"]
        names += ["salary.min", "salary.max", "salary.width"]
        names += [f"salary.currency.{currency}" for currency in CURRENCIES]
        names += [f"preferences.employment.{kind}" for kind in EMPLOYMENT_TYPES]
        names += [f"preferences.work_style.{style}" for style in WORK_STYLES]
        names += [f"preferences.company_size.{size}" for size in COMPANY_SIZES]
        names += ["preferences.growth"]
        if self.options.include_metadata_features:
            names += [
                "metadata.completion", "metadata.age", "metadata.verified",
                "metadata.featured", "metadata.activity",
            ]
        return names

    def pair_feature_names(self) -> List[str]:
        profile_names = self.profile_feature_names()
        names = [f"candidate.{n}" for n in profile_names]
        names += [f"job.{n}" for n in profile_names]
        for op in ("product", "abs_diff", "ratio"):
            names += [f"interaction.{op}.{n}" for n in profile_names]
        names += [f"similarity.{n}" for n in SIMILARITY_FEATURES]
        if self.options.use_text_embeddings:
            names += [f"text_similarity.{n}" for n in TEXT_SIMILARITY_FEATURES]
        return names

    # ---------- Public entry points ----------

    def extract_profile_features(
        self,
        profile: Profile,
        profile_type: Union[ProfileType, str],
    ) -> FeatureVector:
        """
        Extract the feature vector of one candidate or job profile.

        Args:
            profile: Candidate or job record
            profile_type: "candidate" or "job"

        Returns:
            FeatureVector of length profile_dimension

        Raises:
            ConfigurationError: If profile_type is not candidate/job
        """
        profile_type = self._profile_type(profile_type)
        start = time.perf_counter()

        builders = {
            "skills": self._skills_features,
            "experience": self._experience_features,
            "education": self._education_features,
            "location": self._location_features,
            "salary": self._salary_features,
            "preferences": self._preference_features,
            "metadata": self._metadata_features,
        }

        widths = self.profile_widths()
        features: List[float] = []
        for category in widths:
            features.extend(self._safe_block(category, builders[category], profile, profile_type))

        if self.options.use_vector_normalization:
            features = min_max_normalize(features)

        processing_time = (time.perf_counter() - start) * 1000
        logger.debug(
            f"Profile features extracted: {profile_type.value} "
            f"{getattr(profile, 'id', None)} ({len(features)} features)"
        )

        return FeatureVector(
            vector=features,
            metadata={
                "profile_type": profile_type.value,
                "feature_count": len(features),
                "processing_time_ms": processing_time,
                "categories": widths,
                "offsets": _layout(widths),
            },
        )

    async def extract_pair_features(
        self,
        candidate: CandidateProfile,
        job: JobProfile,
    ) -> FeatureVector:
        """
        Extract the feature vector of a candidate/job pair.

        Layout: candidate ‖ job ‖ interaction ‖ similarity ‖ [text similarity].
        """
        start = time.perf_counter()

        candidate_fv = self.extract_profile_features(candidate, ProfileType.CANDIDATE)
        job_fv = self.extract_profile_features(job, ProfileType.JOB)

        interaction = self.interaction_features(candidate_fv.vector, job_fv.vector)
        similarity = self._similarity_features(candidate, job)

        features: List[float] = []
        features.extend(candidate_fv.vector)
        features.extend(job_fv.vector)
        features.extend(interaction)
        features.extend(similarity)

        if self.options.use_text_embeddings:
            features.extend(await self._text_similarity_features(candidate, job))

        if self.options.use_vector_normalization:
            features = min_max_normalize(features)

        widths = self.pair_widths()
        processing_time = (time.perf_counter() - start) * 1000
        logger.debug(
            f"Pair features extracted: candidate {getattr(candidate, 'id', None)} / "
            f"job {getattr(job, 'id', None)} ({len(features)} features)"
        )

        return FeatureVector(
            vector=features,
            metadata={
                "profile_type": "pair",
                "feature_count": len(features),
                "processing_time_ms": processing_time,
                "categories": widths,
                "offsets": _layout(widths),
            },
        )

    # ---------- Category builders ----------

    def _safe_block(self, category: str, builder, profile: Profile, profile_type: ProfileType) -> List[float]:
        width = CATEGORY_WIDTHS[category]
        try:
            block = builder(profile, profile_type)
            if len(block) != width:
                raise ValueError(f"expected {width} values, got {len(block)}")
            return [float(v) for v in block]
        except Exception as e:
            logger.warning(
                f"{category} feature extraction failed for {profile_type.value} "
                f"{getattr(profile, 'id', None)}: {e}"
            )
            return [0.0] * width

    def _skill_names(self, profile: Profile, profile_type: ProfileType) -> List[str]:
        if profile_type == ProfileType.CANDIDATE:
            raw = getattr(profile, "skills", None) or []
            return _clean(getattr(s, "name", s) for s in raw)
        return _clean(getattr(profile, "required_skills", None) or [])

    def _skills_features(self, profile: Profile, profile_type: ProfileType) -> List[float]:
        skills = self._skill_names(profile, profile_type)
        present = set(skills)

        features = [1.0 if skill in present else 0.0 for skill in COMMON_SKILLS]
        features.append(normalize_value(len(present), 0, 50))

        categories = {SKILL_CATEGORY_MAP.get(skill, "other") for skill in present}
        features.append(normalize_value(len(categories), 0, len(SKILL_CATEGORIES)))

        average_level = 0.0
        if profile_type == ProfileType.CANDIDATE:
            levels = [
                float(s.level) for s in (profile.skills or [])
                if getattr(s, "level", None) is not None
            ]
            if levels:
                average_level = normalize_value(sum(levels) / len(levels), 0, 5)
        features.append(average_level)

        return features

    def total_experience_years(self, profile: Profile, profile_type: ProfileType) -> float:
        if profile_type == ProfileType.JOB:
            return float(getattr(profile, "experience_required", None) or 0.0)

        now = _as_utc(self._now())
        total_days = 0.0
        for role in getattr(profile, "experience", None) or []:
            if role.start_date is None:
                continue
            start = _as_utc(role.start_date)
            end = _as_utc(role.end_date) if role.end_date else now
            total_days += max(0.0, (end - start).total_seconds() / 86400)
        return total_days / DAYS_PER_YEAR

    def _experience_features(self, profile: Profile, profile_type: ProfileType) -> List[float]:
        years = self.total_experience_years(profile, profile_type)
        level = map_experience_level(years)

        industries = set()
        if profile_type == ProfileType.CANDIDATE:
            industries = set(_clean(role.industry for role in profile.experience or []))

        features = [normalize_value(years, 0, 30)]
        features += [1.0 if level == name else 0.0 for name, _ in EXPERIENCE_LEVELS]
        features.append(normalize_value(len(industries), 0, 10))
        return features

    def highest_degree(self, profile: Profile, profile_type: ProfileType) -> str:
        if profile_type == ProfileType.CANDIDATE:
            return detect_degree(record.degree for record in profile.education or [])
        return detect_degree(profile.education_requirements or [])

    def _education_features(self, profile: Profile, profile_type: ProfileType) -> List[float]:
        degree = self.highest_degree(profile, profile_type)

        if profile_type == ProfileType.CANDIDATE:
            records = profile.education or []
            fields = set(_clean(record.field for record in records))
        else:
            records = profile.education_requirements or []
            fields = set(_clean(records))

        features = [1.0 if degree == level else 0.0 for level in DEGREE_LEVELS]
        features.append(normalize_value(len(records), 0, 5))
        features.append(normalize_value(len(fields), 0, 3))
        return features

    def _location_features(self, profile: Profile, profile_type: ProfileType) -> List[float]:
        location = getattr(profile, "location", None)
        if location is None:
            return [0.0] * CATEGORY_WIDTHS["location"]

        if profile_type == ProfileType.CANDIDATE:
            preferences = getattr(profile, "preferences", None)
            remote = bool(preferences and preferences.remote_work)
        else:
            remote = (profile.remote_work_policy or "").lower() == "remote"

        country = (location.country or "").lower()
        features = [1.0 if name in country else 0.0 for name in COMMON_COUNTRIES]
        features.append(1.0 if remote else 0.0)

        location_type = (location.type or "unknown").lower()
        if location_type not in LOCATION_TYPES:
            location_type = "unknown"
        features += [1.0 if location_type == kind else 0.0 for kind in LOCATION_TYPES]

        features.append(normalize_value(location.timezone_offset or 0.0, -12, 12))
        return features

    def _salary_features(self, profile: Profile, profile_type: ProfileType) -> List[float]:
        if profile_type == ProfileType.CANDIDATE:
            salary = getattr(profile, "salary_expectation", None)
        else:
            salary = getattr(profile, "salary_range", None)

        salary_min = float(salary.min or 0.0) if salary else 0.0
        salary_max = float(salary.max or 0.0) if salary else 0.0
        currency = (salary.currency or "USD").upper() if salary else "USD"

        features = [
            normalize_value(salary_min, 0, SALARY_CAP),
            normalize_value(salary_max, 0, SALARY_CAP),
            normalize_value(salary_max - salary_min, 0, SALARY_WIDTH_CAP),
        ]
        features += [1.0 if currency == code else 0.0 for code in CURRENCIES]
        return features

    def _preference_features(self, profile: Profile, profile_type: ProfileType) -> List[float]:
        preferences = getattr(profile, "preferences", None)
        if preferences is None:
            return [0.0] * CATEGORY_WIDTHS["preferences"]

        employment = set(_clean(preferences.employment_types or []))
        work_style = (preferences.work_style or "").lower()
        company_size = (preferences.company_size or "").lower()

        features = [1.0 if kind in employment else 0.0 for kind in EMPLOYMENT_TYPES]
        features += [1.0 if style in work_style else 0.0 for style in WORK_STYLES]
        features += [1.0 if size in company_size else 0.0 for size in COMPANY_SIZES]
        features.append(1.0 if preferences.growth_opportunities else 0.0)
        return features

    def _days_since_update(self, profile: Profile) -> float:
        reference = getattr(profile, "last_updated", None) or getattr(profile, "created_at", None)
        if reference is None:
            return 0.0
        delta = _as_utc(self._now()) - _as_utc(reference)
        return max(0.0, delta.total_seconds() / 86400)

    @staticmethod
    def activity_level(days_since_update: float) -> float:
        if days_since_update < 7:
            return 1.0
        if days_since_update < 30:
            return 0.7
        if days_since_update < 90:
            return 0.4
        return 0.1

    def _metadata_features(self, profile: Profile, profile_type: ProfileType) -> List[float]:
        days = self._days_since_update(profile)
        return [
            normalize_value(profile.completion_score or 0.0, 0, 100),
            normalize_value(days, 0, 365),
            1.0 if profile.verified else 0.0,
            1.0 if profile.featured else 0.0,
            self.activity_level(days),
        ]

    # ---------- Pair blocks ----------

    @staticmethod
    def interaction_features(candidate: Sequence[float], job: Sequence[float]) -> List[float]:
        """Elementwise product, absolute difference and ratio over the shorter length."""
        size = min(len(candidate), len(job))
        c = np.asarray(candidate[:size], dtype=np.float64)
        j = np.asarray(job[:size], dtype=np.float64)

        product = c * j
        difference = np.abs(c - j)
        ratio = np.divide(c, j, out=np.zeros_like(c), where=j != 0)

        return np.concatenate([product, difference, ratio]).tolist()

    def _similarity_features(self, candidate: CandidateProfile, job: JobProfile) -> List[float]:
        width = len(SIMILARITY_FEATURES)
        try:
            skills = jaccard_similarity(
                self._skill_names(candidate, ProfileType.CANDIDATE),
                self._skill_names(job, ProfileType.JOB),
            )
            experience = experience_alignment(
                self.total_experience_years(candidate, ProfileType.CANDIDATE),
                self.total_experience_years(job, ProfileType.JOB),
            )
            education = education_match(
                self.highest_degree(candidate, ProfileType.CANDIDATE),
                job.education_requirements or [],
            )
            location = location_compatibility(
                candidate.location, job.location, job.remote_work_policy
            )
            salary = salary_alignment(candidate.salary_expectation, job.salary_range)
            return [skills, experience, education, location, salary]
        except Exception as e:
            logger.warning(
                f"Similarity feature calculation failed for candidate "
                f"{getattr(candidate, 'id', None)} / job {getattr(job, 'id', None)}: {e}"
            )
            return [0.0] * width

    def text_for_embedding(self, profile: Profile) -> str:
        parts = [
            getattr(profile, "title", "") or "",
            getattr(profile, "summary", "") or "",
            getattr(profile, "description", "") or "",
        ]
        text = " ".join(p.strip() for p in parts if p and p.strip())
        return text[:self.options.max_text_length]

    async def get_embedding(self, text: str) -> Optional[List[float]]:
        """
        Embedding for text via the bounded cache.

        Returns None for empty text or when the provider times out or fails.
        """
        if not text.strip():
            return None

        key = text[:self.options.embedding_cache_key_length]
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        provider_name = getattr(self.embedding_provider, "name", "unknown")
        start = time.perf_counter()
        try:
            embedding = await asyncio.wait_for(
                self.embedding_provider.embed(text),
                timeout=self.options.embedding_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Embedding provider {provider_name} timed out after "
                f"{self.options.embedding_timeout}s"
            )
            record_embedding_failure(provider_name)
            return None
        except Exception as e:
            logger.warning(f"Embedding provider {provider_name} failed: {e}")
            record_embedding_failure(provider_name)
            return None

        record_embedding_latency(provider_name, time.perf_counter() - start)
        self.cache.set(key, embedding)
        return list(embedding)

    async def _text_similarity_features(self, candidate: CandidateProfile, job: JobProfile) -> List[float]:
        try:
            candidate_embedding = await self.get_embedding(self.text_for_embedding(candidate))
            job_embedding = await self.get_embedding(self.text_for_embedding(job))
        except Exception as e:
            logger.warning(f"Text similarity calculation failed: {e}")
            return [0.0, 0.0]

        if candidate_embedding is None or job_embedding is None:
            return [0.0, 0.0]

        cosine = max(0.0, min(1.0, cosine_similarity(candidate_embedding, job_embedding)))
        distance = euclidean_distance(candidate_embedding, job_embedding)
        return [cosine, normalize_value(distance, 0, 2)]

    @staticmethod
    def _profile_type(profile_type: Union[ProfileType, str]) -> ProfileType:
        try:
            return ProfileType(profile_type)
        except ValueError:
            raise ConfigurationError(
                f"Unknown profile type: {profile_type!r} (expected candidate or job)"
            ) from None


_default_extractor: Optional[FeatureExtractor] = None


def get_feature_extractor() -> FeatureExtractor:
    """Process-wide extractor built from settings."""
    global _default_extractor

    if _default_extractor is None:
        settings = get_settings()
        provider = get_embedding_provider(
            settings.embedding_provider,
            api_key=settings.openai_api_key,
            model_name=(
                settings.openai_embedding_model
                if settings.embedding_provider == "openai"
                else settings.local_embedding_model
                if settings.embedding_provider == "local"
                else None
            ),
            dimensions=settings.embedding_dimensions,
            timeout=settings.embedding_timeout_seconds,
        )
        _default_extractor = FeatureExtractor(
            options=FeatureExtractionOptions.from_settings(settings),
            embedding_provider=provider,
        )

    return _default_extractor
