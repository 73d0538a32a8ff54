"""
A/B Testing Framework - Online Comparison of Two Match-Scoring Models

Routes scoring requests between a control and a treatment model, records
outcome events and decides when one model is statistically better.

Test lifecycle:
    created → running → stopped     (one way; a stopped test never restarts)

Traffic assignment:
    First prediction for a user draws Bernoulli(traffic_split): treatment on
    success, control otherwise. The assignment is sticky for the life of the
    test and is made under a lock, so concurrent first requests from the
    same user cannot land in two groups.

Evaluation (after every conversion and on a fixed interval):
    1. Below min_sample_size participants: no-op
    2. Running longer than max_test_duration_days: stop ("maximum duration reached")
    3. Significant, winner confidence above winner_selection_threshold and
       auto winner selection enabled: stop with the winner as reason
"""

import logging
import random
import threading
import time
import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from talentml.config import Settings, get_settings
from talentml.exceptions import (
    ConfigurationError,
    InvalidTestStateError,
    NoActiveTestError,
    RegistryError,
    TestNotFoundError,
)
from talentml.middleware.metrics import record_ab_assignment, record_ab_conversion
from talentml.schemas.ml import MLModel, PredictionResult
from talentml.schemas.profile import CandidateProfile, JobProfile
from talentml.services.feature_extractor import FeatureExtractor, get_feature_extractor
from talentml.services.metrics_collector import MetricsCollector, get_metrics_collector
from talentml.services.registry import ModelRegistry, get_registry, persist_with_retry
from talentml.services.scoring import ModelScorer
from talentml.services.statistics import SignificanceResult, calculate_statistical_significance

logger = logging.getLogger(__name__)

CONTROL = "control"
TREATMENT = "treatment"

CONVERSION_TYPES = ("positive", "negative", "neutral")

STATUS_CREATED = "created"
STATUS_RUNNING = "running"
STATUS_STOPPED = "stopped"

MAX_DURATION_REASON = "maximum duration reached"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class ABTestingOptions:
    enabled: bool = True
    traffic_split: float = 0.1
    min_sample_size: int = 1000
    confidence_level: float = 0.95
    max_test_duration_days: float = 30
    enable_auto_winner_selection: bool = True
    winner_selection_threshold: float = 0.8

    def validate(self) -> "ABTestingOptions":
        """
        Raises:
            ConfigurationError: If any value is out of range
        """
        if not 0.0 <= self.traffic_split <= 1.0:
            raise ConfigurationError(f"traffic_split must be in [0, 1], got {self.traffic_split}")
        if not 0.0 < self.confidence_level < 1.0:
            raise ConfigurationError(f"confidence_level must be in (0, 1), got {self.confidence_level}")
        if not 0.0 <= self.winner_selection_threshold <= 1.0:
            raise ConfigurationError(
                f"winner_selection_threshold must be in [0, 1], got {self.winner_selection_threshold}"
            )
        if self.min_sample_size < 0:
            raise ConfigurationError(f"min_sample_size must be non-negative, got {self.min_sample_size}")
        if self.max_test_duration_days <= 0:
            raise ConfigurationError(
                f"max_test_duration_days must be positive, got {self.max_test_duration_days}"
            )
        return self

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ABTestingOptions":
        settings = settings or get_settings()
        return cls(
            enabled=settings.ab_enabled,
            traffic_split=settings.ab_traffic_split,
            min_sample_size=settings.ab_min_sample_size,
            confidence_level=settings.ab_confidence_level,
            max_test_duration_days=settings.ab_max_test_duration_days,
            enable_auto_winner_selection=settings.ab_enable_auto_winner_selection,
            winner_selection_threshold=settings.ab_winner_selection_threshold,
        )

    def with_overrides(self, **overrides: Any) -> "ABTestingOptions":
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ConfigurationError(f"Unknown A/B test options: {', '.join(unknown)}")
        return replace(self, **overrides).validate()

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class Participant:
    user_id: str
    group_id: str  # control, treatment
    assigned_at: datetime
    model_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "group_id": self.group_id,
            "assigned_at": self.assigned_at.isoformat(),
            "model_id": self.model_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Participant":
        return cls(
            user_id=data["user_id"],
            group_id=data["group_id"],
            assigned_at=datetime.fromisoformat(data["assigned_at"]),
            model_id=data["model_id"],
        )


@dataclass
class GroupMetrics:
    participants: int = 0
    conversions: int = 0  # distinct participants with a positive event
    events: int = 0
    average_score: float = 0.0
    average_confidence: float = 0.0
    user_satisfaction: float = 0.0  # positive events / all events

    @property
    def conversion_rate(self) -> float:
        return self.conversions / self.participants if self.participants else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "participants": self.participants,
            "conversions": self.conversions,
            "events": self.events,
            "conversion_rate": self.conversion_rate,
            "average_score": self.average_score,
            "average_confidence": self.average_confidence,
            "user_satisfaction": self.user_satisfaction,
        }


@dataclass
class ABTest:
    id: str
    name: str
    description: str
    control_model: MLModel
    treatment_model: MLModel
    config: ABTestingOptions
    status: str = STATUS_CREATED
    created_at: datetime = field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    participants: Dict[str, Participant] = field(default_factory=dict)
    conversions: List[Dict[str, Any]] = field(default_factory=list)
    stop_reason: Optional[str] = None
    last_evaluation: Optional[Dict[str, Any]] = None

    def model_for(self, group_id: str) -> MLModel:
        return self.treatment_model if group_id == TREATMENT else self.control_model

    def to_dict(self) -> Dict[str, Any]:
        """Test record without participants and conversions, which are stored separately."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "control_model": self.control_model.to_dict(),
            "treatment_model": self.treatment_model.to_dict(),
            "config": self.config.to_dict(),
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "started_at": _isoformat(self.started_at),
            "ended_at": _isoformat(self.ended_at),
            "stop_reason": self.stop_reason,
            "last_evaluation": self.last_evaluation,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ABTest":
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description", ""),
            control_model=MLModel.from_dict(data["control_model"]),
            treatment_model=MLModel.from_dict(data["treatment_model"]),
            config=ABTestingOptions(**data["config"]),
            status=data["status"],
            created_at=datetime.fromisoformat(data["created_at"]),
            started_at=_parse_datetime(data.get("started_at")),
            ended_at=_parse_datetime(data.get("ended_at")),
            stop_reason=data.get("stop_reason"),
            last_evaluation=data.get("last_evaluation"),
        )


@dataclass
class ABTestResult:
    test_id: str
    test_name: str
    status: str
    control_model_id: str
    treatment_model_id: str
    control: GroupMetrics
    treatment: GroupMetrics
    significance: SignificanceResult
    recommendation: str
    created_at: datetime
    started_at: Optional[datetime]
    ended_at: Optional[datetime]
    duration_seconds: float
    stop_reason: Optional[str] = None

    @property
    def participants(self) -> int:
        return self.control.participants + self.treatment.participants

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_id": self.test_id,
            "test_name": self.test_name,
            "status": self.status,
            "control_model_id": self.control_model_id,
            "treatment_model_id": self.treatment_model_id,
            "participants": self.participants,
            "control": self.control.to_dict(),
            "treatment": self.treatment.to_dict(),
            "significance": self.significance.to_dict(),
            "recommendation": self.recommendation,
            "created_at": self.created_at.isoformat(),
            "started_at": _isoformat(self.started_at),
            "ended_at": _isoformat(self.ended_at),
            "duration_seconds": self.duration_seconds,
            "stop_reason": self.stop_reason,
        }


def generate_recommendation(significance: SignificanceResult) -> str:
    if not significance.is_significant:
        return "Continue test - no statistical significance yet"

    winner = significance.recommended_winner
    if winner == "inconclusive":
        return "Results inconclusive - consider running test longer"

    confidence = significance.winner_confidence * 100
    if significance.winner_confidence > 0.9:
        return f"Strong recommendation: Deploy {winner} model ({confidence:.1f}% confidence)"
    return f"Moderate recommendation: Consider {winner} model ({confidence:.1f}% confidence)"


class ABTestingFramework:
    """
    Manages A/B tests between pairs of trained models.

    Example:
        >>> framework = ABTestingFramework(FeatureExtractor())
        >>> test_id = await framework.create_test("ranker-v2", control, treatment, traffic_split=0.5)
        >>> await framework.start_test(test_id)
        >>> prediction = await framework.predict(candidate, job)
        >>> await framework.record_conversion(candidate.user_id, prediction, "positive")
    """

    def __init__(
        self,
        feature_extractor: Optional[FeatureExtractor] = None,
        scorer: Optional[ModelScorer] = None,
        registry: Optional[ModelRegistry] = None,
        options: Optional[ABTestingOptions] = None,
        rng: Optional[random.Random] = None,
        metrics_collector: Optional[MetricsCollector] = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.feature_extractor = feature_extractor or FeatureExtractor()
        self.scorer = scorer or ModelScorer()
        self.registry = registry
        self.options = (options or ABTestingOptions.from_settings()).validate()
        self.metrics_collector = metrics_collector
        self._rng = rng or random.Random()
        self._now = now
        self._tests: Dict[str, ABTest] = {}
        self._lock = threading.Lock()

    # ---------- Lookup ----------

    def get_test(self, test_id: str) -> ABTest:
        test = self._tests.get(test_id)
        if test is None:
            raise TestNotFoundError(test_id)
        return test

    def list_tests(self) -> List[ABTest]:
        return sorted(self._tests.values(), key=lambda t: t.created_at)

    def get_active_tests(self) -> List[ABTest]:
        return [t for t in self.list_tests() if t.status == STATUS_RUNNING]

    # ---------- Lifecycle ----------

    async def create_test(
        self,
        name: str,
        control_model: MLModel,
        treatment_model: MLModel,
        description: str = "",
        **overrides: Any,
    ) -> str:
        """
        Register a new test in the created state.

        Args:
            name: Human-readable test name
            control_model: Model currently serving
            treatment_model: Candidate model
            description: Free text
            **overrides: Any ABTestingOptions field (traffic_split, ...)

        Returns:
            The new test id

        Raises:
            ConfigurationError: Out-of-range options or identical models
        """
        config = self.options.with_overrides(**overrides)
        if control_model.id == treatment_model.id:
            raise ConfigurationError("Control and treatment must be different models")

        test_id = f"ab_test_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
        test = ABTest(
            id=test_id,
            name=name,
            description=description,
            control_model=control_model,
            treatment_model=treatment_model,
            config=config,
            created_at=self._now(),
        )

        with self._lock:
            self._tests[test_id] = test

        await self._persist_test(test)
        logger.info(
            f"A/B test created: {test_id} '{name}' "
            f"(control {control_model.id}, treatment {treatment_model.id}, split {config.traffic_split})"
        )
        return test_id

    async def start_test(self, test_id: str) -> ABTest:
        """
        Raises:
            TestNotFoundError: Unknown test
            InvalidTestStateError: Test is not in the created state
        """
        with self._lock:
            test = self.get_test(test_id)
            if test.status != STATUS_CREATED:
                raise InvalidTestStateError(f"Test cannot be started. Current status: {test.status}")
            test.status = STATUS_RUNNING
            test.started_at = self._now()

        await self._persist_test(test)
        logger.info(f"A/B test started: {test_id} '{test.name}' (split {test.config.traffic_split})")
        return test

    async def stop_test(self, test_id: str, reason: Optional[str] = None) -> ABTest:
        """
        Raises:
            TestNotFoundError: Unknown test
            InvalidTestStateError: Test is not running
        """
        test = self.get_test(test_id)
        if not self._mark_stopped(test, reason):
            raise InvalidTestStateError(f"Test cannot be stopped. Current status: {test.status}")
        await self._finish_stop(test)
        return test

    def _mark_stopped(self, test: ABTest, reason: Optional[str]) -> bool:
        with self._lock:
            if test.status != STATUS_RUNNING:
                return False
            test.status = STATUS_STOPPED
            test.ended_at = self._now()
            test.stop_reason = reason
            return True

    async def _finish_stop(self, test: ABTest) -> None:
        significance = self._significance(test)
        test.last_evaluation = significance.to_dict()
        await self._persist_test(test)

        duration = (test.ended_at - test.started_at).total_seconds() if test.started_at else 0.0
        logger.info(
            f"A/B test stopped: {test.id} '{test.name}' after {duration:.0f}s "
            f"(reason: {test.stop_reason or 'manual'})"
        )

    # ---------- Serving ----------

    def _resolve_test(self, user_id: str, test_id: Optional[str]) -> ABTest:
        if test_id is not None:
            test = self.get_test(test_id)
            if test.status != STATUS_RUNNING:
                raise InvalidTestStateError(f"A/B test {test_id} is not running (status: {test.status})")
            return test

        active = self.get_active_tests()
        if not active:
            raise NoActiveTestError("No active A/B test available")

        for test in active:
            if user_id in test.participants:
                return test
        return active[0]

    def _assign(self, test: ABTest, user_id: str) -> Tuple[Participant, bool]:
        with self._lock:
            participant = test.participants.get(user_id)
            if participant is not None:
                return participant, False

            group_id = TREATMENT if self._rng.random() < test.config.traffic_split else CONTROL
            participant = Participant(
                user_id=user_id,
                group_id=group_id,
                assigned_at=self._now(),
                model_id=test.model_for(group_id).id,
            )
            test.participants[user_id] = participant
            return participant, True

    def assign_group(self, test_id: str, user_id: str) -> str:
        """Sticky group for a user, assigning on first call."""
        participant, _ = self._assign(self.get_test(test_id), user_id)
        return participant.group_id

    async def predict(
        self,
        candidate: CandidateProfile,
        job: JobProfile,
        test_id: Optional[str] = None,
    ) -> PredictionResult:
        """
        Score a pair with the model of the candidate's group.

        Raises:
            ConfigurationError: A/B testing is disabled
            NoActiveTestError: No running test and no test_id given
            TestNotFoundError / InvalidTestStateError: test_id is unknown or not running
        """
        if not self.options.enabled:
            raise ConfigurationError("A/B testing is disabled")

        user_id = candidate.user_id or candidate.id
        test = self._resolve_test(user_id, test_id)
        participant, is_new = self._assign(test, user_id)

        if is_new:
            record_ab_assignment(test.id, participant.group_id)
            await self._persist(
                lambda: self.registry.save_participant(test.id, user_id, participant.to_dict()),
                f"save participant {user_id} for {test.id}",
            )

        model = test.model_for(participant.group_id)
        start = time.perf_counter()
        try:
            features = await self.feature_extractor.extract_pair_features(candidate, job)
            prediction = self.scorer.score(model, features)
        except Exception:
            self._record_serving(test, model, success=False, score=None, start=start)
            raise

        self._record_serving(test, model, success=True, score=prediction.score, start=start)

        prediction.metadata = {
            **prediction.metadata,
            "request_id": f"req_{uuid.uuid4().hex[:12]}",
            "ab_test": {
                "test_id": test.id,
                "group_id": participant.group_id,
                "model_id": model.id,
                "model_name": model.name,
            },
        }

        logger.debug(
            f"A/B prediction: test {test.id}, user {user_id} in {participant.group_id}, "
            f"model {model.id}, score {prediction.score:.4f}"
        )
        return prediction

    def _record_serving(self, test: ABTest, model: MLModel, success: bool, score: Optional[float], start: float) -> None:
        if self.metrics_collector is None:
            return
        latency_ms = (time.perf_counter() - start) * 1000
        self.metrics_collector.record_request(model.id, "model", success, score, latency_ms)
        self.metrics_collector.record_request(test.id, "ab_test", success, score, latency_ms)

    # ---------- Outcomes ----------

    async def record_conversion(
        self,
        user_id: str,
        prediction: PredictionResult,
        conversion_type: str,
        metadata: Optional[Dict[str, Any]] = None,
        test_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Record an outcome for a participant, then evaluate the test.

        Returns:
            The stored conversion record, or None when the user is not a
            participant of a running test (logged and ignored)

        Raises:
            ConfigurationError: Unknown conversion type
        """
        if conversion_type not in CONVERSION_TYPES:
            raise ConfigurationError(
                f"Unknown conversion type: {conversion_type}. Supported: {', '.join(CONVERSION_TYPES)}"
            )

        ab_metadata = (prediction.metadata or {}).get("ab_test") or {}
        test_id = test_id or ab_metadata.get("test_id")

        test: Optional[ABTest] = None
        if test_id is not None:
            test = self._tests.get(test_id)
        else:
            test = next((t for t in self.get_active_tests() if user_id in t.participants), None)

        if test is None or user_id not in test.participants:
            logger.warning(f"Conversion recorded for non-participant {user_id}")
            return None
        if test.status != STATUS_RUNNING:
            logger.warning(f"Conversion recorded for test {test.id} in status {test.status}")
            return None

        participant = test.participants[user_id]
        conversion = {
            "user_id": user_id,
            "test_id": test.id,
            "group_id": participant.group_id,
            "model_id": participant.model_id,
            "prediction_id": (prediction.metadata or {}).get("request_id"),
            "conversion_type": conversion_type,
            "prediction_score": prediction.score,
            "confidence": prediction.confidence,
            "timestamp": self._now().isoformat(),
            "metadata": metadata or {},
        }

        with self._lock:
            test.conversions.append(conversion)

        record_ab_conversion(test.id, participant.group_id, conversion_type)
        await self._persist(
            lambda: self.registry.append_conversion(test.id, conversion),
            f"append conversion for {test.id}",
        )
        logger.debug(f"Conversion recorded: test {test.id}, user {user_id}, {conversion_type}")

        await self.evaluate_test(test.id)
        return conversion

    # ---------- Evaluation ----------

    def _group_metrics(self, test: ABTest, group_id: str) -> GroupMetrics:
        with self._lock:
            participants = sum(1 for p in test.participants.values() if p.group_id == group_id)
            events = [c for c in test.conversions if c["group_id"] == group_id]

        if not events:
            return GroupMetrics(participants=participants)

        positives = [c for c in events if c["conversion_type"] == "positive"]
        return GroupMetrics(
            participants=participants,
            conversions=len({c["user_id"] for c in positives}),
            events=len(events),
            average_score=sum(c.get("prediction_score") or 0.0 for c in events) / len(events),
            average_confidence=sum(c.get("confidence") or 0.0 for c in events) / len(events),
            user_satisfaction=len(positives) / len(events),
        )

    def _significance(self, test: ABTest) -> SignificanceResult:
        control = self._group_metrics(test, CONTROL)
        treatment = self._group_metrics(test, TREATMENT)
        return calculate_statistical_significance(
            control.conversions,
            control.participants,
            treatment.conversions,
            treatment.participants,
            confidence_level=test.config.confidence_level,
        )

    async def evaluate_test(self, test_id: str) -> Optional[SignificanceResult]:
        """
        Evaluate a running test and apply the auto-stop rules.

        Returns:
            The significance result, or None when the test is not running or
            has fewer than min_sample_size participants
        """
        test = self.get_test(test_id)
        if test.status != STATUS_RUNNING:
            return None

        config = test.config
        total = len(test.participants)
        if total < config.min_sample_size:
            return None

        significance = self._significance(test)
        test.last_evaluation = significance.to_dict()

        if test.started_at is not None:
            elapsed_days = (self._now() - test.started_at).total_seconds() / 86400
            if elapsed_days > config.max_test_duration_days:
                if self._mark_stopped(test, MAX_DURATION_REASON):
                    await self._finish_stop(test)
                return significance

        winner = significance.recommended_winner
        if (
            significance.is_significant
            and winner != "inconclusive"
            and significance.winner_confidence > config.winner_selection_threshold
        ):
            if config.enable_auto_winner_selection:
                if self._mark_stopped(test, f"Statistical significance achieved. Winner: {winner}"):
                    await self._finish_stop(test)
            else:
                logger.info(
                    f"Statistical significance achieved for {test.id}: winner {winner} "
                    f"(p={significance.p_value:.4g})"
                )

        return significance

    async def evaluate_all_tests(self) -> Dict[str, Optional[SignificanceResult]]:
        """Evaluate every running test; one failing test does not stop the others."""
        results = {}
        for test in self.get_active_tests():
            try:
                results[test.id] = await self.evaluate_test(test.id)
            except Exception as e:
                logger.error(f"Failed to evaluate A/B test {test.id}: {e}")
                results[test.id] = None
        logger.debug(f"Evaluated {len(results)} running A/B tests")
        return results

    async def get_test_results(self, test_id: str) -> ABTestResult:
        test = self.get_test(test_id)
        control = self._group_metrics(test, CONTROL)
        treatment = self._group_metrics(test, TREATMENT)
        significance = calculate_statistical_significance(
            control.conversions,
            control.participants,
            treatment.conversions,
            treatment.participants,
            confidence_level=test.config.confidence_level,
        )

        duration = 0.0
        if test.started_at is not None:
            duration = ((test.ended_at or self._now()) - test.started_at).total_seconds()

        return ABTestResult(
            test_id=test.id,
            test_name=test.name,
            status=test.status,
            control_model_id=test.control_model.id,
            treatment_model_id=test.treatment_model.id,
            control=control,
            treatment=treatment,
            significance=significance,
            recommendation=generate_recommendation(significance),
            created_at=test.created_at,
            started_at=test.started_at,
            ended_at=test.ended_at,
            duration_seconds=duration,
            stop_reason=test.stop_reason,
        )

    # ---------- Persistence ----------

    async def _persist(self, operation, description: str) -> bool:
        if self.registry is None:
            return True
        return await persist_with_retry(operation, description)

    async def _persist_test(self, test: ABTest) -> bool:
        record = test.to_dict()
        return await self._persist(lambda: self.registry.save_test(record), f"save test {test.id}")

    async def load_tests(self) -> int:
        """
        Rehydrate tests, participants and conversions from the registry.

        Tests already held in memory are left untouched.

        Returns:
            Number of tests loaded
        """
        if self.registry is None:
            return 0

        try:
            records = await self.registry.list_tests()
            loaded = 0
            for record in records:
                if record["id"] in self._tests:
                    continue
                test = ABTest.from_dict(record)
                participants = await self.registry.load_participants(test.id)
                test.participants = {
                    user_id: Participant.from_dict(data) for user_id, data in participants.items()
                }
                test.conversions = await self.registry.load_conversions(test.id)
                with self._lock:
                    self._tests.setdefault(test.id, test)
                loaded += 1
        except RegistryError as e:
            logger.error(f"Failed to load A/B tests from registry: {e}")
            return 0

        logger.info(f"Loaded {loaded} A/B tests from registry")
        return loaded


_framework_instance: Optional[ABTestingFramework] = None


def get_ab_testing_framework() -> ABTestingFramework:
    """Process-wide framework wired to the shared extractor, registry and collector."""
    global _framework_instance

    if _framework_instance is None:
        _framework_instance = ABTestingFramework(
            feature_extractor=get_feature_extractor(),
            registry=get_registry(),
            metrics_collector=get_metrics_collector(),
        )

    return _framework_instance
