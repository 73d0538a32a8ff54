"""
Training and scoring data types.

Plain dataclasses shared by the trainer, the scorer, the A/B framework and
the registry. MLModel is frozen: a retrain produces a new instance and
promotion goes through activated().
"""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from talentml.exceptions import TrainingDataError, UnsupportedAlgorithmError


class Algorithm(str, Enum):
    RANDOM_FOREST = "random_forest"
    GRADIENT_BOOSTING = "gradient_boosting"
    NEURAL_NETWORK = "neural_network"
    LOGISTIC_REGRESSION = "logistic_regression"
    SVM = "svm"
    XGBOOST = "xgboost"

    @classmethod
    def parse(cls, value: Any) -> "Algorithm":
        """Resolve a string or enum member, raising UnsupportedAlgorithmError otherwise."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower().strip())
        except ValueError:
            raise UnsupportedAlgorithmError(value) from None


@dataclass
class DataSplit:
    """Parallel feature vectors and labels for one split."""
    features: List[List[float]] = field(default_factory=list)
    labels: List[float] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.features)

    @property
    def width(self) -> Optional[int]:
        return len(self.features[0]) if self.features else None


@dataclass
class TrainingData:
    train: Optional[DataSplit] = None
    validation: Optional[DataSplit] = None
    test: Optional[DataSplit] = None

    def validate(self) -> int:
        """
        Check split presence, lengths and feature widths, and that no
        feature vector is shared between two splits.

        Returns:
            The shared feature width

        Raises:
            TrainingDataError: On any structural problem
        """
        widths = set()
        for name in ("train", "validation", "test"):
            split = getattr(self, name)
            if split is None:
                raise TrainingDataError(f"Missing {name} split")
            if len(split.features) != len(split.labels):
                raise TrainingDataError(
                    f"{name} split has {len(split.features)} feature vectors "
                    f"but {len(split.labels)} labels"
                )
            for vector in split.features:
                widths.add(len(vector))

        if len(self.train) == 0:
            raise TrainingDataError("Training set is empty")
        if len(self.validation) == 0:
            raise TrainingDataError("Validation set is empty")
        if len(widths) != 1:
            raise TrainingDataError(f"Inconsistent feature widths across splits: {sorted(widths)}")

        width = widths.pop()
        if width == 0:
            raise TrainingDataError("Feature vectors are empty")

        seen: Dict[tuple, str] = {}
        for name in ("train", "validation", "test"):
            rows = {tuple(vector) for vector in getattr(self, name).features}
            for row in rows:
                other = seen.setdefault(row, name)
                if other != name:
                    raise TrainingDataError(f"Feature vector appears in both {other} and {name} splits")
        return width


@dataclass
class ModelConfig:
    name: str
    algorithm: Algorithm
    parameters: Dict[str, Any] = field(default_factory=dict)
    model_type: str = "matching"

    def __post_init__(self):
        self.algorithm = Algorithm.parse(self.algorithm)


@dataclass
class ModelMetrics:
    accuracy: float = 0.0
    precision: float = 0.0
    recall: float = 0.0
    f1_score: float = 0.0
    auc_roc: float = 0.0
    confusion_matrix: Dict[str, int] = field(
        default_factory=lambda: {"true_positive": 0, "false_positive": 0, "true_negative": 0, "false_negative": 0}
    )
    sample_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TrainingProgress:
    """One step of a training run."""
    job_id: str
    iteration: int
    total_iterations: int
    progress: float
    loss: float
    validation_loss: float
    best_loss: float
    status: str = "training"  # training, completed, failed, cancelled
    message: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed", "cancelled")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MLModel:
    id: str
    name: str
    version: str
    algorithm: Algorithm
    model_type: str = "matching"
    parameters: Dict[str, Any] = field(default_factory=dict)
    accuracy: float = 0.0
    metrics: Optional[ModelMetrics] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    active: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def with_metrics(self, metrics: ModelMetrics) -> "MLModel":
        return replace(self, metrics=metrics, accuracy=metrics.accuracy, updated_at=_utcnow())

    def activated(self, active: bool = True) -> "MLModel":
        return replace(self, active=active, updated_at=_utcnow())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "algorithm": self.algorithm.value,
            "model_type": self.model_type,
            "parameters": self.parameters,
            "accuracy": self.accuracy,
            "metrics": self.metrics.to_dict() if self.metrics else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "active": self.active,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MLModel":
        metrics = data.get("metrics")
        return cls(
            id=data["id"],
            name=data["name"],
            version=data["version"],
            algorithm=Algorithm.parse(data["algorithm"]),
            model_type=data.get("model_type", "matching"),
            parameters=data.get("parameters") or {},
            accuracy=data.get("accuracy", 0.0),
            metrics=ModelMetrics(**metrics) if metrics else None,
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            active=data.get("active", False),
            metadata=data.get("metadata") or {},
        )


@dataclass
class TrainingResult:
    model: MLModel
    metrics: ModelMetrics
    training_history: List[TrainingProgress]
    hyperparameters: Dict[str, Any]
    training_time: float  # seconds


@dataclass
class PredictionResult:
    score: float
    confidence: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"score": self.score, "confidence": self.confidence, "metadata": self.metadata}


def as_split(features: Sequence[Sequence[float]], labels: Sequence[float]) -> DataSplit:
    return DataSplit(features=[list(map(float, f)) for f in features], labels=[float(v) for v in labels])
