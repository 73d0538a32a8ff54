"""
Learning Algorithms - scikit-learn and XGBoost Learners for Match Scoring

One learner per Algorithm variant. The trainer owns the loop (progress,
early stopping, cancellation); a learner only knows how to take one
optimisation step, score a matrix and serialise its state.

Learners:
    - LogisticRegressionLearner: SGDClassifier(loss="log_loss"), one partial_fit epoch per step
    - SVMLearner: SGDClassifier(loss="hinge"), margin squashed through a sigmoid
    - NeuralNetworkLearner: MLPClassifier, one partial_fit epoch per step
    - GradientBoostingLearner: GradientBoostingClassifier, warm start, one stage per step
    - RandomForestLearner: RandomForestClassifier, warm start, one tree per step
    - XGBoostLearner: xgb.train continued by one boosting round per step

Linear models serialise to plain weights and bias. Tree ensembles and the
network serialise to a base64 pickle of the fitted estimator, and XGBoost
to the booster's JSON model, so every model stays JSON-serialisable for
the registry and can be scored later with predict_scores().
"""

import base64
import logging
import pickle
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any, Dict, List, Optional, Type

import numpy as np
import xgboost as xgb
from sklearn.ensemble import GradientBoostingClassifier, RandomForestClassifier
from sklearn.linear_model import SGDClassifier
from sklearn.neural_network import MLPClassifier

from talentml.exceptions import ConfigurationError, TrainingDataError
from talentml.schemas.ml import Algorithm

logger = logging.getLogger(__name__)

CLASSES = np.array([0, 1])


def sigmoid(z: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-np.clip(z, -500, 500)))


def log_loss(labels: np.ndarray, scores: np.ndarray) -> float:
    """Binary cross-entropy, labels may be soft."""
    p = np.clip(scores, 1e-7, 1 - 1e-7)
    return float(-np.mean(labels * np.log(p) + (1 - labels) * np.log(1 - p)))


def normalized_importance(values: Any) -> List[float]:
    values = np.abs(np.asarray(values, dtype=np.float64))
    total = values.sum()
    if total == 0:
        return np.zeros_like(values).tolist()
    return (values / total).tolist()


def binary_labels(labels: np.ndarray) -> np.ndarray:
    """Threshold soft labels at 0.5; classifiers need both classes present."""
    classes = (np.asarray(labels) >= 0.5).astype(int)
    if np.unique(classes).size < 2:
        raise TrainingDataError("Training labels must contain both positive and negative examples")
    return classes


def dump_estimator(estimator: Any) -> str:
    return base64.b64encode(pickle.dumps(estimator)).decode("ascii")


@lru_cache(maxsize=32)
def load_estimator(payload: str) -> Any:
    return pickle.loads(base64.b64decode(payload))


@lru_cache(maxsize=32)
def load_booster(raw: str) -> xgb.Booster:
    booster = xgb.Booster()
    booster.load_model(bytearray(raw, "utf-8"))
    return booster


def _require_positive(hyperparameters: Dict[str, Any], name: str) -> float:
    value = float(hyperparameters[name])
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value}")
    return value


class Learner(ABC):
    """
    Base class for one training algorithm.

    Subclasses set `algorithm` and `defaults`, and implement step(),
    predict(), parameters() and predict_parameters().
    """

    algorithm: Algorithm
    defaults: Dict[str, Any] = {}

    def __init__(
        self,
        features: np.ndarray,
        labels: np.ndarray,
        hyperparameters: Dict[str, Any],
        random_state: int,
    ):
        self.X = features
        self.y = binary_labels(labels)
        self.hyperparameters = hyperparameters
        self.random_state = random_state

    @classmethod
    def default_parameters(cls, learning_rate: float, regularization: float) -> Dict[str, Any]:
        """Defaults merged under any caller-supplied parameters."""
        return {**cls.defaults}

    @property
    @abstractmethod
    def rounds(self) -> Optional[int]:
        """Algorithm-specific step count, or None when bounded only by max_iterations."""

    @abstractmethod
    def step(self) -> None:
        """Run one optimisation step on the training data."""

    @abstractmethod
    def predict(self, features: np.ndarray) -> np.ndarray:
        """Scores in [0, 1] for each row."""

    @abstractmethod
    def parameters(self) -> Dict[str, Any]:
        """JSON-serialisable state sufficient for predict_parameters()."""

    @staticmethod
    @abstractmethod
    def predict_parameters(parameters: Dict[str, Any], features: np.ndarray) -> np.ndarray:
        """Score rows from serialised parameters."""


# ==================== Linear models ====================

class LinearLearner(Learner):
    """SGD over a linear model; each step is one partial_fit pass over the train split."""

    loss = "log_loss"

    @classmethod
    def default_parameters(cls, learning_rate: float, regularization: float) -> Dict[str, Any]:
        return {**cls.defaults, "learning_rate": learning_rate, "regularization": regularization}

    def __init__(self, features, labels, hyperparameters, random_state):
        super().__init__(features, labels, hyperparameters, random_state)
        if float(hyperparameters["regularization"]) < 0:
            raise ConfigurationError(f"regularization must be non-negative, got {hyperparameters['regularization']}")

        self.estimator = SGDClassifier(
            loss=self.loss,
            alpha=self._alpha(),
            learning_rate="constant",
            eta0=_require_positive(hyperparameters, "learning_rate"),
            random_state=random_state,
        )

    def _alpha(self) -> float:
        return float(self.hyperparameters["regularization"])

    @property
    def rounds(self) -> Optional[int]:
        return None

    def step(self) -> None:
        self.estimator.partial_fit(self.X, self.y, classes=CLASSES)

    def predict(self, features: np.ndarray) -> np.ndarray:
        return sigmoid(self.estimator.decision_function(features))

    def parameters(self) -> Dict[str, Any]:
        weights = self.estimator.coef_[0]
        return {
            "weights": weights.tolist(),
            "bias": float(self.estimator.intercept_[0]),
            "feature_importance": normalized_importance(weights),
        }

    @staticmethod
    def predict_parameters(parameters: Dict[str, Any], features: np.ndarray) -> np.ndarray:
        return sigmoid(features @ np.asarray(parameters["weights"]) + parameters["bias"])


class LogisticRegressionLearner(LinearLearner):
    algorithm = Algorithm.LOGISTIC_REGRESSION


class SVMLearner(LinearLearner):
    """Linear soft-margin SVM; the margin is squashed through a sigmoid to give a score."""

    algorithm = Algorithm.SVM
    loss = "hinge"
    defaults = {"C": 1.0, "kernel": "linear"}

    def __init__(self, features, labels, hyperparameters, random_state):
        if hyperparameters["kernel"] != "linear":
            raise ConfigurationError(f"Unsupported SVM kernel: {hyperparameters['kernel']} (only linear)")
        _require_positive(hyperparameters, "C")
        super().__init__(features, labels, hyperparameters, random_state)

    def _alpha(self) -> float:
        return float(self.hyperparameters["regularization"]) / float(self.hyperparameters["C"])


# ==================== Neural network ====================

class NeuralNetworkLearner(Learner):
    """Fully connected network with a logistic output unit, trained with adam."""

    algorithm = Algorithm.NEURAL_NETWORK
    defaults = {"hidden_layers": [64, 32, 16], "activation": "relu"}

    @classmethod
    def default_parameters(cls, learning_rate: float, regularization: float) -> Dict[str, Any]:
        return {
            "hidden_layers": list(cls.defaults["hidden_layers"]),
            "activation": cls.defaults["activation"],
            "learning_rate": learning_rate,
            "regularization": regularization,
        }

    def __init__(self, features, labels, hyperparameters, random_state):
        super().__init__(features, labels, hyperparameters, random_state)
        activation = hyperparameters["activation"]
        if activation not in ("relu", "tanh", "logistic"):
            raise ConfigurationError(f"Unsupported activation: {activation}")

        self.estimator = MLPClassifier(
            hidden_layer_sizes=tuple(int(h) for h in hyperparameters["hidden_layers"]),
            activation=activation,
            alpha=float(hyperparameters["regularization"]),
            learning_rate_init=_require_positive(hyperparameters, "learning_rate"),
            random_state=random_state,
        )

    @property
    def rounds(self) -> Optional[int]:
        return None

    def step(self) -> None:
        self.estimator.partial_fit(self.X, self.y, classes=CLASSES)

    def predict(self, features: np.ndarray) -> np.ndarray:
        return self.estimator.predict_proba(features)[:, 1]

    def parameters(self) -> Dict[str, Any]:
        return {
            "estimator": dump_estimator(self.estimator),
            "feature_importance": normalized_importance(np.abs(self.estimator.coefs_[0]).mean(axis=1)),
        }

    @staticmethod
    def predict_parameters(parameters: Dict[str, Any], features: np.ndarray) -> np.ndarray:
        return load_estimator(parameters["estimator"]).predict_proba(features)[:, 1]


# ==================== Trees ====================

def _check_max_features(setting: Any) -> Any:
    if setting is None or setting in ("sqrt", "log2"):
        return setting
    if isinstance(setting, float) and 0 < setting <= 1:
        return setting
    if isinstance(setting, int) and setting > 0:
        return setting
    raise ConfigurationError(f"Invalid max_features: {setting!r}")


class EnsembleLearner(Learner):
    """
    Tree ensemble grown one estimator per step with warm_start.

    Each step raises n_estimators by one and refits; scikit-learn keeps
    the estimators already built and only fits the new one.
    """

    def __init__(self, features, labels, hyperparameters, random_state):
        super().__init__(features, labels, hyperparameters, random_state)
        self.fitted = 0
        self.estimator = self._build()

    @abstractmethod
    def _build(self) -> Any:
        """Unfitted estimator with warm_start enabled."""

    @property
    def rounds(self) -> Optional[int]:
        return int(self.hyperparameters["n_estimators"])

    def step(self) -> None:
        self.fitted += 1
        self.estimator.set_params(n_estimators=self.fitted)
        self.estimator.fit(self.X, self.y)

    def predict(self, features: np.ndarray) -> np.ndarray:
        return self.estimator.predict_proba(features)[:, 1]

    def parameters(self) -> Dict[str, Any]:
        return {
            "estimator": dump_estimator(self.estimator),
            "feature_importance": normalized_importance(self.estimator.feature_importances_),
        }

    @staticmethod
    def predict_parameters(parameters: Dict[str, Any], features: np.ndarray) -> np.ndarray:
        return load_estimator(parameters["estimator"]).predict_proba(features)[:, 1]


class GradientBoostingLearner(EnsembleLearner):
    """Log-loss boosting: each step fits one more regression tree with shrinkage."""

    algorithm = Algorithm.GRADIENT_BOOSTING
    defaults = {"n_estimators": 100, "max_depth": 6, "min_samples_split": 2, "min_samples_leaf": 1}

    @classmethod
    def default_parameters(cls, learning_rate: float, regularization: float) -> Dict[str, Any]:
        return {**cls.defaults, "learning_rate": learning_rate}

    def _build(self) -> GradientBoostingClassifier:
        return GradientBoostingClassifier(
            n_estimators=1,
            learning_rate=_require_positive(self.hyperparameters, "learning_rate"),
            max_depth=int(self.hyperparameters["max_depth"]),
            min_samples_split=int(self.hyperparameters["min_samples_split"]),
            min_samples_leaf=int(self.hyperparameters["min_samples_leaf"]),
            random_state=self.random_state,
            warm_start=True,
        )


class RandomForestLearner(EnsembleLearner):
    """One bootstrap tree per step; the score is the mean vote of all trees."""

    algorithm = Algorithm.RANDOM_FOREST
    defaults = {
        "n_estimators": 100,
        "max_depth": 10,
        "min_samples_split": 2,
        "min_samples_leaf": 1,
        "max_features": "sqrt",
        "bootstrap": True,
    }

    def _build(self) -> RandomForestClassifier:
        max_depth = self.hyperparameters["max_depth"]
        return RandomForestClassifier(
            n_estimators=1,
            max_depth=None if max_depth is None else int(max_depth),
            min_samples_split=int(self.hyperparameters["min_samples_split"]),
            min_samples_leaf=int(self.hyperparameters["min_samples_leaf"]),
            max_features=_check_max_features(self.hyperparameters["max_features"]),
            bootstrap=bool(self.hyperparameters["bootstrap"]),
            random_state=self.random_state,
            warm_start=True,
        )


class XGBoostLearner(Learner):
    """Second-order boosting with lambda/gamma regularisation and row subsampling."""

    algorithm = Algorithm.XGBOOST
    defaults = {
        "n_estimators": 100,
        "max_depth": 6,
        "min_child_weight": 1.0,
        "learning_rate": 0.1,
        "reg_lambda": 1.0,
        "gamma": 0.0,
        "subsample": 1.0,
    }

    def __init__(self, features, labels, hyperparameters, random_state):
        super().__init__(features, labels, hyperparameters, random_state)
        subsample = float(hyperparameters["subsample"])
        if not 0.0 < subsample <= 1.0:
            raise ConfigurationError(f"subsample must be in (0, 1], got {subsample}")

        self.dtrain = xgb.DMatrix(self.X, label=self.y)
        self.params = {
            "objective": "binary:logistic",
            "eta": _require_positive(hyperparameters, "learning_rate"),
            "max_depth": int(hyperparameters["max_depth"]),
            "min_child_weight": float(hyperparameters["min_child_weight"]),
            "lambda": float(hyperparameters["reg_lambda"]),
            "gamma": float(hyperparameters["gamma"]),
            "subsample": subsample,
            "tree_method": "hist",
            "verbosity": 0,
        }
        self.booster: Optional[xgb.Booster] = None

    @property
    def rounds(self) -> Optional[int]:
        return int(self.hyperparameters["n_estimators"])

    def step(self) -> None:
        done = 0 if self.booster is None else self.booster.num_boosted_rounds()
        # Fresh subsample seed each round
        self.booster = xgb.train(
            {**self.params, "seed": self.random_state + done},
            self.dtrain,
            num_boost_round=1,
            xgb_model=self.booster,
        )

    def predict(self, features: np.ndarray) -> np.ndarray:
        return self.booster.predict(xgb.DMatrix(features))

    def parameters(self) -> Dict[str, Any]:
        gains = self.booster.get_score(importance_type="gain")
        return {
            "booster": bytes(self.booster.save_raw(raw_format="json")).decode("utf-8"),
            "feature_importance": normalized_importance(
                [gains.get(f"f{i}", 0.0) for i in range(self.X.shape[1])]
            ),
        }

    @staticmethod
    def predict_parameters(parameters: Dict[str, Any], features: np.ndarray) -> np.ndarray:
        return load_booster(parameters["booster"]).predict(xgb.DMatrix(features))


# ==================== Registry ====================

LEARNERS: Dict[Algorithm, Type[Learner]] = {
    learner.algorithm: learner
    for learner in (
        RandomForestLearner,
        GradientBoostingLearner,
        NeuralNetworkLearner,
        LogisticRegressionLearner,
        SVMLearner,
        XGBoostLearner,
    )
}

PARAMETER_GRIDS: Dict[Algorithm, List[Dict[str, Any]]] = {
    Algorithm.RANDOM_FOREST: [
        {"n_estimators": 50, "max_depth": 5},
        {"n_estimators": 100, "max_depth": 10},
        {"n_estimators": 200, "max_depth": 15},
    ],
    Algorithm.GRADIENT_BOOSTING: [
        {"n_estimators": 50, "learning_rate": 0.1},
        {"n_estimators": 100, "learning_rate": 0.05},
        {"n_estimators": 200, "learning_rate": 0.01},
    ],
    Algorithm.NEURAL_NETWORK: [
        {"hidden_layers": [32, 16], "learning_rate": 0.01},
        {"hidden_layers": [64, 32, 16], "learning_rate": 0.001},
        {"hidden_layers": [128, 64, 32], "learning_rate": 0.0001},
    ],
    Algorithm.LOGISTIC_REGRESSION: [
        {"learning_rate": 0.01, "regularization": 0.001},
        {"learning_rate": 0.1, "regularization": 0.01},
        {"learning_rate": 0.5, "regularization": 0.1},
    ],
    Algorithm.SVM: [
        {"C": 0.1, "learning_rate": 0.01},
        {"C": 1.0, "learning_rate": 0.1},
        {"C": 10.0, "learning_rate": 0.1},
    ],
    Algorithm.XGBOOST: [
        {"max_depth": 3, "learning_rate": 0.3, "subsample": 0.8},
        {"max_depth": 6, "learning_rate": 0.1, "subsample": 1.0},
        {"max_depth": 8, "learning_rate": 0.05, "reg_lambda": 5.0},
    ],
}


def _check_exhaustive() -> None:
    for table_name, table in (("LEARNERS", LEARNERS), ("PARAMETER_GRIDS", PARAMETER_GRIDS)):
        missing = [a.value for a in Algorithm if a not in table]
        if missing:
            raise RuntimeError(f"{table_name} has no entry for: {', '.join(missing)}")


_check_exhaustive()


def get_learner(algorithm: Any) -> Type[Learner]:
    """
    Learner class for an algorithm tag.

    Raises:
        UnsupportedAlgorithmError: If the tag is not an Algorithm variant
    """
    return LEARNERS[Algorithm.parse(algorithm)]


def predict_scores(algorithm: Any, parameters: Dict[str, Any], features: Any) -> np.ndarray:
    """Score a feature matrix with serialised model parameters."""
    matrix = np.atleast_2d(np.asarray(features, dtype=np.float64))
    return np.asarray(get_learner(algorithm).predict_parameters(parameters, matrix), dtype=np.float64)
