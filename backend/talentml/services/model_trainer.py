"""
Model Trainer - Fits Match-Scoring Models from Labeled Feature Vectors

Owns the training loop shared by every algorithm:

    validate data → build learner → [step → losses → progress → early stop?]*
                  → best snapshot → evaluate → MLModel

State machine:
    Idle → Training → Idle
    A second train() while Training raises TrainingInProgressError and
    leaves the active run alone. cancel() sets a flag checked at every
    iteration boundary; the active train() then raises
    TrainingCancelledError and no model is produced. Cancelling the
    asyncio task that runs train() also returns the trainer to Idle.

Learner steps and loss passes run in the default executor; the event
loop only checks for cancellation and publishes progress.

Optional extras:
    - Hyperparameter tuning over a fixed grid per algorithm
    - Contiguous k-fold cross-validation
"""

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

import numpy as np

from talentml.config import Settings, get_settings
from talentml.exceptions import (
    ConfigurationError,
    TrainingCancelledError,
    TrainingDataError,
    TrainingInProgressError,
)
from talentml.middleware.metrics import record_training_run
from talentml.schemas.ml import (
    Algorithm,
    DataSplit,
    MLModel,
    ModelConfig,
    ModelMetrics,
    TrainingData,
    TrainingProgress,
    TrainingResult,
)
from talentml.services.algorithms import PARAMETER_GRIDS, get_learner, log_loss, predict_scores
from talentml.services.evaluation import calculate_metrics
from talentml.services.registry import ModelRegistry, get_registry, persist_with_retry
from talentml.services.training_events import TrainingEventChannel

logger = logging.getLogger(__name__)


@dataclass
class TrainerOptions:
    max_iterations: int = 1000
    early_stopping_patience: int = 50
    early_stopping_tolerance: float = 0.001
    learning_rate: float = 0.1
    regularization_strength: float = 0.01
    cross_validation_folds: int = 5
    hyperparameter_tuning: bool = False
    random_seed: int = 42
    progress_queue_size: int = 256

    def __post_init__(self):
        if self.max_iterations < 1:
            raise ConfigurationError(f"max_iterations must be positive, got {self.max_iterations}")
        if self.early_stopping_patience < 1:
            raise ConfigurationError(
                f"early_stopping_patience must be positive, got {self.early_stopping_patience}"
            )
        if self.early_stopping_tolerance < 0:
            raise ConfigurationError(
                f"early_stopping_tolerance must be non-negative, got {self.early_stopping_tolerance}"
            )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **overrides: Any) -> "TrainerOptions":
        settings = settings or get_settings()
        values = {
            "max_iterations": settings.max_iterations,
            "early_stopping_patience": settings.early_stopping_patience,
            "early_stopping_tolerance": settings.early_stopping_tolerance,
            "learning_rate": settings.learning_rate,
            "regularization_strength": settings.regularization_strength,
            "cross_validation_folds": settings.cross_validation_folds,
            "hyperparameter_tuning": settings.hyperparameter_tuning,
            "random_seed": settings.random_seed,
            "progress_queue_size": settings.progress_queue_size,
        }
        values.update(overrides)
        return cls(**values)


def _as_arrays(split: DataSplit):
    return np.asarray(split.features, dtype=np.float64), np.asarray(split.labels, dtype=np.float64)


def _advance(learner, X_train, y_train, X_val, y_val):
    """One learner step plus train and validation losses; runs in a worker thread."""
    learner.step()
    return log_loss(y_train, learner.predict(X_train)), log_loss(y_val, learner.predict(X_val))


class ModelTrainer:
    """
    Trains MLModels one run at a time.

    Example:
        >>> trainer = ModelTrainer()
        >>> trainer.channel.subscribe(lambda p: print(p.iteration, p.loss))
        >>> result = await trainer.train(data, ModelConfig("match", "logistic_regression"))
        >>> result.model.accuracy
    """

    def __init__(
        self,
        options: Optional[TrainerOptions] = None,
        channel: Optional[TrainingEventChannel] = None,
        registry: Optional[ModelRegistry] = None,
    ):
        self.options = options or TrainerOptions.from_settings()
        self.channel = channel or TrainingEventChannel(maxsize=self.options.progress_queue_size)
        self.registry = registry
        self._lock = threading.Lock()
        self._cancel_requested = threading.Event()
        self._job_id: Optional[str] = None
        self._progress: Optional[TrainingProgress] = None
        self._versions: Dict[str, int] = {}

    # ---------- State ----------

    @property
    def is_training(self) -> bool:
        return self._lock.locked()

    def get_training_progress(self) -> Optional[TrainingProgress]:
        return self._progress

    def cancel(self) -> bool:
        """
        Request cancellation of the active run.

        Returns:
            True if a run was active and will stop at its next iteration
        """
        if not self.is_training:
            return False
        self._cancel_requested.set()
        logger.info(f"Cancellation requested for training job {self._job_id}")
        return True

    def _begin(self, kind: str) -> str:
        if not self._lock.acquire(blocking=False):
            raise TrainingInProgressError(self._job_id or "")
        self._cancel_requested.clear()
        self._job_id = f"{kind}_{uuid.uuid4().hex[:12]}"
        self._progress = None
        return self._job_id

    def _end(self) -> None:
        self._job_id = None
        self._cancel_requested.clear()
        self._lock.release()

    def _publish_terminal(self, job_id: str, status: str, message: str) -> None:
        last = self._progress
        event = TrainingProgress(
            job_id=job_id,
            iteration=last.iteration if last else 0,
            total_iterations=last.total_iterations if last else 0,
            progress=1.0 if status == "completed" else (last.progress if last else 0.0),
            loss=last.loss if last else 0.0,
            validation_loss=last.validation_loss if last else 0.0,
            best_loss=last.best_loss if last else 0.0,
            status=status,
            message=message,
        )
        self._progress = event
        self.channel.publish(event)

    # ---------- Training ----------

    async def train(self, training_data: TrainingData, model_config: ModelConfig) -> TrainingResult:
        """
        Fit a model and evaluate it on the test split.

        Args:
            training_data: train/validation/test splits
            model_config: Name, algorithm and parameter overrides

        Returns:
            TrainingResult with the new model, its metrics and history

        Raises:
            TrainingInProgressError: Another run is active on this trainer
            TrainingDataError: Splits are missing, empty or inconsistent
            UnsupportedAlgorithmError: Unknown algorithm tag
            TrainingCancelledError: cancel() was called during the run
        """
        job_id = self._begin("train")
        algorithm_label = str(getattr(model_config.algorithm, "value", model_config.algorithm))
        start = time.perf_counter()

        try:
            width = training_data.validate()
            algorithm = Algorithm.parse(model_config.algorithm)
            logger.info(
                f"Training started: job {job_id}, {algorithm.value} '{model_config.name}' "
                f"({len(training_data.train)} train / {len(training_data.validation)} validation / "
                f"{len(training_data.test)} test, {width} features)"
            )

            result = await self._fit(training_data, model_config, job_id, width)
            if self.options.hyperparameter_tuning:
                result = await self._tune(training_data, model_config, job_id, width, result)

            training_time = time.perf_counter() - start
            version = self._next_version(model_config.name)
            model = replace(
                result.model,
                version=version,
                metadata={**result.model.metadata, "training_time": training_time, "job_id": job_id},
            )
            result = replace(result, model=model, training_time=training_time)

        except (TrainingCancelledError, asyncio.CancelledError) as e:
            record_training_run(algorithm_label, "cancelled")
            self._publish_terminal(job_id, "cancelled", str(e) or f"Training job {job_id} cancelled")
            logger.info(f"Training cancelled: job {job_id}")
            raise
        except Exception as e:
            record_training_run(algorithm_label, "failed")
            self._publish_terminal(job_id, "failed", str(e))
            logger.warning(f"Training failed: job {job_id}: {e}")
            raise
        else:
            record_training_run(algorithm.value, "completed")
            self._publish_terminal(job_id, "completed", f"Model {model.id} trained")
            logger.info(
                f"Training completed: job {job_id}, model {model.id} v{model.version} "
                f"accuracy={result.metrics.accuracy:.4f} in {training_time:.2f}s"
            )
        finally:
            self._end()

        if self.registry is not None:
            await persist_with_retry(
                lambda: self.registry.save_model(model),
                f"save model {model.id}",
            )

        return result

    def _next_version(self, name: str) -> str:
        self._versions[name] = self._versions.get(name, 0) + 1
        return f"{self._versions[name]}.0.0"

    async def _fit(
        self,
        training_data: TrainingData,
        model_config: ModelConfig,
        job_id: str,
        width: int,
    ) -> TrainingResult:
        X_train, y_train = _as_arrays(training_data.train)
        X_val, y_val = _as_arrays(training_data.validation)

        learner_cls = get_learner(model_config.algorithm)
        hyperparameters = {
            **learner_cls.default_parameters(
                self.options.learning_rate, self.options.regularization_strength
            ),
            **model_config.parameters,
        }
        learner = learner_cls(X_train, y_train, hyperparameters, self.options.random_seed)
        loop = asyncio.get_running_loop()

        total = self.options.max_iterations
        if learner.rounds is not None:
            total = min(total, learner.rounds)

        tolerance = self.options.early_stopping_tolerance
        patience = self.options.early_stopping_patience

        history: List[TrainingProgress] = []
        best_loss = float("inf")
        best_parameters: Optional[Dict[str, Any]] = None
        stale_steps = 0
        early_stopped = False

        for iteration in range(1, total + 1):
            if self._cancel_requested.is_set():
                raise TrainingCancelledError(
                    f"Training job {job_id} cancelled after {iteration - 1} iterations"
                )

            train_loss, validation_loss = await loop.run_in_executor(
                None, _advance, learner, X_train, y_train, X_val, y_val
            )

            if validation_loss < best_loss - tolerance * abs(best_loss) or best_parameters is None:
                best_loss = validation_loss
                best_parameters = await loop.run_in_executor(None, learner.parameters)
                stale_steps = 0
            else:
                stale_steps += 1

            progress = TrainingProgress(
                job_id=job_id,
                iteration=iteration,
                total_iterations=total,
                progress=iteration / total,
                loss=train_loss,
                validation_loss=validation_loss,
                best_loss=best_loss,
            )
            history.append(progress)
            self._progress = progress
            self.channel.publish(progress)

            if stale_steps >= patience:
                early_stopped = True
                logger.info(
                    f"Early stopping at iteration {iteration}/{total}: no improvement in {patience} steps"
                )
                break

        parameters = {
            **best_parameters,
            "hyperparameters": hyperparameters,
            "feature_count": width,
        }
        model = MLModel(
            id=f"model_{uuid.uuid4().hex[:12]}",
            name=model_config.name,
            version="0.0.0",
            algorithm=Algorithm.parse(model_config.algorithm),
            model_type=model_config.model_type,
            parameters=parameters,
            metadata={
                "training_history": [p.to_dict() for p in history],
                "iterations": len(history),
                "early_stopped": early_stopped,
                "best_validation_loss": best_loss,
            },
        )

        evaluation_split = training_data.test if training_data.test and len(training_data.test) else training_data.validation
        metrics = self.evaluate_model(model, evaluation_split)
        model = model.with_metrics(metrics)

        return TrainingResult(
            model=model,
            metrics=metrics,
            training_history=history,
            hyperparameters=hyperparameters,
            training_time=0.0,
        )

    async def _tune(
        self,
        training_data: TrainingData,
        model_config: ModelConfig,
        job_id: str,
        width: int,
        baseline: TrainingResult,
    ) -> TrainingResult:
        grid = PARAMETER_GRIDS[Algorithm.parse(model_config.algorithm)]
        logger.info(f"Hyperparameter search: {len(grid)} candidates for {model_config.name}")

        best = baseline
        for grid_parameters in grid:
            candidate = replace(model_config, parameters={**model_config.parameters, **grid_parameters})
            try:
                result = await self._fit(training_data, candidate, job_id, width)
            except (ConfigurationError, FloatingPointError) as e:
                logger.warning(f"Hyperparameter candidate {grid_parameters} failed: {e}")
                continue

            if result.metrics.accuracy > best.metrics.accuracy:
                best = result
                logger.info(
                    f"Found better hyperparameters: {grid_parameters} "
                    f"(accuracy {result.metrics.accuracy:.4f})"
                )

        logger.info(f"Hyperparameter search finished: best accuracy {best.metrics.accuracy:.4f}")
        return best

    # ---------- Cross-validation ----------

    async def cross_validate(
        self,
        training_data: TrainingData,
        model_config: ModelConfig,
        folds: Optional[int] = None,
    ) -> List[ModelMetrics]:
        """
        Contiguous k-fold cross-validation over the train split.

        Each fold is held out once as the validation and evaluation set
        while the remaining folds form the training set.

        Returns:
            One ModelMetrics per fold, in fold order
        """
        folds = folds if folds is not None else self.options.cross_validation_folds
        job_id = self._begin("cv")

        try:
            train = training_data.train
            if train is None or len(train) == 0:
                raise TrainingDataError("Cross-validation needs a non-empty train split")
            if len(train.features) != len(train.labels):
                raise TrainingDataError(
                    f"train split has {len(train.features)} feature vectors but {len(train.labels)} labels"
                )
            if folds < 2:
                raise ConfigurationError(f"Cross-validation needs at least 2 folds, got {folds}")
            if folds > len(train):
                raise ConfigurationError(f"Cannot split {len(train)} samples into {folds} folds")
            Algorithm.parse(model_config.algorithm)

            boundaries = np.array_split(np.arange(len(train)), folds)
            results: List[ModelMetrics] = []

            for fold, held_out in enumerate(boundaries, start=1):
                start, end = int(held_out[0]), int(held_out[-1]) + 1
                held = DataSplit(train.features[start:end], train.labels[start:end])
                rest = DataSplit(
                    train.features[:start] + train.features[end:],
                    train.labels[:start] + train.labels[end:],
                )
                fold_data = TrainingData(train=rest, validation=held, test=DataSplit())
                width = fold_data.validate()

                result = await self._fit(fold_data, model_config, job_id, width)
                results.append(result.metrics)
                logger.info(f"Cross-validation fold {fold}/{folds}: accuracy {result.metrics.accuracy:.4f}")

            return results
        finally:
            self._end()

    # ---------- Evaluation ----------

    def evaluate_model(self, model: MLModel, split: DataSplit) -> ModelMetrics:
        if len(split) == 0:
            return ModelMetrics()
        predictions = predict_scores(model.algorithm, model.parameters, split.features)
        return calculate_metrics(predictions.tolist(), split.labels)

    @staticmethod
    def calculate_metrics(predictions, labels) -> ModelMetrics:
        return calculate_metrics(predictions, labels)


_trainer_instance: Optional[ModelTrainer] = None


def get_model_trainer() -> ModelTrainer:
    global _trainer_instance

    if _trainer_instance is None:
        _trainer_instance = ModelTrainer(registry=get_registry())

    return _trainer_instance
