"""
Tests for the model trainer.

Tests cover:
- Input validation before any iteration
- Training every algorithm variant end to end
- Single-flight training and cancellation
- Progress events and early stopping
- Hyperparameter tuning and cross-validation
- Scoring trained models and registry persistence
"""

import asyncio
import json
import threading
from unittest.mock import patch

import numpy as np
import pytest

from talentml.exceptions import (
    ConfigurationError,
    TrainingCancelledError,
    TrainingDataError,
    TrainingInProgressError,
    UnsupportedAlgorithmError,
)
from talentml.schemas.ml import Algorithm, DataSplit, MLModel, ModelConfig, TrainingData
from talentml.services.algorithms import LogisticRegressionLearner, predict_scores
from talentml.services.model_trainer import ModelTrainer, TrainerOptions
from talentml.services.registry import InMemoryRegistry
from talentml.services.scoring import ModelScorer

from conftest import make_split


def make_trainer(**overrides) -> ModelTrainer:
    options = {
        "max_iterations": 200,
        "early_stopping_patience": 20,
        "early_stopping_tolerance": 0.0,
        "learning_rate": 0.1,
        "regularization_strength": 0.0,
        "cross_validation_folds": 5,
        "hyperparameter_tuning": False,
        "random_seed": 7,
    }
    options.update(overrides)
    return ModelTrainer(options=TrainerOptions(**options))


class TestTrainerOptions:
    """Tests for option validation."""

    def test_invalid_iterations(self):
        """max_iterations must be positive."""
        with pytest.raises(ConfigurationError):
            TrainerOptions(max_iterations=0)

    def test_invalid_tolerance(self):
        """Tolerance cannot be negative."""
        with pytest.raises(ConfigurationError):
            TrainerOptions(early_stopping_tolerance=-1)


class TestValidation:
    """Malformed data is rejected before training starts."""

    @pytest.mark.asyncio
    async def test_empty_validation_split(self):
        """100 train samples and no validation samples raise before iterating."""
        trainer = make_trainer()
        data = TrainingData(train=make_split(100), validation=DataSplit(), test=DataSplit())

        with pytest.raises(TrainingDataError):
            await trainer.train(data, ModelConfig("match", "logistic_regression"))

        events = trainer.channel.events()
        assert [e.status for e in events] == ["failed"]
        assert not trainer.is_training

    @pytest.mark.asyncio
    async def test_length_mismatch(self):
        """Features and labels must line up."""
        trainer = make_trainer()
        bad = DataSplit(features=[[0.1, 0.2]] * 3, labels=[1.0, 0.0])
        data = TrainingData(train=bad, validation=make_split(10), test=DataSplit())

        with pytest.raises(TrainingDataError):
            await trainer.train(data, ModelConfig("match", "logistic_regression"))

    @pytest.mark.asyncio
    async def test_inconsistent_widths(self):
        """All splits must share one feature width."""
        trainer = make_trainer()
        data = TrainingData(train=make_split(20, width=2), validation=make_split(10, width=3), test=DataSplit())

        with pytest.raises(TrainingDataError):
            await trainer.train(data, ModelConfig("match", "logistic_regression"))

    @pytest.mark.asyncio
    async def test_missing_split(self):
        """A missing split is a data error."""
        trainer = make_trainer()
        data = TrainingData(train=make_split(20), validation=None, test=DataSplit())

        with pytest.raises(TrainingDataError):
            await trainer.train(data, ModelConfig("match", "logistic_regression"))

    @pytest.mark.asyncio
    async def test_rows_shared_between_splits(self):
        """A feature vector in both train and test is rejected before training."""
        trainer = make_trainer()
        train = make_split(20, seed=1)
        leaked = DataSplit(features=[train.features[0]], labels=[train.labels[0]])
        data = TrainingData(train=train, validation=make_split(10, seed=2), test=leaked)

        with pytest.raises(TrainingDataError, match="train and test"):
            await trainer.train(data, ModelConfig("match", "logistic_regression"))
        assert not trainer.is_training

    def test_repeated_rows_within_one_split_allowed(self):
        """Duplicates inside a single split are not a leak."""
        train = make_split(20, seed=1)
        repeated = DataSplit(features=train.features + train.features[:2], labels=train.labels + train.labels[:2])
        data = TrainingData(train=repeated, validation=make_split(10, seed=2), test=DataSplit())

        assert data.validate() == 2

    @pytest.mark.asyncio
    async def test_single_class_labels(self):
        """Classifiers need both positive and negative examples."""
        trainer = make_trainer()
        train = make_split(20, seed=1)
        data = TrainingData(
            train=DataSplit(features=train.features, labels=[1.0] * 20),
            validation=make_split(10, seed=2),
            test=DataSplit(),
        )

        with pytest.raises(TrainingDataError):
            await trainer.train(data, ModelConfig("match", "random_forest"))

    def test_unsupported_algorithm(self):
        """Unknown algorithm tags are rejected."""
        with pytest.raises(UnsupportedAlgorithmError):
            ModelConfig("match", "deep_forest")

    def test_algorithm_parse_is_case_insensitive(self):
        """Tags are normalised."""
        assert ModelConfig("match", "  XGBoost ").algorithm == Algorithm.XGBOOST


class TestTraining:
    """End-to-end training runs."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("algorithm", [a.value for a in Algorithm])
    async def test_every_algorithm_trains(self, algorithm, separable_data):
        """Each variant produces a scored, serialisable model."""
        trainer = make_trainer(max_iterations=30)
        parameters = {"n_estimators": 10} if algorithm in ("random_forest", "gradient_boosting", "xgboost") else {}
        if algorithm == "neural_network":
            parameters = {"hidden_layers": [8, 4]}

        result = await trainer.train(separable_data, ModelConfig("match", algorithm, parameters))

        model = result.model
        assert model.algorithm == Algorithm(algorithm)
        assert model.parameters["feature_count"] == 2
        assert 0.0 <= result.metrics.accuracy <= 1.0
        assert result.metrics.sample_count == len(separable_data.test)
        assert model.accuracy == result.metrics.accuracy
        assert len(result.training_history) >= 1
        assert model.metadata["iterations"] == len(result.training_history)

    @pytest.mark.asyncio
    async def test_logistic_regression_learns_separable_data(self, separable_data):
        """A clean linear boundary is learned."""
        trainer = make_trainer(max_iterations=300)
        config = ModelConfig("match", "logistic_regression", {"learning_rate": 1.0})

        result = await trainer.train(separable_data, config)

        assert result.metrics.accuracy >= 0.9
        assert result.metrics.auc_roc >= 0.9

    @pytest.mark.asyncio
    async def test_gradient_boosting_learns_separable_data(self):
        """A single split on the first feature separates the classes."""
        def split(seed):
            rng = np.random.default_rng(seed)
            first = rng.choice([0.1, 0.2, 0.8, 0.9], size=40)
            features = np.column_stack([first, rng.uniform(0.0, 1.0, size=40)])
            return DataSplit(features=features.tolist(), labels=(first > 0.5).astype(float).tolist())

        data = TrainingData(train=split(1), validation=split(2), test=split(3))
        trainer = make_trainer(max_iterations=50)
        config = ModelConfig("match", "gradient_boosting", {"n_estimators": 20, "max_depth": 2, "learning_rate": 0.5})

        result = await trainer.train(data, config)

        assert result.metrics.accuracy == 1.0
        importance = result.model.parameters["feature_importance"]
        assert importance[0] > importance[1]

    @pytest.mark.asyncio
    async def test_round_based_algorithms_stop_at_n_estimators(self, separable_data):
        """Tree learners run at most n_estimators iterations."""
        trainer = make_trainer(max_iterations=500, early_stopping_patience=1000)
        config = ModelConfig("match", "random_forest", {"n_estimators": 5})

        result = await trainer.train(separable_data, config)

        assert len(result.training_history) == 5
        assert all(p.total_iterations == 5 for p in result.training_history)

    @pytest.mark.asyncio
    async def test_progress_events_in_order(self, separable_data):
        """Iterations are published in order and end with a terminal event."""
        trainer = make_trainer(max_iterations=10)
        await trainer.train(separable_data, ModelConfig("match", "logistic_regression"))

        events = trainer.channel.events()
        iterations = [e.iteration for e in events[:-1]]
        assert iterations == sorted(iterations)
        assert events[-1].status == "completed"
        assert events[-1].progress == 1.0

    @pytest.mark.asyncio
    async def test_early_stopping(self, separable_data):
        """Training stops once validation loss stops improving."""
        trainer = make_trainer(max_iterations=1000, early_stopping_patience=3, early_stopping_tolerance=0.5)

        result = await trainer.train(separable_data, ModelConfig("match", "logistic_regression"))

        assert result.model.metadata["early_stopped"] is True
        assert len(result.training_history) < 1000

    @pytest.mark.asyncio
    async def test_versions_increment_per_name(self, separable_data):
        """Retraining the same model name bumps the major version."""
        trainer = make_trainer(max_iterations=5)
        first = await trainer.train(separable_data, ModelConfig("match", "logistic_regression"))
        second = await trainer.train(separable_data, ModelConfig("match", "logistic_regression"))
        other = await trainer.train(separable_data, ModelConfig("other", "logistic_regression"))

        assert first.model.version == "1.0.0"
        assert second.model.version == "2.0.0"
        assert other.model.version == "1.0.0"
        assert first.model.id != second.model.id

    @pytest.mark.asyncio
    async def test_deterministic_with_seed(self, separable_data):
        """Same seed, data and config give the same parameters."""
        config = ModelConfig("match", "neural_network", {"hidden_layers": [4]})
        first = await make_trainer(max_iterations=10).train(separable_data, config)
        second = await make_trainer(max_iterations=10).train(separable_data, config)

        features = separable_data.test.features
        assert np.array_equal(
            predict_scores("neural_network", first.model.parameters, features),
            predict_scores("neural_network", second.model.parameters, features),
        )

    @pytest.mark.asyncio
    async def test_invalid_learner_parameter(self, separable_data):
        """Learner-level configuration errors surface to the caller."""
        trainer = make_trainer()
        with pytest.raises(ConfigurationError):
            await trainer.train(separable_data, ModelConfig("match", "svm", {"kernel": "rbf"}))
        assert not trainer.is_training

    @pytest.mark.asyncio
    async def test_model_saved_to_registry(self, separable_data):
        """Completed models are persisted when a registry is configured."""
        registry = InMemoryRegistry()
        trainer = ModelTrainer(
            options=TrainerOptions(max_iterations=5),
            registry=registry,
        )

        result = await trainer.train(separable_data, ModelConfig("match", "logistic_regression"))

        stored = await registry.load_model(result.model.id)
        assert stored is not None
        assert stored.version == result.model.version


class TestSingleFlight:
    """Only one run at a time per trainer."""

    @pytest.mark.asyncio
    async def test_second_train_rejected_and_cancel(self, separable_data):
        """A concurrent train() raises; cancel() stops the active run without a model."""
        trainer = make_trainer(max_iterations=1000, early_stopping_patience=1000)
        config = ModelConfig("match", "logistic_regression")

        task = asyncio.create_task(trainer.train(separable_data, config))
        await asyncio.sleep(0)

        assert trainer.is_training
        with pytest.raises(TrainingInProgressError):
            await trainer.train(separable_data, config)

        assert trainer.cancel() is True
        with pytest.raises(TrainingCancelledError):
            await task

        assert not trainer.is_training
        assert trainer.channel.latest().status == "cancelled"

    @pytest.mark.asyncio
    async def test_trainer_reusable_after_cancel(self, separable_data):
        """After a cancelled run the next run succeeds."""
        trainer = make_trainer(max_iterations=1000, early_stopping_patience=1000)
        config = ModelConfig("match", "logistic_regression")

        task = asyncio.create_task(trainer.train(separable_data, config))
        await asyncio.sleep(0)
        trainer.cancel()
        with pytest.raises(TrainingCancelledError):
            await task

        trainer.options.max_iterations = 5
        result = await trainer.train(separable_data, config)
        assert result.model is not None

    @pytest.mark.asyncio
    async def test_task_cancellation_releases_trainer(self, separable_data):
        """Cancelling the asyncio task frees the trainer for the next run."""
        trainer = make_trainer(max_iterations=1000, early_stopping_patience=1000)
        config = ModelConfig("match", "logistic_regression")

        task = asyncio.create_task(trainer.train(separable_data, config))
        await asyncio.sleep(0)
        assert trainer.is_training

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not trainer.is_training
        assert trainer.channel.latest().status == "cancelled"

        trainer.options.max_iterations = 5
        result = await trainer.train(separable_data, config)
        assert result.model.version == "1.0.0"

    @pytest.mark.asyncio
    async def test_steps_run_off_the_event_loop(self, separable_data):
        """Learner steps execute in worker threads, not on the loop thread."""
        loop_thread = threading.get_ident()
        step_threads = []
        original_step = LogisticRegressionLearner.step

        def recording_step(learner):
            step_threads.append(threading.get_ident())
            original_step(learner)

        with patch.object(LogisticRegressionLearner, "step", recording_step):
            await make_trainer(max_iterations=5).train(separable_data, ModelConfig("match", "logistic_regression"))

        assert len(step_threads) == 5
        assert loop_thread not in step_threads

    def test_cancel_when_idle(self):
        """cancel() with nothing running is a no-op."""
        assert make_trainer().cancel() is False


class TestTuningAndCrossValidation:
    """Tests for hyperparameter search and k-fold evaluation."""

    @pytest.mark.asyncio
    async def test_tuning_never_worse_than_baseline(self, separable_data):
        """The tuned model is at least as accurate as the untuned one."""
        config = ModelConfig("match", "logistic_regression")
        baseline = await make_trainer(max_iterations=30).train(separable_data, config)
        tuned = await make_trainer(max_iterations=30, hyperparameter_tuning=True).train(separable_data, config)

        assert tuned.metrics.accuracy >= baseline.metrics.accuracy

    @pytest.mark.asyncio
    async def test_cross_validation_fold_count(self, separable_data):
        """One metrics entry per fold."""
        trainer = make_trainer(max_iterations=20)
        folds = await trainer.cross_validate(separable_data, ModelConfig("match", "logistic_regression"), folds=4)

        assert len(folds) == 4
        assert sum(m.sample_count for m in folds) == len(separable_data.train)
        assert not trainer.is_training

    @pytest.mark.asyncio
    async def test_cross_validation_rejects_bad_folds(self, separable_data):
        """Fewer than two folds, or more folds than samples, is a configuration error."""
        trainer = make_trainer()
        config = ModelConfig("match", "logistic_regression")

        with pytest.raises(ConfigurationError):
            await trainer.cross_validate(separable_data, config, folds=1)
        small = TrainingData(train=make_split(3), validation=DataSplit(), test=DataSplit())
        with pytest.raises(ConfigurationError):
            await trainer.cross_validate(small, config, folds=5)


class TestScoring:
    """Tests for scoring with trained models."""

    @pytest.mark.asyncio
    async def test_score_in_range_with_metadata(self, separable_data):
        """Scores and confidence are in [0, 1] and tagged with the model."""
        result = await make_trainer(max_iterations=20).train(
            separable_data, ModelConfig("match", "gradient_boosting", {"n_estimators": 5})
        )

        prediction = ModelScorer().score(result.model, [0.9, 0.5])

        assert 0.0 <= prediction.score <= 1.0
        assert 0.0 <= prediction.confidence <= 1.0
        assert prediction.metadata["model_id"] == result.model.id
        assert prediction.metadata["algorithm"] == "gradient_boosting"

    @pytest.mark.asyncio
    async def test_width_mismatch_rejected(self, separable_data):
        """A vector of the wrong width is a configuration error."""
        result = await make_trainer(max_iterations=5).train(
            separable_data, ModelConfig("match", "logistic_regression")
        )
        with pytest.raises(ConfigurationError):
            ModelScorer().score(result.model, [0.1, 0.2, 0.3])

    @pytest.mark.asyncio
    @pytest.mark.parametrize("algorithm,parameters", [
        ("random_forest", {"n_estimators": 3}),
        ("xgboost", {"n_estimators": 3}),
        ("neural_network", {"hidden_layers": [4]}),
    ])
    async def test_serialised_model_scores_identically(self, separable_data, algorithm, parameters):
        """A model round-tripped through the registry format scores the same."""
        result = await make_trainer(max_iterations=10).train(
            separable_data, ModelConfig("match", algorithm, parameters)
        )
        restored = MLModel.from_dict(json.loads(json.dumps(result.model.to_dict())))

        scorer = ModelScorer()
        assert scorer.score(restored, [0.1, 0.7]).score == scorer.score(result.model, [0.1, 0.7]).score
