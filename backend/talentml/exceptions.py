"""
Typed errors raised by the matching core.

Validation, configuration and state errors always reach the caller.
Degraded-input and external-dependency failures are recovered where they
happen and never show up here.
"""


class MatchingError(Exception):
    """Base class for all matching core errors."""


class TrainingDataError(MatchingError, ValueError):
    """Training data is malformed (missing split, length mismatch, empty set)."""


class ConfigurationError(MatchingError, ValueError):
    """A configuration value is unknown or out of range."""


class UnsupportedAlgorithmError(ConfigurationError):
    """The requested training algorithm is not one of the supported variants."""

    def __init__(self, algorithm: object):
        self.algorithm = algorithm
        super().__init__(f"Unsupported algorithm: {algorithm}")


class TrainingInProgressError(MatchingError, RuntimeError):
    """A second training run was requested while one is active."""

    def __init__(self, job_id: str = ""):
        self.job_id = job_id
        super().__init__(
            f"Training in progress (job {job_id})" if job_id else "Training in progress"
        )


class TrainingCancelledError(MatchingError):
    """The active training run was cancelled before producing a model."""


class TestNotFoundError(MatchingError, KeyError):
    """No A/B test is registered under the given id."""

    __test__ = False  # keep pytest from collecting this class

    def __init__(self, test_id: str):
        self.test_id = test_id
        super().__init__(f"Test not found: {test_id}")

    def __str__(self) -> str:
        return self.args[0]


class InvalidTestStateError(MatchingError, RuntimeError):
    """An A/B test transition was requested from the wrong status."""


class NoActiveTestError(MatchingError):
    """A prediction was requested but no A/B test is running."""


class RegistryError(MatchingError):
    """The model registry failed to save, load or update a record."""
