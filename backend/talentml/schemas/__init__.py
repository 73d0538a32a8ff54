from talentml.schemas.profile import (
    CandidateProfile,
    JobProfile,
    ProfileType,
    Skill,
    Experience,
    Education,
    Location,
    SalaryRange,
    Preferences,
)
from talentml.schemas.ml import (
    Algorithm,
    DataSplit,
    TrainingData,
    ModelConfig,
    ModelMetrics,
    TrainingProgress,
    MLModel,
    TrainingResult,
    PredictionResult,
)

__all__ = [
    "CandidateProfile",
    "JobProfile",
    "ProfileType",
    "Skill",
    "Experience",
    "Education",
    "Location",
    "SalaryRange",
    "Preferences",
    "Algorithm",
    "DataSplit",
    "TrainingData",
    "ModelConfig",
    "ModelMetrics",
    "TrainingProgress",
    "MLModel",
    "TrainingResult",
    "PredictionResult",
]
