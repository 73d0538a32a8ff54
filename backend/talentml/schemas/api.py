from pydantic import BaseModel, Field
from typing import Any, Optional

from talentml.schemas.profile import CandidateProfile, JobProfile


class SplitPayload(BaseModel):
    features: list[list[float]] = Field(default_factory=list)
    labels: list[float] = Field(default_factory=list)


class TrainingDataPayload(BaseModel):
    train: SplitPayload
    validation: SplitPayload
    test: SplitPayload = Field(default_factory=SplitPayload)


class TrainRequest(BaseModel):
    name: str
    algorithm: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    model_type: str = "matching"
    training_data: TrainingDataPayload


class CrossValidateRequest(TrainRequest):
    folds: Optional[int] = None


class PairRequest(BaseModel):
    candidate: CandidateProfile
    job: JobProfile


class CreateTestRequest(BaseModel):
    name: str
    description: str = ""
    control_model_id: str
    treatment_model_id: str
    options: dict[str, Any] = Field(default_factory=dict)


class StopTestRequest(BaseModel):
    reason: Optional[str] = None


class PredictRequest(PairRequest):
    test_id: Optional[str] = None


class PredictionPayload(BaseModel):
    score: float
    confidence: float
    metadata: dict[str, Any] = Field(default_factory=dict)


class ConversionRequest(BaseModel):
    user_id: str
    prediction: PredictionPayload
    conversion_type: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    test_id: Optional[str] = None


class ScoreRequest(BaseModel):
    features: list[list[float]]
