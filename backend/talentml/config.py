from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    log_level: str = "INFO"

    # Embedding provider: "mock", "openai" or "local"
    embedding_provider: str = "mock"
    openai_api_key: str = ""
    openai_embedding_model: str = "text-embedding-3-small"
    local_embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    # Dimensions for the mock provider (real providers report their own)
    embedding_dimensions: int = 64
    embedding_timeout_seconds: float = 2.0
    embedding_cache_size: int = 1000
    embedding_cache_key_length: int = 100
    max_text_length: int = 5000

    # Feature extraction
    use_text_embeddings: bool = True
    include_metadata_features: bool = True
    use_vector_normalization: bool = False

    # Model training
    max_iterations: int = 1000
    early_stopping_patience: int = 50
    early_stopping_tolerance: float = 0.001
    learning_rate: float = 0.1
    regularization_strength: float = 0.01
    cross_validation_folds: int = 5
    hyperparameter_tuning: bool = False
    random_seed: int = 42
    progress_queue_size: int = 256

    # A/B testing
    ab_enabled: bool = True
    ab_traffic_split: float = 0.1  # fraction of traffic sent to treatment
    ab_min_sample_size: int = 1000
    ab_confidence_level: float = 0.95
    ab_max_test_duration_days: float = 30
    ab_enable_auto_winner_selection: bool = True
    ab_winner_selection_threshold: float = 0.8
    ab_evaluation_interval_minutes: int = 60

    # Model registry: "memory" or "redis"
    registry_backend: str = "memory"
    redis_url: str = "redis://localhost:6379"
    registry_retry_attempts: int = 3
    model_cache_size: int = 16

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()
