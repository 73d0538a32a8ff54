from fastapi import APIRouter, Depends, HTTPException

from talentml.schemas.api import CrossValidateRequest, ScoreRequest, TrainRequest
from talentml.schemas.ml import ModelConfig, TrainingData, as_split
from talentml.services.model_trainer import ModelTrainer, get_model_trainer
from talentml.api.deps import registry_dependency
from talentml.services.registry import ModelRegistry
from talentml.services.scoring import ModelCache, ModelScorer, get_model_cache

router = APIRouter()


def _training_data(request: TrainRequest) -> TrainingData:
    data = request.training_data
    return TrainingData(
        train=as_split(data.train.features, data.train.labels),
        validation=as_split(data.validation.features, data.validation.labels),
        test=as_split(data.test.features, data.test.labels),
    )


def _model_config(request: TrainRequest) -> ModelConfig:
    return ModelConfig(
        name=request.name,
        algorithm=request.algorithm,
        parameters=request.parameters,
        model_type=request.model_type,
    )


@router.get("")
async def list_models(registry: ModelRegistry = Depends(registry_dependency)):
    models = await registry.list_models()
    return {"models": [m.to_dict() for m in models], "total": len(models)}


@router.post("/train", status_code=201)
async def train_model(
    request: TrainRequest,
    trainer: ModelTrainer = Depends(get_model_trainer),
):
    result = await trainer.train(_training_data(request), _model_config(request))
    return {
        "model": result.model.to_dict(),
        "metrics": result.metrics.to_dict(),
        "hyperparameters": result.hyperparameters,
        "iterations": len(result.training_history),
        "training_time": result.training_time,
    }


@router.post("/cross-validate")
async def cross_validate(
    request: CrossValidateRequest,
    trainer: ModelTrainer = Depends(get_model_trainer),
):
    folds = await trainer.cross_validate(_training_data(request), _model_config(request), request.folds)
    return {"folds": [m.to_dict() for m in folds]}


@router.get("/training/progress")
async def training_progress(trainer: ModelTrainer = Depends(get_model_trainer)):
    progress = trainer.get_training_progress()
    return {
        "is_training": trainer.is_training,
        "progress": progress.to_dict() if progress else None,
    }


@router.post("/training/cancel")
async def cancel_training(trainer: ModelTrainer = Depends(get_model_trainer)):
    if not trainer.cancel():
        raise HTTPException(status_code=409, detail="No training run in progress")
    return {"message": "Cancellation requested"}


@router.get("/cache")
async def cached_models(cache: ModelCache = Depends(get_model_cache)):
    return {"models": cache.cached_models(), "capacity": cache.capacity}


@router.delete("/cache")
async def clear_model_cache(cache: ModelCache = Depends(get_model_cache)):
    cache.clear()
    return {"message": "Model cache cleared"}


@router.get("/{model_id}")
async def get_model(model_id: str, registry: ModelRegistry = Depends(registry_dependency)):
    model = await registry.load_model(model_id)
    if not model:
        raise HTTPException(status_code=404, detail="Model not found")
    return model.to_dict()


@router.post("/{model_id}/activate")
async def activate_model(
    model_id: str,
    registry: ModelRegistry = Depends(registry_dependency),
    cache: ModelCache = Depends(get_model_cache),
):
    model = await registry.load_model(model_id)
    if not model:
        raise HTTPException(status_code=404, detail="Model not found")

    # One active model per model type
    for other in await registry.list_models():
        if other.id != model_id and other.active and other.model_type == model.model_type:
            await registry.update_model(other.activated(False))
            cache.invalidate(other.id)

    activated = model.activated()
    await registry.update_model(activated)
    cache.invalidate(model_id)
    return activated.to_dict()


@router.post("/{model_id}/score")
async def score_batch(
    model_id: str,
    request: ScoreRequest,
    cache: ModelCache = Depends(get_model_cache),
):
    model = await cache.get_model(model_id)
    if not model:
        raise HTTPException(status_code=404, detail="Model not found")

    predictions = ModelScorer().score_batch(model, request.features)
    return {"predictions": [p.to_dict() for p in predictions], "total": len(predictions)}
