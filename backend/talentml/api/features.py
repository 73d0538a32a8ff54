from fastapi import APIRouter, Depends

from talentml.schemas.api import PairRequest
from talentml.services.feature_extractor import FeatureExtractor, get_feature_extractor

router = APIRouter()


@router.post("/pair")
async def extract_pair(
    request: PairRequest,
    extractor: FeatureExtractor = Depends(get_feature_extractor),
):
    features = await extractor.extract_pair_features(request.candidate, request.job)
    return {
        "features": features.vector,
        "names": extractor.pair_feature_names(),
        "metadata": features.metadata,
    }


@router.get("/names")
async def feature_names(
    extractor: FeatureExtractor = Depends(get_feature_extractor),
):
    return {
        "profile": extractor.profile_feature_names(),
        "pair": extractor.pair_feature_names(),
    }
