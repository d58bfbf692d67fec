"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, HTTPException, Query, Request, UploadFile, status

from tmclassifier.api.schemas import (
    ErrorResponse,
    HealthResponse,
    ModelResponse,
    PredictionItem,
    PredictionResponse,
)
from tmclassifier.ml.sources import EncodedBitmap

if TYPE_CHECKING:
    from collections.abc import Callable

    from tmclassifier.config import Settings
    from tmclassifier.ml.image_classifier import CustomClassifier, Prediction
    from tmclassifier.ml.inference import InferencePool

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1")

_PAYLOAD_TOO_LARGE = 413

_PREDICTION_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    _PAYLOAD_TOO_LARGE: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_classifier(request: Request) -> CustomClassifier:
    classifier: CustomClassifier | None = getattr(request.app.state, "classifier", None)
    if classifier is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="No model loaded",
        )
    return classifier


async def _read_upload(file: UploadFile, settings: Settings) -> EncodedBitmap:
    # one byte past the limit is enough to tell an oversized upload apart
    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=_PAYLOAD_TOO_LARGE,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )
    return EncodedBitmap(data=data, max_pixels=settings.max_image_pixels)


async def _run_prediction(request: Request, func: Callable[..., list[Prediction]], *args: object) -> PredictionResponse:
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    try:
        predictions = await pool.run(func, *args, timeout=settings.prediction_timeout)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except TimeoutError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Inference timed out or server busy",
        ) from exc
    return PredictionResponse(
        predictions=[PredictionItem(class_name=p.class_name, probability=p.probability) for p in predictions]
    )


@router.post(
    "/predict",
    response_model=PredictionResponse,
    responses=_PREDICTION_RESPONSES,
    summary="Probabilities for every class",
)
async def predict(request: Request, file: UploadFile, flipped: bool = False) -> PredictionResponse:
    """Classify an uploaded image and return all classes in label order."""
    classifier = _get_classifier(request)
    source = await _read_upload(file, _get_settings(request))
    return await _run_prediction(request, classifier.predict, source, flipped)


@router.post(
    "/predict/top-k",
    response_model=PredictionResponse,
    responses=_PREDICTION_RESPONSES,
    summary="Most probable classes",
)
async def predict_top_k(
    request: Request,
    file: UploadFile,
    max_predictions: Annotated[int | None, Query(ge=0)] = None,
    flipped: bool = False,
) -> PredictionResponse:
    """Classify an uploaded image and return the top classes, best first."""
    classifier = _get_classifier(request)
    settings = _get_settings(request)
    if max_predictions is None:
        max_predictions = settings.default_max_predictions
    source = await _read_upload(file, settings)
    return await _run_prediction(request, classifier.predict_top_k, source, max_predictions, flipped)


@router.get(
    "/model",
    response_model=ModelResponse,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}},
    summary="Loaded model metadata",
)
async def model_info(request: Request) -> ModelResponse:
    """Return the metadata and output width of the loaded model."""
    classifier = _get_classifier(request)
    document = classifier.metadata.to_document()
    return ModelResponse.model_validate({**document, "totalClasses": classifier.get_total_classes()})


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        model_loaded=getattr(request.app.state, "classifier", None) is not None,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )
