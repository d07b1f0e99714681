"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status

from wdtagger.api.middleware import get_settings_from_request, verify_api_key
from wdtagger.api.schemas import (
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    TagImageResponse,
)
from wdtagger.exceptions import CatalogMismatchError, InsufficientDataError, InvalidInputError, TaggerError
from wdtagger.ml.model_manager import MODEL_REGISTRY

if TYPE_CHECKING:
    from wdtagger.ml.inference import InferencePool
    from wdtagger.ml.model_manager import ModelManager
    from wdtagger.ml.thresholding import CategoryResults, ThresholdConfig

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def _run_tagging(
    manager: ModelManager,
    model_name: str,
    image_bytes: bytes,
    config: ThresholdConfig,
    max_pixels: int,
) -> CategoryResults:
    tagger = manager.get_tagger(model_name)
    return tagger.tag_bytes(image_bytes, config, max_pixels)


@router.post(
    "/tag-image",
    response_model=TagImageResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Tag an image",
)
async def tag_image(
    request: Request,
    file: UploadFile,
    general_mcut: bool | None = None,
    character_mcut: bool | None = None,
) -> TagImageResponse:
    """Tag an uploaded image, returning rating, character and general tags.

    ``general_mcut`` and ``character_mcut`` override the configured
    adaptive-threshold switches for this request.
    """
    settings = get_settings_from_request(request)
    image_bytes = await file.read()
    if len(image_bytes) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            detail=f"File exceeds the {settings.max_file_size} byte limit",
        )

    config = settings.threshold_config(general_mcut=general_mcut, character_mcut=character_mcut)
    pool = _get_inference_pool(request)
    try:
        results = await pool.run(
            _run_tagging,
            _get_model_manager(request),
            settings.tagger_model,
            image_bytes,
            config,
            settings.max_image_pixels,
        )
    except TimeoutError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Too many concurrent requests, try again later",
        ) from None
    except (InvalidInputError, InsufficientDataError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except CatalogMismatchError as exc:
        logger.error("Model %s does not match its tag catalog: %s", settings.tagger_model, exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except TaggerError as exc:
        logger.error("Model %s failed to tag image: %s", settings.tagger_model, exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    return TagImageResponse.from_results(results)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = get_settings_from_request(request)
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=_get_model_manager(request).get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return the known tagger models, marking the configured one as active."""
    settings = get_settings_from_request(request)
    models = [
        ModelInfo(
            name=spec.name,
            repo_id=spec.repo_id,
            status="active" if spec.name == settings.tagger_model else "available",
            license=spec.license,
        )
        for spec in MODEL_REGISTRY.values()
    ]
    return ModelsResponse(models=models)
