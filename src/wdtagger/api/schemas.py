"""Pydantic request/response schemas for the wdtagger API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from wdtagger.ml.tags import TagPrediction
    from wdtagger.ml.thresholding import CategoryResults


class ImageTag(BaseModel):
    """A single tag with its confidence score."""

    id: int = Field(description="Catalog tag id")
    name: str
    confidence: float = Field(description="Probability as returned by the model")

    @classmethod
    def from_prediction(cls, prediction: TagPrediction) -> ImageTag:
        return cls(id=prediction.tag.id, name=prediction.tag.name, confidence=prediction.probability)


class TagImageResponse(BaseModel):
    """Response for the image tagging endpoint."""

    rating: list[ImageTag]
    character: list[ImageTag]
    general: list[ImageTag]
    general_threshold: float = Field(description="Threshold applied to general tags")
    character_threshold: float = Field(description="Threshold applied to character tags")
    caption: str = Field(description="General tag names joined by ', ', most confident first")

    @classmethod
    def from_results(cls, results: CategoryResults) -> TagImageResponse:
        return cls(
            rating=[ImageTag.from_prediction(p) for p in results.rating],
            character=[ImageTag.from_prediction(p) for p in results.character],
            general=[ImageTag.from_prediction(p) for p in results.general_by_confidence()],
            general_threshold=results.general_threshold,
            character_threshold=results.character_threshold,
            caption=results.general_tag_string(),
        )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    repo_id: str
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
