"""Pydantic request/response schemas for the tmclassifier API."""

from __future__ import annotations

from typing import Any

from pydantic import AliasGenerator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class PredictionItem(BaseModel):
    """One class with its predicted probability."""

    class_name: str | None = Field(description="Label of the class (null if the output unit has no label)")
    probability: float


class PredictionResponse(BaseModel):
    """Response for the prediction endpoints."""

    predictions: list[PredictionItem]


class ModelResponse(BaseModel):
    """Metadata of the loaded model.

    Validated from the camelCase metadata document and served in snake_case.
    """

    model_config = ConfigDict(
        alias_generator=AliasGenerator(validation_alias=to_camel),
        protected_namespaces=(),
    )

    model_name: str
    time_stamp: str
    labels: list[str]
    total_classes: int | None = Field(description="Output width of the model (null if dynamic)")
    image_size: int
    grayscale: bool
    user_metadata: dict[str, Any]


class HealthResponse(BaseModel):
    """Health check response."""

    model_config = ConfigDict(protected_namespaces=())

    status: str = "ok"
    gpu: bool
    model_loaded: bool
    concurrent_requests: int
    queue_depth: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
