"""Model metadata: labels, input size, color mode, and bookkeeping fields.

Metadata is either given inline (a mapping or a :class:`Metadata`) or fetched
from a location reference: an http(s) URL, an ``hf://`` hub reference, or a
local JSON file. Optional fields that are absent or empty take their defaults.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from tmclassifier.errors import InvalidMetadataError, MetadataFetchError
from tmclassifier.ml.model_manager import resolve_location

logger = logging.getLogger(__name__)

IMAGE_SIZE = 224

_HTTP_SCHEMES = ("http://", "https://")


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class Metadata(BaseModel):
    """Descriptor attached to one loaded model.

    ``labels[i]`` names output unit ``i`` of the model.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, protected_namespaces=())

    labels: list[str]
    image_size: int = Field(default=IMAGE_SIZE, gt=0, alias="imageSize")
    grayscale: bool = False
    model_name: str = Field(default="untitled", alias="modelName")
    time_stamp: str = Field(default_factory=_now_iso, alias="timeStamp")
    user_metadata: dict[str, Any] = Field(default_factory=dict, alias="userMetadata")

    @model_validator(mode="before")
    @classmethod
    def _drop_empty_optionals(cls, data: Any) -> Any:
        # Falsy optional values (None, "", 0, {}) fall back to their defaults.
        if isinstance(data, Mapping):
            return {key: value for key, value in data.items() if key == "labels" or value}
        return data

    def to_document(self) -> dict[str, Any]:
        """Serialize using the document (camelCase) keys."""
        return self.model_dump(by_alias=True)


def is_metadata(candidate: object) -> bool:
    """Return True if ``candidate`` is metadata-shaped (has a ``labels`` list)."""
    if isinstance(candidate, Metadata):
        return True
    return isinstance(candidate, Mapping) and isinstance(candidate.get("labels"), list)


def default_metadata() -> Metadata:
    """Metadata used when a model is loaded without any."""
    return Metadata(labels=[])


def fetch_document(
    location: str | Path,
    *,
    client: httpx.Client | None = None,
    models_dir: str | Path = "models",
    timeout: float = 10.0,
) -> object:
    """Fetch and parse the JSON document at ``location``.

    Raises:
        MetadataFetchError: On any network, HTTP status, file, or JSON error.
    """
    try:
        if isinstance(location, str) and location.startswith(_HTTP_SCHEMES):
            if client is None:
                with httpx.Client(timeout=timeout, follow_redirects=True) as owned:
                    response = owned.get(location)
            else:
                response = client.get(location)
            response.raise_for_status()
            return response.json()

        path = resolve_location(location, models_dir)
        return json.loads(path.read_text(encoding="utf-8"))
    except (httpx.HTTPError, OSError, ValueError) as exc:
        raise MetadataFetchError(f"Could not fetch metadata from {location}: {exc}") from exc


def resolve_metadata(
    source: str | Path | Mapping[str, Any] | Metadata,
    *,
    client: httpx.Client | None = None,
    models_dir: str | Path = "models",
    timeout: float = 10.0,
) -> Metadata:
    """Turn a location reference or an inline object into validated Metadata.

    Args:
        source: URL, ``hf://`` reference, or file path of a JSON document, or
            an already-parsed mapping, or a Metadata instance.
        client: Optional httpx client used for http(s) locations.
        models_dir: Download directory for hub references.
        timeout: Request timeout in seconds when no client is given.

    Raises:
        MetadataFetchError: If a location reference cannot be fetched or parsed.
        InvalidMetadataError: If the object is not metadata-shaped or fails validation.
    """
    if isinstance(source, Metadata):
        return source

    if isinstance(source, str | Path):
        document = fetch_document(source, client=client, models_dir=models_dir, timeout=timeout)
        logger.info("Fetched metadata from %s", source)
    else:
        document = source

    if not is_metadata(document):
        raise InvalidMetadataError("Invalid metadata provided: expected an object with a 'labels' list")

    try:
        return Metadata.model_validate(document)
    except ValidationError as exc:
        raise InvalidMetadataError(f"Invalid metadata provided: {exc}") from exc
