"""Image classifier facade over an ONNX image-classification model.

The model is a truncated MobileNet-style network (TF.js/Keras export, NHWC
input) whose labels come from a metadata document.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from operator import itemgetter
from typing import TYPE_CHECKING

import numpy as np

from tmclassifier.config import get_settings
from tmclassifier.errors import MetadataMismatchError
from tmclassifier.ml.metadata import IMAGE_SIZE, Metadata, default_metadata, resolve_metadata
from tmclassifier.ml.model_manager import create_session
from tmclassifier.ml.preprocessing import ScratchScope, capture, crop_to

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from pathlib import Path
    from typing import Any

    import httpx
    from numpy.typing import ArrayLike
    from onnxruntime import InferenceSession

    from tmclassifier.config import Settings
    from tmclassifier.ml.sources import ClassifierInputSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Prediction:
    """A single classification prediction.

    ``class_name`` is None only for output units without a label, which is
    possible when label checking is disabled.
    """

    class_name: str | None
    probability: float


def _label_for(labels: Sequence[str], index: int) -> str | None:
    return labels[index] if index < len(labels) else None


def top_k_classes(labels: Sequence[str], values: ArrayLike, top_k: int = 3) -> list[Prediction]:
    """Return the ``top_k`` highest values paired with their labels.

    Ties keep ascending index order. ``top_k`` is clamped to the number of
    values.
    """
    flat = [float(value) for value in np.ravel(values)]
    top_k = max(0, min(top_k, len(flat)))
    ranked = sorted(enumerate(flat), key=itemgetter(1), reverse=True)
    return [Prediction(class_name=_label_for(labels, index), probability=value) for index, value in ranked[:top_k]]


def _is_channels_first(shape: Sequence[object]) -> bool:
    return len(shape) == 4 and shape[1] in (1, 3) and shape[3] not in (1, 3)


class CustomClassifier:
    """Pairs one loaded ONNX session with its Metadata.

    Lifecycle is construction -> ready -> disposed. Calling any method after
    :meth:`dispose` raises RuntimeError.
    """

    EXPECTED_IMAGE_SIZE = IMAGE_SIZE

    def __init__(self, session: InferenceSession, metadata: Metadata, *, strict_labels: bool = True) -> None:
        self._session: InferenceSession | None = session
        self._metadata = metadata

        model_input = session.get_inputs()[0]
        self._input_name: str = model_input.name
        self._channels_first = _is_channels_first(model_input.shape)

        self._scopes_lock = threading.Lock()
        self._active_scopes: set[ScratchScope] = set()

        total_classes = self.get_total_classes()
        if total_classes is not None and len(metadata.labels) != total_classes:
            if strict_labels:
                raise MetadataMismatchError(list(metadata.labels), total_classes)
            logger.warning(
                "Metadata lists %s labels but the model outputs %s classes",
                len(metadata.labels),
                total_classes,
            )

    # -- Public API ---------------------------------------------------------

    @property
    def metadata(self) -> Metadata:
        return self._metadata

    @property
    def pending_buffers(self) -> int:
        """Intermediate buffers still held by in-flight predictions."""
        with self._scopes_lock:
            return sum(scope.live for scope in self._active_scopes)

    def get_total_classes(self) -> int | None:
        """Return the model's output width, or None if it is not fixed."""
        shape = self._require_session().get_outputs()[0].shape
        width = shape[1] if len(shape) > 1 else None
        return width if isinstance(width, int) else None

    def get_class_labels(self) -> list[str]:
        self._require_session()
        return list(self._metadata.labels)

    def predict(self, source: ClassifierInputSource, flipped: bool = False) -> list[Prediction]:
        """Return probabilities for all classes, in label order.

        Args:
            source: The image to classify.
            flipped: Mirror the image horizontally before classifying.
        """
        values = self._infer(source, flipped)
        labels = self._metadata.labels
        return [Prediction(class_name=_label_for(labels, index), probability=value) for index, value in enumerate(values)]

    def predict_top_k(
        self,
        source: ClassifierInputSource,
        max_predictions: int = 10,
        flipped: bool = False,
    ) -> list[Prediction]:
        """Return the ``max_predictions`` most probable classes, best first.

        Args:
            source: The image to classify.
            max_predictions: Maximum number of predictions to return.
            flipped: Mirror the image horizontally before classifying.
        """
        values = self._infer(source, flipped)
        return top_k_classes(self._metadata.labels, values, max_predictions)

    def dispose(self) -> None:
        """Release the underlying ONNX session."""
        self._require_session()
        self._session = None
        logger.info("Disposed classifier for model %s", self._metadata.model_name)

    # -- Internal -----------------------------------------------------------

    def _require_session(self) -> InferenceSession:
        if self._session is None:
            raise RuntimeError("Classifier has been disposed")
        return self._session

    def _infer(self, source: ClassifierInputSource, flipped: bool) -> list[float]:
        session = self._require_session()
        scope = ScratchScope()
        with self._scopes_lock:
            self._active_scopes.add(scope)
        try:
            with scope:
                cropped = scope.keep(crop_to(source, self._metadata.image_size, flipped, scope))
                batch = scope.keep(capture(cropped, self._metadata.grayscale, scope))
                if self._channels_first:
                    batch = scope.keep(batch.transpose(0, 3, 1, 2))
                outputs = scope.keep(session.run(None, {self._input_name: batch}))
                logits = scope.keep(np.asarray(outputs[0]))
                values = [float(value) for value in logits.reshape(-1)]
        finally:
            with self._scopes_lock:
                self._active_scopes.discard(scope)
        logger.debug("Inference produced %s values", len(values))
        return values


def load(
    model_location: str | Path,
    metadata: str | Path | Mapping[str, Any] | Metadata | None = None,
    *,
    settings: Settings | None = None,
    client: httpx.Client | None = None,
) -> CustomClassifier:
    """Load a model and its metadata into a ready classifier.

    Args:
        model_location: Local ``.onnx`` path or ``hf://owner/repo/path`` reference.
        metadata: Metadata location reference or inline object. Without it,
            the label list is empty.
        settings: Runtime settings; read from the environment when omitted.
        client: Optional httpx client for fetching http(s) metadata.

    Raises:
        ModelLoadError: If the model cannot be loaded.
        MetadataFetchError: If the metadata document cannot be fetched.
        InvalidMetadataError: If the metadata is malformed.
        MetadataMismatchError: If label count and output width differ and
            ``settings.strict_labels`` is set.
    """
    settings = settings or get_settings()
    session = create_session(model_location, settings)

    if metadata is None:
        resolved = default_metadata()
    else:
        resolved = resolve_metadata(
            metadata,
            client=client,
            models_dir=settings.models_dir,
            timeout=settings.metadata_timeout,
        )

    classifier = CustomClassifier(session, resolved, strict_labels=settings.strict_labels)
    logger.info(
        "Loaded model %s (%s classes, image_size=%s, grayscale=%s)",
        resolved.model_name,
        classifier.get_total_classes(),
        resolved.image_size,
        resolved.grayscale,
    )
    return classifier
