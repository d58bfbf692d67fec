"""Exception hierarchy for tmclassifier."""

from __future__ import annotations


class ClassifierError(Exception):
    """Base class for all tmclassifier errors."""


class InvalidMetadataError(ClassifierError):
    """Metadata is neither a location reference nor an object with a ``labels`` list."""


class MetadataFetchError(ClassifierError):
    """A metadata document could not be fetched or parsed."""


class ModelLoadError(ClassifierError):
    """The ONNX model could not be resolved or loaded."""


class MetadataMismatchError(ClassifierError):
    """The number of labels does not match the model's output width."""

    def __init__(self, labels: list[str], total_classes: int) -> None:
        self.labels = labels
        self.total_classes = total_classes
        super().__init__(f"Metadata lists {len(labels)} labels but the model outputs {total_classes} classes")
