"""Shared fixtures: a stand-in for an ONNX Runtime InferenceSession."""

from __future__ import annotations

import io
from collections.abc import Callable
from dataclasses import dataclass, field

import numpy as np
import pytest
from PIL import Image

from tmclassifier.ml.metadata import Metadata


@dataclass
class _NodeArg:
    name: str
    shape: list[object]


@dataclass
class FakeSession:
    """Mimics the parts of ``onnxruntime.InferenceSession`` the classifier uses."""

    values: list[float]
    input_shape: list[object] = field(default_factory=lambda: [None, 224, 224, 3])
    output_width: object = None
    error: Exception | None = None
    feeds: list[dict[str, np.ndarray]] = field(default_factory=list)

    def get_inputs(self) -> list[_NodeArg]:
        return [_NodeArg(name="input_1", shape=self.input_shape)]

    def get_outputs(self) -> list[_NodeArg]:
        width = len(self.values) if self.output_width is None else self.output_width
        return [_NodeArg(name="dense_2", shape=[None, width])]

    def get_providers(self) -> list[str]:
        return ["CPUExecutionProvider"]

    def run(self, output_names: list[str] | None, feeds: dict[str, np.ndarray]) -> list[np.ndarray]:
        self.feeds.append(feeds)
        if self.error is not None:
            raise self.error
        return [np.array([self.values], dtype=np.float32)]


@pytest.fixture()
def labels() -> list[str]:
    return ["a", "b", "c", "d"]


@pytest.fixture()
def session() -> FakeSession:
    return FakeSession(values=[0.1, 0.7, 0.05, 0.15])


@pytest.fixture()
def metadata(labels: list[str]) -> Metadata:
    return Metadata(labels=labels, modelName="fruit")


def png_bytes(width: int = 64, height: int = 48, color: tuple[int, int, int] = (100, 150, 200)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture()
def make_png() -> Callable[..., bytes]:
    return png_bytes
