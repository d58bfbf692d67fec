"""Tests for the classifier facade and top-K ranking."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import numpy as np
import pytest
from conftest import FakeSession
from PIL import Image

from tmclassifier.config import Settings
from tmclassifier.errors import InvalidMetadataError, MetadataMismatchError, ModelLoadError
from tmclassifier.ml.image_classifier import CustomClassifier, Prediction, load, top_k_classes
from tmclassifier.ml.metadata import Metadata
from tmclassifier.ml.preprocessing import ScratchScope
from tmclassifier.ml.sources import CanvasBuffer, VideoFrame

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _source(width: int = 300, height: int = 200) -> CanvasBuffer:
    return CanvasBuffer(np.full((height, width, 3), 128, dtype=np.uint8))


def _make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {"device": "cpu", "models_dir": "/tmp/tmclassifier_test_models"}
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Top-K ranking
# ---------------------------------------------------------------------------


class TestTopKClasses:
    def test_top_two(self) -> None:
        result = top_k_classes(["a", "b", "c", "d"], [0.1, 0.7, 0.05, 0.15], 2)
        assert result == [Prediction("b", 0.7), Prediction("d", 0.15)]

    def test_clamped_to_label_count(self) -> None:
        result = top_k_classes(["a", "b", "c"], [0.2, 0.5, 0.3], 10)
        assert [p.class_name for p in result] == ["b", "c", "a"]

    def test_ties_keep_index_order(self) -> None:
        result = top_k_classes(["a", "b", "c", "d"], [0.25, 0.5, 0.25, 0.25], 4)
        assert [p.class_name for p in result] == ["b", "a", "c", "d"]

    def test_zero_and_negative_k(self) -> None:
        assert top_k_classes(["a"], [1.0], 0) == []
        assert top_k_classes(["a"], [1.0], -3) == []

    def test_accepts_batched_array(self) -> None:
        result = top_k_classes(["a", "b"], np.array([[0.4, 0.6]], dtype=np.float32), 1)
        assert result[0].class_name == "b"
        assert result[0].probability == pytest.approx(0.6)

    def test_missing_labels_are_none(self) -> None:
        result = top_k_classes(["a"], [0.1, 0.9], 2)
        assert result == [Prediction(None, 0.9), Prediction("a", 0.1)]


# ---------------------------------------------------------------------------
# CustomClassifier
# ---------------------------------------------------------------------------


class TestCustomClassifier:
    def test_total_classes_and_labels(self, session: FakeSession, metadata: Metadata) -> None:
        classifier = CustomClassifier(session, metadata)  # type: ignore[arg-type]
        assert classifier.get_total_classes() == 4
        assert classifier.get_class_labels() == ["a", "b", "c", "d"]
        assert classifier.EXPECTED_IMAGE_SIZE == 224

    def test_dynamic_output_width(self, metadata: Metadata) -> None:
        session = FakeSession(values=[0.5, 0.5], output_width="num_classes")
        classifier = CustomClassifier(session, metadata)  # type: ignore[arg-type]
        assert classifier.get_total_classes() is None

    def test_predict_in_label_order(self, session: FakeSession, metadata: Metadata) -> None:
        classifier = CustomClassifier(session, metadata)  # type: ignore[arg-type]

        result = classifier.predict(_source())

        assert [p.class_name for p in result] == ["a", "b", "c", "d"]
        assert [p.probability for p in result] == pytest.approx([0.1, 0.7, 0.05, 0.15])

    def test_predict_top_k(self, session: FakeSession, metadata: Metadata) -> None:
        classifier = CustomClassifier(session, metadata)  # type: ignore[arg-type]

        result = classifier.predict_top_k(_source(), max_predictions=2)

        assert [p.class_name for p in result] == ["b", "d"]
        assert [p.probability for p in result] == pytest.approx([0.7, 0.15])

    def test_predict_top_k_default_clamps(self, session: FakeSession, metadata: Metadata) -> None:
        classifier = CustomClassifier(session, metadata)  # type: ignore[arg-type]
        assert len(classifier.predict_top_k(_source())) == 4

    def test_model_input_tensor(self, session: FakeSession, metadata: Metadata) -> None:
        classifier = CustomClassifier(session, metadata)  # type: ignore[arg-type]
        classifier.predict(_source())

        batch = session.feeds[0]["input_1"]
        assert batch.shape == (1, 224, 224, 3)
        assert batch.dtype == np.float32
        assert float(batch.min()) >= -1.0
        assert float(batch.max()) <= 255 / 127 - 1 + 1e-6

    def test_grayscale_model_input(self, session: FakeSession, labels: list[str]) -> None:
        metadata = Metadata(labels=labels, grayscale=True, imageSize=32)
        classifier = CustomClassifier(session, metadata)  # type: ignore[arg-type]

        classifier.predict(VideoFrame(np.zeros((48, 64, 3), dtype=np.uint8)))

        assert session.feeds[0]["input_1"].shape == (1, 32, 32, 1)

    def test_channels_first_model(self, metadata: Metadata) -> None:
        session = FakeSession(values=[0.1, 0.2, 0.3, 0.4], input_shape=["batch", 3, 224, 224])
        classifier = CustomClassifier(session, metadata)  # type: ignore[arg-type]

        classifier.predict(_source())

        assert session.feeds[0]["input_1"].shape == (1, 3, 224, 224)

    def test_flipped_mirrors_input(self, session: FakeSession, metadata: Metadata) -> None:
        pixels = np.zeros((224, 224, 3), dtype=np.uint8)
        pixels[:, :112] = 255
        classifier = CustomClassifier(session, metadata)  # type: ignore[arg-type]

        classifier.predict(CanvasBuffer(pixels))
        classifier.predict(CanvasBuffer(pixels), flipped=True)

        plain, mirrored = (feed["input_1"] for feed in session.feeds)
        np.testing.assert_array_equal(mirrored, plain[:, :, ::-1, :])


class TestLabelValidation:
    def test_mismatch_fails_fast(self, session: FakeSession) -> None:
        with pytest.raises(MetadataMismatchError) as excinfo:
            CustomClassifier(session, Metadata(labels=["a", "b"]))  # type: ignore[arg-type]
        assert excinfo.value.total_classes == 4
        assert excinfo.value.labels == ["a", "b"]

    def test_lenient_mode_leaves_unlabeled_outputs(self, session: FakeSession) -> None:
        classifier = CustomClassifier(session, Metadata(labels=["a", "b"]), strict_labels=False)  # type: ignore[arg-type]

        result = classifier.predict(_source())

        assert [p.class_name for p in result] == ["a", "b", None, None]


class TestResourceDiscipline:
    def test_no_buffers_after_success(self, session: FakeSession, metadata: Metadata) -> None:
        classifier = CustomClassifier(session, metadata)  # type: ignore[arg-type]
        classifier.predict(_source())
        classifier.predict_top_k(_source(), 3, flipped=True)
        assert classifier.pending_buffers == 0

    def test_no_buffers_after_failure(self, metadata: Metadata) -> None:
        session = FakeSession(values=[0.1, 0.2, 0.3, 0.4], error=RuntimeError("device lost"))
        classifier = CustomClassifier(session, metadata)  # type: ignore[arg-type]

        with pytest.raises(RuntimeError, match="device lost"):
            classifier.predict(_source())

        assert classifier.pending_buffers == 0

    def test_intermediate_images_are_closed(self, session: FakeSession, metadata: Metadata) -> None:
        classifier = CustomClassifier(session, metadata)  # type: ignore[arg-type]
        kept: list[object] = []
        original_keep = ScratchScope.keep

        def _spy(self: object, buffer: object) -> object:
            kept.append(buffer)
            return original_keep(self, buffer)

        with patch("tmclassifier.ml.preprocessing.ScratchScope.keep", _spy):
            classifier.predict(_source())

        images = [buffer for buffer in kept if isinstance(buffer, Image.Image)]
        assert images
        for image in images:
            with pytest.raises(ValueError):
                image.load()


class TestDisposal:
    def test_operations_after_dispose_raise(self, session: FakeSession, metadata: Metadata) -> None:
        classifier = CustomClassifier(session, metadata)  # type: ignore[arg-type]
        classifier.dispose()

        with pytest.raises(RuntimeError, match="disposed"):
            classifier.predict(_source())
        with pytest.raises(RuntimeError, match="disposed"):
            classifier.get_total_classes()
        with pytest.raises(RuntimeError, match="disposed"):
            classifier.dispose()


# ---------------------------------------------------------------------------
# load()
# ---------------------------------------------------------------------------


class TestLoad:
    @patch("tmclassifier.ml.model_manager.InferenceSession")
    def test_load_with_metadata_file(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        model_path = tmp_path / "model.onnx"
        model_path.touch()
        metadata_path = tmp_path / "metadata.json"
        metadata_path.write_text(json.dumps({"labels": ["a", "b", "c", "d"], "modelName": "tm"}))
        mock_session_cls.return_value = FakeSession(values=[0.1, 0.7, 0.05, 0.15])

        classifier = load(model_path, metadata_path, settings=_make_settings())

        assert classifier.metadata.model_name == "tm"
        assert classifier.get_total_classes() == 4
        assert classifier.predict_top_k(_source(), 1)[0].class_name == "b"

    @patch("tmclassifier.ml.model_manager.InferenceSession")
    def test_load_with_inline_metadata(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        model_path = tmp_path / "model.onnx"
        model_path.touch()
        mock_session_cls.return_value = FakeSession(values=[0.5, 0.5])

        classifier = load(model_path, {"labels": ["yes", "no"]}, settings=_make_settings())

        assert classifier.get_class_labels() == ["yes", "no"]

    @patch("tmclassifier.ml.model_manager.InferenceSession")
    def test_load_without_metadata_is_strict(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        model_path = tmp_path / "model.onnx"
        model_path.touch()
        mock_session_cls.return_value = FakeSession(values=[0.5, 0.5])

        with pytest.raises(MetadataMismatchError):
            load(model_path, settings=_make_settings())

        classifier = load(model_path, settings=_make_settings(strict_labels=False))
        assert classifier.get_class_labels() == []
        assert classifier.metadata.model_name == "untitled"

    def test_load_missing_model(self, tmp_path: Path) -> None:
        with pytest.raises(ModelLoadError):
            load(tmp_path / "missing.onnx", {"labels": []}, settings=_make_settings())

    @patch("tmclassifier.ml.model_manager.InferenceSession")
    def test_load_invalid_metadata(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        model_path = tmp_path / "model.onnx"
        model_path.touch()
        mock_session_cls.return_value = FakeSession(values=[0.5])

        with pytest.raises(InvalidMetadataError):
            load(model_path, {"names": ["x"]}, settings=_make_settings())
