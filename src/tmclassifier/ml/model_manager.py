"""Model manager: resolve model locations and create ONNX inference sessions.

Locations are either local file paths or HuggingFace Hub references of the
form ``hf://<owner>/<repo>/<path/in/repo>``. Hub files are downloaded into the
configured models directory on first use.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from tmclassifier.errors import ModelLoadError

if TYPE_CHECKING:
    from tmclassifier.config import Settings

logger = logging.getLogger(__name__)

HUB_SCHEME = "hf://"


@dataclass(frozen=True)
class HubLocation:
    """A file inside a HuggingFace Hub repository."""

    repo_id: str
    filename: str
    subfolder: str | None

    @classmethod
    def parse(cls, location: str) -> HubLocation:
        """Parse an ``hf://owner/repo/path`` reference."""
        parts = location.removeprefix(HUB_SCHEME).strip("/").split("/")
        if len(parts) < 3 or not all(parts):
            raise ValueError(f"Invalid hub location: {location!r} (expected hf://owner/repo/path)")
        subfolder = "/".join(parts[2:-1]) or None
        return cls(repo_id=f"{parts[0]}/{parts[1]}", filename=parts[-1], subfolder=subfolder)


def is_hub_location(location: str | Path) -> bool:
    return isinstance(location, str) and location.startswith(HUB_SCHEME)


def resolve_location(location: str | Path, models_dir: str | Path) -> Path:
    """Return a local path for ``location``, downloading hub files if needed.

    Raises:
        FileNotFoundError: If a local path does not exist.
        ValueError: If a hub reference is malformed.
    """
    if is_hub_location(location):
        hub = HubLocation.parse(str(location))
        target_dir = Path(models_dir)
        target_dir.mkdir(parents=True, exist_ok=True)
        downloaded = Path(
            hf_hub_download(
                repo_id=hub.repo_id,
                filename=hub.filename,
                subfolder=hub.subfolder,
                local_dir=str(target_dir),
            )
        )
        logger.info("Downloaded %s to %s", location, downloaded)
        return downloaded

    path = Path(location)
    if not path.is_file():
        raise FileNotFoundError(f"No such file: {path}")
    return path


def build_providers(settings: Settings) -> list[str | tuple[str, dict[str, object]]]:
    """Execution providers for the configured device, CPU always last."""
    device = settings.device
    if device == "cuda":
        return [
            (
                "CUDAExecutionProvider",
                {
                    "device_id": 0,
                    "gpu_mem_limit": settings.gpu_mem_limit,
                    "arena_extend_strategy": "kSameAsRequested",
                },
            ),
            "CPUExecutionProvider",
        ]
    if device == "openvino":
        return [
            ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
            "CPUExecutionProvider",
        ]
    return ["CPUExecutionProvider"]


def build_session_options(settings: Settings) -> SessionOptions:
    opts = SessionOptions()
    opts.intra_op_num_threads = settings.intra_op_threads
    opts.inter_op_num_threads = settings.inter_op_threads
    opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL

    if settings.device == "openvino":
        # OpenVINO does its own graph optimization
        from onnxruntime import GraphOptimizationLevel

        opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    return opts


def create_session(model_location: str | Path, settings: Settings) -> InferenceSession:
    """Resolve ``model_location`` and load it into an ONNX Runtime session.

    Raises:
        ModelLoadError: If the model cannot be found, downloaded, or loaded.
    """
    try:
        model_path = resolve_location(model_location, settings.models_dir)
    except Exception as exc:
        raise ModelLoadError(f"Could not resolve model {model_location}: {exc}") from exc

    try:
        session = InferenceSession(
            str(model_path),
            sess_options=build_session_options(settings),
            providers=build_providers(settings),
        )
    except Exception as exc:
        raise ModelLoadError(f"Could not load model {model_path}: {exc}") from exc

    logger.info("Loaded session for %s (providers=%s)", model_path, session.get_providers())
    return session
