"""Model manager: locate, download, and load ONNX classifiers.

Handles downloading models and their label files from HuggingFace (or using
local artifacts), creating and caching ONNX InferenceSessions, and turning
a loaded session into a ready-to-use classifier.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from huggingface_hub.errors import HfHubHTTPError, LocalEntryNotFoundError
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import (
    ExecutionMode,
    Fail,
    InvalidArgument,
    InvalidGraph,
    InvalidProtobuf,
    NoSuchFile,
    RuntimeException,
)

from snapclassify.errors import ModelLoadError
from snapclassify.ml.image_classifier import OnnxImageClassifier
from snapclassify.ml.preprocessing import IMAGENET_MEAN, IMAGENET_STD, ImagePreprocessor

if TYPE_CHECKING:
    from snapclassify.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def ensure_downloaded(self, model_name: str) -> tuple[Path, Path]:
        """Ensure model and labels are present and return their paths."""
        ...

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached or newly created InferenceSession."""
        ...

    def load_classifier(self, model_name: str) -> OnnxImageClassifier:
        """Return a classifier ready for inference."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX classifier."""

    name: str
    repo_id: str
    filename: str
    labels_filename: str
    subfolder: str | None
    license: str
    task: str = "image_classification"
    input_size: int = 224
    mean: tuple[float, float, float] = IMAGENET_MEAN
    std: tuple[float, float, float] = IMAGENET_STD
    outputs_probabilities: bool = False


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "mobilenetv2": ModelSpec(
        name="mobilenetv2",
        repo_id="snapclassify/classifier-models",
        filename="mobilenetv2-12.onnx",
        labels_filename="imagenet_labels.txt",
        subfolder=None,
        license="Apache-2.0",
    ),
    "mobilenetv3_large": ModelSpec(
        name="mobilenetv3_large",
        repo_id="snapclassify/classifier-models",
        filename="mobilenetv3_large_100.onnx",
        labels_filename="imagenet_labels.txt",
        subfolder=None,
        license="Apache-2.0",
    ),
    "efficientnet_lite4": ModelSpec(
        name="efficientnet_lite4",
        repo_id="snapclassify/classifier-models",
        filename="efficientnet-lite4-11.onnx",
        labels_filename="imagenet_labels.txt",
        subfolder=None,
        license="Apache-2.0",
        input_size=224,
        mean=(0.5, 0.5, 0.5),
        std=(0.5, 0.5, 0.5),
        outputs_probabilities=True,
    ),
}


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


def read_labels(path: Path) -> list[str]:
    """Read one label per line, skipping blank lines."""
    with path.open(encoding="utf-8") as fh:
        return [line.strip() for line in fh if line.strip()]


class OnnxModelManager:
    """Locates, loads, and caches ONNX classifier sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._sessions: dict[str, InferenceSession] = {}
        self._model_paths: dict[str, tuple[Path, Path]] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, model_name: str) -> tuple[Path, Path]:
        """Return local paths to the model and its labels, downloading if needed.

        Raises:
            ModelLoadError: If either artifact cannot be found.
        """
        spec = self._get_spec(model_name)

        cached = self._model_paths.get(model_name)
        if cached is not None and all(p.exists() for p in cached):
            return cached

        if self._settings.model_path is not None:
            paths = self._local_artifacts(spec)
        else:
            paths = self._download_artifacts(spec)

        self._model_paths[model_name] = paths
        return paths

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed.

        Raises:
            ModelLoadError: If the artifact is missing or ONNX Runtime rejects it.
        """
        with self._lock:
            cached = self._sessions.get(model_name)
            if cached is not None:
                return cached

        model_path, _ = self.ensure_downloaded(model_name)
        try:
            session = InferenceSession(
                str(model_path),
                sess_options=self._session_options,
                providers=self._providers,
            )
        except NoSuchFile as exc:
            raise ModelLoadError(model_name, ModelLoadError.ARTIFACT_NOT_FOUND, str(exc)) from exc
        except (Fail, InvalidArgument, InvalidGraph, InvalidProtobuf, RuntimeException) as exc:
            raise ModelLoadError(model_name, ModelLoadError.ARTIFACT_UNPARSEABLE, str(exc)) from exc

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._sessions.get(model_name)
            if existing is not None:
                return existing
            self._sessions[model_name] = session
            logger.info("Loaded session for %s", model_name)
            return session

    def load_classifier(self, model_name: str) -> OnnxImageClassifier:
        """Build a classifier for ``model_name``.

        Raises:
            KeyError: If the model is not in the registry.
            ModelLoadError: If the model or its labels cannot be loaded.
        """
        spec = self._get_spec(model_name)
        session = self.get_session(model_name)
        _, labels_path = self.ensure_downloaded(model_name)

        try:
            labels = read_labels(labels_path)
        except (OSError, UnicodeDecodeError) as exc:
            raise ModelLoadError(model_name, ModelLoadError.ARTIFACT_UNPARSEABLE, str(exc)) from exc
        if not labels:
            raise ModelLoadError(model_name, ModelLoadError.ARTIFACT_UNPARSEABLE, "empty label file")

        preprocessor = ImagePreprocessor(
            input_size=spec.input_size,
            mean=spec.mean,
            std=spec.std,
            max_image_pixels=self._settings.max_image_pixels,
            max_file_size=self._settings.max_file_size,
        )
        logger.info("Classifier %s ready (%d labels)", model_name, len(labels))
        return OnnxImageClassifier(
            model_name=model_name,
            session=session,
            labels=labels,
            preprocessor=preprocessor,
            top_k=self._settings.top_k,
            apply_softmax=not spec.outputs_probabilities,
        )

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._sessions.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _get_spec(model_name: str) -> ModelSpec:
        try:
            return MODEL_REGISTRY[model_name]
        except KeyError:
            raise KeyError(f"Unknown model: {model_name}") from None

    def _local_artifacts(self, spec: ModelSpec) -> tuple[Path, Path]:
        model_path = Path(self._settings.model_path or "")
        if self._settings.labels_path is not None:
            labels_path = Path(self._settings.labels_path)
        else:
            labels_path = model_path.with_name(spec.labels_filename)

        for path in (model_path, labels_path):
            if not path.is_file():
                raise ModelLoadError(spec.name, ModelLoadError.ARTIFACT_NOT_FOUND, str(path))
        return model_path, labels_path

    def _download_artifacts(self, spec: ModelSpec) -> tuple[Path, Path]:
        try:
            self._models_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ModelLoadError(spec.name, ModelLoadError.ARTIFACT_NOT_FOUND, str(exc)) from exc

        paths: list[Path] = []
        for filename in (spec.filename, spec.labels_filename):
            try:
                downloaded = hf_hub_download(
                    repo_id=spec.repo_id,
                    filename=filename,
                    subfolder=spec.subfolder,
                    local_dir=str(self._models_dir),
                )
            except (HfHubHTTPError, LocalEntryNotFoundError, OSError) as exc:
                # Entry and repository misses subclass HfHubHTTPError, as do 5xx and 429.
                raise ModelLoadError(spec.name, ModelLoadError.ARTIFACT_NOT_FOUND, f"{filename}: {exc}") from exc
            paths.append(Path(downloaded))
            logger.info("Downloaded %s to %s", filename, downloaded)
        return paths[0], paths[1]

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                ("CUDAExecutionProvider", {"device_id": 0, "arena_extend_strategy": "kSameAsRequested"}),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
