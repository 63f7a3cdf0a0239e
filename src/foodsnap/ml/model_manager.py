"""Model manager: download, load, cache, and evict ONNX classifiers.

Handles downloading model and label files from HuggingFace, creating and
caching ONNX InferenceSessions, and TTL-based eviction.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Literal, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from foodsnap.ml.errors import ModelLoadError
from foodsnap.ml.image_classifier import OnnxImageClassifier

if TYPE_CHECKING:
    from foodsnap.config import Settings
    from foodsnap.ml.image_classifier import ImageClassifier

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def get_classifier(self, model_name: str) -> ImageClassifier:
        """Return a ready-to-run classifier, raising ModelLoadError on failure."""
        ...

    def get_input_size(self, model_name: str) -> tuple[int, int]:
        """Return the registered (width, height) input of a model without loading it."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def unload_idle_models(self) -> None:
        """Unload models that have exceeded their TTL."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


class ModelTask(StrEnum):
    IMAGE_CLASSIFICATION = "image_classification"


IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX classifier."""

    name: str
    repo_id: str
    filename: str
    labels_filename: str
    subfolder: str | None
    task: ModelTask
    license: str
    input_size: int = 224
    mean: tuple[float, float, float] = IMAGENET_MEAN
    std: tuple[float, float, float] = IMAGENET_STD
    layout: Literal["nchw", "nhwc"] = "nchw"
    outputs_logits: bool = True


# foodsnap/foodsnap-models is the project's own Hub repo; the listed ONNX and label
# files must be uploaded there before first use. Set FOODSNAP_MODELS_REPO to fetch
# the same filenames from any other repo instead.
MODEL_REGISTRY: dict[str, ModelSpec] = {
    "food101_mobilenetv3": ModelSpec(
        name="food101_mobilenetv3",
        repo_id="foodsnap/foodsnap-models",
        filename="food101_mobilenetv3_large.onnx",
        labels_filename="food101_labels.txt",
        subfolder=None,
        task=ModelTask.IMAGE_CLASSIFICATION,
        license="Apache-2.0",
    ),
    "food101_efficientnet_b0": ModelSpec(
        name="food101_efficientnet_b0",
        repo_id="foodsnap/foodsnap-models",
        filename="food101_efficientnet_b0.onnx",
        labels_filename="food101_labels.txt",
        subfolder=None,
        task=ModelTask.IMAGE_CLASSIFICATION,
        license="Apache-2.0",
    ),
    "food_classifier_keras": ModelSpec(
        name="food_classifier_keras",
        repo_id="foodsnap/foodsnap-models",
        filename="food_classifier.onnx",
        labels_filename="food_classifier_labels.txt",
        subfolder="keras",
        task=ModelTask.IMAGE_CLASSIFICATION,
        license="MIT",
        mean=(0.0, 0.0, 0.0),
        std=(1.0, 1.0, 1.0),
        layout="nhwc",
        outputs_logits=False,
    ),
}


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


@dataclass
class _CachedSession:
    session: InferenceSession
    last_used: float


class OnnxModelManager:
    """Downloads, loads, caches, and evicts ONNX inference sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._sessions: dict[str, _CachedSession] = {}
        self._model_paths: dict[str, Path] = {}
        self._labels: dict[str, list[str]] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, model_name: str) -> Path:
        """Download a model from HuggingFace if not already present locally."""
        spec = self._get_spec(model_name)

        if model_name in self._model_paths:
            path = self._model_paths[model_name]
            if path.exists():
                return path

        downloaded = self._download(spec, spec.filename)
        self._model_paths[model_name] = downloaded
        logger.info("Downloaded %s to %s", model_name, downloaded)
        return downloaded

    def get_labels(self, model_name: str) -> list[str]:
        """Return the class labels of a model, one per output score."""
        with self._lock:
            cached = self._labels.get(model_name)
        if cached is not None:
            return cached

        spec = self._get_spec(model_name)
        path = self._download(spec, spec.labels_filename)
        labels = [line.strip() for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
        if not labels:
            raise ValueError(f"Label file for {model_name} is empty")

        with self._lock:
            self._labels[model_name] = labels
        logger.info("Loaded %d labels for %s", len(labels), model_name)
        return labels

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed."""
        with self._lock:
            cached = self._sessions.get(model_name)
            if cached is not None:
                cached.last_used = time.monotonic()
                return cached.session

        model_path = self.ensure_downloaded(model_name)
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._sessions.get(model_name)
            if existing is not None:
                existing.last_used = time.monotonic()
                return existing.session
            self._sessions[model_name] = _CachedSession(
                session=session,
                last_used=time.monotonic(),
            )
            logger.info("Loaded session for %s", model_name)
            return session

    def get_classifier(self, model_name: str) -> OnnxImageClassifier:
        """Return a classifier for ``model_name``.

        Raises:
            ModelLoadError: If the model is unknown or cannot be downloaded or loaded.
        """
        try:
            spec = self._get_spec(model_name)
            session = self.get_session(model_name)
            labels = self.get_labels(model_name)
            return OnnxImageClassifier(spec, session, labels)
        except Exception as exc:
            logger.warning("Failed to load model %s: %s", model_name, exc)
            raise ModelLoadError from exc

    def get_input_size(self, model_name: str) -> tuple[int, int]:
        """Return the registered (width, height) input of ``model_name``.

        Raises:
            ModelLoadError: If the model is not in the registry.
        """
        try:
            spec = self._get_spec(model_name)
        except KeyError as exc:
            logger.warning("Failed to look up model %s: %s", model_name, exc)
            raise ModelLoadError from exc
        return (spec.input_size, spec.input_size)

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def unload_idle_models(self) -> None:
        """Remove sessions that have exceeded the configured TTL."""
        ttl = self._settings.model_ttl
        if ttl == 0:
            return

        now = time.monotonic()
        with self._lock:
            expired = [name for name, cached in self._sessions.items() if (now - cached.last_used) > ttl]
            for name in expired:
                del self._sessions[name]
                logger.info("Evicted idle session for %s", name)

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

    def _download(self, spec: ModelSpec, filename: str) -> Path:
        return Path(
            hf_hub_download(
                repo_id=self._settings.models_repo or spec.repo_id,
                filename=filename,
                subfolder=spec.subfolder,
                local_dir=str(self._models_dir),
            )
        )

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
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
