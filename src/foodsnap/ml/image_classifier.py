"""Image classification models.

Two ways into a model: ``classify`` takes an RGB bitmap and handles resizing
and tensor conversion itself, ``predict`` takes an already-built BGRA pixel
buffer of the model's input size and returns the raw label -> score mapping.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from foodsnap.ml.preprocessing import resize_image, to_model_tensor

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from foodsnap.ml.model_manager import ModelSpec
    from foodsnap.ml.preprocessing import PixelBuffer


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float


@dataclass(frozen=True)
class PredictionResult:
    """The answer to one classification request: the top label and its confidence."""

    label: str
    confidence: float

    @property
    def percent(self) -> int:
        """Confidence as a whole percentage, rounded half up."""
        return math.floor(self.confidence * 100 + 0.5)

    @classmethod
    def from_observation(cls, observation: ClassificationResult) -> PredictionResult:
        return cls(label=observation.label, confidence=float(observation.confidence))


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    @property
    def input_size(self) -> tuple[int, int]:
        """Return the fixed (width, height) the model consumes."""
        ...

    def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        """Classify an image and return ranked tags.

        Args:
            image: HxWx3 RGB uint8 array, upright, any size.

        Returns:
            List of classification results sorted by confidence (descending).
        """
        ...

    def predict(self, buffer: PixelBuffer) -> dict[str, float]:
        """Run the raw model on a BGRA buffer of exactly ``input_size``.

        Returns:
            Mapping of every class label to its score.
        """
        ...


def _softmax(scores: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = np.exp(scores - np.max(scores))
    return shifted / shifted.sum()


class OnnxImageClassifier:
    """ImageClassifier backed by an ONNX Runtime session."""

    def __init__(self, spec: ModelSpec, session: InferenceSession, labels: list[str]) -> None:
        self._spec = spec
        self._session = session
        self._labels = labels
        self._input_name = session.get_inputs()[0].name

    @property
    def model_name(self) -> str:
        return self._spec.name

    @property
    def input_size(self) -> tuple[int, int]:
        return (self._spec.input_size, self._spec.input_size)

    @property
    def labels(self) -> list[str]:
        return list(self._labels)

    def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        resized = resize_image(image, self.input_size)
        if resized is None:
            raise ValueError(f"Could not resize {image.shape} input to {self.input_size}")
        scores = self._run(resized)
        ranked = sorted(
            (ClassificationResult(label=label, confidence=float(score)) for label, score in zip(self._labels, scores)),
            key=lambda result: result.confidence,
            reverse=True,
        )
        return ranked

    def predict(self, buffer: PixelBuffer) -> dict[str, float]:
        if (buffer.width, buffer.height) != self.input_size:
            raise ValueError(f"Expected a {self.input_size} buffer, got {(buffer.width, buffer.height)}")
        scores = self._run(buffer.to_rgb())
        return {label: float(score) for label, score in zip(self._labels, scores)}

    def _run(self, pixels: NDArray[np.uint8]) -> NDArray[np.float32]:
        tensor = to_model_tensor(pixels, self._spec.mean, self._spec.std, self._spec.layout)
        outputs = self._session.run(None, {self._input_name: tensor})
        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if scores.shape[0] != len(self._labels):
            raise ValueError(f"Model produced {scores.shape[0]} scores for {len(self._labels)} labels")
        if self._spec.outputs_logits and scores.size:
            scores = _softmax(scores)
        return scores
