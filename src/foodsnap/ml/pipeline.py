"""Classification pipeline: one image in, one PredictionResult (or error) out.

Two paths share orientation normalization and result selection:

    mediated: RawImage -> upright -> classifier.classify() -> first ranked entry
    direct:   RawImage -> upright -> resize -> BGRA buffer -> classifier.predict() -> max score

Everything here is synchronous and meant to run on an inference worker
thread, never on the event loop.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Literal

from foodsnap.ml.errors import (
    ClassificationError,
    InvalidImageError,
    ModelExecutionError,
    NoPredictionError,
    OutputProcessingError,
    PixelBufferError,
    ResizeError,
)
from foodsnap.ml.image_classifier import ClassificationResult, PredictionResult
from foodsnap.ml.preprocessing import decode_image, normalize_orientation, resize_image, to_pixel_buffer

if TYPE_CHECKING:
    from collections.abc import Mapping

    from foodsnap.config import Settings
    from foodsnap.ml.image_classifier import ImageClassifier
    from foodsnap.ml.model_manager import ModelManager
    from foodsnap.ml.preprocessing import RawImage

logger = logging.getLogger(__name__)

InferencePath = Literal["mediated", "direct"]


def select_top_entry(scores: Mapping[str, float]) -> ClassificationResult | None:
    """Return a maximal (label, score) entry, the first one seen on ties.

    Non-finite scores are skipped; ``None`` if no finite score remains.
    """
    finite = [(label, score) for label, score in scores.items() if math.isfinite(score)]
    if not finite:
        return None
    label, score = max(finite, key=lambda item: item[1])
    return ClassificationResult(label=label, confidence=float(score))


class ClassificationPipeline:
    """Runs a single image through the configured classifier."""

    def __init__(self, settings: Settings, model_manager: ModelManager) -> None:
        self._settings = settings
        self._model_manager = model_manager

    @property
    def model_name(self) -> str:
        return self._settings.classifier_model

    def classify_bytes(self, image_bytes: bytes, path: InferencePath | None = None) -> PredictionResult:
        """Decode uploaded bytes and classify them."""
        raw = decode_image(image_bytes, max_pixels=self._settings.max_image_pixels)
        return self.classify(raw, path)

    def classify(self, raw: RawImage, path: InferencePath | None = None) -> PredictionResult:
        """Classify a raw image along ``path`` (defaults to the configured path).

        Raises:
            ClassificationError: The request's terminal failure.
        """
        chosen = path or self._settings.inference_path
        try:
            if chosen == "direct":
                result = self.classify_direct(raw)
            else:
                result = self.classify_mediated(raw)
        except ClassificationError as exc:
            logger.warning("Classification failed (%s path): %s", chosen, exc.display_message)
            raise
        logger.info("Classified %dx%d image as %r (%d%%)", raw.width, raw.height, result.label, result.percent)
        return result

    def classify_mediated(self, raw: RawImage) -> PredictionResult:
        """Hand the upright bitmap to the classifier and take its top-ranked entry."""
        image = self._upright(raw)
        classifier = self._load_classifier()
        try:
            results = classifier.classify(image.pixels)
        except Exception as exc:
            raise ModelExecutionError(str(exc)) from exc

        if not results:
            raise NoPredictionError
        top = results[0]
        if not math.isfinite(top.confidence):
            raise ModelExecutionError("model returned a non-finite confidence")
        return PredictionResult.from_observation(top)

    def classify_direct(self, raw: RawImage) -> PredictionResult:
        """Build the model's input buffer by hand and pick the highest raw score."""
        image = self._upright(raw)

        resized = resize_image(image.pixels, self._model_manager.get_input_size(self.model_name))
        if resized is None:
            raise ResizeError

        buffer = to_pixel_buffer(resized)
        if buffer is None:
            raise PixelBufferError

        classifier = self._load_classifier()

        try:
            scores = classifier.predict(buffer)
        except Exception as exc:
            raise ModelExecutionError(str(exc)) from exc

        top = select_top_entry(scores)
        if top is None:
            raise OutputProcessingError
        return PredictionResult.from_observation(top)

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _upright(raw: RawImage) -> RawImage:
        if not raw.has_pixels:
            raise InvalidImageError
        return normalize_orientation(raw)

    def _load_classifier(self) -> ImageClassifier:
        return self._model_manager.get_classifier(self.model_name)
