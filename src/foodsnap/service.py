"""Glue between an upload, the inference worker, and the observed label."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from foodsnap.display import format_error, format_prediction
from foodsnap.ml.errors import ClassificationError

if TYPE_CHECKING:
    from foodsnap.ml.image_classifier import PredictionResult
    from foodsnap.ml.inference import ClassificationLabel, InferencePool
    from foodsnap.ml.pipeline import ClassificationPipeline, InferencePath

logger = logging.getLogger(__name__)


class ClassificationService:
    """Runs one background classification per request and publishes its outcome."""

    def __init__(
        self,
        pipeline: ClassificationPipeline,
        pool: InferencePool,
        label: ClassificationLabel,
    ) -> None:
        self._pipeline = pipeline
        self._pool = pool
        self._label = label

    @property
    def label(self) -> ClassificationLabel:
        return self._label

    async def classify(self, image_bytes: bytes, path: InferencePath | None = None) -> PredictionResult:
        """Classify uploaded bytes on a worker thread and post the display string.

        Raises:
            ClassificationError: After its message has been posted to the label.
            TimeoutError: If no worker slot was free; the label is left unchanged.
        """
        generation = 0

        def _claim_generation() -> None:
            # Only requests that got a worker slot may supersede earlier ones.
            nonlocal generation
            generation = self._label.begin_request()

        try:
            result = await self._pool.run(
                self._pipeline.classify_bytes,
                image_bytes,
                path,
                on_acquire=_claim_generation,
            )
        except ClassificationError as exc:
            self._label.post(generation, format_error(exc))
            raise
        self._label.post(generation, format_prediction(result))
        return result
