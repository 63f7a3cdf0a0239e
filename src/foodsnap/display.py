"""User-visible strings for classification outcomes."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from foodsnap.ml.errors import ClassificationError
    from foodsnap.ml.image_classifier import PredictionResult

INITIAL_LABEL = "Select an image to classify"


def format_prediction(result: PredictionResult) -> str:
    return f"Prediction: {result.label}\nConfidence: {result.percent}%"


def format_error(error: ClassificationError) -> str:
    return error.display_message
