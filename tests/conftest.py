"""Shared fakes for classifier and model manager."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
import pytest
from PIL import Image

from foodsnap.config import Settings
from foodsnap.ml.errors import ModelLoadError
from foodsnap.ml.image_classifier import ClassificationResult

if TYPE_CHECKING:
    from pathlib import Path

    from numpy.typing import NDArray

    from foodsnap.ml.preprocessing import PixelBuffer


class FakeClassifier:
    """Records every call and answers with canned results."""

    model_name = "fake_classifier"
    input_size = (224, 224)

    def __init__(
        self,
        ranked: list[ClassificationResult] | None = None,
        scores: dict[str, float] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.ranked = ranked if ranked is not None else []
        self.scores = scores if scores is not None else {}
        self.error = error
        self.classify_calls: list[NDArray[np.uint8]] = []
        self.predict_calls: list[PixelBuffer] = []

    def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        self.classify_calls.append(image)
        if self.error is not None:
            raise self.error
        return list(self.ranked)

    def predict(self, buffer: PixelBuffer) -> dict[str, float]:
        self.predict_calls.append(buffer)
        if self.error is not None:
            raise self.error
        return dict(self.scores)


class FakeModelManager:
    def __init__(self, classifier: FakeClassifier | None = None, load_error: Exception | None = None) -> None:
        self.classifier = classifier if classifier is not None else FakeClassifier()
        self.load_error = load_error
        self.requested: list[str] = []
        self.unload_calls = 0
        self.shut_down = False

    def get_classifier(self, model_name: str) -> FakeClassifier:
        self.requested.append(model_name)
        if self.load_error is not None:
            raise ModelLoadError from self.load_error
        return self.classifier

    def get_input_size(self, model_name: str) -> tuple[int, int]:
        return self.classifier.input_size

    def get_loaded_models(self) -> list[str]:
        return ["fake_classifier"] if self.requested else []

    def unload_idle_models(self) -> None:
        self.unload_calls += 1

    def shutdown(self) -> None:
        self.shut_down = True


def make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "classifier_model": "fake_classifier",
        "models_dir": "/tmp/foodsnap_test_models",
        "inference_path": "mediated",
        "max_concurrent": 2,
        "model_ttl": 300,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def encode_png(pixels: NDArray[np.uint8]) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(pixels).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture()
def rgb_pixels() -> NDArray[np.uint8]:
    """A small 20x30 (HxW) RGB gradient image."""
    rows = np.linspace(0, 255, 20, dtype=np.uint8)[:, None]
    cols = np.linspace(0, 255, 30, dtype=np.uint8)[None, :]
    return np.stack(
        [
            np.broadcast_to(rows, (20, 30)),
            np.broadcast_to(cols, (20, 30)),
            np.full((20, 30), 128, np.uint8),
        ],
        axis=-1,
    )


@pytest.fixture()
def png_bytes(rgb_pixels: NDArray[np.uint8]) -> bytes:
    return encode_png(rgb_pixels)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return make_settings(models_dir=str(tmp_path))
