"""Tests for the ONNX model manager."""

from __future__ import annotations

import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from conftest import make_settings

from foodsnap.config import Settings
from foodsnap.ml.errors import ModelLoadError
from foodsnap.ml.image_classifier import OnnxImageClassifier
from foodsnap.ml.model_manager import MODEL_REGISTRY, ModelTask, OnnxModelManager

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(tmp_path: Path, **overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "classifier_model": "food101_mobilenetv3",
        "models_dir": str(tmp_path),
    }
    defaults.update(overrides)
    return make_settings(**defaults)


def _fake_hub(tmp_path: Path, labels: str = "pizza\nsushi\n\ntaco\n") -> MagicMock:
    """Stand-in for hf_hub_download that writes the label file it is asked for."""

    def _download(*, repo_id: str, filename: str, subfolder: str | None, local_dir: str) -> str:
        path = Path(local_dir) / filename
        if filename.endswith(".txt"):
            path.write_text(labels, encoding="utf-8")
        else:
            path.touch()
        return str(path)

    return MagicMock(side_effect=_download)


# ---------------------------------------------------------------------------
# Model registry tests
# ---------------------------------------------------------------------------


class TestModelRegistry:
    def test_known_model_lookup(self) -> None:
        spec = MODEL_REGISTRY["food101_mobilenetv3"]
        assert spec.name == "food101_mobilenetv3"
        assert spec.task == "image_classification"
        assert spec.input_size == 224

    def test_unknown_model_raises_keyerror(self) -> None:
        with pytest.raises(KeyError):
            MODEL_REGISTRY["nonexistent_model"]

    def test_all_models_are_classifiers(self) -> None:
        assert all(spec.task is ModelTask.IMAGE_CLASSIFICATION for spec in MODEL_REGISTRY.values())

    def test_default_model_is_registered(self) -> None:
        assert Settings().classifier_model in MODEL_REGISTRY


# ---------------------------------------------------------------------------
# OnnxModelManager tests
# ---------------------------------------------------------------------------


class TestOnnxModelManager:
    @patch("foodsnap.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_calls_hf_hub_download(self, mock_download: MagicMock, tmp_path: Path) -> None:
        mock_download.return_value = str(tmp_path / "food101_mobilenetv3_large.onnx")
        mgr = OnnxModelManager(_make_settings(tmp_path))

        path = mgr.ensure_downloaded("food101_mobilenetv3")

        mock_download.assert_called_once_with(
            repo_id="foodsnap/foodsnap-models",
            filename="food101_mobilenetv3_large.onnx",
            subfolder=None,
            local_dir=str(tmp_path),
        )
        assert path == tmp_path / "food101_mobilenetv3_large.onnx"

    @patch("foodsnap.ml.model_manager.hf_hub_download")
    def test_models_repo_overrides_registry_repo(self, mock_download: MagicMock, tmp_path: Path) -> None:
        mock_download.return_value = str(tmp_path / "food_classifier.onnx")
        mgr = OnnxModelManager(_make_settings(tmp_path, models_repo="kitchen/food-onnx"))

        mgr.ensure_downloaded("food_classifier_keras")

        mock_download.assert_called_once_with(
            repo_id="kitchen/food-onnx",
            filename="food_classifier.onnx",
            subfolder="keras",
            local_dir=str(tmp_path),
        )

    @patch("foodsnap.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_skips_existing(self, mock_download: MagicMock, tmp_path: Path) -> None:
        model_file = tmp_path / "food101_mobilenetv3_large.onnx"
        model_file.touch()

        mgr = OnnxModelManager(_make_settings(tmp_path))
        # Simulate a previous download by setting the cached path.
        mgr._model_paths["food101_mobilenetv3"] = model_file

        path = mgr.ensure_downloaded("food101_mobilenetv3")

        mock_download.assert_not_called()
        assert path == model_file

    def test_get_labels_reads_and_caches(self, tmp_path: Path) -> None:
        hub = _fake_hub(tmp_path)
        mgr = OnnxModelManager(_make_settings(tmp_path))

        with patch("foodsnap.ml.model_manager.hf_hub_download", hub):
            first = mgr.get_labels("food101_mobilenetv3")
            second = mgr.get_labels("food101_mobilenetv3")

        assert first == ["pizza", "sushi", "taco"]
        assert second is first
        hub.assert_called_once()

    def test_empty_label_file_raises(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path))
        with (
            patch("foodsnap.ml.model_manager.hf_hub_download", _fake_hub(tmp_path, labels="\n\n")),
            pytest.raises(ValueError, match="empty"),
        ):
            mgr.get_labels("food101_mobilenetv3")

    @patch("foodsnap.ml.model_manager.InferenceSession")
    @patch("foodsnap.ml.model_manager.hf_hub_download")
    def test_get_session_creates_and_caches(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        mock_download.return_value = str(tmp_path / "food101_mobilenetv3_large.onnx")
        mock_session = MagicMock()
        mock_session_cls.return_value = mock_session

        mgr = OnnxModelManager(_make_settings(tmp_path))

        session1 = mgr.get_session("food101_mobilenetv3")
        session2 = mgr.get_session("food101_mobilenetv3")

        assert session1 is mock_session
        assert session2 is mock_session
        mock_session_cls.assert_called_once()

    @patch("foodsnap.ml.model_manager.InferenceSession")
    def test_get_classifier_builds_onnx_classifier(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path))

        with patch("foodsnap.ml.model_manager.hf_hub_download", _fake_hub(tmp_path)):
            classifier = mgr.get_classifier("food101_mobilenetv3")

        assert isinstance(classifier, OnnxImageClassifier)
        assert classifier.model_name == "food101_mobilenetv3"
        assert classifier.labels == ["pizza", "sushi", "taco"]
        assert mgr.get_loaded_models() == ["food101_mobilenetv3"]

    @patch("foodsnap.ml.model_manager.hf_hub_download")
    def test_get_classifier_wraps_download_failure(self, mock_download: MagicMock, tmp_path: Path) -> None:
        mock_download.side_effect = OSError("network unreachable")
        mgr = OnnxModelManager(_make_settings(tmp_path))

        with pytest.raises(ModelLoadError, match="Failed to load model.") as exc_info:
            mgr.get_classifier("food101_mobilenetv3")
        assert isinstance(exc_info.value.__cause__, OSError)

    @patch("foodsnap.ml.model_manager.InferenceSession")
    def test_get_classifier_wraps_session_failure(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        mock_session_cls.side_effect = RuntimeError("invalid protobuf")
        mgr = OnnxModelManager(_make_settings(tmp_path))

        with (
            patch("foodsnap.ml.model_manager.hf_hub_download", _fake_hub(tmp_path)),
            pytest.raises(ModelLoadError),
        ):
            mgr.get_classifier("food101_mobilenetv3")
        assert mgr.get_loaded_models() == []

    def test_get_classifier_unknown_model(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path))
        with pytest.raises(ModelLoadError) as exc_info:
            mgr.get_classifier("totally_fake_model")
        assert isinstance(exc_info.value.__cause__, KeyError)

    @patch("foodsnap.ml.model_manager.InferenceSession")
    @patch("foodsnap.ml.model_manager.hf_hub_download")
    def test_get_input_size_reads_registry_without_loading(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path))

        assert mgr.get_input_size("food101_efficientnet_b0") == (224, 224)
        mock_download.assert_not_called()
        mock_session_cls.assert_not_called()

    def test_get_input_size_unknown_model(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path))
        with pytest.raises(ModelLoadError) as exc_info:
            mgr.get_input_size("totally_fake_model")
        assert isinstance(exc_info.value.__cause__, KeyError)

    @patch("foodsnap.ml.model_manager.InferenceSession")
    @patch("foodsnap.ml.model_manager.hf_hub_download")
    def test_unload_idle_models_removes_expired(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        mock_download.return_value = str(tmp_path / "food101_mobilenetv3_large.onnx")
        mgr = OnnxModelManager(_make_settings(tmp_path, model_ttl=1))
        mgr.get_session("food101_mobilenetv3")

        # Fake the last_used time to be in the past.
        mgr._sessions["food101_mobilenetv3"].last_used = time.monotonic() - 10

        mgr.unload_idle_models()
        assert mgr.get_loaded_models() == []

    def test_unload_idle_skipped_when_ttl_zero(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path, model_ttl=0))
        mgr.unload_idle_models()
        assert mgr.get_loaded_models() == []

    def test_provider_building_cpu(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path, device="cpu"))
        assert mgr._providers == ["CPUExecutionProvider"]

    def test_provider_building_cuda(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path, device="cuda"))
        assert len(mgr._providers) == 2
        provider_name, provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "CUDAExecutionProvider"
        assert provider_opts["device_id"] == 0
        assert mgr._providers[1] == "CPUExecutionProvider"

    def test_provider_building_openvino(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path, device="openvino"))
        provider_name, _provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "OpenVINOExecutionProvider"
        assert mgr._providers[1] == "CPUExecutionProvider"

    @patch("foodsnap.ml.model_manager.InferenceSession")
    @patch("foodsnap.ml.model_manager.hf_hub_download")
    def test_shutdown_clears_sessions(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        mock_download.return_value = str(tmp_path / "food101_mobilenetv3_large.onnx")
        mgr = OnnxModelManager(_make_settings(tmp_path))
        mgr.get_session("food101_mobilenetv3")
        assert len(mgr.get_loaded_models()) == 1

        mgr.shutdown()
        assert mgr.get_loaded_models() == []
