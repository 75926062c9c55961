"""Tests for the ONNX model manager."""

from __future__ import annotations

import time
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from rustsense.config import Settings
from rustsense.ml.adapter import OnnxInferenceAdapter
from rustsense.ml.model_manager import MODEL_REGISTRY, OnnxModelManager

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": "/tmp/rustsense_test_models",
        "model_ttl": 300,
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "gpu_mem_limit": 2_147_483_648,
        "max_concurrent": 2,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def _classifier_session() -> MagicMock:
    session = MagicMock()
    session.get_inputs.return_value = [SimpleNamespace(name="input")]
    session.get_outputs.return_value = [SimpleNamespace(name="output")]
    session.run.return_value = [np.array([[0.1, 0.2, 3.0]], dtype=np.float32)]
    return session


# ---------------------------------------------------------------------------
# Model registry tests
# ---------------------------------------------------------------------------


class TestModelRegistry:
    def test_known_model_lookup(self) -> None:
        spec = MODEL_REGISTRY["rust_severity_v1"]
        assert spec.filename == "model_clean.onnx"
        assert spec.labels == ("minor", "moderate", "severe")
        assert spec.input_shape == (1, 3, 224, 224)

    def test_unknown_model_raises_keyerror(self) -> None:
        with pytest.raises(KeyError):
            MODEL_REGISTRY["nonexistent_model"]

    def test_default_model_is_registered(self) -> None:
        assert _make_settings().model in MODEL_REGISTRY


# ---------------------------------------------------------------------------
# OnnxModelManager tests
# ---------------------------------------------------------------------------


class TestOnnxModelManager:
    @patch("rustsense.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_calls_hf_hub_download(self, mock_download: MagicMock) -> None:
        mock_download.return_value = "/tmp/rustsense_test_models/model_clean.onnx"
        mgr = OnnxModelManager(_make_settings())

        path = mgr.ensure_downloaded("rust_severity_v1")

        mock_download.assert_called_once_with(
            repo_id="rustsense/rust-severity-models",
            filename="model_clean.onnx",
            subfolder=None,
            local_dir="/tmp/rustsense_test_models",
        )
        assert path == Path("/tmp/rustsense_test_models/model_clean.onnx")

    @patch("rustsense.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_skips_existing(self, mock_download: MagicMock, tmp_path: Path) -> None:
        model_file = tmp_path / "model_clean.onnx"
        model_file.touch()

        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))
        # Simulate a previous download by setting the cached path.
        mgr._model_paths["rust_severity_v1"] = model_file

        path = mgr.ensure_downloaded("rust_severity_v1")

        mock_download.assert_not_called()
        assert path == model_file

    @patch("rustsense.ml.model_manager.hf_hub_download")
    def test_local_model_path_takes_precedence(self, mock_download: MagicMock, tmp_path: Path) -> None:
        model_file = tmp_path / "bundled.onnx"
        model_file.touch()
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path), model_path=str(model_file)))

        assert mgr.ensure_downloaded("rust_severity_v1") == model_file
        mock_download.assert_not_called()

    def test_missing_local_model_path_raises(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path), model_path=str(tmp_path / "gone.onnx")))
        with pytest.raises(FileNotFoundError, match="gone.onnx"):
            mgr.ensure_downloaded("rust_severity_v1")

    @patch("rustsense.ml.model_manager.InferenceSession")
    @patch("rustsense.ml.model_manager.hf_hub_download")
    def test_get_session_creates_and_caches(self, mock_download: MagicMock, mock_session_cls: MagicMock) -> None:
        mock_download.return_value = "/tmp/rustsense_test_models/model_clean.onnx"
        mock_session = MagicMock()
        mock_session_cls.return_value = mock_session

        mgr = OnnxModelManager(_make_settings())

        session1 = mgr.get_session("rust_severity_v1")
        session2 = mgr.get_session("rust_severity_v1")

        assert session1 is mock_session
        assert session2 is mock_session
        mock_session_cls.assert_called_once()

    @patch("rustsense.ml.model_manager.InferenceSession")
    @patch("rustsense.ml.model_manager.hf_hub_download")
    def test_load_adapter_warms_session(self, mock_download: MagicMock, mock_session_cls: MagicMock) -> None:
        mock_download.return_value = "/tmp/rustsense_test_models/model_clean.onnx"
        mock_session_cls.return_value = _classifier_session()
        mgr = OnnxModelManager(_make_settings())

        adapter = mgr.load_adapter("rust_severity_v1")

        assert isinstance(adapter, OnnxInferenceAdapter)
        assert adapter.model_name == "rust_severity_v1"
        assert adapter.input_shape == (1, 3, 224, 224)
        assert mgr.get_loaded_models() == ["rust_severity_v1"]

        scores = adapter.predict(np.zeros((1, 3, 224, 224), dtype=np.float32))
        np.testing.assert_allclose(scores, [0.1, 0.2, 3.0], rtol=1e-6)

    @patch("rustsense.ml.model_manager.InferenceSession")
    @patch("rustsense.ml.model_manager.hf_hub_download")
    def test_adapter_reloads_after_eviction(self, mock_download: MagicMock, mock_session_cls: MagicMock) -> None:
        mock_download.return_value = "/tmp/rustsense_test_models/model_clean.onnx"
        mock_session_cls.side_effect = [_classifier_session(), _classifier_session()]
        mgr = OnnxModelManager(_make_settings(model_ttl=1))
        adapter = mgr.load_adapter("rust_severity_v1")

        mgr._sessions["rust_severity_v1"].last_used = time.monotonic() - 10
        mgr.unload_idle_models()
        assert mgr.get_loaded_models() == []

        adapter.predict(np.zeros((1, 3, 224, 224), dtype=np.float32))
        assert mock_session_cls.call_count == 2
        assert mgr.get_loaded_models() == ["rust_severity_v1"]

    @patch("rustsense.ml.model_manager.InferenceSession")
    @patch("rustsense.ml.model_manager.hf_hub_download")
    def test_get_loaded_models(self, mock_download: MagicMock, mock_session_cls: MagicMock) -> None:
        mock_download.return_value = "/tmp/rustsense_test_models/model_clean.onnx"
        mgr = OnnxModelManager(_make_settings())

        assert mgr.get_loaded_models() == []
        mgr.get_session("rust_severity_v1")
        assert mgr.get_loaded_models() == ["rust_severity_v1"]

    @patch("rustsense.ml.model_manager.InferenceSession")
    @patch("rustsense.ml.model_manager.hf_hub_download")
    def test_unload_idle_models_removes_expired(self, mock_download: MagicMock, mock_session_cls: MagicMock) -> None:
        mock_download.return_value = "/tmp/rustsense_test_models/model_clean.onnx"
        mgr = OnnxModelManager(_make_settings(model_ttl=1))
        mgr.get_session("rust_severity_v1")

        # Fake the last_used time to be in the past.
        mgr._sessions["rust_severity_v1"].last_used = time.monotonic() - 10

        mgr.unload_idle_models()
        assert mgr.get_loaded_models() == []

    def test_unload_idle_skipped_when_ttl_zero(self) -> None:
        mgr = OnnxModelManager(_make_settings(model_ttl=0))
        mgr.unload_idle_models()
        assert mgr.get_loaded_models() == []

    def test_provider_building_cpu(self) -> None:
        mgr = OnnxModelManager(_make_settings(device="cpu"))
        assert mgr._providers == ["CPUExecutionProvider"]

    def test_provider_building_cuda(self) -> None:
        mgr = OnnxModelManager(_make_settings(device="cuda"))
        assert len(mgr._providers) == 2
        provider_name, provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "CUDAExecutionProvider"
        assert provider_opts["device_id"] == 0
        assert mgr._providers[1] == "CPUExecutionProvider"

    def test_provider_building_openvino(self) -> None:
        mgr = OnnxModelManager(_make_settings(device="openvino"))
        provider_name, _provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "OpenVINOExecutionProvider"
        assert mgr._providers[1] == "CPUExecutionProvider"

    @patch("rustsense.ml.model_manager.InferenceSession")
    @patch("rustsense.ml.model_manager.hf_hub_download")
    def test_shutdown_clears_sessions(self, mock_download: MagicMock, mock_session_cls: MagicMock) -> None:
        mock_download.return_value = "/tmp/rustsense_test_models/model_clean.onnx"
        mgr = OnnxModelManager(_make_settings())
        mgr.get_session("rust_severity_v1")
        assert len(mgr.get_loaded_models()) == 1

        mgr.shutdown()
        assert mgr.get_loaded_models() == []

    def test_unknown_model_raises_keyerror(self) -> None:
        mgr = OnnxModelManager(_make_settings())
        with pytest.raises(KeyError, match="Unknown model"):
            mgr.ensure_downloaded("totally_fake_model")


class TestSettings:
    def test_crop_larger_than_resize_is_rejected(self) -> None:
        with pytest.raises(ValueError, match="crop_size"):
            _make_settings(resize_size=200, crop_size=224)

    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RUSTSENSE_RESAMPLE", "bicubic")
        monkeypatch.setenv("RUSTSENSE_MAX_CONCURRENT", "4")
        settings = Settings()
        assert settings.resample == "bicubic"
        assert settings.max_concurrent == 4
