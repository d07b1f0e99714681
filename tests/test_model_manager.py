"""Tests for the ONNX model manager."""

from __future__ import annotations

import time
from pathlib import Path
from unittest.mock import MagicMock, call, patch

import pytest

from wdtagger.config import Settings
from wdtagger.exceptions import UnknownModelError
from wdtagger.ml.model_manager import MODEL_REGISTRY, OnnxModelManager
from wdtagger.ml.tagger import ImageTagger

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

TAGS_CSV = "tag_id,name,category,count\n9999999,general,9,807516\n470575,1girl,0,4225150\n"


def _make_settings(tmp_path: Path, **overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": str(tmp_path),
        "model_ttl": 300,
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "gpu_mem_limit": 2_147_483_648,
        "max_concurrent": 2,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def _fake_download(repo_id: str, filename: str, local_dir: str) -> str:
    path = Path(local_dir) / filename
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(TAGS_CSV if filename.endswith(".csv") else "onnx", encoding="utf-8")
    return str(path)


def _fake_session() -> MagicMock:
    session = MagicMock()
    model_input = MagicMock()
    model_input.name = "input"
    model_input.shape = [1, 448, 448, 3]
    session.get_inputs.return_value = [model_input]
    return session


# ---------------------------------------------------------------------------
# Model registry tests
# ---------------------------------------------------------------------------


class TestModelRegistry:
    def test_known_model_lookup(self) -> None:
        spec = MODEL_REGISTRY["wd_swinv2_v3"]
        assert spec.repo_id == "SmilingWolf/wd-swinv2-tagger-v3"
        assert spec.model_filename == "model.onnx"
        assert spec.tags_filename == "selected_tags.csv"

    def test_unknown_model_raises_keyerror(self) -> None:
        with pytest.raises(KeyError):
            MODEL_REGISTRY["nonexistent_model"]

    def test_default_model_is_registered(self, tmp_path: Path) -> None:
        assert _make_settings(tmp_path).tagger_model in MODEL_REGISTRY


# ---------------------------------------------------------------------------
# OnnxModelManager tests
# ---------------------------------------------------------------------------


class TestOnnxModelManager:
    @patch("wdtagger.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_fetches_model_and_tags(self, mock_download: MagicMock, tmp_path: Path) -> None:
        mock_download.side_effect = _fake_download
        mgr = OnnxModelManager(_make_settings(tmp_path))

        files = mgr.ensure_downloaded("wd_vit_v3")

        local_dir = str(tmp_path / "wd_vit_v3")
        assert mock_download.call_args_list == [
            call(repo_id="SmilingWolf/wd-vit-tagger-v3", filename="model.onnx", local_dir=local_dir),
            call(repo_id="SmilingWolf/wd-vit-tagger-v3", filename="selected_tags.csv", local_dir=local_dir),
        ]
        assert files.model == tmp_path / "wd_vit_v3" / "model.onnx"
        assert files.tags == tmp_path / "wd_vit_v3" / "selected_tags.csv"

    @patch("wdtagger.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_skips_existing(self, mock_download: MagicMock, tmp_path: Path) -> None:
        model_dir = tmp_path / "wd_vit_v3"
        model_dir.mkdir()
        (model_dir / "model.onnx").touch()
        (model_dir / "selected_tags.csv").write_text(TAGS_CSV, encoding="utf-8")

        mgr = OnnxModelManager(_make_settings(tmp_path))
        files = mgr.ensure_downloaded("wd_vit_v3")

        mock_download.assert_not_called()
        assert files.model == model_dir / "model.onnx"

    @patch("wdtagger.ml.model_manager.InferenceSession")
    @patch("wdtagger.ml.model_manager.hf_hub_download")
    def test_get_engine_creates_and_caches(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        mock_download.side_effect = _fake_download
        mock_session_cls.return_value = _fake_session()
        mgr = OnnxModelManager(_make_settings(tmp_path))

        engine1 = mgr.get_engine("wd_swinv2_v3")
        engine2 = mgr.get_engine("wd_swinv2_v3")

        assert engine1 is engine2
        assert engine1.target_size == 448
        mock_session_cls.assert_called_once()

    @patch("wdtagger.ml.model_manager.InferenceSession")
    @patch("wdtagger.ml.model_manager.hf_hub_download")
    def test_get_tagger_loads_catalog_once(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        mock_download.side_effect = _fake_download
        mock_session_cls.return_value = _fake_session()
        mgr = OnnxModelManager(_make_settings(tmp_path))

        tagger = mgr.get_tagger("wd_swinv2_v3")

        assert isinstance(tagger, ImageTagger)
        assert [t.name for t in tagger.catalog] == ["general", "1girl"]
        assert mgr.get_catalog("wd_swinv2_v3") is tagger.catalog

    @patch("wdtagger.ml.model_manager.InferenceSession")
    @patch("wdtagger.ml.model_manager.hf_hub_download")
    def test_get_loaded_models(self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        mock_download.side_effect = _fake_download
        mock_session_cls.return_value = _fake_session()
        mgr = OnnxModelManager(_make_settings(tmp_path))

        assert mgr.get_loaded_models() == []
        mgr.get_engine("wd_swinv2_v3")
        assert mgr.get_loaded_models() == ["wd_swinv2_v3"]

    @patch("wdtagger.ml.model_manager.InferenceSession")
    @patch("wdtagger.ml.model_manager.hf_hub_download")
    def test_unload_idle_models_releases_expired(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        mock_download.side_effect = _fake_download
        mock_session_cls.return_value = _fake_session()
        mgr = OnnxModelManager(_make_settings(tmp_path, model_ttl=1))
        engine = mgr.get_engine("wd_swinv2_v3")

        # Fake the last_used time to be in the past.
        mgr._engines["wd_swinv2_v3"].last_used = time.monotonic() - 10

        mgr.unload_idle_models()
        assert mgr.get_loaded_models() == []
        assert engine.closed

    @patch("wdtagger.ml.model_manager.InferenceSession")
    @patch("wdtagger.ml.model_manager.hf_hub_download")
    def test_unload_idle_models_keeps_recent(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        mock_download.side_effect = _fake_download
        mock_session_cls.return_value = _fake_session()
        mgr = OnnxModelManager(_make_settings(tmp_path, model_ttl=300))
        engine = mgr.get_engine("wd_swinv2_v3")

        mgr.unload_idle_models()

        assert mgr.get_loaded_models() == ["wd_swinv2_v3"]
        assert not engine.closed

    def test_unload_idle_skipped_when_ttl_zero(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path, model_ttl=0))
        # Should not raise or do anything.
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
        assert len(mgr._providers) == 2
        provider_name, _provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "OpenVINOExecutionProvider"
        assert mgr._providers[1] == "CPUExecutionProvider"

    @patch("wdtagger.ml.model_manager.InferenceSession")
    @patch("wdtagger.ml.model_manager.hf_hub_download")
    def test_shutdown_releases_engines(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        mock_download.side_effect = _fake_download
        mock_session_cls.return_value = _fake_session()
        mgr = OnnxModelManager(_make_settings(tmp_path))
        engine = mgr.get_engine("wd_swinv2_v3")
        assert len(mgr.get_loaded_models()) == 1

        mgr.shutdown()
        assert mgr.get_loaded_models() == []
        assert engine.closed

    def test_unknown_model_raises_unknown_model_error(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path))
        with pytest.raises(UnknownModelError, match="Unknown model"):
            mgr.ensure_downloaded("totally_fake_model")
