"""Model manager: download, load, cache, and evict tagger models.

Handles downloading tagger models and their tag catalogs from HuggingFace,
creating and caching ONNX inference engines, and TTL-based eviction. Evicted
engines are closed so their sessions are released exactly once.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from wdtagger.exceptions import UnknownModelError
from wdtagger.ml.engine import OnnxInferenceEngine
from wdtagger.ml.tagger import ImageTagger
from wdtagger.ml.tags import TagCatalog

if TYPE_CHECKING:
    from wdtagger.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def get_tagger(self, model_name: str) -> ImageTagger:
        """Return a tagger backed by a cached or newly created engine."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def unload_idle_models(self) -> None:
        """Unload models that have exceeded their TTL."""
        ...

    def shutdown(self) -> None:
        """Release all cached engines."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------

MODEL_FILENAME = "model.onnx"
TAGS_FILENAME = "selected_tags.csv"


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single tagger model."""

    name: str
    repo_id: str
    license: str
    model_filename: str = MODEL_FILENAME
    tags_filename: str = TAGS_FILENAME


@dataclass(frozen=True)
class ModelFiles:
    """Local paths of a downloaded model and its tag catalog."""

    model: Path
    tags: Path


MODEL_REGISTRY: dict[str, ModelSpec] = {
    spec.name: spec
    for spec in (
        ModelSpec(name="wd_swinv2_v3", repo_id="SmilingWolf/wd-swinv2-tagger-v3", license="Apache-2.0"),
        ModelSpec(name="wd_convnext_v3", repo_id="SmilingWolf/wd-convnext-tagger-v3", license="Apache-2.0"),
        ModelSpec(name="wd_vit_v3", repo_id="SmilingWolf/wd-vit-tagger-v3", license="Apache-2.0"),
        ModelSpec(name="wd_vit_large_v3", repo_id="SmilingWolf/wd-vit-large-tagger-v3", license="Apache-2.0"),
        ModelSpec(name="wd_eva02_large_v3", repo_id="SmilingWolf/wd-eva02-large-tagger-v3", license="Apache-2.0"),
        ModelSpec(name="wd_moat_v2", repo_id="SmilingWolf/wd-v1-4-moat-tagger-v2", license="Apache-2.0"),
    )
}


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


@dataclass
class _CachedEngine:
    engine: OnnxInferenceEngine
    last_used: float


class OnnxModelManager:
    """Downloads tagger models, caches their engines and catalogs, and evicts idle engines."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._engines: dict[str, _CachedEngine] = {}
        self._catalogs: dict[str, TagCatalog] = {}
        self._model_files: dict[str, ModelFiles] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, model_name: str) -> ModelFiles:
        """Download a model and its tag catalog from HuggingFace if not already present."""
        spec = self._get_spec(model_name)

        cached = self._model_files.get(model_name)
        if cached is not None and cached.model.exists() and cached.tags.exists():
            return cached

        local_dir = self._models_dir / spec.name
        files = ModelFiles(
            model=self._download(spec, spec.model_filename, local_dir),
            tags=self._download(spec, spec.tags_filename, local_dir),
        )
        self._model_files[model_name] = files
        return files

    def get_engine(self, model_name: str) -> OnnxInferenceEngine:
        """Return a cached inference engine, creating one if needed."""
        with self._lock:
            cached = self._engines.get(model_name)
            if cached is not None:
                cached.last_used = time.monotonic()
                return cached.engine

        files = self.ensure_downloaded(model_name)
        session = InferenceSession(
            str(files.model),
            sess_options=self._session_options,
            providers=self._providers,
        )
        engine = OnnxInferenceEngine(session, name=model_name)

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._engines.get(model_name)
            if existing is not None:
                existing.last_used = time.monotonic()
                engine.close()
                return existing.engine
            self._engines[model_name] = _CachedEngine(
                engine=engine,
                last_used=time.monotonic(),
            )
            logger.info("Loaded session for %s (input %dx%d)", model_name, engine.target_size, engine.target_size)
            return engine

    def get_catalog(self, model_name: str) -> TagCatalog:
        """Return the tag catalog for a model, loading it on first use."""
        with self._lock:
            catalog = self._catalogs.get(model_name)
        if catalog is not None:
            return catalog

        files = self.ensure_downloaded(model_name)
        catalog = TagCatalog.from_csv(files.tags)
        with self._lock:
            return self._catalogs.setdefault(model_name, catalog)

    def get_tagger(self, model_name: str) -> ImageTagger:
        """Return a tagger for the given model."""
        return ImageTagger(self.get_engine(model_name), self.get_catalog(model_name))

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active engines."""
        with self._lock:
            return list(self._engines.keys())

    def unload_idle_models(self) -> None:
        """Release engines that have exceeded the configured TTL."""
        ttl = self._settings.model_ttl
        if ttl == 0:
            return

        now = time.monotonic()
        with self._lock:
            expired = [name for name, cached in self._engines.items() if (now - cached.last_used) > ttl]
            evicted = [self._engines.pop(name).engine for name in expired]
        for engine in evicted:
            engine.close()
            logger.info("Evicted idle session for %s", engine.name)

    def shutdown(self) -> None:
        """Release all cached engines."""
        with self._lock:
            engines = [cached.engine for cached in self._engines.values()]
            self._engines.clear()
        for engine in engines:
            engine.close()
        logger.info("All model sessions released")

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _get_spec(model_name: str) -> ModelSpec:
        try:
            return MODEL_REGISTRY[model_name]
        except KeyError:
            raise UnknownModelError(f"Unknown model: {model_name}") from None

    @staticmethod
    def _download(spec: ModelSpec, filename: str, local_dir: Path) -> Path:
        path = local_dir / filename
        if path.exists():
            return path
        downloaded = Path(
            hf_hub_download(
                repo_id=spec.repo_id,
                filename=filename,
                local_dir=str(local_dir),
            )
        )
        logger.info("Downloaded %s/%s to %s", spec.name, filename, downloaded)
        return downloaded

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
