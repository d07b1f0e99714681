"""Inference engine: the opaque tensor -> probability vector step.

``InferenceEngine`` is the seam the tagger depends on, so tests can swap in a
deterministic stub. ``OnnxInferenceEngine`` adapts an ONNX Runtime session.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Protocol

import numpy as np

from wdtagger.exceptions import EngineClosedError, ModelLoadError

if TYPE_CHECKING:
    from types import TracebackType

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

logger = logging.getLogger(__name__)


class InferenceEngine(Protocol):
    """Protocol for tagger inference backends."""

    @property
    def target_size(self) -> int:
        """Return the square input size the model expects."""
        ...

    def infer(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        """Run the model on a normalized image tensor.

        Args:
            tensor: ``(1, size, size, 3)`` BGR float32 array.

        Returns:
            1-D probability vector aligned with the tag catalog.
        """
        ...

    def close(self) -> None:
        """Release the underlying model resources."""
        ...


class OnnxInferenceEngine:
    """Runs a WaifuDiffusion tagger ONNX session.

    The session is released exactly once, either by ``close()`` or on leaving
    a ``with`` block.
    """

    def __init__(self, session: InferenceSession, name: str = "model") -> None:
        self._name = name
        self._session: InferenceSession | None = session
        self._lock = threading.Lock()

        model_input = session.get_inputs()[0]
        self._input_name: str = model_input.name
        self._target_size = self._read_target_size(model_input.shape)

    @property
    def name(self) -> str:
        return self._name

    @property
    def target_size(self) -> int:
        return self._target_size

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._session is None

    def infer(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        with self._lock:
            session = self._session
        if session is None:
            raise EngineClosedError(f"Inference engine for {self._name} has been released")

        outputs = session.run(None, {self._input_name: tensor})
        return np.asarray(outputs[0], dtype=np.float32).reshape(-1)

    def close(self) -> None:
        with self._lock:
            if self._session is None:
                return
            self._session = None
        logger.info("Released inference session for %s", self._name)

    def __enter__(self) -> OnnxInferenceEngine:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def _read_target_size(self, shape: list[object]) -> int:
        # NHWC: [batch, height, width, channels]
        if len(shape) != 4:
            raise ModelLoadError(f"{self._name}: expected a 4-D input, got shape {shape}")
        height, width = shape[1], shape[2]
        if not isinstance(height, int) or not isinstance(width, int) or height != width or height <= 0:
            raise ModelLoadError(f"{self._name}: expected a fixed square input, got shape {shape}")
        return height
