"""Inference adapter: the boundary between preprocessing and the ONNX model."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import numpy as np

from rustsense.ml.errors import AdapterError

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

logger = logging.getLogger(__name__)


class InferenceAdapter(Protocol):
    """Protocol for anything that maps an input tensor to raw class scores."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def predict(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        """Run the model on one preprocessed image.

        Args:
            tensor: float32 array of shape (1, 3, H, W), channel-planar.

        Returns:
            1-D array of raw scores, one per label.

        Raises:
            AdapterError: If the model is unavailable or its input/output
                does not match the expected shape.
        """
        ...


class OnnxInferenceAdapter:
    """Runs a single-input, single-output ONNX classifier.

    The session is fetched from ``session_provider`` on every call so the
    model manager may evict and reload idle sessions underneath.
    """

    def __init__(
        self,
        session_provider: Callable[[], InferenceSession],
        model_name: str,
        num_classes: int,
        input_shape: tuple[int, ...] = (1, 3, 224, 224),
    ) -> None:
        self._session_provider = session_provider
        self._model_name = model_name
        self._num_classes = num_classes
        self._input_shape = input_shape

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def input_shape(self) -> tuple[int, ...]:
        return self._input_shape

    def predict(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        if tensor.shape != self._input_shape:
            raise AdapterError(f"Input shape {tensor.shape} does not match model input {self._input_shape}")
        if tensor.dtype != np.float32:
            raise AdapterError(f"Input dtype {tensor.dtype} is not float32")
        if not np.isfinite(tensor).all():
            raise AdapterError("Input tensor contains non-finite values")

        try:
            session = self._session_provider()
            input_name = session.get_inputs()[0].name
            output_name = session.get_outputs()[0].name
            outputs = session.run([output_name], {input_name: tensor})
        except Exception as exc:
            raise AdapterError(f"Inference failed for {self._model_name}: {exc}") from exc

        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if scores.size != self._num_classes:
            raise AdapterError(f"Model returned {scores.size} scores, expected {self._num_classes}")
        logger.debug("Raw scores from %s: %s", self._model_name, scores.tolist())
        return scores
