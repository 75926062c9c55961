"""Shared fixtures: in-memory JPEG payloads and pipelines with scripted model output."""

from __future__ import annotations

import io
from collections.abc import Callable, Sequence

import numpy as np
import pytest
from numpy.typing import NDArray
from PIL import Image

from rustsense.ml.pipeline import SeverityPipeline
from rustsense.ml.preprocessing import ImagePreprocessor, PreprocessConfig


def encode_jpeg(
    width: int = 256,
    height: int = 256,
    color: tuple[int, int, int] = (128, 128, 128),
    *,
    noise: bool = False,
) -> bytes:
    if noise:
        rng = np.random.default_rng(0)
        image = Image.fromarray(rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8))
    else:
        image = Image.new("RGB", (width, height), color)
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=95)
    return buffer.getvalue()


class ScriptedAdapter:
    """Adapter returning fixed scores (or raising) and recording its inputs."""

    def __init__(self, scores: Sequence[float] | None = None, error: Exception | None = None) -> None:
        self._scores = np.asarray(scores if scores is not None else [0.0, 0.0, 0.0], dtype=np.float32)
        self._error = error
        self.tensors: list[NDArray[np.float32]] = []

    @property
    def model_name(self) -> str:
        return "scripted"

    def predict(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        self.tensors.append(tensor)
        if self._error is not None:
            raise self._error
        return self._scores.copy()


@pytest.fixture()
def make_jpeg() -> Callable[..., bytes]:
    return encode_jpeg


@pytest.fixture()
def make_pipeline() -> Callable[..., SeverityPipeline]:
    def _build(scores: Sequence[float] | None = None, error: Exception | None = None) -> SeverityPipeline:
        return SeverityPipeline(ImagePreprocessor(PreprocessConfig()), ScriptedAdapter(scores, error))

    return _build

