"""Severity decision logic: NaN check, softmax, arg-max label selection."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import ArrayLike, NDArray

logger = logging.getLogger(__name__)

# Index order is fixed by the trained model's output head.
SEVERITY_LABELS: tuple[str, ...] = ("minor", "moderate", "severe")


@dataclass(frozen=True)
class ClassificationResult:
    """A label chosen from the label set with its softmax probability."""

    label: str
    confidence: float
    probabilities: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class InvalidPrediction:
    """The model produced scores that cannot be turned into a label."""

    reason: str
    raw_scores: tuple[float, ...] = ()


Prediction = ClassificationResult | InvalidPrediction


def softmax(scores: ArrayLike) -> NDArray[np.float64]:
    """Normalize raw scores into probabilities summing to 1.

    The max is subtracted before exponentiating. This is mathematically the
    same as exp(x_i) / sum(exp(x_j)) but cannot overflow for large scores.
    """
    values = np.asarray(scores, dtype=np.float64)
    exp = np.exp(values - np.max(values))
    result: NDArray[np.float64] = exp / exp.sum()
    return result


def classify(scores: ArrayLike, labels: Sequence[str] = SEVERITY_LABELS) -> Prediction:
    """Pick the most probable label for a raw score vector.

    Ties go to the lowest index. Scores containing NaN (or infinity, whose
    shifted softmax is NaN) yield ``InvalidPrediction`` instead of a label.

    Raises:
        ValueError: If the number of scores differs from the number of labels.
    """
    values = np.asarray(scores, dtype=np.float64).reshape(-1)
    if values.size != len(labels):
        raise ValueError(f"Got {values.size} scores for {len(labels)} labels")

    if not np.isfinite(values).all():
        kind = "NaN" if np.isnan(values).any() else "infinite"
        logger.warning("Model output contains %s values: %s", kind, values.tolist())
        return InvalidPrediction(
            reason=f"Model output contains {kind} values",
            raw_scores=tuple(values.tolist()),
        )

    probs = softmax(values)
    index = int(np.argmax(probs))
    return ClassificationResult(
        label=labels[index],
        confidence=float(probs[index]),
        probabilities={label: float(p) for label, p in zip(labels, probs, strict=True)},
    )
