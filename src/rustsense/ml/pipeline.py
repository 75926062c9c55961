"""End-to-end severity classification and last-write-wins result slots.

    JPEG bytes -> ImagePreprocessor -> tensor -> InferenceAdapter -> scores -> classify

Each ``SeverityPipeline.run`` call owns its buffers from start to finish; the
only state shared between requests is the ``PredictionSlot`` a caller opts
into, which keeps the newest result and drops completions that were
superseded while in flight.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import TYPE_CHECKING

from rustsense.ml.classifier import SEVERITY_LABELS, ClassificationResult, classify
from rustsense.ml.inference import timed_stage

if TYPE_CHECKING:
    from collections.abc import Sequence

    from rustsense.ml.adapter import InferenceAdapter
    from rustsense.ml.classifier import Prediction
    from rustsense.ml.inference import InferencePool
    from rustsense.ml.preprocessing import ImagePreprocessor

logger = logging.getLogger(__name__)


class SeverityPipeline:
    """Preprocess, infer and classify one image.

    Requires a ready adapter: constructing the pipeline is the point at which
    the model is known to be loaded.
    """

    def __init__(
        self,
        preprocessor: ImagePreprocessor,
        adapter: InferenceAdapter,
        labels: Sequence[str] = SEVERITY_LABELS,
    ) -> None:
        self._preprocessor = preprocessor
        self._adapter = adapter
        self._labels = tuple(labels)

    @property
    def model_name(self) -> str:
        return self._adapter.model_name

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    def run(self, image_bytes: bytes) -> Prediction:
        """Classify JPEG bytes.

        Raises:
            DecodeError: If the bytes are not a valid JPEG.
            ResizeError: If resizing fails.
            AdapterError: If inference fails.
        """
        timings: dict[str, float] = {}
        with timed_stage("preprocess", timings):
            tensor = self._preprocessor.preprocess(image_bytes)
        with timed_stage("inference", timings):
            scores = self._adapter.predict(tensor)
        prediction = classify(scores, self._labels)
        if isinstance(prediction, ClassificationResult):
            logger.info(
                "Predicted %s (%.3f) in %.1f ms",
                prediction.label,
                prediction.confidence,
                sum(timings.values()) * 1000,
            )
        return prediction


class PredictionSlot:
    """Holds the latest prediction for one caller.

    ``reserve`` hands out increasing tickets; only the holder of the newest
    ticket may ``publish``. Older tickets belong to superseded requests and
    their results are dropped. Every reserved ticket must end in exactly one
    ``publish`` or ``discard``; until then the slot counts as busy.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ticket = 0
        self._pending = 0
        self._latest: Prediction | None = None

    def reserve(self) -> int:
        with self._lock:
            self._ticket += 1
            self._pending += 1
            return self._ticket

    def is_current(self, ticket: int) -> bool:
        with self._lock:
            return ticket == self._ticket

    def publish(self, ticket: int, prediction: Prediction) -> bool:
        """Store ``prediction`` if ``ticket`` is still the newest. Returns whether it was stored."""
        with self._lock:
            self._pending -= 1
            if ticket != self._ticket:
                logger.warning("Dropping stale prediction (ticket %d, current %d)", ticket, self._ticket)
                return False
            self._latest = prediction
            return True

    def discard(self, ticket: int) -> None:
        """Release ``ticket`` after its request failed, clearing the result if it was the newest."""
        with self._lock:
            self._pending -= 1
            if ticket == self._ticket:
                self._latest = None

    @property
    def busy(self) -> bool:
        """Whether a reserved ticket has not yet been published or discarded."""
        with self._lock:
            return self._pending > 0

    @property
    def latest(self) -> Prediction | None:
        with self._lock:
            return self._latest


class SlotRegistry:
    """Bounded LRU mapping of caller session id to ``PredictionSlot``.

    Only idle slots are evicted. A slot with a request in flight stays until
    that request settles, so a newer upload to the same session still
    supersedes it; the registry may briefly exceed ``max_slots`` meanwhile.
    """

    def __init__(self, max_slots: int = 1024) -> None:
        self._max_slots = max_slots
        self._lock = threading.Lock()
        self._slots: OrderedDict[str, PredictionSlot] = OrderedDict()

    def get(self, session_id: str) -> PredictionSlot:
        """Return the slot for ``session_id``, creating it if needed."""
        with self._lock:
            slot = self._slots.get(session_id)
            if slot is None:
                slot = PredictionSlot()
                self._slots[session_id] = slot
                self._evict_idle(keep=session_id)
            else:
                self._slots.move_to_end(session_id)
            return slot

    def _evict_idle(self, keep: str) -> None:
        excess = len(self._slots) - self._max_slots
        if excess <= 0:
            return
        idle = [sid for sid, slot in self._slots.items() if sid != keep and not slot.busy]
        for sid in idle[:excess]:
            del self._slots[sid]
            logger.debug("Evicted prediction slot %s", sid)
        if len(self._slots) > self._max_slots:
            logger.warning(
                "Prediction slots over limit (%d > %d); remaining slots are busy",
                len(self._slots),
                self._max_slots,
            )

    def peek(self, session_id: str) -> PredictionSlot | None:
        with self._lock:
            return self._slots.get(session_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)


async def classify_latest(
    pool: InferencePool,
    pipeline: SeverityPipeline,
    slot: PredictionSlot,
    image_bytes: bytes,
) -> Prediction | None:
    """Run the pipeline on the pool and publish into ``slot``.

    Returns:
        The prediction, or None if a newer request superseded this one.
    """
    ticket = slot.reserve()
    try:
        prediction = await pool.run(pipeline.run, image_bytes)
    except BaseException:
        slot.discard(ticket)
        raise
    if not slot.publish(ticket, prediction):
        return None
    return prediction
