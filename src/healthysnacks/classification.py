"""Classification adapter: submits picked images and formats the outcome for display."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Sequence

    from healthysnacks.ml.image_classifier import ClassificationResult
    from healthysnacks.ml.inference import InferencePool
    from healthysnacks.ml.preprocessing import PickedImage

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD: float = 0.8

NOTHING_FOUND_TEXT = "Nothing found"
UNCERTAIN_TEXT = "Not sure"
UNEXPECTED_TEXT = "Something unexpected happened"
QUEUE_FULL_TEXT = "Inference queue is full, try again"


class Classifies(Protocol):
    def predict(self, picked: PickedImage) -> list[ClassificationResult]: ...


@dataclass(frozen=True)
class ClassificationOutcome:
    """Result of one classification request.

    ``results`` is set when inference ran (possibly with no predictions);
    ``error`` carries the description of a failed request.
    ``timed_out`` marks a request that never reached a worker.
    """

    results: tuple[ClassificationResult, ...] | None = None
    error: str | None = None
    timed_out: bool = False

    @classmethod
    def success(cls, results: Sequence[ClassificationResult]) -> ClassificationOutcome:
        return cls(results=tuple(results))

    @classmethod
    def failure(cls, error: str) -> ClassificationOutcome:
        return cls(error=error)

    @classmethod
    def queue_full(cls) -> ClassificationOutcome:
        return cls(error=QUEUE_FULL_TEXT, timed_out=True)

    @property
    def top(self) -> ClassificationResult | None:
        if not self.results:
            return None
        return self.results[0]


def format_result(result: ClassificationResult) -> str:
    return f"{result.label} {result.confidence * 100:.1f}%"


def describe_outcome(outcome: ClassificationOutcome, threshold: float = DEFAULT_CONFIDENCE_THRESHOLD) -> str:
    """Turn an outcome into the text shown in the result panel."""
    if outcome.results is not None:
        top = outcome.top
        if top is None:
            return NOTHING_FOUND_TEXT
        if top.confidence < threshold:
            return UNCERTAIN_TEXT
        return format_result(top)
    if outcome.error is not None:
        return f"Error: {outcome.error}"
    return UNEXPECTED_TEXT


class ClassificationAdapter:
    """Runs a ready inference pipeline off the event loop and reports typed outcomes."""

    def __init__(
        self,
        pipeline: Classifies,
        pool: InferencePool,
        threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    ) -> None:
        self._pipeline = pipeline
        self._pool = pool
        self.threshold = threshold

    async def classify(self, picked: PickedImage) -> ClassificationOutcome:
        """Classify ``picked`` on a worker thread. Never raises."""
        try:
            results = await self._pool.run(self._pipeline.predict, picked)
        except TimeoutError:
            logger.warning("Inference queue is full, dropping request")
            return ClassificationOutcome.queue_full()
        except Exception as exc:
            logger.exception("Classification failed")
            return ClassificationOutcome.failure(str(exc) or type(exc).__name__)
        return ClassificationOutcome.success(results)

    def describe(self, outcome: ClassificationOutcome) -> str:
        return describe_outcome(outcome, self.threshold)

    async def classify_and_describe(self, picked: PickedImage) -> str:
        return self.describe(await self.classify(picked))
