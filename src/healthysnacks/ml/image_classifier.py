"""Image classification over an ONNX session.

Turns a preprocessed NCHW tensor into ranked (label, confidence) pairs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

logger = logging.getLogger(__name__)

_PROBABILITY_TOLERANCE: float = 1e-3


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, tensor: NDArray[np.float32]) -> list[ClassificationResult]:
        """Classify a preprocessed image and return ranked labels.

        Args:
            tensor: Model input, shape (1, 3, H, W).

        Returns:
            List of classification results sorted by confidence (descending).
        """
        ...


def softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = logits - logits.max()
    exp = np.exp(shifted)
    return (exp / exp.sum()).astype(np.float32)


def to_probabilities(scores: NDArray[np.float32]) -> NDArray[np.float32]:
    """Return ``scores`` unchanged if they already form a distribution, else softmax them."""
    if scores.size == 0:
        return scores
    if scores.min() >= 0.0 and abs(float(scores.sum()) - 1.0) <= _PROBABILITY_TOLERANCE:
        return scores
    return softmax(scores)


def rank(labels: Sequence[str], probabilities: NDArray[np.float32], top_k: int = 0) -> list[ClassificationResult]:
    """Pair labels with probabilities, sorted by confidence descending.

    ``top_k`` of 0 keeps every label.
    """
    if len(labels) != probabilities.size:
        raise ValueError(f"Model returned {probabilities.size} scores for {len(labels)} labels")
    order = np.argsort(-probabilities, kind="stable")
    if top_k > 0:
        order = order[:top_k]
    return [ClassificationResult(label=labels[i], confidence=float(probabilities[i])) for i in order]


class OnnxImageClassifier:
    """Runs a classification model loaded as an ONNX InferenceSession."""

    def __init__(
        self,
        model_name: str,
        session: InferenceSession,
        labels: Sequence[str],
        top_k: int = 0,
    ) -> None:
        self._model_name = model_name
        self._session = session
        self._labels = list(labels)
        self._top_k = top_k
        self._input_name: str = session.get_inputs()[0].name

    @property
    def model_name(self) -> str:
        return self._model_name

    def classify(self, tensor: NDArray[np.float32]) -> list[ClassificationResult]:
        outputs = self._session.run(None, {self._input_name: tensor})
        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        results = rank(self._labels, to_probabilities(scores), self._top_k)
        if results:
            logger.debug("%s top result: %s (%.3f)", self._model_name, results[0].label, results[0].confidence)
        return results
