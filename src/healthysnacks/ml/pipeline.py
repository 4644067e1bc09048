"""Inference pipeline: a loaded model bound to its preprocessing configuration.

The pipeline is built once at startup by :func:`build_pipeline`. A model that
cannot be loaded is a fatal configuration error.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from healthysnacks.ml.image_classifier import ClassificationResult, ImageClassifier, OnnxImageClassifier
from healthysnacks.ml.preprocessing import (
    CropScaleMode,
    PickedImage,
    apply_orientation,
    crop_and_scale,
    to_tensor,
)

if TYPE_CHECKING:
    from healthysnacks.config import Settings
    from healthysnacks.ml.model_manager import ModelManager, ModelSpec

logger = logging.getLogger(__name__)


class PipelineStartupError(RuntimeError):
    """The classification model could not be loaded. There is no valid state without it."""


class InferencePipeline:
    """Orientation fix, crop/scale, normalization and classification for one model."""

    def __init__(
        self,
        spec: ModelSpec,
        classifier: ImageClassifier,
        crop_scale_mode: CropScaleMode = CropScaleMode.CENTER_CROP,
    ) -> None:
        self.spec = spec
        self.classifier = classifier
        self.crop_scale_mode = crop_scale_mode

    @property
    def model_name(self) -> str:
        return self.classifier.model_name

    def predict(self, picked: PickedImage) -> list[ClassificationResult]:
        """Classify a picked image. Runs synchronously; call it from a worker thread."""
        upright = apply_orientation(picked.image, picked.orientation)
        fitted = crop_and_scale(upright, self.spec.input_size, self.crop_scale_mode)
        tensor = to_tensor(fitted, self.spec.mean, self.spec.std)
        return self.classifier.classify(tensor)


def build_pipeline(settings: Settings, manager: ModelManager) -> InferencePipeline:
    """Load the configured model and bind it to the configured crop/scale mode.

    Raises:
        PipelineStartupError: If the model is unknown, missing, or fails to load.
    """
    try:
        spec = manager.get_spec(settings.model_name)
        session = manager.get_session(settings.model_name)
        classifier = OnnxImageClassifier(spec.name, session, spec.labels, top_k=settings.top_k)
    except Exception as exc:
        raise PipelineStartupError(f"Cannot load model '{settings.model_name}': {exc}") from exc

    pipeline = InferencePipeline(spec, classifier, CropScaleMode(settings.crop_scale_mode))
    logger.info("Inference pipeline ready (model=%s, crop_scale=%s)", pipeline.model_name, pipeline.crop_scale_mode)
    return pipeline
