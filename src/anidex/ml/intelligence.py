"""Photo identification service.

Wraps an image classification engine: normalizes orientation, runs one
classification pass off the event loop, and returns the top labels.
"""

from __future__ import annotations

import logging
import math
import numbers
from collections.abc import Sequence
from typing import TYPE_CHECKING

from anidex.ml.errors import AnalysisFailedError, InvalidImageError
from anidex.ml.image_classifier import ClassificationResult, LabelConfidence, PhotoAnalysis
from anidex.ml.preprocessing import ImageOrientation, RasterImage, validate_pixels

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from anidex.ml.image_classifier import ImageClassifier
    from anidex.ml.inference import InferencePool

logger = logging.getLogger(__name__)

DEFAULT_TOP_K: int = 5


class Intelligence:
    """Classifies photos into ranked labels.

    Holds no per-request state, so one instance can serve concurrent
    requests. Inference runs on the injected pool's worker threads.
    """

    def __init__(
        self,
        classifier: ImageClassifier,
        pool: InferencePool,
        *,
        strict_orientation: bool = False,
    ) -> None:
        self._classifier = classifier
        self._pool = pool
        self._strict_orientation = strict_orientation

    @property
    def model_name(self) -> str:
        return self._classifier.model_name

    async def analyze(self, image: RasterImage, top_k: int = DEFAULT_TOP_K) -> PhotoAnalysis:
        """Classify an image and return up to ``top_k`` labels, best first.

        Raises:
            InvalidImageError: If ``image`` has no usable pixel buffer, or an
                unknown orientation when strict orientation is enabled.
            AnalysisFailedError: If the engine yields no usable observations.
            ValueError: If ``top_k`` is not a positive integer.
            TimeoutError: If the inference pool is saturated.
        """
        if isinstance(top_k, bool) or not isinstance(top_k, int) or top_k < 1:
            raise ValueError(f"top_k must be a positive integer, got {top_k!r}")
        if not isinstance(image, RasterImage):
            raise InvalidImageError(f"Expected a RasterImage, got {type(image).__name__}")

        pixels = validate_pixels(image.pixels)
        orientation = ImageOrientation.from_exif(image.orientation, strict=self._strict_orientation)
        upright = RasterImage(pixels=pixels, orientation=orientation).upright()

        observations = await self._pool.run(self._classify, upright)
        ranked = _rank(observations)

        labels = tuple(LabelConfidence(label=obs.label, confidence=obs.confidence) for obs in ranked[:top_k])
        return PhotoAnalysis(labels=labels)

    async def best_label(self, image: RasterImage) -> LabelConfidence | None:
        """Return only the most confident label, or None if there is none."""
        analysis = await self.analyze(image, top_k=1)
        return analysis.best_label

    def _classify(self, pixels: NDArray[np.uint8]) -> object:
        try:
            return self._classifier.classify(pixels)
        except Exception as exc:
            logger.warning("Classification with %s failed: %s", self.model_name, exc)
            raise AnalysisFailedError(f"Classification failed: {exc}") from exc


def _rank(observations: object) -> list[ClassificationResult]:
    """Validate engine output and order it by descending confidence."""
    if isinstance(observations, (str, bytes)) or not isinstance(observations, Sequence):
        raise AnalysisFailedError(f"Unexpected classifier output: {type(observations).__name__}")
    if not observations:
        raise AnalysisFailedError("Classifier returned no observations")

    for obs in observations:
        if not isinstance(obs, ClassificationResult):
            raise AnalysisFailedError(f"Unexpected observation type: {type(obs).__name__}")
        if not isinstance(obs.label, str):
            raise AnalysisFailedError(f"Unexpected label type: {type(obs.label).__name__}")
        if isinstance(obs.confidence, bool) or not isinstance(obs.confidence, numbers.Real):
            raise AnalysisFailedError(f"Unexpected confidence type for {obs.label!r}: {type(obs.confidence).__name__}")
        if math.isnan(obs.confidence) or not 0.0 <= obs.confidence <= 1.0:
            raise AnalysisFailedError(f"Confidence out of range for {obs.label!r}: {obs.confidence}")

    # Stable, so an already-ranked engine output keeps its order.
    return sorted(observations, key=lambda obs: obs.confidence, reverse=True)
