"""Classification data model and the inference engine protocol."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray


@dataclass(frozen=True)
class ClassificationResult:
    """A single raw observation from the inference engine."""

    label: str
    confidence: float


@dataclass(frozen=True)
class LabelConfidence:
    """A labeled guess returned to callers. Fresh per classification call."""

    label: str
    confidence: float
    id: uuid.UUID = field(default_factory=uuid.uuid4)


@dataclass(frozen=True)
class PhotoAnalysis:
    """Labels for one photo, ordered by descending confidence."""

    labels: tuple[LabelConfidence, ...] = ()

    @property
    def best_label(self) -> LabelConfidence | None:
        return self.labels[0] if self.labels else None


class ImageClassifier(Protocol):
    """Protocol for image classification engines."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        """Classify an image and return ranked observations.

        Args:
            image: HxWx3 RGB uint8 array in upright orientation.

        Returns:
            List of classification results sorted by confidence (descending).
        """
        ...
