"""ONNX Runtime image classifier.

Runs a pre-trained ImageNet-style classifier and ranks every label by
confidence. Sessions and labels come from the model manager.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from anidex.ml.image_classifier import ClassificationResult
from anidex.ml.model_manager import get_model_spec
from anidex.ml.preprocessing import preprocess_for_classification

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from anidex.ml.model_manager import ModelManager


def softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = logits - np.max(logits)
    exp = np.exp(shifted)
    return (exp / np.sum(exp)).astype(np.float32)


class OnnxImageClassifier:
    """Image classifier backed by an ONNX InferenceSession."""

    def __init__(self, model_manager: ModelManager, model_name: str) -> None:
        self._spec = get_model_spec(model_name)
        self._model_manager = model_manager

    @property
    def model_name(self) -> str:
        return self._spec.name

    def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        """Classify an upright RGB image, returning all labels best-first."""
        session = self._model_manager.get_session(self._spec.name)
        labels = self._model_manager.get_labels(self._spec.name)

        tensor = preprocess_for_classification(image, self._spec.input_size)
        input_name = session.get_inputs()[0].name
        outputs = session.run(None, {input_name: tensor})

        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if scores.shape[0] != len(labels):
            raise ValueError(f"Model {self._spec.name} produced {scores.shape[0]} scores for {len(labels)} labels")
        scores = np.clip(softmax(scores), 0.0, 1.0)

        order = np.argsort(-scores, kind="stable")
        return [ClassificationResult(label=labels[i], confidence=float(scores[i])) for i in order]
