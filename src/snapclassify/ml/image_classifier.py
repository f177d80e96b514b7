"""Image classification on ONNX Runtime.

Handles ImageNet-style classifiers (MobileNetV2 and friends) exported to ONNX:
one image in, one row of logits or probabilities out.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np
from onnxruntime.capi.onnxruntime_pybind11_state import Fail, InvalidArgument, RuntimeException

from snapclassify.errors import EngineExecutionFailure

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from snapclassify.ml.preprocessing import ImagePreprocessor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification candidate."""

    label: str
    confidence: float


class ImageClassifier(Protocol):
    """Protocol for image classification engines."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: bytes) -> list[ClassificationResult]:
        """Classify an encoded image and return ranked candidates.

        Args:
            image: Encoded image bytes (JPEG, PNG, ...).

        Returns:
            Candidates sorted by confidence (descending). May be empty.

        Raises:
            ImageDecodeFailure: If the image cannot be decoded.
            EngineExecutionFailure: If the model fails to run.
        """
        ...


def softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = logits - np.max(logits)
    exp = np.exp(shifted)
    return exp / np.sum(exp)


class OnnxImageClassifier:
    """Runs an ONNX classifier and ranks its outputs against a label list."""

    def __init__(
        self,
        model_name: str,
        session: InferenceSession,
        labels: Sequence[str],
        preprocessor: ImagePreprocessor,
        top_k: int = 5,
        apply_softmax: bool = True,
    ) -> None:
        self._model_name = model_name
        self._session = session
        self._labels = list(labels)
        self._preprocessor = preprocessor
        self._top_k = top_k
        self._apply_softmax = apply_softmax
        self._input_name = session.get_inputs()[0].name
        self._label_offset = self._compute_label_offset()

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def labels(self) -> list[str]:
        return list(self._labels)

    def classify(self, image: bytes) -> list[ClassificationResult]:
        """Decode, run and rank. Safe to call from a worker thread."""
        tensor = self._preprocessor.prepare(image)

        try:
            outputs = self._session.run(None, {self._input_name: tensor})
        except (Fail, InvalidArgument, RuntimeException) as exc:
            raise EngineExecutionFailure(str(exc)) from exc

        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if scores.size == 0:
            return []
        if self._apply_softmax:
            scores = softmax(scores)

        return self._rank(scores)

    # -- Internal -----------------------------------------------------------

    def _rank(self, scores: NDArray[np.float32]) -> list[ClassificationResult]:
        k = min(self._top_k, scores.size)
        top = np.argsort(scores)[::-1][:k]
        results: list[ClassificationResult] = []
        for idx in top:
            confidence = float(np.clip(scores[idx], 0.0, 1.0))
            results.append(ClassificationResult(label=self._label_for(int(idx)), confidence=confidence))
        return results

    def _label_for(self, index: int) -> str:
        position = index + self._label_offset
        if 0 <= position < len(self._labels):
            return self._labels[position]
        logger.debug("No label for class index %d in %s", index, self._model_name)
        return f"class_{index}"

    def _compute_label_offset(self) -> int:
        # Some exports carry a leading "background" class the label file lacks.
        shape = self._session.get_outputs()[0].shape
        num_classes = shape[-1] if shape else None
        if not isinstance(num_classes, int) or not self._labels:
            return 0
        return len(self._labels) - num_classes
