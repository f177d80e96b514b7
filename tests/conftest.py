"""Shared fixtures: a scriptable classifier and a real inference pool."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import pytest

from snapclassify.config import Settings
from snapclassify.ml.image_classifier import ClassificationResult
from snapclassify.ml.inference import InferencePool

if TYPE_CHECKING:
    from collections.abc import Iterator

GATE_TIMEOUT_SECONDS = 5.0


class FakeClassifier:
    """Stands in for the ONNX classifier; runs on the pool's worker threads.

    ``results`` / ``error`` control what every call returns. ``hold(image)``
    blocks calls for that image until ``release(image)``.
    """

    model_name = "fake-mobilenet"

    def __init__(self) -> None:
        self.results: list[ClassificationResult] = [
            ClassificationResult(label="cat", confidence=0.8734),
            ClassificationResult(label="lynx", confidence=0.0912),
        ]
        self.results_by_image: dict[bytes, list[ClassificationResult]] = {}
        self.error: Exception | None = None
        self.calls: list[bytes] = []
        self._gates: dict[bytes, threading.Event] = {}
        self._lock = threading.Lock()

    def hold(self, image: bytes) -> None:
        self._gates[image] = threading.Event()

    def release(self, image: bytes | None = None) -> None:
        gates = [self._gates[image]] if image is not None else list(self._gates.values())
        for gate in gates:
            gate.set()

    def classify(self, image: bytes) -> list[ClassificationResult]:
        with self._lock:
            self.calls.append(image)
        gate = self._gates.get(image)
        if gate is not None:
            gate.wait(timeout=GATE_TIMEOUT_SECONDS)
        if self.error is not None:
            raise self.error
        return list(self.results_by_image.get(image, self.results))


@pytest.fixture()
def pool() -> Iterator[InferencePool]:
    inference_pool = InferencePool(Settings(inference_workers=2))
    yield inference_pool
    inference_pool.shutdown()


@pytest.fixture()
def classifier(pool: InferencePool) -> Iterator[FakeClassifier]:
    # Depends on ``pool`` so held calls are released before the pool shuts down.
    fake = FakeClassifier()
    yield fake
    fake.release()
