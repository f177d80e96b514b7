"""Classification session: the state behind the image picker screen.

A session holds the selected image, the outcome of classifying it, a busy
flag and the last error. It is owned by the event loop: every public method
must be called from the loop thread, and inference results are applied there
too, after the worker pool hands control back.

Each classification is an ``asyncio.Task`` tagged with a request id. Only
the completion whose id matches the latest issued id may write to the
session; older ones are cancelled or discarded.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

from snapclassify.errors import (
    ClassificationError,
    EmptyResult,
    EngineExecutionFailure,
    EngineUnavailable,
    NoImageSelected,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from snapclassify.ml.image_classifier import ClassificationResult, ImageClassifier
    from snapclassify.ml.inference import InferencePool

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Outcome variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NoResult:
    """Nothing has been classified for the current image."""

    def render(self) -> str:
        return ""


@dataclass(frozen=True)
class Classification:
    """Top candidate of a finished classification."""

    label: str
    confidence: float

    @property
    def percent(self) -> int:
        # Truncated, not rounded: 0.8734 -> 87.
        return int(self.confidence * 100)

    def render(self) -> str:
        return f"{self.label}\n({self.percent}% confidence)"

    @classmethod
    def from_candidate(cls, candidate: ClassificationResult) -> Classification:
        return cls(label=candidate.label, confidence=candidate.confidence)


Outcome = NoResult | Classification

NO_RESULT: Final = NoResult()


@dataclass(frozen=True)
class SessionState:
    """Immutable snapshot of a session, handed to subscribers."""

    image: bytes | None
    outcome: Outcome
    busy: bool
    error: str | None

    @property
    def result_text(self) -> str:
        return self.outcome.render()

    @property
    def error_text(self) -> str:
        return self.error or ""


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class ClassificationSession:
    """Single mutable holder of image, outcome, busy flag and error."""

    def __init__(
        self,
        classifier: ImageClassifier | None,
        pool: InferencePool,
        load_error: str | None = None,
    ) -> None:
        self._classifier = classifier
        self._pool = pool

        self._image: bytes | None = None
        self._outcome: Outcome = NO_RESULT
        self._busy = False
        self._error: str | None = load_error

        self._latest_request = 0
        self._task: asyncio.Task[None] | None = None
        self._listeners: list[Callable[[SessionState], None]] = []

    # -- Observable fields --------------------------------------------------

    @property
    def image(self) -> bytes | None:
        return self._image

    @property
    def outcome(self) -> Outcome:
        return self._outcome

    @property
    def result_text(self) -> str:
        return self._outcome.render()

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def engine_available(self) -> bool:
        return self._classifier is not None

    @property
    def state(self) -> SessionState:
        return SessionState(
            image=self._image,
            outcome=self._outcome,
            busy=self._busy,
            error=self._error,
        )

    # -- Subscription -------------------------------------------------------

    def subscribe(self, listener: Callable[[SessionState], None]) -> Callable[[], None]:
        """Call ``listener`` with a fresh snapshot after every state change.

        Returns a function that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # -- Entry points -------------------------------------------------------

    def set_image(self, image: bytes | None) -> None:
        """Replace the selected image; a non-empty image is classified right away."""
        self._image = image
        if image is None:
            self._drop_in_flight()
            self._outcome = NO_RESULT
            self._busy = False
            self._publish()
            return

        self._publish()
        self.classify()

    def classify(self) -> None:
        """Start classifying the selected image on the inference pool."""
        if self._image is None:
            self._fail(NoImageSelected())
            return

        if self._classifier is None:
            self._fail(EngineUnavailable())
            return

        if self._task is not None and not self._task.done():
            self._task.cancel()

        self._latest_request += 1
        request_id = self._latest_request
        self._busy = True
        self._error = None
        self._outcome = NO_RESULT
        self._publish()

        logger.debug("Dispatching classification request %d", request_id)
        self._task = asyncio.get_running_loop().create_task(
            self._run(request_id, self._classifier, self._image),
            name=f"classify-{request_id}",
        )

    def clear_image(self) -> None:
        """Forget the image, result and error.

        ``busy`` is left alone: a classification already in flight keeps
        the session busy until it completes, and its result is discarded.
        """
        self._image = None
        self._outcome = NO_RESULT
        self._error = None
        if self._task is not None and not self._task.done():
            self._latest_request += 1
        self._publish()

    # Names used by the presentation layer.
    submit_image = set_image
    reset = clear_image

    async def wait(self) -> None:
        """Wait until no classification is in flight."""
        while self._task is not None and not self._task.done():
            task = self._task
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if task is self._task:
                    raise

    # -- Internal -----------------------------------------------------------

    async def _run(self, request_id: int, classifier: ImageClassifier, image: bytes) -> None:
        try:
            candidates = await self._pool.run(classifier.classify, image)
        except asyncio.CancelledError:
            logger.debug("Classification request %d superseded", request_id)
            raise
        except ClassificationError as exc:
            self._complete(request_id, error=exc)
            return
        except Exception as exc:
            logger.exception("Classifier %s failed on request %d", classifier.model_name, request_id)
            self._complete(request_id, error=EngineExecutionFailure(str(exc)))
            return

        if not candidates:
            self._complete(request_id, error=EmptyResult())
            return
        self._complete(request_id, outcome=Classification.from_candidate(candidates[0]))

    def _complete(
        self,
        request_id: int,
        outcome: Classification | None = None,
        error: ClassificationError | None = None,
    ) -> None:
        if self._task is not asyncio.current_task():
            # A newer request owns the busy flag.
            return

        self._task = None
        self._busy = False
        if request_id != self._latest_request:
            logger.debug("Discarding result of stale request %d", request_id)
        elif error is not None:
            logger.info("Classification request %d failed: %s", request_id, error)
            self._error = str(error)
            self._outcome = NO_RESULT
        elif outcome is not None:
            logger.info("Classified request %d as %r (%.3f)", request_id, outcome.label, outcome.confidence)
            self._error = None
            self._outcome = outcome
        self._publish()

    def _fail(self, error: ClassificationError) -> None:
        self._error = str(error)
        self._outcome = NO_RESULT
        self._publish()

    def _drop_in_flight(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self._latest_request += 1

    def _publish(self) -> None:
        if not self._listeners:
            return
        snapshot = self.state
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Session listener %r failed", listener)
