"""Tests for the classification session state machine."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from snapclassify.errors import EngineExecutionFailure, ImageDecodeFailure
from snapclassify.ml.image_classifier import ClassificationResult
from snapclassify.session import NO_RESULT, Classification, ClassificationSession, SessionState

if TYPE_CHECKING:
    from conftest import FakeClassifier

    from snapclassify.ml.inference import InferencePool

CAT = b"\x89PNG cat"
DOG = b"\x89PNG dog"


@pytest.fixture()
def session(classifier: FakeClassifier, pool: InferencePool) -> ClassificationSession:
    return ClassificationSession(classifier, pool)


@pytest.fixture()
def unavailable_session(pool: InferencePool) -> ClassificationSession:
    return ClassificationSession(None, pool)


def _populate(session: ClassificationSession) -> None:
    session._image = CAT
    session._outcome = Classification(label="cat", confidence=0.5)
    session._error = "Previous error"


# ---------------------------------------------------------------------------
# Outcome rendering
# ---------------------------------------------------------------------------


class TestOutcome:
    def test_no_result_renders_empty(self) -> None:
        assert NO_RESULT.render() == ""

    def test_classification_renders_label_and_percent(self) -> None:
        assert Classification(label="cat", confidence=0.8734).render() == "cat\n(87% confidence)"

    def test_percent_is_truncated_not_rounded(self) -> None:
        assert Classification(label="dog", confidence=0.999).percent == 99
        assert Classification(label="dog", confidence=0.005).percent == 0

    def test_full_confidence(self) -> None:
        assert Classification(label="dog", confidence=1.0).render() == "dog\n(100% confidence)"

    def test_empty_label_is_still_a_result(self) -> None:
        outcome = Classification(label="", confidence=0.5)
        assert outcome != NO_RESULT
        assert outcome.render() == "\n(50% confidence)"


# ---------------------------------------------------------------------------
# Initial state
# ---------------------------------------------------------------------------


class TestInitialState:
    def test_fresh_session_is_idle(self, session: ClassificationSession) -> None:
        assert session.image is None
        assert session.result_text == ""
        assert session.outcome == NO_RESULT
        assert session.busy is False
        assert session.error is None

    def test_load_error_is_initial_error(self, pool: InferencePool) -> None:
        session = ClassificationSession(None, pool, load_error="Error loading model: mobilenetv2: artifact not found")
        assert session.error == "Error loading model: mobilenetv2: artifact not found"
        assert session.engine_available is False

    def test_state_snapshot(self, session: ClassificationSession) -> None:
        assert session.state == SessionState(image=None, outcome=NO_RESULT, busy=False, error=None)
        assert session.state.error_text == ""


# ---------------------------------------------------------------------------
# set_image
# ---------------------------------------------------------------------------


class TestSetImage:
    async def test_set_none_clears_result(self, session: ClassificationSession) -> None:
        _populate(session)

        session.set_image(None)

        assert session.image is None
        assert session.result_text == ""
        assert session.busy is False

    async def test_set_none_does_not_classify(self, session: ClassificationSession, classifier: FakeClassifier) -> None:
        session.set_image(None)
        await session.wait()
        assert classifier.calls == []

    async def test_set_image_stores_and_starts_classification(self, session: ClassificationSession) -> None:
        session.set_image(CAT)

        assert session.image == CAT
        assert session.busy is True

        await session.wait()

        assert session.busy is False
        assert session.result_text == "cat\n(87% confidence)"
        assert session.error is None

    async def test_set_none_while_busy_returns_to_idle(
        self, session: ClassificationSession, classifier: FakeClassifier
    ) -> None:
        classifier.hold(CAT)
        session.set_image(CAT)
        assert session.busy is True

        session.set_image(None)
        assert session.busy is False
        assert session.result_text == ""

        classifier.release(CAT)
        await asyncio.sleep(0.05)
        assert session.busy is False
        assert session.result_text == ""

    async def test_same_image_twice_reclassifies(self, session: ClassificationSession, classifier: FakeClassifier) -> None:
        session.set_image(CAT)
        await session.wait()
        session.set_image(CAT)
        await session.wait()

        assert classifier.calls == [CAT, CAT]
        assert session.result_text == "cat\n(87% confidence)"


# ---------------------------------------------------------------------------
# classify
# ---------------------------------------------------------------------------


class TestClassify:
    async def test_no_image_selected(self, session: ClassificationSession, classifier: FakeClassifier) -> None:
        session.classify()

        assert session.error == "No image selected"
        assert session.busy is False
        assert classifier.calls == []

    async def test_no_image_checked_before_engine(self, unavailable_session: ClassificationSession) -> None:
        unavailable_session.classify()
        assert unavailable_session.error == "No image selected"

    async def test_engine_unavailable_never_sets_busy(self, unavailable_session: ClassificationSession) -> None:
        seen: list[bool] = []
        unavailable_session.subscribe(lambda state: seen.append(state.busy))

        for _ in range(3):
            unavailable_session.set_image(CAT)
            assert unavailable_session.error == "Model is not available"
            unavailable_session.classify()
            assert unavailable_session.error == "Model is not available"

        assert unavailable_session.busy is False
        assert True not in seen

    async def test_start_clears_previous_error_and_result(self, session: ClassificationSession) -> None:
        _populate(session)

        session.classify()

        assert session.busy is True
        assert session.error is None
        assert session.result_text == ""
        await session.wait()

    async def test_uses_top_candidate(self, session: ClassificationSession) -> None:
        session.set_image(CAT)
        await session.wait()

        assert session.outcome == Classification(label="cat", confidence=0.8734)

    async def test_empty_result(self, session: ClassificationSession, classifier: FakeClassifier) -> None:
        classifier.results = []

        session.set_image(CAT)
        await session.wait()

        assert session.error == "Could not obtain results"
        assert session.result_text == ""
        assert session.busy is False

    async def test_decode_failure(self, session: ClassificationSession, classifier: FakeClassifier) -> None:
        classifier.error = ImageDecodeFailure()

        session.set_image(b"not an image")
        await session.wait()

        assert session.error == "Could not process the image"
        assert session.busy is False

    async def test_execution_failure(self, session: ClassificationSession, classifier: FakeClassifier) -> None:
        classifier.error = EngineExecutionFailure("input shape mismatch")

        session.set_image(CAT)
        await session.wait()

        assert session.error == "Error executing classification: input shape mismatch"
        assert session.busy is False

    async def test_unexpected_engine_error_is_contained(
        self, session: ClassificationSession, classifier: FakeClassifier
    ) -> None:
        classifier.error = MemoryError("out of memory")

        session.set_image(CAT)
        await session.wait()

        assert session.error == "Error executing classification: out of memory"
        assert session.busy is False

    async def test_session_recovers_after_failure(
        self, session: ClassificationSession, classifier: FakeClassifier
    ) -> None:
        classifier.error = ImageDecodeFailure()
        session.set_image(CAT)
        await session.wait()
        assert session.error is not None

        classifier.error = None
        session.set_image(CAT)
        await session.wait()

        assert session.error is None
        assert session.result_text == "cat\n(87% confidence)"

    async def test_result_and_error_are_exclusive(
        self, session: ClassificationSession, classifier: FakeClassifier
    ) -> None:
        session.set_image(CAT)
        await session.wait()
        assert session.result_text and session.error is None

        classifier.results = []
        session.classify()
        await session.wait()
        assert session.error and session.result_text == ""


# ---------------------------------------------------------------------------
# Superseded requests
# ---------------------------------------------------------------------------


class TestSupersededRequests:
    async def test_latest_request_wins(self, session: ClassificationSession, classifier: FakeClassifier) -> None:
        classifier.results_by_image[DOG] = [ClassificationResult(label="dog", confidence=0.61)]
        classifier.hold(CAT)

        session.set_image(CAT)
        session.set_image(DOG)
        await session.wait()

        assert session.result_text == "dog\n(61% confidence)"
        assert session.busy is False

        # The first call finishing late must not overwrite the newer result.
        classifier.release(CAT)
        await asyncio.sleep(0.05)

        assert session.result_text == "dog\n(61% confidence)"
        assert session.image == DOG
        assert classifier.calls.count(CAT) == 1

    async def test_superseded_failure_is_not_reported(
        self, session: ClassificationSession, classifier: FakeClassifier
    ) -> None:
        classifier.hold(CAT)
        session.set_image(CAT)
        classifier.error = None
        session.set_image(DOG)
        await session.wait()

        classifier.error = EngineExecutionFailure("late failure")
        classifier.release(CAT)
        await asyncio.sleep(0.05)

        assert session.error is None
        assert session.result_text == "cat\n(87% confidence)"

    async def test_busy_stays_true_until_latest_completes(
        self, session: ClassificationSession, classifier: FakeClassifier
    ) -> None:
        classifier.hold(DOG)
        session.set_image(CAT)
        session.set_image(DOG)

        await asyncio.sleep(0.05)
        assert session.busy is True

        classifier.release(DOG)
        await session.wait()
        assert session.busy is False


# ---------------------------------------------------------------------------
# clear_image
# ---------------------------------------------------------------------------


class TestClearImage:
    async def test_clear_populated_session(self, session: ClassificationSession) -> None:
        _populate(session)

        session.clear_image()

        assert session.image is None
        assert session.result_text == ""
        assert session.error is None

    async def test_clear_is_idempotent(self, session: ClassificationSession) -> None:
        _populate(session)

        session.clear_image()
        after_first = session.state
        session.clear_image()
        assert session.state == after_first
        session.clear_image()
        assert session.state == after_first

    async def test_clear_keeps_busy_while_in_flight(
        self, session: ClassificationSession, classifier: FakeClassifier
    ) -> None:
        classifier.hold(CAT)
        session.set_image(CAT)

        session.clear_image()

        # The in-flight request still owns the busy flag.
        assert session.busy is True
        assert session.image is None

        classifier.release(CAT)
        await session.wait()

        assert session.busy is False
        assert session.result_text == ""
        assert session.error is None

    async def test_clear_does_not_reset_busy_flag(self, session: ClassificationSession) -> None:
        session._busy = True
        session.clear_image()
        assert session.busy is True

    async def test_reset_is_clear_image(self, session: ClassificationSession) -> None:
        session.set_image(CAT)
        await session.wait()

        session.reset()

        assert session.state == SessionState(image=None, outcome=NO_RESULT, busy=False, error=None)


# ---------------------------------------------------------------------------
# Subscription
# ---------------------------------------------------------------------------


class TestSubscription:
    async def test_listener_sees_busy_then_result(self, session: ClassificationSession) -> None:
        states: list[SessionState] = []
        session.subscribe(states.append)

        session.submit_image(CAT)
        await session.wait()

        busy_flags = [s.busy for s in states]
        assert busy_flags[0] is False  # image stored
        assert True in busy_flags
        assert busy_flags[-1] is False
        assert states[-1].result_text == "cat\n(87% confidence)"

    async def test_unsubscribe_stops_notifications(self, session: ClassificationSession) -> None:
        states: list[SessionState] = []
        unsubscribe = session.subscribe(states.append)
        unsubscribe()

        session.clear_image()

        assert states == []

    async def test_failing_listener_does_not_break_session(self, session: ClassificationSession) -> None:
        def broken(state: SessionState) -> None:
            raise ValueError("renderer crashed")

        states: list[SessionState] = []
        session.subscribe(broken)
        session.subscribe(states.append)

        session.set_image(CAT)
        await session.wait()

        assert session.result_text == "cat\n(87% confidence)"
        assert states[-1].busy is False
