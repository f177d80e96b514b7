"""Classification failures surfaced to the session and the API."""

from __future__ import annotations


class ClassificationError(Exception):
    """Base class for failures that end a single classification attempt.

    ``str(exc)`` is the user-facing message stored in the session's ``error``.
    """

    message: str = "Classification failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class NoImageSelected(ClassificationError):
    message = "No image selected"


class EngineUnavailable(ClassificationError):
    message = "Model is not available"


class ImageDecodeFailure(ClassificationError, ValueError):
    """The image could not be turned into the model's input tensor."""

    message = "Could not process the image"


class EngineExecutionFailure(ClassificationError, RuntimeError):
    """The inference engine raised while running the model."""

    message = "Error executing classification"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(f"{self.message}: {detail}" if detail else None)


class EmptyResult(ClassificationError):
    message = "Could not obtain results"


class ModelLoadError(RuntimeError):
    """The classifier artifact could not be located or parsed."""

    ARTIFACT_NOT_FOUND = "artifact not found"
    ARTIFACT_UNPARSEABLE = "artifact failed to parse"

    def __init__(self, model_name: str, reason: str, detail: str = "") -> None:
        self.model_name = model_name
        self.reason = reason
        text = f"{model_name}: {reason}"
        if detail:
            text = f"{text} ({detail})"
        super().__init__(text)
