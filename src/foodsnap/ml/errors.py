"""Classification failures.

Every failure a classification request can end in is one of these. Each
carries the literal string shown to the user and the HTTP status the API
answers with. None of them are retried.
"""

from __future__ import annotations

from fastapi import status


class ClassificationError(Exception):
    """Base class for terminal classification failures."""

    display_message: str = "Classification failed."
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, display_message: str | None = None) -> None:
        if display_message is not None:
            self.display_message = display_message
        super().__init__(self.display_message)


class InvalidImageError(ClassificationError):
    display_message = "Invalid image."
    status_code = status.HTTP_400_BAD_REQUEST


class ModelLoadError(ClassificationError):
    display_message = "Failed to load model."
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class ModelExecutionError(ClassificationError):
    """The model raised while running; the message is passed through."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Error: {message}")


class NoPredictionError(ClassificationError):
    display_message = "No prediction found."
    status_code = status.HTTP_404_NOT_FOUND


class ResizeError(ClassificationError):
    display_message = "Failed to resize image."


class PixelBufferError(ClassificationError):
    display_message = "Failed to convert image to pixel buffer."


class OutputProcessingError(ClassificationError):
    display_message = "Failed to process output dictionary."
