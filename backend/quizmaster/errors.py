"""Failure taxonomy for quiz sessions.

Every error carries a message that is safe to show to the user as-is.
"""


class QuizError(Exception):
    """Base class for expected, user-reportable failures."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(QuizError):
    """Session configuration rejected before any request was issued."""


class IngestionError(QuizError):
    """An uploaded file could not be accepted."""


class GenerationError(QuizError):
    """The question generator failed or returned an unusable result."""


class StaleSessionError(QuizError):
    """Document payloads needed for generation are no longer available."""


class InvalidTransition(QuizError):
    """The requested action is not allowed in the current stage."""


class AnswerFormatError(QuizError, ValueError):
    """A submitted answer does not fit the question it answers."""
