"""Domain-specific exceptions for the job lifecycle."""

from __future__ import annotations

from enum import StrEnum

from ..exceptions import AppError, NotFoundError


class ErrorKind(StrEnum):
    """Failure reasons reported when a job cannot be built."""

    EMPTY_SELECTION = "empty_selection"
    MISSING_CONFIG = "missing_config"
    UNSUPPORTED_FORMAT = "unsupported_format"
    UNAUTHORIZED = "unauthorized"


class JobValidationError(AppError):
    """Raised synchronously when a selection cannot become a job."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


class JobNotFoundError(NotFoundError):
    """Raised when a job does not exist."""


class ItemNotFoundError(NotFoundError):
    """Raised when an item does not exist."""


class InvalidTransitionError(AppError):
    """Raised when a job or item is asked to move along an undefined edge."""

    def __init__(self, entity: str, current: str, target: str) -> None:
        super().__init__(f"{entity} cannot move from '{current}' to '{target}'")
        self.entity = entity
        self.current = current
        self.target = target


class RetryNotPermittedError(AppError):
    """Raised when the retry policy refuses another attempt."""


class SubmissionError(AppError):
    """Raised when the processing backend or destination rejects a request."""


__all__ = [
    "ErrorKind",
    "InvalidTransitionError",
    "ItemNotFoundError",
    "JobNotFoundError",
    "JobValidationError",
    "RetryNotPermittedError",
    "SubmissionError",
]
