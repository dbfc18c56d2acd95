# core/errors.py
"""Exception hierarchy shared by the generation pipeline."""

from __future__ import annotations

from enum import Enum


class ErrorClass(str, Enum):
    """Classification of a failed service call."""

    PERMANENT = "permanent"
    OVERLOAD = "overload"
    RATE_LIMIT = "rate_limit"
    UNKNOWN = "unknown"

    @property
    def is_transient(self) -> bool:
        return self is not ErrorClass.PERMANENT


class FolioError(Exception):
    """Base class for all engine errors."""


class ServiceError(FolioError):
    """A generative service call failed."""

    def __init__(
        self, message: str, error_class: ErrorClass, attempts: int = 1
    ) -> None:
        super().__init__(message)
        self.error_class = error_class
        self.attempts = attempts


class PermanentServiceError(ServiceError):
    """Non-retryable failure such as an invalid credential or exhausted quota."""

    def __init__(self, message: str, attempts: int = 1) -> None:
        super().__init__(message, ErrorClass.PERMANENT, attempts)


class TransientServiceError(ServiceError):
    """Retryable failure that persisted after every attempt was used."""


class ResponseValidationError(FolioError):
    """A structured response did not match its expected shape."""

    def __init__(self, message: str, raw_response: str | None = None) -> None:
        super().__init__(message)
        self.raw_response = raw_response


class BestEffortCheckFailure(FolioError):
    """An optional check failed; callers log it and carry on."""


class InvalidPhaseError(FolioError):
    """An operation was requested in a phase that does not allow it."""
