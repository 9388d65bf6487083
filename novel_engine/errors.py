"""Error taxonomy and the Result type returned by public operations."""

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


class EngineError(Exception):
    """Base class for failures reported through a Result."""

    kind = "engine"

    def __init__(self, message: str, chapter_number: int | None = None):
        super().__init__(message)
        self.message = message
        self.chapter_number = chapter_number

    def __str__(self) -> str:
        if self.chapter_number is not None:
            return f"Chapter {self.chapter_number}: {self.message}"
        return self.message


class ConfigurationError(EngineError):
    """A provider or setting required by the operation is missing."""

    kind = "configuration"


class GenerationError(EngineError):
    """A provider call failed or returned an error."""

    kind = "generation"


class ContextBuildError(EngineError):
    """Blueprint or project data required for a chapter context is missing."""

    kind = "context"


class ExtractionError(EngineError):
    """Structured data could not be parsed from model output."""

    kind = "extraction"


class SessionError(EngineError):
    """Unknown session, invalid state transition or busy chapter."""

    kind = "session"


@dataclass(frozen=True)
class Result(Generic[T]):
    """Explicit success/failure value.

    Exactly one of ``value`` and ``error`` is meaningful: ``ok`` tells which.
    """

    value: T | None = None
    error: EngineError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: EngineError) -> "Result[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value
