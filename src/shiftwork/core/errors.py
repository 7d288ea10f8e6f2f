"""
Structured error types for shiftwork.

Errors raised by the engine, the definitions service and the API carry a
category and an explicit retry flag so that callers (CLI, REST handlers,
processor loops) can decide how to surface them without string matching.

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                       ShiftworkError                         │
        │              (category, retryable, context, cause)           │
        ├──────────────────────────────────────────────────────────────┤
        │  ScriptError          NotFoundError       ConfigError        │
        │  (VALIDATION)         (NOT_FOUND)         (CONFIG)           │
        │                                                              │
        │  OrchestrationError                       DatabaseError      │
        │  (ORCHESTRATION)                          (DATABASE)         │
        │       │                                                      │
        │  InvalidTransitionError                                      │
        │  StateError                                                  │
        │  WorkerRegistrationError                                     │
        └──────────────────────────────────────────────────────────────┘

Examples:
    >>> error = NotFoundError("job_definition", 42)
    >>> error.category
    <ErrorCategory.NOT_FOUND: 'NOT_FOUND'>
    >>> error.to_dict()["message"]
    'job_definition not found: 42'

Tags:
    exception, error-hierarchy, retry-logic, error-context
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    DATABASE = "DATABASE"  # Connection pool, lock timeout
    VALIDATION = "VALIDATION"  # Script or request payload is invalid
    NOT_FOUND = "NOT_FOUND"  # Referenced row does not exist
    CONFIG = "CONFIG"  # Missing config, invalid settings
    ORCHESTRATION = "ORCHESTRATION"  # Illegal lifecycle operation
    INTERNAL = "INTERNAL"  # Bugs, unexpected state


@dataclass
class ErrorContext:
    """Structured metadata attached to an error."""

    job_definition_id: int | None = None
    job_instance_id: int | None = None
    token_path: str | None = None
    execution_id: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result = {
            key: value
            for key, value in (
                ("job_definition_id", self.job_definition_id),
                ("job_instance_id", self.job_instance_id),
                ("token_path", self.token_path),
                ("execution_id", self.execution_id),
            )
            if value is not None
        }
        if self.metadata:
            result["metadata"] = dict(self.metadata)
        return result


class ShiftworkError(Exception):
    """
    Base exception for all shiftwork errors.

    Subclasses set ``default_category`` and ``default_retryable``; instances
    may override both.  ``with_context()`` adds metadata fluently and
    ``to_dict()`` produces a log/response friendly payload.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> ShiftworkError:
        """Add context to this error (fluent API)."""
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


class ScriptError(ShiftworkError):
    """A job script could not be parsed or validated."""

    default_category = ErrorCategory.VALIDATION


class NotFoundError(ShiftworkError):
    """A referenced definition, instance, token or worker does not exist."""

    default_category = ErrorCategory.NOT_FOUND

    def __init__(self, entity: str, key: Any):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


class ConfigError(ShiftworkError):
    """Missing or invalid configuration."""

    default_category = ErrorCategory.CONFIG


class DatabaseError(ShiftworkError):
    """Store-level failure (lock timeout, lost connection)."""

    default_category = ErrorCategory.DATABASE
    default_retryable = True


class OrchestrationError(ShiftworkError):
    """Lifecycle operation that the current state does not allow."""

    default_category = ErrorCategory.ORCHESTRATION


class InvalidTransitionError(OrchestrationError):
    """Raised when an illegal token status transition is attempted.

    Transition validation is deliberately strict.  A legitimate transition
    that is blocked belongs in ``TOKEN_TRANSITIONS``.
    """

    def __init__(self, current: str, target: str, enum_name: str = "TokenStatus") -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid {enum_name} transition: {current} → {target}")


class StateError(OrchestrationError):
    """Operation not valid for a job instance in its current state."""


class WorkerRegistrationError(OrchestrationError):
    """Worker identity conflict or illegal worker state change."""


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, ShiftworkError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError))


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "ShiftworkError",
    "ScriptError",
    "NotFoundError",
    "ConfigError",
    "DatabaseError",
    "OrchestrationError",
    "InvalidTransitionError",
    "StateError",
    "WorkerRegistrationError",
    "is_retryable",
]
