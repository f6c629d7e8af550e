"""Application-level exception types.

This module defines domain errors used across services/adapters, enabling
consistent error handling, logging, and API responses.

Lock contention is deliberately absent: a failed conditional write is an
expected outcome (``set_if_absent_with_ttl`` returns False) and only becomes
``PopulationInProgressError`` once the retry budget is spent.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients.

    Fields are optional to keep backward compatibility while encouraging
    consistent shapes across the codebase.
    """

    code: str
    message: str
    hint: str
    operation: str
    key: str
    attempts: int
    timeout_s: float
    http_status: int
    retry_after: float
    url: str
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input/config validation fails."""


class StoreUnavailableError(AppError):
    """Raised when the shared store cannot be reached or fails a command."""


class PopulationInProgressError(AppError):
    """Raised when another caller kept the population lock for the whole retry budget."""


class LoaderFailedError(AppError):
    """Raised when the origin loader does not finish within its timeout."""


class DecodeFailedError(AppError):
    """Raised by codecs on a corrupt cached payload (handled as a cache miss)."""


class LimiterEvalError(AppError):
    """Raised when the atomic token bucket evaluation fails."""


class OriginAppError(AppError):
    """Raised when the upstream origin fails or returns an unusable response."""
