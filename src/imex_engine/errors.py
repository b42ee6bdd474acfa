# imex_engine/src/imex_engine/errors.py
"""Error types and standardized raise helpers for imex_engine.

This module centralizes:
- explicit error classes with actionable messages, and
- small helpers that build those messages consistently.

Taxonomy:
- ConfigurationError: malformed tableau or scheme configuration. Detected at
  construction, never retried.
- SolverFailureError: an implicit sub-step failed to converge. Fatal to the
  step in progress; the driver decides whether to retry.
- BufferPreconditionError: a stage reads a buffer slot that does not hold the
  quantity it expects. This is a derivation defect and subclasses
  AssertionError accordingly.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    """Machine-readable classification for imex_engine failures."""

    INVALID_TABLEAU = "invalid_tableau"
    INVALID_CONFIG = "invalid_config"
    SOLVER_FAILURE = "solver_failure"
    BUFFER_PRECONDITION = "buffer_precondition"
    INVALID_STATE_SHAPE = "invalid_state_shape"


class ImexEngineError(Exception):
    """Base exception for imex_engine errors."""

    def __init__(self, message: str, *, code: ErrorCode | None = None) -> None:
        """
        Initialize an ImexEngineError.

        Args:
            message: Human-readable error message.
            code: Optional machine-readable error code classifying the error.
        """
        super().__init__(message)
        self.code: ErrorCode | None = code


class ConfigurationError(ImexEngineError, ValueError):
    """Raised when a scheme or engine configuration is invalid."""


class InvalidTableauError(ConfigurationError):
    """Raised when an IMEX tableau is malformed or unusable."""


class SolverFailureError(ImexEngineError, RuntimeError):
    """Raised when an implicit sub-step fails to produce a valid state."""

    def __init__(
        self,
        message: str,
        *,
        stage: int | None = None,
        iterations: int | None = None,
        residual: float | None = None,
    ) -> None:
        """
        Initialize a SolverFailureError.

        Args:
            message: Human-readable error message.
            stage: 1-based stage index at which the failure occurred, if known.
            iterations: Number of solver iterations performed, if applicable.
            residual: Last residual norm observed, if applicable.
        """
        super().__init__(message, code=ErrorCode.SOLVER_FAILURE)
        self.stage = stage
        self.iterations = iterations
        self.residual = residual


class BufferPreconditionError(ImexEngineError, AssertionError):
    """Raised when a buffer slot is read before it holds the expected quantity."""


class StateShapeError(ImexEngineError, ValueError):
    """Raised when a state array has an incompatible shape."""


def raise_invalid_tableau(name: str, *, detail: str) -> None:
    """Raise a standardized InvalidTableauError.

    Args:
        name: Tableau name.
        detail: Human-readable description of the defect.

    Raises:
        InvalidTableauError: Always.
    """
    msg = f"Invalid IMEX tableau '{name}': {detail}"
    raise InvalidTableauError(msg, code=ErrorCode.INVALID_TABLEAU)


def invalid_config_error(
    *,
    missing: list[str] | None = None,
    detail: str | None = None,
) -> ConfigurationError:
    """Build a standardized ConfigurationError.

    Args:
        missing: Required fields that are missing.
        detail: Optional additional context.

    Returns:
        ConfigurationError ready to raise.
    """
    parts: list[str] = ["Invalid imex_engine configuration."]
    if missing:
        parts.append(f"Missing required field(s): {sorted(set(missing))}.")
    if detail:
        parts.append(f"Detail: {detail}")
    return ConfigurationError(" ".join(parts), code=ErrorCode.INVALID_CONFIG)


def raise_buffer_precondition(*, index: int, expected: object, found: object) -> None:
    """Raise a standardized BufferPreconditionError.

    Args:
        index: Buffer slot index that was read or written.
        expected: Quantity the operation expected to find in the slot.
        found: Quantity actually held by the slot (None if never written).

    Raises:
        BufferPreconditionError: Always.
    """
    msg = f"Buffer slot {index} expected to hold {expected}, but holds {found}."
    raise BufferPreconditionError(msg, code=ErrorCode.BUFFER_PRECONDITION)


def raise_state_shape_error(*, name: str, expected: str, got: object) -> None:
    """Raise a standardized StateShapeError.

    Args:
        name: Name of the object with the shape issue.
        expected: Human-readable expected shape description.
        got: Actual observed shape/value.

    Raises:
        StateShapeError: Always.
    """
    msg = f"{name} has an invalid shape/value. Expected {expected}. Got: {got!r}."
    raise StateShapeError(msg, code=ErrorCode.INVALID_STATE_SHAPE)
