"""Typed errors surfaced by the scheduling engine."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional


class SchedulingError(Exception):
    """Base class for every error raised by :mod:`slotpilot`."""

    code = "scheduling_error"

    def __init__(self, message: str, *, details: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class ValidationError(SchedulingError):
    """Raised when required input is malformed or missing."""

    code = "validation_error"


class NotFoundError(SchedulingError):
    """Raised when a referenced entity does not exist."""

    code = "not_found"


class ConflictError(SchedulingError):
    """Raised when a state transition is not permitted from the current state."""

    code = "conflict"


class DataInsufficientError(SchedulingError):
    """Raised when history is too thin to score confidently.

    Callers are expected to fall back to population priors rather than
    propagate this error.
    """

    code = "data_insufficient"


__all__ = [
    "SchedulingError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "DataInsufficientError",
]
