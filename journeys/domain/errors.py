"""Typed errors raised across the journey engine.

Every error carries a stable HTTP-style ``status_code`` so that callers (the
API layer, workers) can classify failures without inspecting messages.
"""

from __future__ import annotations

from typing import Any, Optional


class JourneyError(Exception):
    """Base class for all errors that may cross the engine's boundary."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    @property
    def status(self) -> str:
        return "fail" if 400 <= self.status_code < 500 else "error"


class ValidationError(JourneyError):
    status_code = 400


class ForbiddenError(JourneyError):
    status_code = 403


class NotFoundError(JourneyError):
    status_code = 404


class ConflictError(JourneyError):
    status_code = 409


class InvalidStateTransition(ConflictError):
    """Raised when a status change is not allowed from the current status."""


class PersistenceError(JourneyError):
    status_code = 500


class TransactionTimeoutError(JourneyError):
    status_code = 503
