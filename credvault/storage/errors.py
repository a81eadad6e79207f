from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateEmail(ConstraintViolation):
    """An account already exists for the normalized email."""

    def __init__(self, email: str):
        super().__init__("email already exists", {"field": "email"})
        self.email = email


class StoreUnavailable(Exception):
    """The backing store did not answer within its time bound; retryable."""

    def __init__(self, operation: str, reason: str = "timeout"):
        super().__init__(f"credential store unavailable during {operation}: {reason}")
        self.operation = operation
        self.reason = reason


__all__ = ["ConstraintViolation", "DuplicateEmail", "StoreUnavailable"]
