"""
Custom exceptions for the relay.
"""

from typing import Any


class RelayError(Exception):
    """Base exception for the relay."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class StoreUnavailableError(RelayError):
    """Raised when the relational store cannot be reached or a statement fails.

    Callers must never read this as "already handled".
    """

    def __init__(self, action: str, original_error: Exception | None = None):
        super().__init__(
            message=f"Store unavailable during {action}",
            details={
                "action": action,
                "original_error": type(original_error).__name__ if original_error else None,
            },
        )
        self.original_error = original_error


class NonRetryableError(RelayError):
    """Raised by update handlers when retrying can never succeed."""
    pass


class InvalidPayloadError(NonRetryableError):
    """Raised when a stored payload cannot be decoded."""

    def __init__(self, reason: str):
        super().__init__(
            message=f"Invalid payload: {reason}",
            details={"reason": reason},
        )


class RateLimitTimeoutError(RelayError):
    """Raised when a rate-limiter permit would take longer than allowed."""

    def __init__(self, wait_seconds: float, max_wait_seconds: float):
        super().__init__(
            message=f"Rate limiter wait {wait_seconds:.2f}s exceeds {max_wait_seconds:.2f}s",
            details={
                "wait_seconds": wait_seconds,
                "max_wait_seconds": max_wait_seconds,
            },
        )
        self.wait_seconds = wait_seconds
