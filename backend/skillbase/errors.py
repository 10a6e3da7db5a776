"""Domain exceptions raised by the service layer.

Each error carries the HTTP status it maps to; ``main.py`` registers one
handler that turns any ``ServiceError`` into a JSON response.
"""
from __future__ import annotations

from typing import Any


class ServiceError(Exception):
    status_code = 500
    code = "service_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFoundError(ServiceError):
    status_code = 404
    code = "not_found"


class ForbiddenError(ServiceError):
    status_code = 403
    code = "forbidden"


class InvalidArgumentError(ServiceError):
    status_code = 400
    code = "invalid_argument"


class ConflictError(ServiceError):
    status_code = 409
    code = "conflict"


class DispatchError(ServiceError):
    """Queue backend refused or failed the enqueue; safe to retry."""
    status_code = 503
    code = "dispatch_failed"
    retryable = True


class GenerationError(ServiceError):
    """Answer generator failed (provider/network error or unusable output)."""
    status_code = 502
    code = "generation_failed"


class BatchLengthMismatchError(GenerationError):
    code = "batch_length_mismatch"

    def __init__(self, expected: int, received: int, batch_number: int | None = None):
        super().__init__(
            f"Generator returned {received} answers for a batch of {expected}",
            {"expected": expected, "received": received, "batch_number": batch_number},
        )
        self.expected = expected
        self.received = received
        self.batch_number = batch_number
