"""Error hierarchy surfaced at the API boundary.

Every error carries an HTTP status, a stable machine-readable ``code`` and a
human-readable message.  ``payload()`` is what the exception handler in
``timehug.main`` renders as the JSON body.
"""

from __future__ import annotations

from typing import Any


class TimeHugError(Exception):
    """Base class for all errors raised by the generation core."""

    status_code: int = 500
    code: str = "internal_error"
    retryable: bool = False
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def payload(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code}


class Unauthorized(TimeHugError):
    status_code = 401
    code = "unauthorized"
    default_message = "Unauthorized"


class ValidationError(TimeHugError):
    """Request rejected before touching the ledger."""

    status_code = 400
    code = "validation_error"
    default_message = "Invalid request"

    def __init__(self, message: str | None = None, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason

    def payload(self) -> dict[str, Any]:
        body = super().payload()
        if self.reason is not None:
            body["reason"] = self.reason
        return body


class NotFound(TimeHugError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"


class TemplateNotFound(NotFound):
    code = "template_not_found"
    default_message = "Template not found"


class GenerationNotFound(NotFound):
    code = "generation_not_found"
    default_message = "Generation not found"


class InsufficientCredits(TimeHugError):
    """Balance does not cover the template cost."""

    status_code = 402
    code = "insufficient_credits"
    default_message = "Insufficient credits"

    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__()

    def payload(self) -> dict[str, Any]:
        body = super().payload()
        body["required"] = self.required
        body["available"] = self.available
        return body


class GenerationCreateFailed(TimeHugError):
    code = "generation_create_failed"
    default_message = "Failed to create generation"


class CreditDeductionFailed(TimeHugError):
    code = "credit_deduction_failed"
    default_message = "Failed to process credits"


class Timeout(TimeHugError):
    status_code = 504
    code = "timeout"
    retryable = True
    default_message = "The operation timed out, please retry"

    def payload(self) -> dict[str, Any]:
        body = super().payload()
        body["retryable"] = True
        return body


class StorageError(TimeHugError):
    status_code = 502
    code = "upload_failed"
    default_message = "Failed to upload image"


class InternalError(TimeHugError):
    pass
