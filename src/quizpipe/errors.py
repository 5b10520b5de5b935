"""Error taxonomy shared by the pipeline, the review service and the HTTP layer."""

from __future__ import annotations


class QuizpipeError(Exception):
    """Base class for errors surfaced to callers."""

    code = "error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"message": self.message, "code": self.code}


class ValidationError(QuizpipeError):
    """Bad input shape or value. Never retried automatically."""

    code = "validation_error"
    status_code = 400

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        return data


class NotFoundError(QuizpipeError):
    code = "not_found"
    status_code = 404


class ConflictError(QuizpipeError):
    """The target exists but its current state forbids the operation."""

    code = "conflict"
    status_code = 409


class RateLimitTimeoutError(QuizpipeError):
    """No admission permit was granted within the caller's patience window."""

    code = "rate_limit_timeout"
    status_code = 503


class ProviderError(QuizpipeError):
    """The LLM provider failed or returned an unusable response."""

    code = "provider_error"
    status_code = 502

    def __init__(self, message: str, provider_status: int | None = None) -> None:
        super().__init__(message)
        self.provider_status = provider_status


class InvariantError(AssertionError):
    """A pipeline invariant was violated; this is a programming error."""
