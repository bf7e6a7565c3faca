"""Domain errors raised by the engines and rendered by the HTTP layer."""

from __future__ import annotations


class DomainError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 400
    code = "domain_error"

    def __init__(self, message: str = "", *, code: str | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        if code:
            self.code = code


class ValidationFailed(DomainError):
    status_code = 400
    code = "validation_failed"


class Unauthorized(DomainError):
    status_code = 401
    code = "unauthorized"


class Forbidden(DomainError):
    status_code = 403
    code = "forbidden"


class NotFound(DomainError):
    status_code = 404
    code = "not_found"


class Conflict(DomainError):
    status_code = 409
    code = "conflict"


class PreconditionFailed(DomainError):
    """A step of an ordered flow was called before its prerequisite."""

    status_code = 409
    code = "precondition_failed"


class ChapterLocked(Forbidden):
    code = "chapter_locked"


class NoLivesRemaining(Forbidden):
    code = "no_lives_remaining"

    def __init__(self, message: str = "no lives remaining", *, retry_after: int | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class RateLimited(DomainError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str = "too many requests", *, retry_after: int = 1) -> None:
        super().__init__(message)
        self.retry_after = retry_after
