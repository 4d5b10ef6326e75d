"""Scheduling error taxonomy.

Every rejection carries a stable machine-readable ``code`` so that interactive
callers and the background worker can tell a policy violation from a resource
conflict or a missing record without parsing messages.
"""
from typing import Any


class SchedulingError(Exception):
    status_code: int = 400
    retryable: bool = False

    def __init__(self, code: str, message: str | None = None, **details: Any):
        self.code = code
        self.message = message or code.replace("_", " ")
        self.details = details
        super().__init__(f"{code}: {self.message}")

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class ValidationError(SchedulingError):
    status_code = 422


class InvalidTransition(ValidationError):
    def __init__(self, current: str, requested: str):
        super().__init__(
            "invalid_transition",
            f"Cannot move a session from '{current}' to '{requested}'",
            current=current, requested=requested,
        )


class NotFoundError(SchedulingError):
    status_code = 404


class AuthorizationError(SchedulingError):
    status_code = 403

    def __init__(self, code: str = "forbidden", message: str | None = None, **details: Any):
        super().__init__(code, message or "Not allowed", **details)


class PolicyViolation(SchedulingError):
    status_code = 409


class ResourceConflict(SchedulingError):
    status_code = 409

    def __init__(self, code: str, message: str | None = None, *, retryable: bool = False, **details: Any):
        super().__init__(code, message, **details)
        self.retryable = retryable


class RateLimited(PolicyViolation):
    status_code = 429
