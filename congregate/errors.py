"""Named failure conditions raised by the engagement services."""

from __future__ import annotations


class EngagementError(Exception):
    """Base class carrying a stable machine-readable code."""

    status_code = 400

    def __init__(self, code: str, message: str | None = None) -> None:
        self.code = code
        self.message = message or code.replace("_", " ").capitalize()
        super().__init__(self.message)

    def as_dict(self) -> dict[str, str]:
        return {"error": self.code, "message": self.message}


class ValidationError(EngagementError):
    """Rejected input; raised before any write."""

    status_code = 400


class NotFoundError(EngagementError):
    status_code = 404


class NotAuthorizedError(EngagementError):
    """The actor may not perform this operation on the target."""

    status_code = 403


class StateConflictError(EngagementError):
    """The target exists but is in a state that forbids the operation."""

    status_code = 409


class PersistFailedError(EngagementError):
    """The in-app notification record could not be written."""

    status_code = 500

    def __init__(self, message: str | None = None) -> None:
        super().__init__("PERSIST_FAILED", message or "Failed to persist notification")
