"""Error taxonomy shared by every StudySphere service."""

from __future__ import annotations


class StudySphereError(Exception):
    """Base class for errors surfaced to the user interface."""

    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(StudySphereError):
    """Raised for malformed input; always recoverable with a message."""

    kind = "validation"

    def __init__(self, message: str, messages: list[str] | None = None) -> None:
        super().__init__(message)
        self.messages = list(messages) if messages else [message]


class ConfirmationRequiredError(ValidationError):
    """Raised when a manual submission leaves questions unanswered."""

    kind = "confirmation_required"

    def __init__(self, answered: int, total: int) -> None:
        super().__init__(
            f"You've only answered {answered} out of {total} questions. Submit anyway?"
        )
        self.answered = answered
        self.total = total


class PermissionDeniedError(StudySphereError):
    """Raised when a non-admin identity attempts an admin operation."""

    kind = "permission"


class AuthenticationError(StudySphereError):
    """Raised when an operation needs a signed-in identity."""

    kind = "authentication"


class NotFoundError(StudySphereError):
    """Raised for unknown passage or attempt ids."""

    kind = "not_found"


class TransientError(StudySphereError):
    """Raised for network or backend failures. Callers decide whether to retry."""

    kind = "transient"
