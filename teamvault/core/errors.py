"""
Error Taxonomy
==============

Typed failures shared by every component.

Client-visible messages are fixed per error class so that failures cannot
be used to enumerate accounts, tokens or sessions. Internal detail stays in
the exception chain and in the logs, never in ``public_message``.
"""

from __future__ import annotations

from typing import Optional


class TeamVaultError(Exception):
    """Base exception for all teamvault errors."""

    http_status: int = 500
    public_message: str = "Internal server error"


class InvalidInput(TeamVaultError):
    """Raised when a request carries malformed or missing fields."""

    http_status = 400
    public_message = "Invalid input"

    def __init__(
        self,
        message: str = "Invalid input",
        field_errors: Optional[dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.field_errors: dict[str, str] = dict(field_errors or {})

    def set_field_error(self, field: str, reason: str) -> None:
        """Record a problem with a single field."""
        self.field_errors[field] = reason

    def raise_if_any(self) -> None:
        """Raise self if at least one field error was recorded."""
        if self.field_errors:
            raise self


class Conflict(TeamVaultError):
    """Raised on a uniqueness violation."""

    http_status = 409
    public_message = "Conflict"

    def __init__(self, message: str = "Conflict") -> None:
        super().__init__(message)
        # The message names only what the caller supplied
        self.public_message = message


class Unauthorized(TeamVaultError):
    """
    Raised for any authentication or authorization failure.

    The message never says which precondition failed.
    """

    http_status = 401
    public_message = "Unauthorized"

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)
        self.public_message = message


class NotFound(TeamVaultError):
    """Raised when a token, user, vault or membership does not exist."""

    http_status = 404
    public_message = "Not found"


class FatalError(TeamVaultError):
    """Base for faults that cannot be recovered from locally."""

    http_status = 500


class StorageError(FatalError):
    """Raised when the backing store fails or times out."""
    pass
