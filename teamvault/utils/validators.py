"""
Validation Utilities
====================

Input validation functions with security focus.
"""

from __future__ import annotations

import re
from typing import Final, Optional


USERNAME_MIN_LENGTH: Final[int] = 3
USERNAME_MAX_LENGTH: Final[int] = 64
EMAIL_MAX_LENGTH: Final[int] = 254

_USERNAME_RE: Final[re.Pattern[str]] = re.compile(r"^[a-z0-9_\-]+$")
# Syntactic shape only; deliverability is proven by the confirmation mail
_EMAIL_RE: Final[re.Pattern[str]] = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ValidationError(ValueError):
    """Raised when validation fails."""
    pass


def validate_string_safe(
    value: str,
    min_length: int = 0,
    max_length: int = 1000,
    allow_empty: bool = False,
    field_name: str = "value",
) -> str:
    """
    Validate a string value for safety.

    Args:
        value: The string to validate
        min_length: Minimum allowed length
        max_length: Maximum allowed length
        allow_empty: If False, empty strings are rejected
        field_name: Name of the field for error messages

    Returns:
        Validated string

    Raises:
        ValidationError: If validation fails
    """
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string")

    if not allow_empty and not value:
        raise ValidationError(f"{field_name} cannot be empty")

    if len(value) < min_length:
        raise ValidationError(
            f"{field_name} must be at least {min_length} characters"
        )

    if len(value) > max_length:
        raise ValidationError(
            f"{field_name} must be at most {max_length} characters"
        )

    if "\x00" in value:
        raise ValidationError(f"{field_name} contains invalid characters")

    return value


def normalize_username(username: str) -> str:
    """
    Validate a username and return its canonical (lower-case) form.

    Raises:
        ValidationError: If the username is malformed
    """
    value = validate_string_safe(
        username.strip().lower() if isinstance(username, str) else username,
        min_length=USERNAME_MIN_LENGTH,
        max_length=USERNAME_MAX_LENGTH,
        field_name="username",
    )
    if not _USERNAME_RE.match(value):
        raise ValidationError(
            "username can only contain letters, numbers, underscores, and hyphens"
        )
    return value


def normalize_email(email: str) -> str:
    """Validate an email address and return it lower-cased."""
    value = validate_string_safe(
        email.strip().lower() if isinstance(email, str) else email,
        min_length=3,
        max_length=EMAIL_MAX_LENGTH,
        field_name="email",
    )
    if not _EMAIL_RE.match(value):
        raise ValidationError("email is not a valid address")
    return value


def validate_password_policy(
    password: str,
    min_length: int,
    max_length: int,
    username: Optional[str] = None,
) -> str:
    """
    Check a password against the deployment's policy.

    Raises:
        ValidationError: If the password is too short, too long, contains
            NUL bytes or equals the username
    """
    validate_string_safe(
        password,
        min_length=min_length,
        max_length=max_length,
        field_name="password",
    )
    if username is not None and password.lower() == username.lower():
        raise ValidationError("password must not match the username")
    return password


def validate_blob(value: bytes, field_name: str = "value") -> bytes:
    """Require a non-empty opaque byte string. The content is not inspected."""
    if not isinstance(value, (bytes, bytearray, memoryview)):
        raise ValidationError(f"{field_name} must be bytes")
    if len(value) == 0:
        raise ValidationError(f"{field_name} cannot be empty")
    return bytes(value)
