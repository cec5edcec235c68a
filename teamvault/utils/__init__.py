"""
Utils module - Utility functions and helpers.
"""

from teamvault.utils.validators import (
    ValidationError,
    normalize_email,
    normalize_username,
    validate_blob,
    validate_password_policy,
    validate_string_safe,
)

__all__ = [
    "ValidationError",
    "normalize_email",
    "normalize_username",
    "validate_blob",
    "validate_password_policy",
    "validate_string_safe",
]
