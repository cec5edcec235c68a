"""
Core module - Contains configuration, logging, errors and the auth/vault components.
"""

from teamvault.core.config import ServerConfig
from teamvault.core.errors import (
    Conflict,
    FatalError,
    InvalidInput,
    NotFound,
    StorageError,
    TeamVaultError,
    Unauthorized,
)
from teamvault.core.logging import get_secure_logger, SecureLogFilter

__all__ = [
    "ServerConfig",
    "get_secure_logger",
    "SecureLogFilter",
    "TeamVaultError",
    "InvalidInput",
    "Conflict",
    "Unauthorized",
    "NotFound",
    "FatalError",
    "StorageError",
]
