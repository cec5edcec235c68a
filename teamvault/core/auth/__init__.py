"""
teamvault Authentication Module
===============================

Provides:
- Argon2id password hashing
- Registration, email confirmation and uniform-failure authentication
- Bearer sessions with sliding expiry
- CSRF tokens bound to the response channel
"""

from teamvault.core.auth.argon2_auth import Argon2Hasher
from teamvault.core.auth.credential_store import (
    CredentialStore,
    Invite,
    Token,
    User,
)
from teamvault.core.auth.csrf import CsrfGuard
from teamvault.core.auth.session_control import (
    Session,
    SessionManager,
)

__all__ = [
    "Argon2Hasher",
    "CredentialStore",
    "Invite",
    "Token",
    "User",
    "CsrfGuard",
    "Session",
    "SessionManager",
]
