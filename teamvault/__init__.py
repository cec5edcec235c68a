"""
teamvault - Credentials, Sessions and Vault-Key Distribution
============================================================

Server core for a multi-user encrypted-vault service. It authenticates
users, issues bearer sessions with optional CSRF binding, and custodies
per-member wrapped vault keys it can never read.

Security Notice:
- No secrets are logged
- Only digests of bearer and confirmation tokens are stored
- Key material is opaque to the server
"""

from teamvault.core.config import ServerConfig
from teamvault.core.logging import get_secure_logger

__version__ = "0.1.0"

__all__ = ["ServerConfig", "get_secure_logger", "__version__"]
