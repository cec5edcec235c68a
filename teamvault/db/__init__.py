"""
Database module - sqlite persistence shared by every component.

Security Considerations:
- Every connection carries a bounded busy timeout; a slow or locked store
  surfaces as StorageError instead of hanging the request
- Bearer and confirmation tokens are persisted only as SHA-256 digests
- All statements use parameterized queries
"""

from teamvault.db.connection import (
    Database,
    from_db_time,
    hash_secret,
    is_foreign_key_violation,
    is_unique_violation,
    to_db_time,
    utcnow,
)

__all__ = [
    "Database",
    "from_db_time",
    "hash_secret",
    "is_foreign_key_violation",
    "is_unique_violation",
    "to_db_time",
    "utcnow",
]
