"""
Session Control
================

Bearer session management with sliding expiration.

Security Features:
- Cryptographically random session tokens (256 bits)
- Only token hashes are persisted
- Sliding time-to-live, capped by an absolute lifetime
- Per-session CSRF requirement fixed at creation
- Lazy expiry: validity is decided at read time, no background reaper
"""

from __future__ import annotations

import logging
import secrets
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Final, Optional

from teamvault.core.errors import NotFound
from teamvault.db import (
    Database,
    from_db_time,
    hash_secret,
    is_foreign_key_violation,
    to_db_time,
    utcnow,
)


SESSION_TOKEN_BYTES: Final[int] = 32
STORE_TOKEN_BYTES: Final[int] = 32
DEFAULT_SESSION_TTL: Final[int] = 86400  # 1 day
DEFAULT_SESSION_MAX_LIFETIME: Final[int] = 30 * 86400


@dataclass(frozen=True)
class Session:
    """
    One authenticated device or browser.

    ``id`` is the bearer token itself. It only exists in memory; the
    database keeps its SHA-256.
    """
    id: str = field(repr=False)
    user_id: str
    created_at: datetime
    last_seen_at: datetime
    expires_at: datetime
    client_ip: Optional[str]
    user_agent: Optional[str]
    requires_csrf: bool
    store_token: str = field(repr=False)

    def to_dict(self) -> dict:
        """Client-facing representation."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat(),
            "last_seen_at": self.last_seen_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "client_ip": self.client_ip,
            "user_agent": self.user_agent,
            "requires_csrf": self.requires_csrf,
        }


class SessionManager:
    """
    Secure session management with SQLite backend.

    Usage:
        manager = SessionManager(db)

        # After a successful login
        session = manager.new_session(user.id, ip, user_agent, requires_csrf=True)

        # On every authenticated request
        session = manager.update_session(token, ip, user_agent)
        if session is None:
            ...  # unknown or expired: respond 401

        # Logout
        manager.delete_session(token)

    Security Notes:
        - A missing or expired session is a normal negative result (None)
        - Storage faults raise StorageError
        - The token column is never written after insert
    """

    __slots__ = ("_db", "_ttl", "_max_lifetime", "_clock", "_log")

    _SCHEMA: Final[str] = """
    CREATE TABLE IF NOT EXISTS sessions (
        id_hash TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        last_seen_at TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        client_ip TEXT,
        user_agent TEXT,
        requires_csrf INTEGER NOT NULL,
        store_token TEXT NOT NULL,
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
    );

    CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id);
    """

    def __init__(
        self,
        db: Database,
        ttl_seconds: int = DEFAULT_SESSION_TTL,
        max_lifetime_seconds: int = DEFAULT_SESSION_MAX_LIFETIME,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """
        Initialize the session manager.

        Args:
            db: Backing store
            ttl_seconds: Idle time after which a session expires
            max_lifetime_seconds: Hard cap measured from creation
            clock: Source of the current aware UTC time
        """
        if max_lifetime_seconds < ttl_seconds:
            raise ValueError("max_lifetime_seconds must be >= ttl_seconds")
        self._db = db
        self._ttl = timedelta(seconds=ttl_seconds)
        self._max_lifetime = timedelta(seconds=max_lifetime_seconds)
        self._clock = clock
        self._log = logging.getLogger("teamvault.sessions")
        self._db.initialize(self._SCHEMA)

    def _expiry(self, created_at: datetime, now: datetime) -> datetime:
        return min(now + self._ttl, created_at + self._max_lifetime)

    def new_session(
        self,
        user_id: str,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        requires_csrf: bool = False,
    ) -> Session:
        """
        Create a session for an authenticated user.

        Returns:
            The new Session; its ``id`` is the bearer token to hand out
        """
        token = secrets.token_urlsafe(SESSION_TOKEN_BYTES)
        store_token = secrets.token_urlsafe(STORE_TOKEN_BYTES)
        now = self._clock()
        expires_at = self._expiry(now, now)

        try:
            with self._db.connect() as conn:
                conn.execute("""
                    INSERT INTO sessions (
                        id_hash, user_id, created_at, last_seen_at, expires_at,
                        client_ip, user_agent, requires_csrf, store_token
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    hash_secret(token),
                    user_id,
                    to_db_time(now),
                    to_db_time(now),
                    to_db_time(expires_at),
                    client_ip,
                    user_agent,
                    int(requires_csrf),
                    store_token,
                ))
        except sqlite3.IntegrityError as e:
            if is_foreign_key_violation(e):
                raise NotFound(f"User {user_id} does not exist") from e
            raise

        self._log.info(f"Session created for {user_id} (csrf={requires_csrf})")

        return Session(
            id=token,
            user_id=user_id,
            created_at=now,
            last_seen_at=now,
            expires_at=expires_at,
            client_ip=client_ip,
            user_agent=user_agent,
            requires_csrf=requires_csrf,
            store_token=store_token,
        )

    def get_session(self, token: str) -> Optional[Session]:
        """Look up a session without touching it. None if unknown or expired."""
        if not token:
            return None
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE id_hash = ?",
                (hash_secret(token),),
            ).fetchone()
        if not row:
            return None
        session = self._row_to_session(row, token)
        if self._clock() >= session.expires_at:
            return None
        return session

    def update_session(
        self,
        token: str,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[Session]:
        """
        Validate a bearer token and record activity.

        Refreshes last-seen time and client metadata and slides the expiry
        forward, never past the absolute lifetime.

        Returns:
            The refreshed Session, or None if it is unknown or expired
        """
        if not token:
            return None

        token_hash = hash_secret(token)
        now = self._clock()

        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE id_hash = ?",
                (token_hash,),
            ).fetchone()
            if not row:
                return None

            created_at = from_db_time(row["created_at"])
            if now >= from_db_time(row["expires_at"]):
                conn.execute("DELETE FROM sessions WHERE id_hash = ?", (token_hash,))
                self._log.debug(f"Session for {row['user_id']} expired")
                return None

            expires_at = self._expiry(created_at, now)
            # Only touch rows that are still live; a concurrent logout wins
            result = conn.execute("""
                UPDATE sessions
                SET last_seen_at = ?, expires_at = ?, client_ip = ?, user_agent = ?
                WHERE id_hash = ? AND expires_at > ?
            """, (
                to_db_time(now),
                to_db_time(expires_at),
                client_ip,
                user_agent,
                token_hash,
                to_db_time(now),
            ))
            if result.rowcount == 0:
                return None

        return Session(
            id=token,
            user_id=row["user_id"],
            created_at=created_at,
            last_seen_at=now,
            expires_at=expires_at,
            client_ip=client_ip,
            user_agent=user_agent,
            requires_csrf=bool(row["requires_csrf"]),
            store_token=row["store_token"],
        )

    def delete_session(self, token: str) -> None:
        """Revoke a single session (logout). Unknown tokens are ignored."""
        with self._db.connect() as conn:
            conn.execute("DELETE FROM sessions WHERE id_hash = ?", (hash_secret(token),))

    def delete_all_sessions(self, user_id: str) -> int:
        """
        Revoke every session of a user.

        Returns:
            Number of sessions removed (zero is fine)
        """
        with self._db.connect() as conn:
            result = conn.execute("DELETE FROM sessions WHERE user_id = ?", (user_id,))
        if result.rowcount:
            self._log.info(f"Revoked {result.rowcount} sessions for {user_id}")
        return result.rowcount

    @staticmethod
    def _row_to_session(row: sqlite3.Row, token: str) -> Session:
        return Session(
            id=token,
            user_id=row["user_id"],
            created_at=from_db_time(row["created_at"]),
            last_seen_at=from_db_time(row["last_seen_at"]),
            expires_at=from_db_time(row["expires_at"]),
            client_ip=row["client_ip"],
            user_agent=row["user_agent"],
            requires_csrf=bool(row["requires_csrf"]),
            store_token=row["store_token"],
        )
