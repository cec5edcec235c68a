"""
SQLite Connection Management
============================

Short-lived connections to the backing store.

Every call opens its own connection, so no mutable state is shared
between requests. Writes that must be atomic run inside
``BEGIN IMMEDIATE`` so the write lock is taken up front; concurrent
writers queue on the busy timeout and fail with StorageError once it
elapses.
"""

from __future__ import annotations

import hashlib
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Final, Iterator

from teamvault.core.errors import StorageError


# Fixed-width UTC format so that stored timestamps compare lexicographically
_DB_TIME_FORMAT: Final[str] = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_db_time(value: datetime) -> str:
    """Encode an aware datetime for storage."""
    if value.tzinfo is None:
        raise ValueError("naive datetimes cannot be stored")
    return value.astimezone(timezone.utc).strftime(_DB_TIME_FORMAT)


def from_db_time(value: str) -> datetime:
    """Decode a stored timestamp."""
    return datetime.fromisoformat(value)


def hash_secret(secret: str) -> str:
    """
    Digest a bearer or confirmation token for storage.

    SHA-256 is enough here: the inputs carry 256 bits of entropy, so the
    digest only has to prevent recovering a usable token from a dump.
    """
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def is_unique_violation(err: sqlite3.IntegrityError) -> bool:
    msg = str(err)
    return "UNIQUE constraint failed" in msg or "PRIMARY KEY" in msg


def is_foreign_key_violation(err: sqlite3.IntegrityError) -> bool:
    return "FOREIGN KEY constraint failed" in str(err)


class Database:
    """
    Connection factory for a single sqlite file.

    Usage:
        db = Database(path, timeout_seconds=5.0)
        db.initialize(SCHEMA)

        with db.connect() as conn:
            row = conn.execute("SELECT ...", (value,)).fetchone()

        with db.transaction() as conn:
            conn.execute("UPDATE ...", (...))

    IntegrityError is passed through untouched so callers can map it to
    Conflict or NotFound. Every other sqlite3 error becomes StorageError.
    """

    __slots__ = ("_path", "_timeout", "_log")

    def __init__(self, path: Path | str, timeout_seconds: float = 5.0) -> None:
        self._path = Path(path)
        self._timeout = timeout_seconds
        self._log = logging.getLogger("teamvault.db")

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Open an autocommit connection with foreign keys enforced."""
        try:
            conn = sqlite3.connect(
                self._path,
                timeout=self._timeout,
                isolation_level=None,
            )
        except sqlite3.Error as e:
            self._log.error(f"Could not open database: {e}")
            raise StorageError(f"Could not open database: {e}") from e

        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            self._log.error(f"Storage fault: {e}")
            raise StorageError(f"Storage fault: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def transaction(self, conn: sqlite3.Connection | None = None) -> Iterator[sqlite3.Connection]:
        """
        Run the block inside ``BEGIN IMMEDIATE``.

        When an open connection is passed in, the block joins the caller's
        transaction instead of starting a new one.
        """
        if conn is not None:
            yield conn
            return

        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()

    def initialize(self, schema: str) -> None:
        """Create tables if they don't exist."""
        self._path.parent.mkdir(parents=True, exist_ok=True)

        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(schema)
