"""
Vault Key Distribution
======================

Custody of per-member wrapped vault keys.

Every vault has an opaque public key and one VaultUser row per member.
The row holds the vault's secret key already encrypted by a client for
that member. This module stores, lists and deletes those blobs and
never parses, decrypts or transforms them.

Invariants:
- Exactly one VaultUser row per (team, vault, user); the primary key
  enforces it, so concurrent inserts yield one success and Conflicts.
  Usernames compare case-insensitively, as they do in ``users``
- team, vault, user and key must all be non-empty
- Re-adding an existing member never overwrites the stored key
- Removing a member does not re-key the vault
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Final, List, Optional

from teamvault.core.errors import Conflict, InvalidInput, NotFound
from teamvault.db import (
    Database,
    from_db_time,
    is_foreign_key_violation,
    is_unique_violation,
    to_db_time,
    utcnow,
)
from teamvault.utils.validators import ValidationError, normalize_username


@dataclass(frozen=True)
class Vault:
    """A named container of secrets with an opaque public key."""
    team: str
    id: str
    public_key: bytes
    created_at: datetime
    updated_at: datetime

    def __repr__(self) -> str:
        return f"Vault(team={self.team!r}, id={self.id!r})"


@dataclass(frozen=True)
class VaultUser:
    """
    Membership and key-share record.

    ``key`` is the vault secret wrapped for ``user``; the server cannot
    read it.
    """
    team: str
    vault: str
    user: str
    key: bytes
    created_at: datetime
    updated_at: datetime

    def __repr__(self) -> str:
        """Safe representation without the wrapped key."""
        return (
            f"VaultUser(team={self.team!r}, vault={self.vault!r}, "
            f"user={self.user!r}, key_len={len(self.key)})"
        )


class VaultKeyDistributor:
    """
    Stores vaults and their members' wrapped keys.

    Membership rows reference ``users``, so the CredentialStore sharing
    this database must have created its schema before the first write;
    until then every insert fails with StorageError.

    Usage:
        distributor = VaultKeyDistributor(db)

        distributor.create_vault("acme", "ops", public_key, "alice", key_for_alice)
        distributor.add_member("acme", "ops", "bob", key_for_bob)

        for member in distributor.list_members("acme", "ops"):
            ...

        distributor.remove_member("acme", "ops", "bob")
    """

    __slots__ = ("_db", "_log")

    _SCHEMA: Final[str] = """
    CREATE TABLE IF NOT EXISTS vaults (
        team TEXT NOT NULL,
        id TEXT NOT NULL,
        public_key BLOB NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (team, id)
    );

    CREATE TABLE IF NOT EXISTS vault_users (
        team TEXT NOT NULL,
        vault TEXT NOT NULL,
        user TEXT NOT NULL COLLATE NOCASE,
        key BLOB NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (team, vault, user),
        FOREIGN KEY (team, vault) REFERENCES vaults(team, id) ON DELETE CASCADE,
        FOREIGN KEY (user) REFERENCES users(id) ON DELETE CASCADE
    );

    CREATE INDEX IF NOT EXISTS idx_vault_users_user ON vault_users(user);
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._log = logging.getLogger("teamvault.vaults")
        self._db.initialize(self._SCHEMA)

    @staticmethod
    def _canonical_user(user: str) -> str:
        return user.strip().lower() if isinstance(user, str) else user

    @staticmethod
    def _validate(team: str, vault: str, user: str, key: Optional[bytes]) -> str:
        """Check the membership fields and return the canonical username."""
        errs = InvalidInput("Invalid vault membership")
        if not team:
            errs.set_field_error("team", "missing")
        if not vault:
            errs.set_field_error("vault", "missing")
        if not user:
            errs.set_field_error("user", "missing")
        else:
            try:
                user = normalize_username(user)
            except ValidationError as e:
                errs.set_field_error("user", str(e))
        if key is None or len(key) == 0:
            errs.set_field_error("key", "missing")
        errs.raise_if_any()
        return user

    def create_vault(
        self,
        team: str,
        vault: str,
        public_key: bytes,
        creator: str,
        wrapped_key: bytes,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Vault:
        """
        Create a vault and seed its creator's wrapped key atomically.

        Args:
            team: Owning team id
            vault: Vault id, unique within the team
            public_key: Opaque vault public key
            creator: Username of the first member
            wrapped_key: Vault secret wrapped for the creator
            conn: Join an open transaction instead of starting one

        Raises:
            InvalidInput: If a field is empty
            Conflict: If the vault already exists
            NotFound: If the creator does not exist
        """
        creator = self._validate(team, vault, creator, wrapped_key)
        if not public_key:
            raise InvalidInput("Invalid vault", {"public_key": "missing"})

        now = utcnow()
        try:
            with self._db.transaction(conn) as tx:
                tx.execute("""
                    INSERT INTO vaults (team, id, public_key, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (team, vault, bytes(public_key), to_db_time(now), to_db_time(now)))
                self._insert_member(tx, team, vault, creator, wrapped_key, now)
        except sqlite3.IntegrityError as e:
            if is_unique_violation(e):
                raise Conflict(f"Vault {vault} already exists") from e
            if is_foreign_key_violation(e):
                raise NotFound(f"User {creator} does not exist") from e
            raise

        self._log.info(f"Vault {team}/{vault} created by {creator}")
        return Vault(team, vault, bytes(public_key), now, now)

    def get_vault(self, team: str, vault: str) -> Vault:
        """Raises NotFound if the vault does not exist."""
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM vaults WHERE team = ? AND id = ?",
                (team, vault),
            ).fetchone()
        if not row:
            raise NotFound(f"Vault {team}/{vault} does not exist")
        return Vault(
            team=row["team"],
            id=row["id"],
            public_key=bytes(row["public_key"]),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )

    @staticmethod
    def _insert_member(
        conn: sqlite3.Connection,
        team: str,
        vault: str,
        user: str,
        key: bytes,
        now: datetime,
    ) -> None:
        conn.execute("""
            INSERT INTO vault_users (team, vault, user, key, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (team, vault, user, bytes(key), to_db_time(now), to_db_time(now)))

    def add_member(self, team: str, vault: str, user: str, wrapped_key: bytes) -> VaultUser:
        """
        Grant ``user`` access by storing their wrapped copy of the vault key.

        Raises:
            InvalidInput: If any of the four fields is empty
            NotFound: If the vault or the user does not exist
            Conflict: If the user is already in the vault
        """
        user = self._validate(team, vault, user, wrapped_key)

        now = utcnow()
        try:
            with self._db.connect() as conn:
                self._insert_member(conn, team, vault, user, wrapped_key, now)
        except sqlite3.IntegrityError as e:
            if is_unique_violation(e):
                raise Conflict(f"User {user} is already in vault") from e
            if is_foreign_key_violation(e):
                raise NotFound(f"Vault {team}/{vault} or user {user} does not exist") from e
            raise

        self._log.info(f"Added {user} to vault {team}/{vault}")
        return VaultUser(team, vault, user, bytes(wrapped_key), now, now)

    def remove_member(self, team: str, vault: str, user: str) -> None:
        """
        Revoke ``user``'s wrapped key.

        The vault secret itself is not rotated; anyone who already
        unwrapped it keeps it until the vault is re-keyed by a client.

        Raises:
            NotFound: If there is no such membership
        """
        user = self._canonical_user(user)
        with self._db.connect() as conn:
            result = conn.execute("""
                DELETE FROM vault_users WHERE team = ? AND vault = ? AND user = ?
            """, (team, vault, user))

        if result.rowcount == 0:
            raise NotFound(f"User {user} is not in vault {team}/{vault}")

        self._log.info(f"Removed {user} from vault {team}/{vault}")

    def list_members(self, team: str, vault: str) -> List[VaultUser]:
        """All members of a vault, ordered by username."""
        with self._db.connect() as conn:
            rows = conn.execute("""
                SELECT * FROM vault_users WHERE team = ? AND vault = ?
                ORDER BY user
            """, (team, vault)).fetchall()
        return [self._row_to_vault_user(row) for row in rows]

    def get_member(self, team: str, vault: str, user: str) -> VaultUser:
        """Raises NotFound if ``user`` has no key for the vault."""
        user = self._canonical_user(user)
        with self._db.connect() as conn:
            row = conn.execute("""
                SELECT * FROM vault_users WHERE team = ? AND vault = ? AND user = ?
            """, (team, vault, user)).fetchone()
        if not row:
            raise NotFound(f"User {user} is not in vault {team}/{vault}")
        return self._row_to_vault_user(row)

    def has_access(self, team: str, vault: str, user: str) -> bool:
        user = self._canonical_user(user)
        with self._db.connect() as conn:
            row = conn.execute("""
                SELECT 1 FROM vault_users WHERE team = ? AND vault = ? AND user = ?
            """, (team, vault, user)).fetchone()
        return row is not None

    def vaults_for_user(self, user: str) -> List[VaultUser]:
        """Every wrapped key held by ``user``."""
        user = self._canonical_user(user)
        with self._db.connect() as conn:
            rows = conn.execute("""
                SELECT * FROM vault_users WHERE user = ? ORDER BY team, vault
            """, (user,)).fetchall()
        return [self._row_to_vault_user(row) for row in rows]

    @staticmethod
    def _row_to_vault_user(row: sqlite3.Row) -> VaultUser:
        return VaultUser(
            team=row["team"],
            vault=row["vault"],
            user=row["user"],
            key=bytes(row["key"]),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )
