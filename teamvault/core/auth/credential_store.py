"""
Credential Store
================

User registration, email confirmation and password authentication.

Security Features:
- Argon2id password hashing (plaintext never stored)
- Single-use, expiring confirmation tokens stored as SHA-256 digests
- Exactly-once token redemption under concurrency
- Uniform authentication failure: unknown user, unconfirmed account and
  wrong password are indistinguishable to the caller
- Optional invite-only registration
"""

from __future__ import annotations

import logging
import secrets
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Final, List, Optional

from teamvault.core.auth.argon2_auth import Argon2Hasher
from teamvault.core.config import SecurityConfig
from teamvault.core.errors import Conflict, InvalidInput, NotFound, Unauthorized
from teamvault.core.vault.key_distributor import VaultKeyDistributor
from teamvault.db import (
    Database,
    from_db_time,
    hash_secret,
    is_unique_violation,
    to_db_time,
    utcnow,
)
from teamvault.utils.validators import (
    ValidationError,
    normalize_email,
    normalize_username,
    validate_blob,
    validate_password_policy,
    validate_string_safe,
)


CONFIRMATION_TOKEN_BYTES: Final[int] = 32
PURPOSE_VERIFY_EMAIL: Final[str] = "verify_email"
DEFAULT_VAULT_ID: Final[str] = "default"
FULLNAME_MAX_LENGTH: Final[int] = 128

_INVALID_CREDENTIALS: Final[str] = "Invalid credentials"


@dataclass
class User:
    """
    User account.

    ``public_key`` and ``key`` are the client-generated key pack; the
    server stores them without interpretation. The password hash is never
    exposed in repr.
    """
    id: str
    fullname: str
    email: str
    password_hash: str = field(repr=False)
    confirmed_at: Optional[datetime]
    public_key: bytes = field(repr=False)
    key: bytes = field(repr=False)
    created_at: datetime
    updated_at: datetime

    @property
    def is_confirmed(self) -> bool:
        return self.confirmed_at is not None


@dataclass(frozen=True)
class Token:
    """Single-use email confirmation token. ``id`` is the raw value."""
    id: str = field(repr=False)
    user_id: str
    purpose: str
    expires_at: datetime
    consumed_at: Optional[datetime] = None


@dataclass(frozen=True)
class Invite:
    """Permission for an email address to register."""
    team: str
    email: str
    created_at: datetime


class CredentialStore:
    """
    User credentials with SQLite backend.

    Usage:
        store = CredentialStore(db, Argon2Hasher(), VaultKeyDistributor(db))

        user, token = store.register(
            "alice", "Alice", "alice@example.com", "pw123456",
            key_pack, vault_public_key, vault_key,
        )
        mailer.send_confirmation_mail(user, token, locale)

        store.confirm_email(token.id)
        user = store.authenticate("alice", "pw123456")

    Security Notes:
        - Uniqueness of username and email is enforced by the database
        - Token redemption is a conditional update in one transaction
    """

    __slots__ = ("_db", "_hasher", "_vaults", "_security", "_only_invited", "_clock", "_log")

    _SCHEMA: Final[str] = """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY COLLATE NOCASE,
        fullname TEXT NOT NULL,
        email TEXT UNIQUE NOT NULL COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        confirmed_at TEXT,
        public_key BLOB NOT NULL,
        key BLOB NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS tokens (
        id_hash TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        purpose TEXT NOT NULL,
        created_at TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        consumed_at TEXT,
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
    );

    CREATE INDEX IF NOT EXISTS idx_tokens_user ON tokens(user_id);

    CREATE TABLE IF NOT EXISTS invites (
        team TEXT NOT NULL,
        email TEXT NOT NULL COLLATE NOCASE,
        created_at TEXT NOT NULL,
        PRIMARY KEY (team, email)
    );

    CREATE INDEX IF NOT EXISTS idx_invites_email ON invites(email);
    """

    def __init__(
        self,
        db: Database,
        hasher: Argon2Hasher,
        vaults: VaultKeyDistributor,
        security: Optional[SecurityConfig] = None,
        only_invited: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """
        Args:
            db: Backing store
            hasher: Password hasher
            vaults: Distributor that receives the creator's first vault
            security: Password policy and token lifetime
            only_invited: Refuse registrations without a matching invite
            clock: Source of the current aware UTC time
        """
        self._db = db
        self._hasher = hasher
        self._vaults = vaults
        self._security = security or SecurityConfig()
        self._only_invited = only_invited
        self._clock = clock
        self._log = logging.getLogger("teamvault.credentials")
        self._db.initialize(self._SCHEMA)

    @property
    def vaults(self) -> VaultKeyDistributor:
        return self._vaults

    # Registration

    def _validate_registration(
        self,
        username: str,
        fullname: str,
        email: str,
        password: str,
        user_key_pack: bytes,
        vault_public_key: bytes,
        vault_key: bytes,
    ) -> tuple[str, str, str]:
        errs = InvalidInput("Invalid registration")
        clean_username = clean_email = clean_fullname = ""

        try:
            clean_username = normalize_username(username)
        except ValidationError as e:
            errs.set_field_error("id", str(e))
        try:
            clean_email = normalize_email(email)
        except ValidationError as e:
            errs.set_field_error("email", str(e))
        try:
            clean_fullname = validate_string_safe(
                fullname.strip() if isinstance(fullname, str) else fullname,
                min_length=1,
                max_length=FULLNAME_MAX_LENGTH,
                field_name="fullname",
            )
        except ValidationError as e:
            errs.set_field_error("fullname", str(e))
        try:
            validate_password_policy(
                password,
                self._security.min_password_length,
                self._security.max_password_length,
                username=clean_username or None,
            )
        except ValidationError as e:
            errs.set_field_error("password", str(e))

        for name, blob in (
            ("user_keys", user_key_pack),
            ("vault_public_keys", vault_public_key),
            ("vault_keys", vault_key),
        ):
            try:
                validate_blob(blob, field_name=name)
            except ValidationError as e:
                errs.set_field_error(name, str(e))

        errs.raise_if_any()
        return clean_username, clean_fullname, clean_email

    def register(
        self,
        username: str,
        fullname: str,
        email: str,
        password: str,
        user_key_pack: bytes,
        vault_public_key: bytes,
        vault_key: bytes,
        user_public_key: Optional[bytes] = None,
    ) -> tuple[User, Token]:
        """
        Create an unconfirmed account, its personal vault and a confirmation token.

        ``user_key_pack`` is the client-encrypted secret key pack and is
        returned to the client at login; ``user_public_key`` is stored
        alongside it when the client publishes one. The personal vault lives
        in a team named after the user and holds a single member entry
        wrapping ``vault_key`` for the new user.

        Raises:
            InvalidInput: If any field is malformed
            Unauthorized: If registration is invite-only and the email has no invite
            Conflict: If the username or email is taken
        """
        username, fullname, email = self._validate_registration(
            username, fullname, email, password,
            user_key_pack, vault_public_key, vault_key,
        )

        if self._only_invited and not self.find_invites_for_email(email):
            self._log.info("Registration refused: no invite")
            raise Unauthorized()

        password_hash = self._hasher.hash(password)
        now = self._clock()

        try:
            with self._db.transaction() as conn:
                conn.execute("""
                    INSERT INTO users (
                        id, fullname, email, password_hash, confirmed_at,
                        public_key, key, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, NULL, ?, ?, ?, ?)
                """, (
                    username,
                    fullname,
                    email,
                    password_hash,
                    bytes(user_public_key or b""),
                    bytes(user_key_pack),
                    to_db_time(now),
                    to_db_time(now),
                ))
                self._vaults.create_vault(
                    team=username,
                    vault=DEFAULT_VAULT_ID,
                    public_key=vault_public_key,
                    creator=username,
                    wrapped_key=vault_key,
                    conn=conn,
                )
                token = self._issue_token(conn, username, now)
        except sqlite3.IntegrityError as e:
            if is_unique_violation(e) and "users.email" in str(e):
                raise Conflict("Email already in use") from e
            if is_unique_violation(e):
                raise Conflict(f"User {username} already exists") from e
            raise

        self._log.info(f"Registered user {username}")

        user = User(
            id=username,
            fullname=fullname,
            email=email,
            password_hash=password_hash,
            confirmed_at=None,
            public_key=bytes(user_public_key or b""),
            key=bytes(user_key_pack),
            created_at=now,
            updated_at=now,
        )
        return user, token

    # Confirmation tokens

    def _issue_token(self, conn: sqlite3.Connection, user_id: str, now: datetime) -> Token:
        """Replace any unconsumed tokens of the user with a fresh one."""
        raw = secrets.token_urlsafe(CONFIRMATION_TOKEN_BYTES)
        expires_at = now + timedelta(seconds=self._security.confirmation_token_ttl_seconds)

        conn.execute("""
            DELETE FROM tokens
            WHERE user_id = ? AND purpose = ? AND consumed_at IS NULL
        """, (user_id, PURPOSE_VERIFY_EMAIL))
        conn.execute("""
            INSERT INTO tokens (id_hash, user_id, purpose, created_at, expires_at)
            VALUES (?, ?, ?, ?, ?)
        """, (
            hash_secret(raw),
            user_id,
            PURPOSE_VERIFY_EMAIL,
            to_db_time(now),
            to_db_time(expires_at),
        ))
        return Token(id=raw, user_id=user_id, purpose=PURPOSE_VERIFY_EMAIL, expires_at=expires_at)

    def request_confirmation_token(self, email: str) -> Optional[Token]:
        """
        Issue a new confirmation token for ``email``.

        Returns None, without raising, when the email is unknown or the
        account is already confirmed; callers respond identically in every
        case so account existence is not revealed.
        """
        try:
            user = self.find_user_by_email(email)
        except NotFound:
            return None
        if user.is_confirmed:
            return None

        with self._db.transaction() as conn:
            token = self._issue_token(conn, user.id, self._clock())

        self._log.info(f"Issued confirmation token for {user.id}")
        return token

    def confirm_email(self, token_id: str) -> User:
        """
        Redeem a confirmation token and mark its owner confirmed.

        Raises:
            NotFound: For an unknown, expired or already-consumed token
        """
        if not token_id:
            raise NotFound("Token does not exist")

        token_hash = hash_secret(token_id)
        now = self._clock()

        with self._db.transaction() as conn:
            result = conn.execute("""
                UPDATE tokens SET consumed_at = ?
                WHERE id_hash = ? AND purpose = ?
                  AND consumed_at IS NULL AND expires_at > ?
            """, (to_db_time(now), token_hash, PURPOSE_VERIFY_EMAIL, to_db_time(now)))
            if result.rowcount != 1:
                raise NotFound("Token does not exist")

            user_id = conn.execute(
                "SELECT user_id FROM tokens WHERE id_hash = ?",
                (token_hash,),
            ).fetchone()["user_id"]
            conn.execute("""
                UPDATE users
                SET confirmed_at = COALESCE(confirmed_at, ?), updated_at = ?
                WHERE id = ?
            """, (to_db_time(now), to_db_time(now), user_id))
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()

        self._log.info(f"Email confirmed for {user_id}")
        return self._row_to_user(row)

    def find_token(self, token_id: str) -> Token:
        """
        Look up a confirmation token by its raw value.

        Raises:
            NotFound: If no such token was ever issued
        """
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM tokens WHERE id_hash = ?",
                (hash_secret(token_id or ""),),
            ).fetchone()
        if not row:
            raise NotFound("Token does not exist")
        return Token(
            id=token_id,
            user_id=row["user_id"],
            purpose=row["purpose"],
            expires_at=from_db_time(row["expires_at"]),
            consumed_at=from_db_time(row["consumed_at"]) if row["consumed_at"] else None,
        )

    # Authentication

    def authenticate(self, username: str, password: str) -> User:
        """
        Check a username/password pair.

        Raises:
            Unauthorized: For an unknown user, an unconfirmed account or a
                wrong password, always with the same message
        """
        try:
            user = self.find_user(username)
        except NotFound:
            # Spend the same work as a real verification
            self._hasher.hash(password or "-")
            raise Unauthorized(_INVALID_CREDENTIALS) from None

        password_ok = self._hasher.verify(password, user.password_hash)
        if not password_ok or not user.is_confirmed:
            self._log.info(f"Authentication failed for {user.id}")
            raise Unauthorized(_INVALID_CREDENTIALS)

        if self._hasher.needs_rehash(user.password_hash):
            self._rehash(user, password)

        return user

    def _rehash(self, user: User, password: str) -> None:
        """Upgrade a stored hash to the current parameters."""
        new_hash = self._hasher.hash(password)
        with self._db.connect() as conn:
            conn.execute(
                "UPDATE users SET password_hash = ?, updated_at = ? WHERE id = ?",
                (new_hash, to_db_time(self._clock()), user.id),
            )
        user.password_hash = new_hash
        self._log.info(f"Password hash upgraded for {user.id}")

    # Identity lookups

    def find_user(self, username: str) -> User:
        """Raises NotFound if there is no such user."""
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE id = ? COLLATE NOCASE",
                ((username or "").strip(),),
            ).fetchone()
        if not row:
            raise NotFound("User does not exist")
        return self._row_to_user(row)

    def find_user_by_email(self, email: str) -> User:
        """Raises NotFound if no user has this email."""
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ? COLLATE NOCASE",
                ((email or "").strip(),),
            ).fetchone()
        if not row:
            raise NotFound("User does not exist")
        return self._row_to_user(row)

    # Invites

    def create_invite(self, team: str, email: str) -> Invite:
        """
        Allow ``email`` to register.

        Raises:
            InvalidInput: If the team or email is malformed
            Conflict: If the invite already exists
        """
        errs = InvalidInput("Invalid invite")
        if not team:
            errs.set_field_error("team", "missing")
        try:
            email = normalize_email(email)
        except ValidationError as e:
            errs.set_field_error("email", str(e))
        errs.raise_if_any()

        now = self._clock()
        try:
            with self._db.connect() as conn:
                conn.execute(
                    "INSERT INTO invites (team, email, created_at) VALUES (?, ?, ?)",
                    (team, email, to_db_time(now)),
                )
        except sqlite3.IntegrityError as e:
            raise Conflict(f"{email} is already invited to {team}") from e
        return Invite(team=team, email=email, created_at=now)

    def find_invites_for_email(self, email: str) -> List[Invite]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM invites WHERE email = ? COLLATE NOCASE ORDER BY team",
                ((email or "").strip(),),
            ).fetchall()
        return [
            Invite(team=row["team"], email=row["email"], created_at=from_db_time(row["created_at"]))
            for row in rows
        ]

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            fullname=row["fullname"],
            email=row["email"],
            password_hash=row["password_hash"],
            confirmed_at=from_db_time(row["confirmed_at"]) if row["confirmed_at"] else None,
            public_key=bytes(row["public_key"]),
            key=bytes(row["key"]),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )
