"""
Shared fixtures for the teamvault test suite.

Argon2 runs with deliberately weak parameters here so the suite stays
fast; production defaults live in SecurityConfig.
"""
import base64
from datetime import datetime, timedelta, timezone

import pytest

from teamvault.core.auth.argon2_auth import Argon2Hasher
from teamvault.core.auth.credential_store import CredentialStore
from teamvault.core.auth.session_control import SessionManager
from teamvault.core.config import DatabaseConfig, PathConfig, SecurityConfig, ServerConfig
from teamvault.core.vault.key_distributor import VaultKeyDistributor
from teamvault.db import Database
from teamvault.security.audit import TamperAwareAuditLog
from teamvault.web.app import create_app


FAST_SECURITY = SecurityConfig(
    argon2_memory_cost=1024,
    argon2_time_cost=1,
    argon2_parallelism=1,
    session_ttl_seconds=3600,
    session_max_lifetime_seconds=4 * 3600,
)

PASSWORD = "pw123456"


class FakeClock:
    """Controllable aware-UTC clock."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class RecordingMailer:
    """Keeps every confirmation mail instead of sending it."""

    def __init__(self):
        self.sent = []

    def send_confirmation_mail(self, user, token, locale):
        self.sent.append((user, token, locale))

    @property
    def last_token(self):
        return self.sent[-1][1]


def b64(blob: bytes) -> str:
    return base64.b64encode(blob).decode("ascii")


def register_user(store, username, email=None, password=PASSWORD, confirm=False):
    """Register ``username`` with throwaway key material."""
    user, token = store.register(
        username,
        username.capitalize(),
        email or f"{username}@x.com",
        password,
        f"{username}-key-pack".encode(),
        f"{username}-vault-public".encode(),
        f"{username}-vault-key".encode(),
    )
    if confirm:
        user = store.confirm_email(token.id)
    return user, token


# --- Core fixtures ---

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(tmp_path):
    return Database(tmp_path / "teamvault.db", timeout_seconds=10.0)


@pytest.fixture
def hasher():
    return Argon2Hasher(
        memory_cost=FAST_SECURITY.argon2_memory_cost,
        time_cost=FAST_SECURITY.argon2_time_cost,
        parallelism=FAST_SECURITY.argon2_parallelism,
    )


@pytest.fixture
def vaults(db):
    return VaultKeyDistributor(db)


@pytest.fixture
def store(db, hasher, vaults, clock):
    return CredentialStore(db, hasher, vaults, security=FAST_SECURITY, clock=clock)


@pytest.fixture
def sessions(db, store, clock):
    # Depends on ``store`` so the users table exists for the foreign key
    return SessionManager(
        db,
        ttl_seconds=FAST_SECURITY.session_ttl_seconds,
        max_lifetime_seconds=FAST_SECURITY.session_max_lifetime_seconds,
        clock=clock,
    )


# --- HTTP fixtures ---

@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def audit(tmp_path):
    return TamperAwareAuditLog(tmp_path / "logs" / "audit.log")


@pytest.fixture
def server_config(tmp_path):
    return ServerConfig(
        paths=PathConfig(data_dir=tmp_path / "data", log_dir=tmp_path / "logs"),
        security=FAST_SECURITY,
        database=DatabaseConfig(path=tmp_path / "data" / "web.db", timeout_seconds=10.0),
    )


@pytest.fixture
def app(server_config, mailer, audit):
    return create_app(
        server_config,
        secret_key=b"x" * 32,
        mailer=mailer,
        audit=audit,
        secure_cookies=False,
    )


@pytest.fixture
def client(app):
    return app.test_client()
