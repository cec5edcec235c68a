"""
Tests for VaultKeyDistributor.

Wrapped keys are produced the way a client would produce them (X25519 +
HKDF + AES-GCM via the cryptography package) to show the server hands
back exactly what it was given.
"""
import os
from concurrent.futures import ThreadPoolExecutor

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from teamvault.core.errors import Conflict, InvalidInput, NotFound, StorageError
from teamvault.core.vault.key_distributor import VaultKeyDistributor
from teamvault.db import Database

from conftest import register_user


WRAP_INFO = b"teamvault vault key"


def _raw_public(key: X25519PublicKey) -> bytes:
    return key.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)


def _derive(shared: bytes) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=WRAP_INFO).derive(shared)


def wrap_for(recipient: X25519PublicKey, vault_secret: bytes) -> bytes:
    """Client-side wrap: ephemeral public key || nonce || ciphertext."""
    ephemeral = X25519PrivateKey.generate()
    key = _derive(ephemeral.exchange(recipient))
    nonce = os.urandom(12)
    return _raw_public(ephemeral.public_key()) + nonce + AESGCM(key).encrypt(nonce, vault_secret, None)


def unwrap_with(private: X25519PrivateKey, blob: bytes) -> bytes:
    ephemeral = X25519PublicKey.from_public_bytes(blob[:32])
    key = _derive(private.exchange(ephemeral))
    return AESGCM(key).decrypt(blob[32:44], blob[44:], None)


@pytest.fixture
def team_vault(store, vaults):
    """alice owns acme/ops; bob and carol exist but are not members."""
    for name in ("alice", "bob", "carol"):
        register_user(store, name, confirm=True)
    vaults.create_vault("acme", "ops", b"ops-public", "alice", b"wrapped-for-alice")
    return vaults


class TestCreateVault:
    """Vault creation seeds the creator."""

    def test_creator_is_first_member(self, team_vault):
        members = team_vault.list_members("acme", "ops")
        assert [m.user for m in members] == ["alice"]
        assert members[0].key == b"wrapped-for-alice"
        assert team_vault.get_vault("acme", "ops").public_key == b"ops-public"

    def test_duplicate_vault(self, team_vault):
        with pytest.raises(Conflict):
            team_vault.create_vault("acme", "ops", b"other", "bob", b"wrapped-for-bob")

    def test_unknown_creator(self, team_vault):
        with pytest.raises(NotFound):
            team_vault.create_vault("acme", "dev", b"dev-public", "ghost", b"k")
        with pytest.raises(NotFound):
            team_vault.get_vault("acme", "dev")

    def test_missing_public_key(self, team_vault):
        with pytest.raises(InvalidInput) as exc_info:
            team_vault.create_vault("acme", "dev", b"", "alice", b"k")
        assert "public_key" in exc_info.value.field_errors


class TestAddMember:
    """Granting access."""

    def test_add_then_repeat_conflicts(self, team_vault):
        team_vault.add_member("acme", "ops", "bob", b"wrapped-for-bob")

        with pytest.raises(Conflict) as exc_info:
            team_vault.add_member("acme", "ops", "bob", b"replacement")
        assert exc_info.value.public_message == "User bob is already in vault"

        bobs = [m for m in team_vault.list_members("acme", "ops") if m.user == "bob"]
        assert len(bobs) == 1
        assert bobs[0].key == b"wrapped-for-bob"

    def test_other_letter_case_is_same_member(self, team_vault):
        team_vault.add_member("acme", "ops", "bob", b"wrapped-for-bob")

        with pytest.raises(Conflict):
            team_vault.add_member("acme", "ops", "BOB", b"replacement")

        bobs = [m for m in team_vault.list_members("acme", "ops") if m.user.lower() == "bob"]
        assert [(m.user, m.key) for m in bobs] == [("bob", b"wrapped-for-bob")]

    def test_username_stored_canonical(self, team_vault):
        member = team_vault.add_member("acme", "ops", " Bob ", b"b")
        assert member.user == "bob"
        assert team_vault.get_member("acme", "ops", "bob").key == b"b"

    def test_members_listed_in_order(self, team_vault):
        team_vault.add_member("acme", "ops", "carol", b"c")
        team_vault.add_member("acme", "ops", "bob", b"b")
        assert [m.user for m in team_vault.list_members("acme", "ops")] == ["alice", "bob", "carol"]

    def test_concurrent_adds_yield_one_success(self, team_vault):
        def add(i):
            try:
                team_vault.add_member("acme", "ops", "bob", f"key-{i}".encode())
                return "ok"
            except Conflict:
                return "conflict"

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(add, range(8)))

        assert results.count("ok") == 1
        assert results.count("conflict") == 7
        assert len(team_vault.list_members("acme", "ops")) == 2

    @pytest.mark.parametrize("team,vault,user,key,field", [
        ("", "ops", "bob", b"k", "team"),
        ("acme", "", "bob", b"k", "vault"),
        ("acme", "ops", "", b"k", "user"),
        ("acme", "ops", "bob", b"", "key"),
    ])
    def test_empty_fields(self, team_vault, team, vault, user, key, field):
        with pytest.raises(InvalidInput) as exc_info:
            team_vault.add_member(team, vault, user, key)
        assert field in exc_info.value.field_errors

    def test_unknown_vault(self, team_vault):
        with pytest.raises(NotFound):
            team_vault.add_member("acme", "nope", "bob", b"k")

    def test_unknown_user(self, team_vault):
        with pytest.raises(NotFound):
            team_vault.add_member("acme", "ops", "ghost", b"k")

    def test_key_not_in_repr(self, team_vault):
        member = team_vault.add_member("acme", "ops", "bob", b"very-secret-wrapped-key")
        assert "very-secret-wrapped-key" not in repr(member)


class TestRemoveMember:
    """Revoking access."""

    def test_remove(self, team_vault):
        team_vault.add_member("acme", "ops", "bob", b"b")
        team_vault.remove_member("acme", "ops", "bob")
        assert not team_vault.has_access("acme", "ops", "bob")
        with pytest.raises(NotFound):
            team_vault.get_member("acme", "ops", "bob")

    def test_remove_non_member(self, team_vault):
        with pytest.raises(NotFound):
            team_vault.remove_member("acme", "ops", "bob")

    def test_member_can_be_re_added(self, team_vault):
        team_vault.add_member("acme", "ops", "bob", b"old")
        team_vault.remove_member("acme", "ops", "bob")
        team_vault.add_member("acme", "ops", "bob", b"new")
        assert team_vault.get_member("acme", "ops", "bob").key == b"new"


class TestLookups:
    def test_lookups_ignore_letter_case(self, team_vault):
        team_vault.add_member("acme", "ops", "bob", b"b")
        assert team_vault.has_access("acme", "ops", "BOB")
        assert team_vault.get_member("acme", "ops", "Bob").key == b"b"
        assert [m.vault for m in team_vault.vaults_for_user("BOB")] == ["ops", "default"]

        team_vault.remove_member("acme", "ops", "BOB")
        assert not team_vault.has_access("acme", "ops", "bob")

    def test_vaults_for_user(self, team_vault):
        team_vault.create_vault("acme", "dev", b"dev-public", "bob", b"bob-dev")
        team_vault.add_member("acme", "ops", "bob", b"bob-ops")
        held = team_vault.vaults_for_user("bob")
        # bob's personal vault from registration is included
        assert [(m.team, m.vault) for m in held] == [
            ("acme", "dev"), ("acme", "ops"), ("bob", "default"),
        ]

    def test_has_access(self, team_vault):
        assert team_vault.has_access("acme", "ops", "alice")
        assert not team_vault.has_access("acme", "ops", "carol")
        assert not team_vault.has_access("acme", "missing", "alice")


class TestOpaqueKeys:
    """The server returns wrapped keys byte for byte."""

    def test_client_wrapped_key_round_trip(self, team_vault):
        vault_secret = os.urandom(32)
        bob_private = X25519PrivateKey.generate()
        blob = wrap_for(bob_private.public_key(), vault_secret)

        team_vault.add_member("acme", "ops", "bob", blob)
        stored = team_vault.get_member("acme", "ops", "bob").key

        assert stored == blob
        assert unwrap_with(bob_private, stored) == vault_secret

    def test_arbitrary_bytes_accepted(self, team_vault):
        blob = bytes(range(256))
        team_vault.add_member("acme", "ops", "bob", blob)
        assert team_vault.get_member("acme", "ops", "bob").key == blob


class TestSchemaDependency:
    """Membership rows need the users table of a CredentialStore."""

    def test_writes_fail_until_users_table_exists(self, tmp_path):
        distributor = VaultKeyDistributor(Database(tmp_path / "bare.db"))

        with pytest.raises(StorageError):
            distributor.create_vault("acme", "ops", b"ops-public", "alice", b"k")
        with pytest.raises(NotFound):
            distributor.get_vault("acme", "ops")
