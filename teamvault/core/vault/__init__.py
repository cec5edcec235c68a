"""
Vault key custody: public keys and per-member wrapped secrets, never decrypted.
"""

from teamvault.core.vault.key_distributor import Vault, VaultKeyDistributor, VaultUser

__all__ = ["Vault", "VaultKeyDistributor", "VaultUser"]
