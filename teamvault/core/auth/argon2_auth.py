"""
Argon2id Password Hashing
=========================

Implements password hashing using Argon2id via argon2-cffi.

Security Properties:
- Memory-hard (resistant to GPU/ASIC attacks)
- Salt automatically managed and embedded in the encoded hash
- Constant-time verification

Parameters (OWASP 2023 recommendations):
- memory_cost: 102400 KiB (100 MB)
- time_cost: 2 iterations
- parallelism: 4 threads

References:
- RFC 9106: Argon2 Memory-Hard Function
- OWASP Password Storage Cheat Sheet
"""

from __future__ import annotations

import warnings
from typing import Final

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from teamvault.core.config import SecurityWarning


ARGON2_MEMORY_COST: Final[int] = 102400  # 100 MB in KiB
ARGON2_TIME_COST: Final[int] = 2
ARGON2_PARALLELISM: Final[int] = 4
ARGON2_HASH_LENGTH: Final[int] = 32  # 256 bits
ARGON2_SALT_LENGTH: Final[int] = 16  # 128 bits

# Below these values hashing still works but no longer meets the recommendation
_RECOMMENDED_MIN_MEMORY_COST: Final[int] = 65536
_RECOMMENDED_MIN_TIME_COST: Final[int] = 2


class Argon2Hasher:
    """
    Argon2id password hasher with secure defaults.

    Usage:
        hasher = Argon2Hasher()

        encoded = hasher.hash("user_password")
        store(encoded)

        is_valid = hasher.verify("user_password", encoded)

    Security Notes:
        - Weak parameters are accepted (test suites need fast hashing) but
          emit a SecurityWarning
        - verify() never raises for a mismatch or a corrupt hash
    """

    __slots__ = ("_hasher", "_memory_cost", "_time_cost", "_parallelism")

    def __init__(
        self,
        memory_cost: int = ARGON2_MEMORY_COST,
        time_cost: int = ARGON2_TIME_COST,
        parallelism: int = ARGON2_PARALLELISM,
        hash_length: int = ARGON2_HASH_LENGTH,
        salt_length: int = ARGON2_SALT_LENGTH,
    ) -> None:
        if parallelism < 1:
            raise ValueError("parallelism must be at least 1")
        if time_cost < 1:
            raise ValueError("time_cost must be at least 1")
        if memory_cost < 8 * parallelism:
            raise ValueError("memory_cost must be at least 8 KiB per lane")
        if hash_length < 16:
            raise ValueError("hash_length must be at least 16 bytes")
        if salt_length < 8:
            raise ValueError("salt_length must be at least 8 bytes")

        if memory_cost < _RECOMMENDED_MIN_MEMORY_COST or time_cost < _RECOMMENDED_MIN_TIME_COST:
            warnings.warn(
                "Argon2 parameters are below the OWASP recommendation.",
                SecurityWarning,
                stacklevel=2,
            )

        self._memory_cost = memory_cost
        self._time_cost = time_cost
        self._parallelism = parallelism
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=hash_length,
            salt_len=salt_length,
            type=Type.ID,
        )

    @property
    def parameters(self) -> dict[str, int]:
        """Get current hashing parameters."""
        return {
            "memory_cost": self._memory_cost,
            "time_cost": self._time_cost,
            "parallelism": self._parallelism,
        }

    def hash(self, password: str) -> str:
        """
        Hash a password.

        Returns:
            Encoded ``$argon2id$...`` string for storage
        """
        if not password:
            raise ValueError("Password cannot be empty")
        return self._hasher.hash(password)

    def verify(self, password: str, encoded: str) -> bool:
        """Verify a password against an encoded hash."""
        if not password or not encoded:
            # Spend the same work as a real verification
            self.hash(password or "-")
            return False
        try:
            return self._hasher.verify(encoded, password)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            return False

    def needs_rehash(self, encoded: str) -> bool:
        """Check if a hash was produced with different parameters."""
        try:
            return self._hasher.check_needs_rehash(encoded)
        except InvalidHashError:
            return True
