"""
keyexchange - Adaptive password hashing.

Passwords authenticating a username against the directory are stored as
Argon2id PHC strings produced by argon2-cffi. Verification is always done
by the library's verify function, never by comparing hash strings.
"""

import logging
from typing import Optional

from argon2 import PasswordHasher as _Argon2Hasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from .constants import HASH_MEMORY_COST, HASH_PARALLELISM, HASH_TIME_COST
from .errors import ValidationError

logger = logging.getLogger(__name__)


class PasswordHasher:
    """Hashes and verifies directory passwords with Argon2id."""

    def __init__(
        self,
        time_cost: int = HASH_TIME_COST,
        memory_cost: int = HASH_MEMORY_COST,
        parallelism: int = HASH_PARALLELISM,
    ):
        self._hasher = _Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
        )

    @classmethod
    def from_config(cls, config) -> "PasswordHasher":
        """Build a hasher from the [security] section of a Config."""
        return cls(
            time_cost=config.get("security", "hash_time_cost", HASH_TIME_COST),
            memory_cost=config.get("security", "hash_memory_cost", HASH_MEMORY_COST),
            parallelism=config.get("security", "hash_parallelism", HASH_PARALLELISM),
        )

    def hash(self, password: str) -> str:
        """
        Hash a password with a fresh random salt.

        Raises:
            ValidationError: If the password is empty
        """
        if not password:
            raise ValidationError("Password must not be empty")
        return self._hasher.hash(password)

    def verify(self, password_hash: Optional[str], password: str) -> bool:
        """
        Check a password against a stored hash.

        Returns False for a mismatch and for a stored value that is not a
        valid Argon2 hash.
        """
        if not password_hash or password is None:
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (VerificationError, InvalidHashError) as e:
            logger.warning(f"Stored password hash could not be verified: {type(e).__name__}")
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        """Whether a stored hash was produced with different cost parameters."""
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except (InvalidHashError, ValueError):
            return True
