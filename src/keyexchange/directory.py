"""
keyexchange - Directory Service.

Maps usernames to their published public key and password hash. Every
write to an existing record is authenticated with the record's current
password; nothing is changed when authentication fails.
"""

import logging
from typing import Optional

from . import crypto
from .errors import AuthenticationError, NotFoundError, ValidationError
from .passwords import PasswordHasher
from .store import CredentialStore, UserRecord
from .utils import validate_username

logger = logging.getLogger(__name__)


class DirectoryService:
    """Public key and credential directory on top of a CredentialStore."""

    def __init__(self, users: CredentialStore, hasher: PasswordHasher):
        self.users = users
        self.hasher = hasher

    def register(
        self,
        username: str,
        public_key_pem: str,
        password_hash: str,
        current_password: Optional[str] = None,
    ) -> UserRecord:
        """
        Create or update the record for a username.

        Args:
            username: Natural key of the record
            public_key_pem: RSA public key to publish
            password_hash: Argon2 hash to store
            current_password: Required when the record already exists

        Raises:
            ValidationError: If the username or key is malformed
            AuthenticationError: If the record exists and current_password
                does not verify
        """
        _check_username(username)
        crypto.load_public_key(public_key_pem)

        existing = self.users.find_by_username(username)
        if existing is not None:
            if current_password is None or not self.hasher.verify(existing.password_hash, current_password):
                logger.warning(f"Rejected re-registration of {username}: bad password")
                raise AuthenticationError(
                    f"Username '{username}' is taken and the password does not match",
                    {"username": username},
                )

        record = self.users.upsert(
            username,
            {"public_key_pem": public_key_pem, "password_hash": password_hash},
        )
        logger.info(
            f"{'Updated' if existing else 'Registered'} {username} "
            f"(fingerprint {crypto.public_key_fingerprint(public_key_pem)[:16]})"
        )
        return record

    def get_user(self, username: str) -> UserRecord:
        """
        Fetch a user record.

        Raises:
            NotFoundError: If no record exists
        """
        _check_username(username)
        record = self.users.find_by_username(username)
        if record is None:
            raise NotFoundError(f"User '{username}' not found", {"username": username})
        return record

    def lookup_public_key(self, username: str) -> str:
        """Published public key of a user (NotFoundError if unknown)."""
        return self.get_user(username).public_key_pem

    def authenticate(self, username: str, password: str) -> UserRecord:
        """
        Verify a password for a username.

        Upgrades the stored hash in place when it was produced with older
        cost parameters.

        Raises:
            NotFoundError: If the user does not exist
            AuthenticationError: If the password does not verify
        """
        record = self.get_user(username)
        if not self.hasher.verify(record.password_hash, password):
            logger.warning(f"Authentication failed for {username}")
            raise AuthenticationError("Incorrect password", {"username": username})

        if self.hasher.needs_rehash(record.password_hash):
            record = self.users.upsert(username, {"password_hash": self.hasher.hash(password)})
            logger.info(f"Password hash upgraded for {username}")

        logger.debug(f"Authenticated {username}")
        return record

    def publish_public_key(self, username: str, password: str, public_key_pem: str) -> UserRecord:
        """
        Replace the published public key of an existing user.

        Raises:
            NotFoundError, AuthenticationError: See authenticate
            ValidationError: If the key is malformed
        """
        crypto.load_public_key(public_key_pem)
        self.authenticate(username, password)
        record = self.users.upsert(username, {"public_key_pem": public_key_pem})
        logger.info(
            f"Published public key for {username} "
            f"(fingerprint {crypto.public_key_fingerprint(public_key_pem)[:16]})"
        )
        return record


def _check_username(username: str) -> None:
    if not validate_username(username):
        raise ValidationError(
            "Username must be 1-64 characters without whitespace or slashes",
            {"username": username},
        )
