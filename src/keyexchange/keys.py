"""
keyexchange - Local key material management.

Each local identity keeps its key pair in its own directory:

    <keys_dir>/identities/<username>/private_key.json   sealed private key (0600)
    <keys_dir>/identities/<username>/public_key.pem     PKCS#1 public key
    <keys_dir>/identities/<username>/archive/<stamp>/   replaced by rotation
    <keys_dir>/contacts/<username>.pem                  downloaded public keys

Private key material never leaves this directory and is never sent to the
store.
"""

import logging
import os
import shutil
from pathlib import Path
from typing import Optional, Tuple

from cryptography.hazmat.primitives.asymmetric import rsa

from . import crypto
from .constants import (
    ARCHIVE_DIRNAME,
    CONTACTS_DIRNAME,
    DEFAULT_KEY_SIZE,
    IDENTITIES_DIRNAME,
    PRIVATE_KEY_FILENAME,
    PUBLIC_KEY_FILENAME,
)
from .errors import ErrorCode, KeyFileNotFoundError, KeyMaterialError, ValidationError
from .utils import utc_now, validate_username

logger = logging.getLogger(__name__)


def _write_atomic(path: Path, data: bytes, mode: int) -> None:
    """Write to a temp file, chmod, then rename over the target."""
    temp_file = path.with_name(path.name + ".tmp")
    fd = os.open(temp_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.chmod(temp_file, mode)
        os.replace(temp_file, path)
    except OSError:
        if temp_file.exists():
            temp_file.unlink()
        raise


def _read_failed(what: str, path: Path, error: Exception) -> KeyMaterialError:
    logger.error(f"Failed to read {what} at {path}: {error}")
    return KeyMaterialError(f"Failed to read {what} at {path}: {error}", {"path": str(path)})


class KeyManager:
    """Manages local RSA key material under a keys directory."""

    def __init__(self, keys_dir: Path):
        self.keys_dir = Path(keys_dir).expanduser()

    def _identity_dir(self, username: str) -> Path:
        if not validate_username(username):
            raise ValidationError("Invalid username", {"username": username})
        return self.keys_dir / IDENTITIES_DIRNAME / username

    def private_key_path(self, username: str) -> Path:
        return self._identity_dir(username) / PRIVATE_KEY_FILENAME

    def public_key_path(self, username: str) -> Path:
        return self._identity_dir(username) / PUBLIC_KEY_FILENAME

    def has_key_pair(self, username: str) -> bool:
        """Check if both key files exist for a local identity."""
        return self.private_key_path(username).exists() and self.public_key_path(username).exists()

    def generate_key_pair(self, username: str, passphrase: str, bits: int = DEFAULT_KEY_SIZE) -> str:
        """
        Generate a key pair for a local identity and write it to disk.

        Existing material is overwritten; callers archive it first.

        Returns:
            The public key PEM

        Raises:
            KeyGenerationError: If generation fails
            KeyMaterialError: If the files cannot be written
        """
        public_pem, sealed = crypto.generate_key_pair(passphrase, bits)
        self._write_key_pair(username, public_pem, sealed)
        logger.info(
            f"Key pair generated for {username} "
            f"(fingerprint {crypto.public_key_fingerprint(public_pem)[:16]})"
        )
        return public_pem

    def _write_key_pair(self, username: str, public_pem: str, sealed: bytes) -> None:
        identity_dir = self._identity_dir(username)
        try:
            identity_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(identity_dir, 0o700)
            _write_atomic(identity_dir / PRIVATE_KEY_FILENAME, sealed, 0o600)
            _write_atomic(identity_dir / PUBLIC_KEY_FILENAME, public_pem.encode("ascii"), 0o644)
        except OSError as e:
            logger.error(f"Failed to save key pair for {username}: {e}")
            raise KeyMaterialError(
                f"Failed to save key pair: {e}",
                {"path": str(identity_dir)},
                ErrorCode.E204_KEY_SAVE_FAILED,
            ) from e

    def read_public_key(self, username: str) -> str:
        """
        Read the local public key of an identity.

        Raises:
            KeyFileNotFoundError: If no public key file exists
        """
        path = self.public_key_path(username)
        try:
            return path.read_text(encoding="ascii")
        except FileNotFoundError:
            raise KeyFileNotFoundError(
                f"No public key for '{username}'; run generate-keys first",
                {"path": str(path)},
            ) from None
        except (OSError, UnicodeDecodeError) as e:
            raise _read_failed("public key", path, e) from e

    def read_sealed_private_key(self, username: str) -> bytes:
        """
        Read the sealed private key of an identity.

        Raises:
            KeyFileNotFoundError: If no private key file exists
        """
        path = self.private_key_path(username)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise KeyFileNotFoundError(
                f"No private key for '{username}'; run generate-keys first",
                {"path": str(path)},
            ) from None
        except OSError as e:
            raise _read_failed("private key", path, e) from e

    def load_private_key(self, username: str, passphrase: str) -> rsa.RSAPrivateKey:
        """
        Load and unseal the private key of an identity.

        Raises:
            KeyFileNotFoundError: If the key file is missing
            InvalidPassphraseError: If the passphrase is wrong or the file corrupted
        """
        sealed = self.read_sealed_private_key(username)
        private_key = crypto.load_private_key(sealed, passphrase)
        logger.debug(f"Private key unsealed for {username}")
        return private_key

    def load_key_pair(self, username: str, passphrase: str) -> Tuple[str, rsa.RSAPrivateKey]:
        """
        Load both halves and check that they belong together.

        Raises:
            KeyMaterialError: If the public key file does not match the private key
        """
        public_pem = self.read_public_key(username)
        private_key = self.load_private_key(username, passphrase)
        if crypto.public_key_to_pem(private_key.public_key()) != crypto.public_key_to_pem(
            crypto.load_public_key(public_pem)
        ):
            raise KeyMaterialError(
                f"Public key file for '{username}' does not match its private key",
                {"path": str(self.public_key_path(username))},
            )
        return public_pem, private_key

    def archive_key_pair(self, username: str) -> Optional[Path]:
        """
        Move existing key material into the identity's archive directory.

        Returns:
            The archive directory, or None if there was nothing to archive
        """
        identity_dir = self._identity_dir(username)
        files = [identity_dir / PRIVATE_KEY_FILENAME, identity_dir / PUBLIC_KEY_FILENAME]
        existing = [path for path in files if path.exists()]
        if not existing:
            return None

        stamp = utc_now().strftime("%Y%m%dT%H%M%S%fZ")
        archive_dir = identity_dir / ARCHIVE_DIRNAME / stamp
        try:
            archive_dir.mkdir(parents=True, exist_ok=False)
            for path in existing:
                shutil.move(str(path), str(archive_dir / path.name))
        except OSError as e:
            raise KeyMaterialError(
                f"Failed to archive key pair: {e}",
                {"path": str(archive_dir)},
                ErrorCode.E204_KEY_SAVE_FAILED,
            ) from e
        logger.info(f"Key pair for {username} archived to {archive_dir}")
        return archive_dir

    def contact_key_path(self, username: str) -> Path:
        if not validate_username(username):
            raise ValidationError("Invalid username", {"username": username})
        return self.keys_dir / CONTACTS_DIRNAME / f"{username}.pem"

    def save_contact_key(self, username: str, public_key_pem: str) -> Path:
        """
        Save another user's public key for offline use.

        Raises:
            ValidationError: If the key is malformed
        """
        crypto.load_public_key(public_key_pem)
        path = self.contact_key_path(username)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            _write_atomic(path, public_key_pem.encode("ascii"), 0o644)
        except OSError as e:
            raise KeyMaterialError(
                f"Failed to save public key: {e}",
                {"path": str(path)},
                ErrorCode.E204_KEY_SAVE_FAILED,
            ) from e
        logger.info(f"Public key of {username} saved to {path}")
        return path

    def read_contact_key(self, username: str) -> str:
        """
        Read a previously downloaded public key.

        Raises:
            KeyFileNotFoundError: If the key was never downloaded
        """
        path = self.contact_key_path(username)
        try:
            return path.read_text(encoding="ascii")
        except FileNotFoundError:
            raise KeyFileNotFoundError(
                f"No downloaded public key for '{username}'",
                {"path": str(path)},
            ) from None
        except (OSError, UnicodeDecodeError) as e:
            raise _read_failed("downloaded public key", path, e) from e
