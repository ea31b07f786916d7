"""
keyexchange - Messenger.

The user-level flows behind each CLI command. Every flow takes its secrets
as plain parameters; prompting belongs to the CLI. Each call is one logical
transaction against the store, and a flow that fails part way stores no
envelope.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from . import crypto, envelope
from .constants import DEFAULT_KEY_SIZE
from .directory import DirectoryService
from .envelope import MessageEnvelope
from .errors import AuthenticationError, KeyFileNotFoundError, NotFoundError, ValidationError
from .keys import KeyManager
from .store import Store, UserRecord
from .utils import validate_username

logger = logging.getLogger(__name__)


@dataclass
class KeyGenerationResult:
    """Outcome of generate-keys."""

    record: UserRecord
    fingerprint: str
    generated: bool
    created: bool
    archive_dir: Optional[Path] = None

    @property
    def username(self) -> str:
        return self.record.username

    @property
    def public_key_pem(self) -> str:
        return self.record.public_key_pem


@dataclass
class ReadResult:
    """A decrypted envelope."""

    envelope: MessageEnvelope
    plaintext: str
    index: Optional[int] = None


class Messenger:
    """Composes the Key Manager, Directory Service, Envelope Codec and store."""

    def __init__(
        self,
        store: Store,
        key_manager: KeyManager,
        directory: DirectoryService,
        key_size: int = DEFAULT_KEY_SIZE,
    ):
        self.store = store
        self.key_manager = key_manager
        self.directory = directory
        self.key_size = key_size

    def generate_keys(
        self,
        username: str,
        passphrase: str,
        password: Optional[str] = None,
        rotate: bool = False,
    ) -> KeyGenerationResult:
        """
        Create or reuse a user's key pair and register it in the directory.

        Local key material is reused when present; a new pair is generated
        for new users, or for existing users only when rotate is set. The
        password authenticating the directory record defaults to the
        passphrase.

        Args:
            username: Directory username
            passphrase: Secret sealing the local private key
            password: Directory password (defaults to passphrase)
            rotate: Archive existing local keys and publish a fresh pair

        Raises:
            ValidationError: Malformed username or empty secrets
            AuthenticationError: The record exists and the password is wrong
            InvalidPassphraseError: Local keys exist and the passphrase is wrong
            KeyFileNotFoundError: The record exists, no local keys, no rotate
        """
        if not validate_username(username):
            raise ValidationError(
                "Username must be 1-64 characters without whitespace or slashes",
                {"username": username},
            )
        if not passphrase:
            raise ValidationError("Passphrase must not be empty")
        if password is None:
            password = passphrase

        existing = self.directory.users.find_by_username(username)
        if existing is not None and not self.directory.hasher.verify(existing.password_hash, password):
            logger.warning(f"generate-keys rejected for {username}: bad password")
            raise AuthenticationError(
                f"Username '{username}' is taken and the password does not match",
                {"username": username},
            )

        has_local = self.key_manager.has_key_pair(username)
        archive_dir = None
        generated = False

        if has_local and not rotate:
            public_pem, _ = self.key_manager.load_key_pair(username, passphrase)
            logger.info(f"Reusing local key pair for {username}")
        elif existing is not None and not has_local and not rotate:
            raise KeyFileNotFoundError(
                f"'{username}' is registered but has no local key pair; "
                "use --rotate to generate and publish a new one",
                {"username": username, "keys_dir": str(self.key_manager.keys_dir)},
            )
        else:
            if has_local:
                archive_dir = self.key_manager.archive_key_pair(username)
            public_pem = self.key_manager.generate_key_pair(username, passphrase, self.key_size)
            generated = True

        record = self.directory.register(
            username,
            public_pem,
            self.directory.hasher.hash(password),
            current_password=password if existing is not None else None,
        )
        return KeyGenerationResult(
            record=record,
            fingerprint=crypto.public_key_fingerprint(public_pem),
            generated=generated,
            created=existing is None,
            archive_dir=archive_dir,
        )

    def share_public_key(self, username: str, password: str) -> UserRecord:
        """
        Publish the local public key of username to the directory.

        Raises:
            KeyFileNotFoundError: No local key pair
            NotFoundError, AuthenticationError: See DirectoryService.authenticate
        """
        public_pem = self.key_manager.read_public_key(username)
        return self.directory.publish_public_key(username, password, public_pem)

    def send_message(self, sender: str, password: str, recipient: str, plaintext: str) -> MessageEnvelope:
        """
        Encrypt a message for recipient and store the envelope.

        Raises:
            NotFoundError: Unknown sender or recipient
            AuthenticationError: Wrong sender password
            ValidationError: Empty message
            EncryptionError: Message too large or recipient key unusable
        """
        sender_record = self.directory.authenticate(sender, password)
        recipient_record = self.directory.get_user(recipient)
        if not plaintext:
            raise ValidationError("Message must not be empty")

        sealed = envelope.seal_envelope(sender_record, recipient_record, plaintext)
        self.store.messages.insert(sealed)
        logger.info(f"Message {sealed.message_id} sent from {sender} to {recipient}")
        return sealed

    def list_messages(self, username: str, password: str, sender: Optional[str] = None) -> List[MessageEnvelope]:
        """Envelopes addressed to an authenticated user, oldest first."""
        self.directory.authenticate(username, password)
        messages = self.store.messages.find_by_recipient(username, sender_id=sender)
        logger.debug(f"{len(messages)} message(s) for {username}")
        return messages

    def read_message(
        self,
        username: str,
        password: str,
        passphrase: str,
        selector: Union[int, str],
    ) -> ReadResult:
        """
        Decrypt one envelope addressed to an authenticated user.

        Args:
            selector: 1-based position in the inbox (int) or a message id (str)

        Raises:
            NotFoundError: No such message for this user
            InvalidPassphraseError: Wrong passphrase for the local private key
            DecryptionError: The envelope cannot be decrypted
        """
        self.directory.authenticate(username, password)
        found, index = self._select(username, selector)
        private_key = self.key_manager.load_private_key(username, passphrase)
        plaintext = envelope.decrypt(found.ciphertext, private_key)
        logger.info(f"Message {found.message_id} read by {username}")
        return ReadResult(envelope=found, plaintext=plaintext, index=index)

    def _select(self, username: str, selector: Union[int, str]):
        if isinstance(selector, int) and not isinstance(selector, bool):
            inbox = self.store.messages.find_by_recipient(username)
            if not 1 <= selector <= len(inbox):
                raise NotFoundError(
                    f"No message #{selector}; inbox holds {len(inbox)}",
                    {"index": selector, "count": len(inbox)},
                )
            return inbox[selector - 1], selector

        found = self.store.messages.find_by_id(str(selector))
        if found is None or found.recipient_id != username:
            raise NotFoundError(f"No message with id '{selector}'", {"message_id": str(selector)})
        return found, None

    def download_public_key(self, username: str) -> Path:
        """Fetch a user's published public key and save it under contacts/."""
        public_pem = self.directory.lookup_public_key(username)
        return self.key_manager.save_contact_key(username, public_pem)
