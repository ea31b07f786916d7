"""
keyexchange - Envelope Codec.

Messages are encrypted directly under the recipient's RSA public key with
OAEP (MGF1 + SHA-256) and stored base64 encoded. There is no chunking and no
hybrid scheme: the plaintext must fit in a single RSA block, which for OAEP
with SHA-256 is k - 66 bytes (446 bytes for a 4096-bit key). Longer messages
are rejected with EncryptionError rather than truncated.

Decryption failures are reported with one generic error whatever the cause
(bad base64, padding failure, wrong key, invalid UTF-8).
"""

import base64
import binascii
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from . import crypto
from .errors import DecryptionError, EncryptionError, ErrorCode, ValidationError
from .utils import utc_now

logger = logging.getLogger(__name__)

_HASH_LENGTH = hashes.SHA256.digest_size


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


@dataclass(frozen=True)
class MessageEnvelope:
    """A stored, encrypted message plus routing metadata. Immutable."""

    sender_id: str
    recipient_id: str
    sender_public_key_pem: str
    recipient_public_key_pem: str
    ciphertext: str
    sent_time: datetime = field(default_factory=utc_now)
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        """Convert envelope to dictionary for storage."""
        return {
            "message_id": self.message_id,
            "sender_id": self.sender_id,
            "recipient_id": self.recipient_id,
            "sender_public_key_pem": self.sender_public_key_pem,
            "recipient_public_key_pem": self.recipient_public_key_pem,
            "ciphertext": self.ciphertext,
            "sent_time": self.sent_time,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "MessageEnvelope":
        """Create envelope from a stored dictionary."""
        sent_time = data["sent_time"]
        if isinstance(sent_time, str):
            sent_time = datetime.fromisoformat(sent_time)
        if sent_time.tzinfo is None:
            sent_time = sent_time.replace(tzinfo=timezone.utc)
        sent_time = sent_time.astimezone(timezone.utc)
        return MessageEnvelope(
            message_id=data["message_id"],
            sender_id=data["sender_id"],
            recipient_id=data["recipient_id"],
            sender_public_key_pem=data["sender_public_key_pem"],
            recipient_public_key_pem=data["recipient_public_key_pem"],
            ciphertext=data["ciphertext"],
            sent_time=sent_time,
        )


def max_plaintext_size(public_key: rsa.RSAPublicKey) -> int:
    """Largest plaintext in bytes that fits one OAEP-SHA256 block."""
    return public_key.key_size // 8 - 2 * _HASH_LENGTH - 2


def encrypt(plaintext: str, recipient_public_key_pem: str) -> str:
    """
    Encrypt a UTF-8 message under a recipient's public key.

    Args:
        plaintext: Message text
        recipient_public_key_pem: Recipient's RSA public key (PEM)

    Returns:
        Base64 ciphertext

    Raises:
        EncryptionError: If the key is malformed or the message is too large
    """
    try:
        public_key = crypto.load_public_key(recipient_public_key_pem)
    except ValidationError as e:
        raise EncryptionError(f"Recipient public key is unusable: {e.message}") from e

    data = plaintext.encode("utf-8")
    limit = max_plaintext_size(public_key)
    if len(data) > limit:
        raise EncryptionError(
            f"Message is {len(data)} bytes; a {public_key.key_size}-bit key holds at most {limit}",
            {"size": len(data), "limit": limit, "key_size": public_key.key_size},
            ErrorCode.E303_MESSAGE_TOO_LARGE,
        )

    try:
        ciphertext = public_key.encrypt(data, _oaep())
    except ValueError as e:
        raise EncryptionError(f"Encryption failed: {e}") from e
    return base64.b64encode(ciphertext).decode("ascii")


def decrypt(ciphertext_b64: str, private_key: rsa.RSAPrivateKey) -> str:
    """
    Decrypt a base64 ciphertext with the local private key.

    Raises:
        DecryptionError: For any failure, always with the same message
    """
    try:
        ciphertext = base64.b64decode(ciphertext_b64, validate=True)
        data = private_key.decrypt(ciphertext, _oaep())
        return data.decode("utf-8")
    except (ValueError, TypeError, binascii.Error, UnicodeDecodeError):
        raise DecryptionError() from None


def seal_envelope(sender, recipient, plaintext: str) -> MessageEnvelope:
    """
    Build an envelope addressed from one user record to another.

    Both public keys are captured as they are at send time.
    """
    ciphertext = encrypt(plaintext, recipient.public_key_pem)
    envelope = MessageEnvelope(
        sender_id=sender.username,
        recipient_id=recipient.username,
        sender_public_key_pem=sender.public_key_pem,
        recipient_public_key_pem=recipient.public_key_pem,
        ciphertext=ciphertext,
    )
    logger.debug(f"Sealed envelope {envelope.message_id} for {recipient.username}")
    return envelope
