"""
keyexchange - Envelope codec tests.

Tests RSA-OAEP message encryption, the size limit and the uniform
decryption failure.
"""

import base64
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from keyexchange import envelope
from keyexchange.constants import GENERIC_DECRYPTION_MESSAGE
from keyexchange.crypto import load_public_key
from keyexchange.envelope import MessageEnvelope
from keyexchange.errors import DecryptionError, EncryptionError, ErrorCode
from keyexchange.store import UserRecord


def test_encrypt_decrypt(key_material):
    """Test a message decrypts to exactly the original text."""
    ciphertext = envelope.encrypt("hello alice", key_material["public_pem"])

    assert ciphertext != "hello alice"
    assert envelope.decrypt(ciphertext, key_material["private_key"]) == "hello alice"


def test_unicode_message(key_material):
    """Test non-ASCII text survives encryption."""
    plaintext = "Grüße 你好 🔒"
    ciphertext = envelope.encrypt(plaintext, key_material["public_pem"])
    assert envelope.decrypt(ciphertext, key_material["private_key"]) == plaintext


def test_encryption_is_randomized(key_material):
    """Test OAEP produces different ciphertexts for the same message."""
    first = envelope.encrypt("same", key_material["public_pem"])
    second = envelope.encrypt("same", key_material["public_pem"])
    assert first != second


def test_max_plaintext_size(key_material):
    """Test the OAEP-SHA256 limit for common key sizes."""
    assert envelope.max_plaintext_size(SimpleNamespace(key_size=4096)) == 446
    assert envelope.max_plaintext_size(SimpleNamespace(key_size=2048)) == 190
    assert envelope.max_plaintext_size(load_public_key(key_material["public_pem"])) == 190


def test_message_at_limit(key_material):
    """Test a message of exactly the limit is accepted."""
    plaintext = "x" * 190
    ciphertext = envelope.encrypt(plaintext, key_material["public_pem"])
    assert envelope.decrypt(ciphertext, key_material["private_key"]) == plaintext


def test_message_too_large(key_material):
    """Test oversized messages are rejected, never truncated."""
    with pytest.raises(EncryptionError) as exc_info:
        envelope.encrypt("x" * 191, key_material["public_pem"])

    error = exc_info.value
    assert error.code == ErrorCode.E303_MESSAGE_TOO_LARGE
    assert error.details == {"size": 191, "limit": 190, "key_size": 2048}


def test_limit_counts_utf8_bytes(key_material):
    """Test the limit applies to encoded bytes, not characters."""
    with pytest.raises(EncryptionError):
        envelope.encrypt("é" * 96, key_material["public_pem"])


def test_encrypt_with_malformed_key():
    """Test a bad recipient key raises EncryptionError."""
    with pytest.raises(EncryptionError):
        envelope.encrypt("hello", "not a key")


def test_decrypt_with_wrong_key(key_material, other_key_material):
    """Test decrypting under the wrong key fails generically."""
    ciphertext = envelope.encrypt("hello alice", key_material["public_pem"])

    with pytest.raises(DecryptionError) as exc_info:
        envelope.decrypt(ciphertext, other_key_material["private_key"])

    error = exc_info.value
    assert error.message == GENERIC_DECRYPTION_MESSAGE
    assert error.details == {}
    assert error.__cause__ is None
    assert error.__suppress_context__ is True


def test_decryption_failures_are_indistinguishable(key_material):
    """Test every failure cause yields the same error text."""
    ciphertext = envelope.encrypt("hello alice", key_material["public_pem"])
    raw = bytearray(base64.b64decode(ciphertext))
    raw[-1] ^= 0x01
    tampered = base64.b64encode(bytes(raw)).decode("ascii")

    messages = set()
    for bad in ("!!not base64!!", tampered, base64.b64encode(b"short").decode("ascii"), ""):
        with pytest.raises(DecryptionError) as exc_info:
            envelope.decrypt(bad, key_material["private_key"])
        messages.add(str(exc_info.value))

    assert len(messages) == 1


def test_seal_envelope(key_material, other_key_material):
    """Test envelopes capture both parties and both keys."""
    bob = UserRecord("bob", other_key_material["public_pem"], "hash")
    alice = UserRecord("alice", key_material["public_pem"], "hash")

    sealed = envelope.seal_envelope(bob, alice, "hello alice")

    assert sealed.sender_id == "bob"
    assert sealed.recipient_id == "alice"
    assert sealed.sender_public_key_pem == other_key_material["public_pem"]
    assert sealed.recipient_public_key_pem == key_material["public_pem"]
    assert sealed.sent_time.tzinfo is not None
    assert len(sealed.message_id) == 32
    assert envelope.decrypt(sealed.ciphertext, key_material["private_key"]) == "hello alice"


def test_envelope_is_immutable():
    """Test envelopes cannot be modified after creation."""
    sealed = MessageEnvelope("bob", "alice", "pk-b", "pk-a", "ct")
    with pytest.raises(AttributeError):
        sealed.ciphertext = "other"


def test_envelope_from_dict_normalizes_time():
    """Test stored timestamps come back as aware UTC datetimes."""
    naive = datetime(2025, 1, 1, 12, 0, 0)
    stored = MessageEnvelope("bob", "alice", "pk-b", "pk-a", "ct", sent_time=naive.replace(tzinfo=timezone.utc)).to_dict()

    stored["sent_time"] = naive
    assert MessageEnvelope.from_dict(stored).sent_time == naive.replace(tzinfo=timezone.utc)

    stored["sent_time"] = "2025-01-01T13:00:00+01:00"
    assert MessageEnvelope.from_dict(stored).sent_time == naive.replace(tzinfo=timezone.utc)
    assert MessageEnvelope.from_dict(stored).sent_time.utcoffset() == timedelta(0)
