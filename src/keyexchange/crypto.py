"""
keyexchange - RSA key material and private key sealing.

This module implements the primitives behind the Key Manager:
- RSA key pair generation (public exponent 65537, 4096 bits by default)
- PKCS#1 PEM encoding of public keys for the shared directory
- Sealing of private keys at rest: Argon2id derives a 256-bit key from the
  user's passphrase, AES-256-GCM encrypts the PKCS#8 PEM
- SHA-256 fingerprints of public keys for out-of-band verification

The unencrypted private key PEM only ever exists in memory; everything that
leaves this module is either public or sealed.

All cryptographic operations use well-tested, open-source libraries:
- cryptography library (Apache 2.0/BSD License)
- argon2-cffi (MIT License)
"""

import base64
import json
import logging
import os
from typing import Any, Dict, Tuple

from argon2.exceptions import HashingError
from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .constants import (
    DEFAULT_KEY_SIZE,
    MIN_KEY_SIZE,
    RSA_PUBLIC_EXPONENT,
    SEAL_FORMAT_VERSION,
    SEAL_KEY_SIZE,
    SEAL_MEMORY_COST,
    SEAL_NONCE_SIZE,
    SEAL_PARALLELISM,
    SEAL_SALT_SIZE,
    SEAL_TIME_COST,
)
from .errors import InvalidPassphraseError, KeyGenerationError, ValidationError

logger = logging.getLogger(__name__)

# Binds the ciphertext to its purpose
_SEAL_AAD = b"keyexchange-private-key-v1"


def generate_private_key(bits: int = DEFAULT_KEY_SIZE) -> rsa.RSAPrivateKey:
    """
    Generate an RSA private key.

    Raises:
        KeyGenerationError: If the key size is too small or the library fails
    """
    if bits < MIN_KEY_SIZE:
        raise KeyGenerationError(
            f"Key size must be at least {MIN_KEY_SIZE} bits",
            {"bits": bits},
        )
    try:
        return rsa.generate_private_key(public_exponent=RSA_PUBLIC_EXPONENT, key_size=bits)
    except (ValueError, UnsupportedAlgorithm, OSError) as e:
        raise KeyGenerationError(f"RSA key generation failed: {e}", {"bits": bits}) from e


def generate_key_pair(passphrase: str, bits: int = DEFAULT_KEY_SIZE) -> Tuple[str, bytes]:
    """
    Generate an RSA key pair and seal the private half immediately.

    Args:
        passphrase: Secret protecting the private key at rest
        bits: RSA modulus size

    Returns:
        (public_key_pem, sealed_private_key)

    Raises:
        ValidationError: If the passphrase is empty
        KeyGenerationError: If generation fails
    """
    if not passphrase:
        raise ValidationError("Passphrase must not be empty")

    private_key = generate_private_key(bits)
    public_pem = public_key_to_pem(private_key.public_key())
    sealed = seal_private_key(private_key, passphrase)
    logger.debug(f"Generated {bits}-bit RSA key pair {public_key_fingerprint(public_pem)[:16]}")
    return public_pem, sealed


def public_key_to_pem(public_key: rsa.RSAPublicKey) -> str:
    """Encode a public key as PKCS#1 PEM ("BEGIN RSA PUBLIC KEY")."""
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.PKCS1,
    ).decode("ascii")


def load_public_key(public_key_pem: str) -> rsa.RSAPublicKey:
    """
    Load an RSA public key from PEM (PKCS#1 or SubjectPublicKeyInfo).

    Raises:
        ValidationError: If the PEM is malformed or not an RSA key
    """
    if not public_key_pem:
        raise ValidationError("Public key must not be empty")
    try:
        data = public_key_pem.encode("ascii") if isinstance(public_key_pem, str) else public_key_pem
        key = serialization.load_pem_public_key(data)
    except (ValueError, TypeError, UnicodeEncodeError, UnsupportedAlgorithm) as e:
        raise ValidationError(f"Malformed public key: {e}") from e
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValidationError("Public key is not an RSA key")
    return key


def public_key_fingerprint(public_key_pem: str) -> str:
    """
    Generate a fingerprint of a public key using SHA-256 over its DER encoding.

    Users should compare fingerprints through a trusted channel before trusting
    a key downloaded from the directory.

    Returns a 64-character hexadecimal fingerprint.
    """
    der = load_public_key(public_key_pem).public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.PKCS1,
    )
    digest = hashes.Hash(hashes.SHA256())
    digest.update(der)
    return digest.finalize().hex()


def _derive_seal_key(passphrase: str, salt: bytes, kdf: Dict[str, Any]) -> bytes:
    """Derive the AES key protecting a private key with Argon2id."""
    return hash_secret_raw(
        secret=passphrase.encode("utf-8"),
        salt=salt,
        time_cost=int(kdf["time_cost"]),
        memory_cost=int(kdf["memory_cost"]),
        parallelism=int(kdf["parallelism"]),
        hash_len=SEAL_KEY_SIZE,
        type=Type.ID,
    )


def seal_private_key(private_key: rsa.RSAPrivateKey, passphrase: str) -> bytes:
    """
    Encrypt a private key with a passphrase using Argon2id and AES-256-GCM.

    The KDF parameters are stored alongside the ciphertext so files written
    with older defaults stay readable.

    Returns:
        UTF-8 JSON document with version, kdf, salt, nonce and ciphertext
    """
    if not passphrase:
        raise ValidationError("Passphrase must not be empty")

    kdf = {
        "name": "argon2id",
        "time_cost": SEAL_TIME_COST,
        "memory_cost": SEAL_MEMORY_COST,
        "parallelism": SEAL_PARALLELISM,
    }
    salt = os.urandom(SEAL_SALT_SIZE)
    key = _derive_seal_key(passphrase, salt, kdf)

    pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    nonce = os.urandom(SEAL_NONCE_SIZE)
    ciphertext = AESGCM(key).encrypt(nonce, pem, _SEAL_AAD)

    document = {
        "version": SEAL_FORMAT_VERSION,
        "kdf": kdf,
        "salt": base64.b64encode(salt).decode("utf-8"),
        "nonce": base64.b64encode(nonce).decode("utf-8"),
        "ciphertext": base64.b64encode(ciphertext).decode("utf-8"),
    }
    return json.dumps(document, indent=2).encode("utf-8")


def load_private_key(sealed_private_key: bytes, passphrase: str) -> rsa.RSAPrivateKey:
    """
    Open a sealed private key.

    Raises InvalidPassphraseError if:
    - Passphrase is incorrect
    - Key material is corrupted or not a sealed key document
    - Authentication tag verification fails
    """
    try:
        document = json.loads(sealed_private_key.decode("utf-8"))
        salt = base64.b64decode(document["salt"], validate=True)
        nonce = base64.b64decode(document["nonce"], validate=True)
        ciphertext = base64.b64decode(document["ciphertext"], validate=True)
        key = _derive_seal_key(passphrase or "", salt, document["kdf"])
        pem = AESGCM(key).decrypt(nonce, ciphertext, _SEAL_AAD)
        private_key = serialization.load_pem_private_key(pem, password=None)
    except (ValueError, KeyError, TypeError, AttributeError, InvalidTag, HashingError, UnicodeDecodeError):
        raise InvalidPassphraseError() from None

    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise InvalidPassphraseError()
    return private_key
