"""
keyexchange - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
keyexchange. Each error has a unique code for logging and debugging.
"""

from enum import Enum
from typing import Any, Dict, Optional

from .constants import GENERIC_DECRYPTION_MESSAGE


class ErrorCode(Enum):
    """Enumeration of all keyexchange error codes."""

    # General Errors (E001-E099)
    E001_UNKNOWN_ERROR = "E001"
    E002_INVALID_ARGUMENT = "E002"
    E003_NOT_FOUND = "E003"

    # Authentication Errors (E100-E199)
    E100_AUTHENTICATION_FAILED = "E100"

    # Key Errors (E200-E299)
    E200_KEY_ERROR = "E200"
    E201_KEY_GENERATION_FAILED = "E201"
    E202_INVALID_PASSPHRASE = "E202"
    E203_KEY_FILE_NOT_FOUND = "E203"
    E204_KEY_SAVE_FAILED = "E204"

    # Envelope Errors (E300-E399)
    E301_ENCRYPTION_FAILED = "E301"
    E302_DECRYPTION_FAILED = "E302"
    E303_MESSAGE_TOO_LARGE = "E303"

    # Store Errors (E400-E499)
    E400_STORE_UNAVAILABLE = "E400"
    E401_STORE_OPERATION_FAILED = "E401"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E701_CONFIG_LOAD_FAILED = "E701"
    E702_CONFIG_SAVE_FAILED = "E702"
    E704_CONFIG_PARSE_ERROR = "E704"


class KeyExchangeError(Exception):
    """Base exception class for all keyexchange errors.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization."""
        return {"code": self.code.value, "message": self.message, "details": self.details}


class ValidationError(KeyExchangeError):
    """Empty or malformed input (usernames, keys, messages)."""

    def __init__(
        self,
        message: str = "Invalid input",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E002_INVALID_ARGUMENT,
    ):
        super().__init__(code, message, details)


class AuthenticationError(KeyExchangeError):
    """Wrong password for a username."""

    def __init__(
        self,
        message: str = "Authentication failed",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E100_AUTHENTICATION_FAILED,
    ):
        super().__init__(code, message, details)


class NotFoundError(KeyExchangeError):
    """Unknown username, recipient or message."""

    def __init__(
        self,
        message: str = "Not found",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E003_NOT_FOUND,
    ):
        super().__init__(code, message, details)


class KeyMaterialError(KeyExchangeError):
    """Base class for local key material failures."""

    def __init__(
        self,
        message: str = "Key operation failed",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E200_KEY_ERROR,
    ):
        super().__init__(code, message, details)


class KeyGenerationError(KeyMaterialError):
    """RSA key generation failed (entropy or library failure)."""

    def __init__(self, message: str = "Key generation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, ErrorCode.E201_KEY_GENERATION_FAILED)


class InvalidPassphraseError(KeyMaterialError):
    """The sealed private key could not be opened with the given passphrase.

    Raised for a wrong passphrase as well as for corrupted key material; the
    authenticated cipher cannot tell the two apart.
    """

    def __init__(
        self,
        message: str = "Incorrect passphrase or corrupted key material",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details, ErrorCode.E202_INVALID_PASSPHRASE)


class KeyFileNotFoundError(KeyMaterialError):
    """Local key material is missing."""

    def __init__(self, message: str = "Key file not found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, ErrorCode.E203_KEY_FILE_NOT_FOUND)


class EncryptionError(KeyExchangeError):
    """A message could not be encrypted for its recipient."""

    def __init__(
        self,
        message: str = "Encryption failed",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E301_ENCRYPTION_FAILED,
    ):
        super().__init__(code, message, details)


class DecryptionError(KeyExchangeError):
    """An envelope could not be decrypted.

    Always carries the same message and no details, whatever went wrong.
    """

    def __init__(self, message: str = GENERIC_DECRYPTION_MESSAGE):
        super().__init__(ErrorCode.E302_DECRYPTION_FAILED, message)


class StoreUnavailableError(KeyExchangeError):
    """The credential or message store could not be reached or failed."""

    def __init__(
        self,
        message: str = "Store unavailable",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E400_STORE_UNAVAILABLE,
    ):
        super().__init__(code, message, details)


class ConfigError(KeyExchangeError):
    """Exception raised for configuration failures.

    This includes loading, parsing, and saving configuration files.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
