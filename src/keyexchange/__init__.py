"""
keyexchange - RSA encrypted messaging over a shared key directory

Users generate an RSA key pair, publish the public key to a shared
directory and exchange messages encrypted under the recipient's public key.
Private keys stay on the local machine, sealed with a passphrase.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__license__ = "MIT"

# Import core modules for easy access
from .config import Config
from .constants import APP_NAME, VERSION
from .directory import DirectoryService
from .envelope import MessageEnvelope
from .errors import (
    AuthenticationError,
    ConfigError,
    DecryptionError,
    EncryptionError,
    ErrorCode,
    InvalidPassphraseError,
    KeyExchangeError,
    KeyFileNotFoundError,
    KeyGenerationError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from .keys import KeyManager
from .messenger import Messenger
from .passwords import PasswordHasher
from .store import Store, UserRecord, open_store

__all__ = [
    "APP_NAME",
    "VERSION",
    "AuthenticationError",
    "Config",
    "ConfigError",
    "DecryptionError",
    "DirectoryService",
    "EncryptionError",
    "ErrorCode",
    "InvalidPassphraseError",
    "KeyExchangeError",
    "KeyFileNotFoundError",
    "KeyGenerationError",
    "KeyManager",
    "MessageEnvelope",
    "Messenger",
    "NotFoundError",
    "PasswordHasher",
    "Store",
    "StoreUnavailableError",
    "UserRecord",
    "ValidationError",
    "__license__",
    "__version__",
    "open_store",
]
