"""
keyexchange - Global Constants and Configuration Values

This module defines all constants used throughout keyexchange.
All magic numbers and configuration defaults are centralized here.
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "keyexchange"

# RSA
DEFAULT_KEY_SIZE = 4096
MIN_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537

# Private key sealing (Argon2id + AES-256-GCM)
SEAL_FORMAT_VERSION = "1.0"
SEAL_KEY_SIZE = 32  # 256 bits
SEAL_NONCE_SIZE = 12  # 96 bits for GCM
SEAL_SALT_SIZE = 16  # 128 bits
SEAL_TIME_COST = 3
SEAL_MEMORY_COST = 65536  # 64 MB
SEAL_PARALLELISM = 1

# Password hashing (Argon2id via argon2.PasswordHasher)
HASH_TIME_COST = 3
HASH_MEMORY_COST = 65536  # 64 MB
HASH_PARALLELISM = 4

# Usernames
MAX_USERNAME_LENGTH = 64

# Store defaults (match the original deployment's Mongo layout)
DEFAULT_STORE_URI = "mongodb://127.0.0.1:27017"
DEFAULT_DATABASE = "key_exchange"
DEFAULT_USERS_COLLECTION = "users"
DEFAULT_MESSAGES_COLLECTION = "messages"
STORE_TIMEOUT_MS = 5000

# File Paths
DEFAULT_DATA_DIR = "~/.keyexchange"
KEYS_DIRNAME = "keys"
IDENTITIES_DIRNAME = "identities"
CONTACTS_DIRNAME = "contacts"
ARCHIVE_DIRNAME = "archive"
PRIVATE_KEY_FILENAME = "private_key.json"
PUBLIC_KEY_FILENAME = "public_key.pem"
CONFIG_FILENAME = "config.toml"
LOGS_DIR = "logs"
LOG_FILENAME = "keyexchange.log"

# Environment variables
ENV_PREFIX = "KEYEXCHANGE"
LEGACY_ENV_VARS = {
    "MONGODB_URI": ("store", "uri"),
    "DB_NAME": ("store", "database"),
    "COLLECTION_NAME": ("store", "users_collection"),
    "MESSAGE_COLLECTION_NAME": ("store", "messages_collection"),
    "HASH_COST": ("security", "hash_time_cost"),
}

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5

# Shown for every decryption failure, whatever the cause
GENERIC_DECRYPTION_MESSAGE = "Unable to decrypt message"
