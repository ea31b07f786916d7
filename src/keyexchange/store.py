"""
keyexchange - Persistence facade.

The core only needs a few query shapes from its document store:
- equality lookup of a user record by username, and an upsert keyed on it
- append of an envelope, and equality lookup of envelopes by recipient
  (optionally narrowed by sender)

Two backends implement them: MongoDB (keyexchange.mongo_store), which is the
shared directory of a real deployment, and SQLite (keyexchange.sqlite_store)
for single-host use and tests. The entry point builds one Store per process
and passes it down; there is no module-level connection.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from .envelope import MessageEnvelope
from .errors import ValidationError
from .utils import utc_now

logger = logging.getLogger(__name__)

USER_FIELDS = ("public_key_pem", "password_hash")


@dataclass
class UserRecord:
    """One directory entry; username is the natural key."""

    username: str
    public_key_pem: str
    password_hash: str
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert record to dictionary for storage."""
        return {
            "username": self.username,
            "public_key_pem": self.public_key_pem,
            "password_hash": self.password_hash,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "UserRecord":
        """Create record from a stored dictionary."""
        return UserRecord(
            username=data["username"],
            public_key_pem=data["public_key_pem"],
            password_hash=data["password_hash"],
            created_at=_as_utc(data.get("created_at")),
            updated_at=_as_utc(data.get("updated_at")),
        )


def _as_utc(value: Any) -> datetime:
    """Normalise a stored timestamp (datetime or ISO string) to aware UTC."""
    if value is None:
        return utc_now()
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def check_user_fields(fields: Dict[str, Any]) -> None:
    """Reject updates to anything but the mutable user fields."""
    unknown = set(fields) - set(USER_FIELDS)
    if unknown:
        raise ValidationError(
            f"Unknown user fields: {', '.join(sorted(unknown))}",
            {"fields": sorted(unknown)},
        )


class CredentialStore(ABC):
    """Collection of UserRecords keyed by username."""

    @abstractmethod
    def find_one(self, query: Dict[str, Any]) -> Optional[UserRecord]:
        """Return the record matching an equality query on username, or None."""

    @abstractmethod
    def upsert(self, username: str, fields: Dict[str, Any]) -> UserRecord:
        """Insert or update the record for username and return it.

        fields may only contain public_key_pem and password_hash; both are
        required when the record does not exist yet.
        """

    def find_by_username(self, username: str) -> Optional[UserRecord]:
        return self.find_one({"username": username})


class MessageStore(ABC):
    """Append-only collection of MessageEnvelopes."""

    @abstractmethod
    def insert(self, envelope: MessageEnvelope) -> None:
        """Persist a new envelope."""

    @abstractmethod
    def find_by_recipient(
        self, recipient_id: str, sender_id: Optional[str] = None
    ) -> List[MessageEnvelope]:
        """Envelopes addressed to recipient_id, oldest first."""

    @abstractmethod
    def find_by_id(self, message_id: str) -> Optional[MessageEnvelope]:
        """Single envelope by id, or None."""


class Store(ABC):
    """A credential store and a message store sharing one connection."""

    users: CredentialStore
    messages: MessageStore

    @abstractmethod
    def ensure_schema(self) -> None:
        """Create tables or indexes the backend needs. Idempotent."""

    @abstractmethod
    def close(self) -> None:
        """Release the underlying connection."""

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def open_store(config) -> Store:
    """
    Open the store selected by the [store] section of a Config.

    The backend is chosen from the URI scheme: mongodb:// and mongodb+srv://
    select MongoDB, sqlite:///path (or sqlite:///:memory:) selects SQLite.

    Raises:
        StoreUnavailableError: If the store cannot be reached
        ValidationError: If the URI scheme is not supported
    """
    uri = config.get("store", "uri")
    scheme = urlparse(uri).scheme.lower()
    logger.debug(f"Opening {scheme or 'unknown'} store")

    if scheme in ("mongodb", "mongodb+srv"):
        from .mongo_store import MongoStore

        return MongoStore.connect(
            uri,
            database=config.get("store", "database"),
            users_collection=config.get("store", "users_collection"),
            messages_collection=config.get("store", "messages_collection"),
            timeout_ms=config.get("store", "timeout_ms"),
        )

    if scheme == "sqlite":
        from .sqlite_store import SQLiteStore

        return SQLiteStore(sqlite_path_from_uri(uri))

    raise ValidationError(f"Unsupported store URI scheme: {scheme or uri!r}", {"uri": uri})


def sqlite_path_from_uri(uri: str) -> str:
    """
    Extract the database path from a sqlite:// URI.

    sqlite:///relative.db and sqlite:////abs/path.db follow the usual
    SQLAlchemy-style convention; sqlite:///:memory: opens an in-memory db.
    """
    prefix = "sqlite:///"
    if not uri.lower().startswith(prefix):
        raise ValidationError(f"Malformed SQLite URI: {uri!r}", {"uri": uri})
    path = uri[len(prefix):]
    if not path:
        raise ValidationError("SQLite URI has no database path", {"uri": uri})
    return path


__all__ = [
    "CredentialStore",
    "MessageStore",
    "Store",
    "UserRecord",
    "check_user_fields",
    "open_store",
    "sqlite_path_from_uri",
]
