"""
keyexchange - MongoDB store backend.

The shared directory of a deployment: one collection of user records keyed
by username and one append-only collection of envelopes. The client is
created by MongoStore.connect (or passed in, e.g. a mongomock client in
tests) and owned by the caller.

Driver failures of any kind surface as StoreUnavailableError; there is no
retry, a failed invocation simply exits.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .constants import (
    DEFAULT_DATABASE,
    DEFAULT_MESSAGES_COLLECTION,
    DEFAULT_USERS_COLLECTION,
    STORE_TIMEOUT_MS,
)
from .envelope import MessageEnvelope
from .errors import ErrorCode, StoreUnavailableError, ValidationError
from .store import CredentialStore, MessageStore, Store, UserRecord, check_user_fields
from .utils import utc_now

logger = logging.getLogger(__name__)

_USER_QUERY_FIELDS = ("username", "public_key_pem", "password_hash")
_NO_ID = {"_id": False}


@contextmanager
def _driver_errors(operation: str) -> Iterator[None]:
    """Translate pymongo errors into StoreUnavailableError."""
    try:
        yield
    except DuplicateKeyError:
        raise
    except PyMongoError as e:
        logger.error(f"MongoDB {operation} failed: {e}")
        raise StoreUnavailableError(
            f"MongoDB {operation} failed: {e}",
            {"operation": operation},
            ErrorCode.E401_STORE_OPERATION_FAILED,
        ) from e


class MongoStore(Store):
    """Store backed by two MongoDB collections."""

    def __init__(
        self,
        client,
        database: str = DEFAULT_DATABASE,
        users_collection: str = DEFAULT_USERS_COLLECTION,
        messages_collection: str = DEFAULT_MESSAGES_COLLECTION,
    ):
        """
        Wrap an existing client.

        Args:
            client: pymongo.MongoClient (or a compatible client)
            database: Database name
            users_collection: Collection holding user records
            messages_collection: Collection holding envelopes
        """
        self.client = client
        db = client[database]
        self.users = MongoCredentialStore(db[users_collection])
        self.messages = MongoMessageStore(db[messages_collection])

    @classmethod
    def connect(
        cls,
        uri: str,
        database: str = DEFAULT_DATABASE,
        users_collection: str = DEFAULT_USERS_COLLECTION,
        messages_collection: str = DEFAULT_MESSAGES_COLLECTION,
        timeout_ms: int = STORE_TIMEOUT_MS,
    ) -> "MongoStore":
        """
        Connect to MongoDB, verify the server answers and ensure indexes.

        Raises:
            StoreUnavailableError: If the URI is invalid or the server cannot
                be reached within timeout_ms
        """
        client = None
        try:
            client = MongoClient(
                uri,
                serverSelectionTimeoutMS=timeout_ms,
                connectTimeoutMS=timeout_ms,
                tz_aware=True,
            )
            client.admin.command("ping")
        except PyMongoError as e:
            if client is not None:
                client.close()
            logger.error(f"MongoDB unavailable: {e}")
            raise StoreUnavailableError(
                f"Cannot reach MongoDB: {e}",
                {"timeout_ms": timeout_ms},
            ) from e

        store = cls(client, database, users_collection, messages_collection)
        store.ensure_schema()
        logger.info(f"Connected to MongoDB database '{database}'")
        return store

    def ensure_schema(self) -> None:
        with _driver_errors("index creation"):
            self.users.collection.create_index("username", unique=True)
            self.messages.collection.create_index("message_id", unique=True)
            self.messages.collection.create_index(
                [("recipient_id", ASCENDING), ("sent_time", ASCENDING)]
            )

    def close(self) -> None:
        self.client.close()


class MongoCredentialStore(CredentialStore):
    """User records collection."""

    def __init__(self, collection):
        self.collection = collection

    def find_one(self, query: Dict[str, Any]) -> Optional[UserRecord]:
        unknown = set(query) - set(_USER_QUERY_FIELDS)
        if unknown or not query:
            raise ValidationError(
                "User queries support equality on username, public_key_pem, password_hash",
                {"fields": sorted(unknown)},
            )
        with _driver_errors("user lookup"):
            doc = self.collection.find_one(dict(query), _NO_ID)
        return UserRecord.from_dict(doc) if doc else None

    def upsert(self, username: str, fields: Dict[str, Any]) -> UserRecord:
        check_user_fields(fields)

        if self.find_by_username(username) is None:
            missing = [f for f in ("public_key_pem", "password_hash") if not fields.get(f)]
            if missing:
                raise ValidationError(
                    f"New user record needs {', '.join(missing)}",
                    {"username": username, "missing": missing},
                )

        now = utc_now()
        update = {
            "$set": {**fields, "updated_at": now},
            "$setOnInsert": {"created_at": now},
        }
        try:
            doc = self._find_one_and_update(username, update)
        except DuplicateKeyError:
            # Two upserts raced on the unique index; the second one updates
            logger.debug(f"User record appeared concurrently: {username}")
            doc = self._find_one_and_update(username, update)

        logger.info(f"User record upserted: {username} ({', '.join(sorted(fields)) or 'no fields'})")
        return UserRecord.from_dict(doc)

    def _find_one_and_update(self, username: str, update: Dict[str, Any]) -> Dict[str, Any]:
        with _driver_errors("user upsert"):
            return self.collection.find_one_and_update(
                {"username": username},
                update,
                projection=_NO_ID,
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )


class MongoMessageStore(MessageStore):
    """Envelope collection."""

    def __init__(self, collection):
        self.collection = collection

    def insert(self, envelope: MessageEnvelope) -> None:
        try:
            with _driver_errors("envelope insert"):
                self.collection.insert_one(envelope.to_dict())
        except DuplicateKeyError as e:
            raise ValidationError(
                f"Envelope {envelope.message_id} already stored",
                {"message_id": envelope.message_id},
            ) from e
        logger.info(f"Envelope {envelope.message_id} stored for {envelope.recipient_id}")

    def find_by_recipient(
        self, recipient_id: str, sender_id: Optional[str] = None
    ) -> List[MessageEnvelope]:
        query = {"recipient_id": recipient_id}
        if sender_id is not None:
            query["sender_id"] = sender_id
        with _driver_errors("inbox lookup"):
            docs = list(
                self.collection.find(query, _NO_ID).sort([("sent_time", ASCENDING), ("_id", ASCENDING)])
            )
        return [MessageEnvelope.from_dict(doc) for doc in docs]

    def find_by_id(self, message_id: str) -> Optional[MessageEnvelope]:
        with _driver_errors("envelope lookup"):
            doc = self.collection.find_one({"message_id": message_id}, _NO_ID)
        return MessageEnvelope.from_dict(doc) if doc else None
