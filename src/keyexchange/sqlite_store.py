"""
keyexchange - SQLite store backend.

Keeps user records and envelopes in a single SQLite database file. Used for
single-host setups (sqlite:///path/to/keyexchange.db) and in tests
(sqlite:///:memory:).

Thread safety:
- All database operations are serialized by a threading.Lock
- The connection is opened with check_same_thread=False
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .envelope import MessageEnvelope
from .errors import ErrorCode, StoreUnavailableError, ValidationError
from .store import CredentialStore, MessageStore, Store, UserRecord, check_user_fields
from .utils import utc_now

logger = logging.getLogger(__name__)

_USER_COLUMNS = ("username", "public_key_pem", "password_hash")
_SELECT_USER = "SELECT username, public_key_pem, password_hash, created_at, updated_at FROM users"
_SELECT_MESSAGE = (
    "SELECT message_id, sender_id, recipient_id, sender_public_key_pem, "
    "recipient_public_key_pem, ciphertext, sent_time FROM messages"
)


class SQLiteStore(Store):
    """Store backed by one SQLite database."""

    def __init__(self, db_path: str):
        """
        Open (and create if needed) the database.

        Args:
            db_path: Path to the database file, or ":memory:"

        Raises:
            StoreUnavailableError: If the database cannot be opened
        """
        self.db_path = db_path
        self._db_lock = threading.Lock()

        try:
            if db_path != ":memory:":
                Path(db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
                db_path = str(Path(db_path).expanduser())
            self.conn: Optional[sqlite3.Connection] = sqlite3.connect(db_path, check_same_thread=False)
        except (sqlite3.Error, OSError) as e:
            raise StoreUnavailableError(
                f"Cannot open SQLite database: {e}",
                {"path": self.db_path},
            ) from e
        self.conn.row_factory = sqlite3.Row

        self.users = SQLiteCredentialStore(self)
        self.messages = SQLiteMessageStore(self)
        self.ensure_schema()

    @contextmanager
    def cursor(self) -> Iterator[sqlite3.Cursor]:
        """Locked cursor; commits on success, rolls back on error."""
        if self.conn is None:
            raise StoreUnavailableError("SQLite store is closed", {"path": self.db_path})
        with self._db_lock:
            try:
                cursor = self.conn.cursor()
                yield cursor
                self.conn.commit()
            except sqlite3.IntegrityError:
                self.conn.rollback()
                raise
            except sqlite3.Error as e:
                self.conn.rollback()
                logger.error(f"SQLite operation failed: {e}")
                raise StoreUnavailableError(
                    f"SQLite operation failed: {e}",
                    {"path": self.db_path},
                    ErrorCode.E401_STORE_OPERATION_FAILED,
                ) from e

    def ensure_schema(self) -> None:
        with self.cursor() as cursor:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    username TEXT PRIMARY KEY,
                    public_key_pem TEXT NOT NULL,
                    password_hash TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    message_id TEXT PRIMARY KEY,
                    sender_id TEXT NOT NULL,
                    recipient_id TEXT NOT NULL,
                    sender_public_key_pem TEXT NOT NULL,
                    recipient_public_key_pem TEXT NOT NULL,
                    ciphertext TEXT NOT NULL,
                    sent_time TEXT NOT NULL
                )
            """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_messages_recipient
                ON messages (recipient_id, sent_time)
            """
            )
        logger.debug(f"SQLite schema ready: {self.db_path}")

    def close(self) -> None:
        with self._db_lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None


class SQLiteCredentialStore(CredentialStore):
    """users table."""

    def __init__(self, store: SQLiteStore):
        self._store = store

    def find_one(self, query: Dict[str, Any]) -> Optional[UserRecord]:
        unknown = set(query) - set(_USER_COLUMNS)
        if unknown or not query:
            raise ValidationError(
                "User queries support equality on username, public_key_pem, password_hash",
                {"fields": sorted(unknown)},
            )
        columns = sorted(query)
        where = " AND ".join(f"{column} = ?" for column in columns)
        with self._store.cursor() as cursor:
            cursor.execute(f"{_SELECT_USER} WHERE {where} LIMIT 1", [query[c] for c in columns])
            row = cursor.fetchone()
        return UserRecord.from_dict(dict(row)) if row else None

    def upsert(self, username: str, fields: Dict[str, Any]) -> UserRecord:
        check_user_fields(fields)
        now = utc_now().isoformat(timespec="microseconds")

        if self.find_by_username(username) is None:
            missing = [f for f in ("public_key_pem", "password_hash") if not fields.get(f)]
            if missing:
                raise ValidationError(
                    f"New user record needs {', '.join(missing)}",
                    {"username": username, "missing": missing},
                )
            try:
                with self._store.cursor() as cursor:
                    cursor.execute(
                        "INSERT INTO users (username, public_key_pem, password_hash, created_at, updated_at) "
                        "VALUES (?, ?, ?, ?, ?)",
                        (username, fields["public_key_pem"], fields["password_hash"], now, now),
                    )
                logger.info(f"User record created: {username}")
                return self.find_by_username(username)
            except sqlite3.IntegrityError:
                # Inserted concurrently by another process; fall through to update
                logger.debug(f"User record appeared concurrently: {username}")

        if fields:
            assignments = ", ".join(f"{column} = ?" for column in sorted(fields))
            params = [fields[column] for column in sorted(fields)] + [now, username]
            with self._store.cursor() as cursor:
                cursor.execute(
                    f"UPDATE users SET {assignments}, updated_at = ? WHERE username = ?",
                    params,
                )
            logger.info(f"User record updated: {username} ({', '.join(sorted(fields))})")
        return self.find_by_username(username)


class SQLiteMessageStore(MessageStore):
    """messages table."""

    def __init__(self, store: SQLiteStore):
        self._store = store

    def insert(self, envelope: MessageEnvelope) -> None:
        try:
            self._insert(envelope)
        except sqlite3.IntegrityError as e:
            raise ValidationError(
                f"Envelope {envelope.message_id} already stored",
                {"message_id": envelope.message_id},
            ) from e
        logger.info(f"Envelope {envelope.message_id} stored for {envelope.recipient_id}")

    def _insert(self, envelope: MessageEnvelope) -> None:
        with self._store.cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO messages
                (message_id, sender_id, recipient_id, sender_public_key_pem,
                 recipient_public_key_pem, ciphertext, sent_time)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    envelope.message_id,
                    envelope.sender_id,
                    envelope.recipient_id,
                    envelope.sender_public_key_pem,
                    envelope.recipient_public_key_pem,
                    envelope.ciphertext,
                    envelope.sent_time.isoformat(timespec="microseconds"),
                ),
            )

    def find_by_recipient(
        self, recipient_id: str, sender_id: Optional[str] = None
    ) -> List[MessageEnvelope]:
        sql = f"{_SELECT_MESSAGE} WHERE recipient_id = ?"
        params = [recipient_id]
        if sender_id is not None:
            sql += " AND sender_id = ?"
            params.append(sender_id)
        sql += " ORDER BY sent_time ASC, rowid ASC"

        with self._store.cursor() as cursor:
            cursor.execute(sql, params)
            rows = cursor.fetchall()
        return [MessageEnvelope.from_dict(dict(row)) for row in rows]

    def find_by_id(self, message_id: str) -> Optional[MessageEnvelope]:
        with self._store.cursor() as cursor:
            cursor.execute(f"{_SELECT_MESSAGE} WHERE message_id = ?", (message_id,))
            row = cursor.fetchone()
        return MessageEnvelope.from_dict(dict(row)) if row else None
