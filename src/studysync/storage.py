"""Local persistent store for studysync.

All collections live in one SQLite database and share one lazily-opened
connection and one change channel. Records are JSON documents; ``bytes``
values anywhere inside a record are persisted losslessly.
"""

import base64
import json
import logging
import os
import sqlite3
import tempfile
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from .domain import Collection, RECORD_TYPES, SyncableRecord
from .events import ChangeEvent, EventChannel, LOCAL_ORIGIN


logger = logging.getLogger(__name__)

_BINARY_TAG = "$binary"


class StoreError(Exception):
    """Base exception for local store operations."""
    pass


class StoreConnectionError(StoreError):
    """The database connection could not be (re)established."""
    pass


class UnknownCollectionError(StoreError):
    """Operation addressed a collection the store does not have."""
    pass


def _encode_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {_BINARY_TAG: base64.b64encode(bytes(value)).decode("ascii")}
    raise TypeError(f"Object of type {type(value).__name__} is not storable")


def _decode_hook(obj: Dict[str, Any]) -> Any:
    if len(obj) == 1 and _BINARY_TAG in obj:
        return base64.b64decode(obj[_BINARY_TAG])
    return obj


def encode_value(value: Any) -> str:
    return json.dumps(value, default=_encode_default, ensure_ascii=False)


def decode_value(text: str) -> Any:
    return json.loads(text, object_hook=_decode_hook)


class LocalStore:
    """Named-collection key/value store backed by SQLite.

    Every mutating operation publishes one ``ChangeEvent`` on ``changes``
    after its write has committed. Reads never publish.

    If the hosting environment invalidates the connection, the next
    operation reconnects once and retries; a failed reconnect raises
    ``StoreConnectionError``.
    """

    def __init__(self, db_path: Union[str, Path]):
        """Initialize the store.

        Args:
            db_path: SQLite database file
        """
        self.db_path = Path(db_path)
        self.changes: EventChannel[ChangeEvent] = EventChannel("store-changes")
        self._connection: Optional[sqlite3.Connection] = None
        self.logger = logging.getLogger(__name__)

    # Connection management

    def _connect(self) -> sqlite3.Connection:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path))
            conn.execute("""
                CREATE TABLE IF NOT EXISTS records (
                    collection TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    PRIMARY KEY (collection, key)
                )
            """)
            conn.commit()
        except (sqlite3.Error, OSError) as e:
            raise StoreConnectionError(f"Failed to open database at {self.db_path}: {e}") from e

        self.logger.debug(f"Opened local store at {self.db_path}")
        return conn

    @property
    def connection(self) -> sqlite3.Connection:
        """The shared connection, opened on first use."""
        if self._connection is None:
            self._connection = self._connect()
        return self._connection

    def open(self):
        """Open the connection now instead of on first use."""
        self._run(lambda conn: None)

    @property
    def is_open(self) -> bool:
        return self._connection is not None

    def invalidate(self):
        """Close the connection underneath the store, as a host revocation would."""
        if self._connection is not None:
            self._connection.close()

    def close(self):
        """Close the connection. The store reopens lazily if used again."""
        if self._connection is not None:
            try:
                self._connection.close()
            finally:
                self._connection = None
                self.logger.debug("Closed local store")

    def _run(self, operation: Callable[[sqlite3.Connection], Any]) -> Any:
        """Run an operation, reconnecting exactly once if the connection was invalidated."""
        try:
            return operation(self.connection)
        except sqlite3.ProgrammingError as e:
            if "closed" not in str(e).lower():
                raise
            self.logger.warning(f"Database connection was invalidated ({e}); reconnecting")

        self._connection = None
        return operation(self.connection)

    # Collection access

    @staticmethod
    def _name(collection: Union[str, Collection]) -> str:
        try:
            return Collection.parse(collection).value
        except ValueError:
            raise UnknownCollectionError(f"Unknown collection: {collection}") from None

    async def get(self, collection: Union[str, Collection], key: str) -> Optional[Any]:
        """Get a value by key, or None if absent."""
        name = self._name(collection)

        def operation(conn):
            row = conn.execute(
                "SELECT value FROM records WHERE collection = ? AND key = ?", (name, key)
            ).fetchone()
            return decode_value(row[0]) if row else None

        return self._run(operation)

    async def get_all(self, collection: Union[str, Collection]) -> List[Any]:
        """Get all values of a collection in insertion order."""
        return [value for _, value in await self.get_items(collection)]

    async def get_all_keys(self, collection: Union[str, Collection]) -> List[str]:
        return [key for key, _ in await self.get_items(collection)]

    async def get_items(self, collection: Union[str, Collection]) -> List[Tuple[str, Any]]:
        """Get all (key, value) pairs of a collection in insertion order."""
        name = self._name(collection)

        def operation(conn):
            rows = conn.execute(
                "SELECT key, value FROM records WHERE collection = ? ORDER BY rowid", (name,)
            ).fetchall()
            return [(key, decode_value(value)) for key, value in rows]

        return self._run(operation)

    async def set(self, collection: Union[str, Collection], key: str, value: Any,
                  origin: str = LOCAL_ORIGIN):
        """Insert or replace a value. Replacing keeps the key's position."""
        name = self._name(collection)
        encoded = encode_value(value)

        def operation(conn):
            with conn:
                conn.execute("""
                    INSERT INTO records (collection, key, value) VALUES (?, ?, ?)
                    ON CONFLICT(collection, key) DO UPDATE SET value = excluded.value
                """, (name, key, encoded))

        self._run(operation)
        self.changes.publish(ChangeEvent(origin=origin))

    async def delete(self, collection: Union[str, Collection], key: str, origin: str = LOCAL_ORIGIN):
        name = self._name(collection)

        def operation(conn):
            with conn:
                conn.execute("DELETE FROM records WHERE collection = ? AND key = ?", (name, key))

        self._run(operation)
        self.changes.publish(ChangeEvent(origin=origin))

    async def clear(self, collection: Union[str, Collection], origin: str = LOCAL_ORIGIN):
        name = self._name(collection)

        def operation(conn):
            with conn:
                conn.execute("DELETE FROM records WHERE collection = ?", (name,))

        self._run(operation)
        self.changes.publish(ChangeEvent(origin=origin))

    async def replace_collections(self, contents: Dict[Union[str, Collection], Iterable[Tuple[str, Any]]],
                                  origin: str = LOCAL_ORIGIN):
        """Clear and repopulate several collections in one transaction.

        Publishes a single change event once everything has committed. If any
        write fails the transaction rolls back and no event is published.

        Args:
            contents: Collection -> iterable of (key, value) pairs
            origin: Origin tag for the change event
        """
        prepared = [
            (self._name(collection), [(key, encode_value(value)) for key, value in items])
            for collection, items in contents.items()
        ]

        def operation(conn):
            with conn:
                for name, rows in prepared:
                    conn.execute("DELETE FROM records WHERE collection = ?", (name,))
                    conn.executemany(
                        "INSERT OR REPLACE INTO records (collection, key, value) VALUES (?, ?, ?)",
                        [(name, key, value) for key, value in rows],
                    )

        self._run(operation)
        self.logger.debug(f"Replaced collections: {[name for name, _ in prepared]}")
        self.changes.publish(ChangeEvent(origin=origin))

    # Typed helpers

    async def save_record(self, collection: Union[str, Collection], record: SyncableRecord,
                          origin: str = LOCAL_ORIGIN):
        await self.set(collection, record.id, record.to_dict(), origin=origin)

    async def load_record(self, collection: Union[str, Collection], key: str) -> Optional[SyncableRecord]:
        value = await self.get(collection, key)
        if value is None:
            return None
        return RECORD_TYPES[Collection.parse(collection)].from_dict(value)

    async def load_records(self, collection: Union[str, Collection]) -> List[SyncableRecord]:
        record_type = RECORD_TYPES[Collection.parse(collection)]
        return [record_type.from_dict(value) for value in await self.get_all(collection)]


class SyncStateStore:
    """Durable scalars that must survive a full local-store reset.

    Holds the last-successful-sync timestamp, the pending-changes flag and
    this device's id in a small JSON file beside the database, outside the
    record store.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._state = self._load()

    def _load(self) -> Dict[str, Any]:
        if self.path.exists():
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if isinstance(data, dict):
                    return data
                logger.warning(f"Ignoring malformed sync state in {self.path}")
            except (OSError, ValueError) as e:
                logger.warning(f"Could not read sync state from {self.path}: {e}")
        return {}

    def _save(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=".sync_state")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._state, f, indent=2)
            os.replace(tmp_name, self.path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    @property
    def last_sync_time(self) -> Optional[int]:
        value = self._state.get("lastSuccessfulSync")
        return int(value) if value is not None else None

    @last_sync_time.setter
    def last_sync_time(self, value: Optional[int]):
        if value is None:
            self._state.pop("lastSuccessfulSync", None)
        else:
            self._state["lastSuccessfulSync"] = int(value)
        self._save()

    @property
    def dirty(self) -> bool:
        """True while local changes have not reached a successful backup."""
        return bool(self._state.get("localChangesPending", False))

    @dirty.setter
    def dirty(self, value: bool):
        if bool(value) == self.dirty:
            return
        self._state["localChangesPending"] = bool(value)
        self._save()

    @property
    def device_id(self) -> str:
        """Load existing device ID or create a new one."""
        device_id = self._state.get("deviceId")
        if not device_id:
            device_id = str(uuid.uuid4())
            self._state["deviceId"] = device_id
            self._save()
        return device_id
