from typing import Dict, Optional, Protocol

from pymongo import MongoClient
from pymongo.errors import PyMongoError


class StorageError(RuntimeError):
    """Raised when the key/value store cannot be read or written"""


class KeyValueStorage(Protocol):
    """String key/value store used to persist telemetry event state"""

    def is_available(self) -> bool: ...

    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...


class InMemoryStorage:
    """Process-local storage, used when no database is configured"""

    def __init__(self) -> None:
        self.items: Dict[str, str] = {}

    def is_available(self) -> bool:
        return True

    def get_item(self, key: str) -> Optional[str]:
        return self.items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self.items[key] = value

    def close(self) -> None:
        self.items.clear()


class MongoStorage:
    """MongoDB-backed key/value storage

    Each item is a ``{"key": ..., "value": ...}`` document in one collection.
    """

    def __init__(self, mongodb_url: str, database_name: str, collection_name: str) -> None:
        self.mongodb_url = mongodb_url
        self.database_name = database_name
        self.collection_name = collection_name
        self.client: MongoClient | None = None
        # Outcome of the last connection attempt, None until one is made
        self.available: bool | None = None

    def connect(self) -> MongoClient:
        """Establish connection to MongoDB if not connected"""
        if self.client is not None:
            return self.client

        try:
            self.client = MongoClient(
                self.mongodb_url,
                serverSelectionTimeoutMS=5_000,  # Fail fast if can't find a server
                connectTimeoutMS=5_000,
                retryWrites=True,
            )
            self.client.admin.command("ping")
            self._ensure_indexes()
            self.available = True
            return self.client
        except PyMongoError as exc:
            self.client = None
            self.available = False
            raise StorageError(f"Unable to connect to MongoDB: {exc}") from exc

    def close(self) -> None:
        """Close MongoDB connection"""
        if self.client is not None:
            self.client.close()
            self.client = None

    def get_collection(self):
        """Get the event data collection, connecting if necessary"""
        client = self.connect()
        return client[self.database_name][self.collection_name]

    def is_available(self) -> bool:
        """Report the cached connection outcome; only the first call ever contacts the server

        An unreachable store is treated as absent, not as an error.
        """
        if self.available is None:
            try:
                self.connect()
            except StorageError:
                pass
        return bool(self.available)

    def get_item(self, key: str) -> Optional[str]:
        try:
            document = self.get_collection().find_one({"key": key})
        except PyMongoError as exc:
            raise StorageError(f"Unable to read {key!r}: {exc}") from exc
        return document["value"] if document else None

    def set_item(self, key: str, value: str) -> None:
        try:
            self.get_collection().update_one(
                {"key": key},
                {"$set": {"value": value}},
                upsert=True,
            )
        except PyMongoError as exc:
            raise StorageError(f"Unable to write {key!r}: {exc}") from exc

    def _ensure_indexes(self) -> None:
        # One document per storage key
        self.client[self.database_name][self.collection_name].create_index("key", unique=True)
