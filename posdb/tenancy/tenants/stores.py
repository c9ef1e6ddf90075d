"""
Store registry backends.

The store registry is the list of known stores and their shard placement.
It is consumed, not owned, by the routing core: it is read to resolve
tenants and enumerate them for cross-tenant searches, and written only by
store provisioning and shard assignment.

Invariants:
    - store_id and prefix are stored lowercase
    - list_all() returns stores in registration order
    - MongoStoreRegistry reads and writes the `stores` collection on the
      system shard; connection failures surface as ConnectionError

How to change safely:
    - Keep field names (storeId, prefix, databaseId) stable; existing
      deployments already hold these documents
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, runtime_checkable

from ..errors import ConflictError, NotFoundError
from ..shards.registry import ShardRegistry
from .types import TenantRecord, normalize_identifier, validate_prefix

logger = logging.getLogger(__name__)

STORES_COLLECTION = "stores"


@runtime_checkable
class StoreRegistry(Protocol):
    """Lookup and maintenance interface of the store registry."""

    @abstractmethod
    async def find_by_prefix(self, prefix: str) -> Optional[TenantRecord]:
        ...

    @abstractmethod
    async def find_by_store_id(self, store_id: str) -> Optional[TenantRecord]:
        ...

    @abstractmethod
    async def list_all(self) -> List[TenantRecord]:
        ...

    @abstractmethod
    async def count(self) -> int:
        ...

    @abstractmethod
    async def add(self, record: TenantRecord) -> TenantRecord:
        """Register a store.

        Raises:
            ConflictError: If the store id or prefix is already registered
        """
        ...

    @abstractmethod
    async def set_shard(self, store_id: str, shard_id: int) -> TenantRecord:
        """Record a store's shard.

        Raises:
            NotFoundError: If the store is not registered
        """
        ...


def _canonical(record: TenantRecord) -> TenantRecord:
    return TenantRecord(
        store_id=normalize_identifier(record.store_id),
        prefix=validate_prefix(record.prefix),
        shard_id=record.shard_id,
        name=record.name,
    )


class InMemoryStoreRegistry:
    """Store registry held in a dict, for tests and local development.

    Attributes:
        lookups: Number of find_by_* calls (test instrumentation)
        list_calls: Number of list_all() calls (test instrumentation)
        unavailable: When set, every call raises this exception
    """

    def __init__(self, records: Optional[List[TenantRecord]] = None) -> None:
        self._records: Dict[str, TenantRecord] = {}
        self.lookups = 0
        self.list_calls = 0
        self.unavailable: Optional[BaseException] = None
        for record in records or []:
            canonical = _canonical(record)
            self._records[canonical.store_id] = canonical

    def _check_available(self) -> None:
        if self.unavailable is not None:
            raise self.unavailable

    async def find_by_prefix(self, prefix: str) -> Optional[TenantRecord]:
        self._check_available()
        self.lookups += 1
        prefix = normalize_identifier(prefix)
        for record in self._records.values():
            if record.prefix == prefix:
                return record
        return None

    async def find_by_store_id(self, store_id: str) -> Optional[TenantRecord]:
        self._check_available()
        self.lookups += 1
        return self._records.get(normalize_identifier(store_id))

    async def list_all(self) -> List[TenantRecord]:
        self._check_available()
        self.list_calls += 1
        return list(self._records.values())

    async def count(self) -> int:
        self._check_available()
        return len(self._records)

    async def add(self, record: TenantRecord) -> TenantRecord:
        self._check_available()
        canonical = _canonical(record)
        if canonical.store_id in self._records:
            raise ConflictError(f"Store '{canonical.store_id}' already registered", field_name="storeId")
        if await self.find_by_prefix(canonical.prefix) is not None:
            raise ConflictError(f"Prefix '{canonical.prefix}' already registered", field_name="prefix")
        self._records[canonical.store_id] = canonical
        return canonical

    async def set_shard(self, store_id: str, shard_id: int) -> TenantRecord:
        self._check_available()
        key = normalize_identifier(store_id)
        current = self._records.get(key)
        if current is None:
            raise NotFoundError(f"Store '{store_id}' not found", resource_type="store", resource_id=store_id)
        updated = TenantRecord(current.store_id, current.prefix, shard_id, current.name)
        self._records[key] = updated
        return updated


class MongoStoreRegistry:
    """Store registry backed by the `stores` collection on the system shard.

    Example:
        >>> stores = MongoStoreRegistry(shard_registry)
        >>> record = await stores.find_by_prefix("acme")
        >>> record.shard_id
        2
    """

    def __init__(self, shards: ShardRegistry, collection_name: str = STORES_COLLECTION) -> None:
        """Initialize the registry.

        Args:
            shards: Shard registry providing the system shard connection
            collection_name: Registry collection name
        """
        self.shards = shards
        self.collection_name = collection_name
        self._indexes_ready = False

    @property
    def shard_id(self) -> int:
        return self.shards.config.system_shard_id

    async def _collection(self):
        connection = await self.shards.connection_for(self.shard_id)
        collection = connection.client.collection(self.collection_name)
        if not self._indexes_ready:
            with self.shards.driver_errors(self.shard_id, self.collection_name):
                await collection.create_index([("storeId", 1)], unique=True, name="storeId_unique")
                await collection.create_index([("prefix", 1)], unique=True, name="prefix_unique")
            self._indexes_ready = True
        return collection

    async def _find_one(self, query: Dict[str, object]) -> Optional[TenantRecord]:
        collection = await self._collection()
        with self.shards.driver_errors(self.shard_id, self.collection_name):
            doc = await collection.find_one(query)
        return TenantRecord.from_document(doc) if doc else None

    async def find_by_prefix(self, prefix: str) -> Optional[TenantRecord]:
        return await self._find_one({"prefix": normalize_identifier(prefix)})

    async def find_by_store_id(self, store_id: str) -> Optional[TenantRecord]:
        return await self._find_one({"storeId": normalize_identifier(store_id)})

    async def list_all(self) -> List[TenantRecord]:
        collection = await self._collection()
        with self.shards.driver_errors(self.shard_id, self.collection_name):
            docs = await collection.find({}).to_list(length=None)
        return [TenantRecord.from_document(doc) for doc in docs]

    async def count(self) -> int:
        collection = await self._collection()
        with self.shards.driver_errors(self.shard_id, self.collection_name):
            return await collection.count_documents({})

    async def add(self, record: TenantRecord) -> TenantRecord:
        canonical = _canonical(record)
        now = datetime.now(timezone.utc)
        doc = {"_id": canonical.store_id, **canonical.to_document(), "createdAt": now, "updatedAt": now}
        collection = await self._collection()
        with self.shards.driver_errors(self.shard_id, self.collection_name):
            await collection.insert_one(doc)
        logger.info(
            "Registered store",
            extra={"store_id": canonical.store_id, "prefix": canonical.prefix, "shard_id": canonical.shard_id},
        )
        return canonical

    async def set_shard(self, store_id: str, shard_id: int) -> TenantRecord:
        key = normalize_identifier(store_id)
        collection = await self._collection()
        with self.shards.driver_errors(self.shard_id, self.collection_name):
            result = await collection.update_one(
                {"storeId": key},
                {"$set": {"databaseId": shard_id, "updatedAt": datetime.now(timezone.utc)}},
            )
        if result.matched_count == 0:
            raise NotFoundError(f"Store '{store_id}' not found", resource_type="store", resource_id=store_id)
        record = await self.find_by_store_id(key)
        if record is None:
            raise NotFoundError(f"Store '{store_id}' not found", resource_type="store", resource_id=store_id)
        return record
