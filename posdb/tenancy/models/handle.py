"""
Tenant collection handle.

A CollectionHandle is the data-access object callers receive for one
entity kind in one tenant namespace on one shard. It holds no connection
of its own: each operation asks the ShardRegistry for the shard's live
connection, so a handle survives reconnects.

Invariants:
    - Documents go in and come out as the schema's pydantic record type
    - update() always refreshes updatedAt
    - ensure_indexes() does its work at most once per handle
    - Driver errors surface as ConflictError / ConnectionError

How to change safely:
    - Keep query arguments in raw MongoDB syntax; the in-memory backend
      supports the same subset
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Generic, List, Optional, Tuple, TypeVar

from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError
from ..shards.registry import ShardRegistry
from ..tenants.types import Tenant
from .schemas import EntitySchema, TenantDocument, utcnow

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=TenantDocument)


def _validation_error(error: PydanticValidationError, record_type: type) -> ValidationError:
    first = error.errors()[0] if error.errors() else {}
    loc = first.get("loc") or ()
    return ValidationError(
        f"Invalid {record_type.__name__}: {error}",
        field_name=str(loc[0]) if loc else None,
    )


class CollectionHandle(Generic[RecordT]):
    """Typed access to one tenant collection.

    Attributes:
        shard_id: Shard hosting the collection
        tenant: Namespace the collection belongs to
        schema: Entity schema bound to the collection
        name: Collection name

    Example:
        >>> handle = await factory.get_handle("acme", 2, EntityKind.PRODUCT)
        >>> await handle.insert(Product(name="Tea", price=3.5))
        >>> await handle.find({"name": "Tea"})
    """

    def __init__(
        self,
        shards: ShardRegistry,
        shard_id: int,
        tenant: Tenant,
        schema: EntitySchema,
        name: str,
    ) -> None:
        self.shards = shards
        self.shard_id = shard_id
        self.tenant = tenant
        self.schema = schema
        self.name = name
        self._indexes_ready = False
        self._index_lock = asyncio.Lock()

    @property
    def key(self) -> Tuple[int, str]:
        return (self.shard_id, self.name)

    @property
    def record_type(self) -> type:
        return self.schema.record_type

    def __repr__(self) -> str:
        return f"CollectionHandle(shard_id={self.shard_id}, name={self.name!r})"

    async def _collection(self) -> Any:
        connection = await self.shards.connection_for(self.shard_id)
        return connection.client.collection(self.name)

    def _load(self, doc: Optional[Dict[str, Any]]) -> Optional[RecordT]:
        if doc is None:
            return None
        try:
            return self.record_type.from_document(doc)
        except PydanticValidationError as e:
            raise _validation_error(e, self.record_type) from e

    async def ensure_indexes(self) -> bool:
        """Create the schema's indexes.

        Returns:
            True if indexes were created by this call, False if an earlier
            call already did
        """
        async with self._index_lock:
            if self._indexes_ready:
                return False
            collection = await self._collection()
            with self.shards.driver_errors(self.shard_id, self.name):
                for index in self.schema.indexes:
                    await collection.create_index(list(index.keys), unique=index.unique, name=index.name)
            self._indexes_ready = True
            logger.debug(
                "Indexes ready",
                extra={"shard_id": self.shard_id, "collection": self.name, "count": len(self.schema.indexes)},
            )
            return True

    async def find_one(self, query: Dict[str, Any]) -> Optional[RecordT]:
        collection = await self._collection()
        with self.shards.driver_errors(self.shard_id, self.name):
            doc = await collection.find_one(query)
        return self._load(doc)

    async def find_by_id(self, record_id: str) -> Optional[RecordT]:
        return await self.find_one({"_id": record_id})

    async def find(self, query: Optional[Dict[str, Any]] = None, limit: int = 0) -> List[RecordT]:
        """Records matching query; limit=0 means no limit."""
        collection = await self._collection()
        with self.shards.driver_errors(self.shard_id, self.name):
            cursor = collection.find(query or {})
            if limit:
                cursor = cursor.limit(limit)
            docs = await cursor.to_list(length=None)
        return [self._load(doc) for doc in docs]

    async def count(self, query: Optional[Dict[str, Any]] = None) -> int:
        collection = await self._collection()
        with self.shards.driver_errors(self.shard_id, self.name):
            return await collection.count_documents(query or {})

    async def insert(self, record: RecordT) -> RecordT:
        """Insert a record.

        Raises:
            ConflictError: If a unique index rejects the record
        """
        if not isinstance(record, self.record_type):
            raise ValidationError(
                f"{self.name} stores {self.record_type.__name__}, got {type(record).__name__}",
                field_name="record",
            )
        collection = await self._collection()
        with self.shards.driver_errors(self.shard_id, self.name):
            await collection.insert_one(record.to_document())
        return record

    async def update(self, record_id: str, patch: Dict[str, Any]) -> Optional[RecordT]:
        """Apply field changes to a record and refresh updatedAt.

        Args:
            record_id: Record id
            patch: New field values, keyed by field name or stored alias

        Returns:
            The updated record, or None if no record has that id

        Raises:
            ValidationError: If the patch names an unknown field or the
                result fails the schema
            ConflictError: If a unique index rejects the change
        """
        current = await self.find_by_id(record_id)
        if current is None:
            return None

        doc = current.to_document()
        for key, value in patch.items():
            if key in ("id", "_id"):
                raise ValidationError("Record id cannot be changed", field_name="id")
            doc[self.schema.field_alias(key)] = value
        doc["updatedAt"] = utcnow()

        try:
            updated = self.record_type.from_document(doc)
        except PydanticValidationError as e:
            raise _validation_error(e, self.record_type) from e

        changes = updated.to_document()
        changes.pop("_id")
        collection = await self._collection()
        with self.shards.driver_errors(self.shard_id, self.name):
            result = await collection.update_one({"_id": record_id}, {"$set": changes})
        if result.matched_count == 0:
            return None
        return updated

    async def delete(self, record_id: str) -> bool:
        """Delete a record. Returns False if it did not exist."""
        collection = await self._collection()
        with self.shards.driver_errors(self.shard_id, self.name):
            result = await collection.delete_one({"_id": record_id})
        return result.deleted_count > 0
