"""
In-memory shard backend for testing.

This module provides a simple in-memory stand-in for a MongoDB deployment:
- Unit tests
- Integration tests
- Local development without a database server

The connector plays the role of the server: databases survive a client
being closed and reopened, exactly like data on a real cluster.

Invariants:
    - All data is lost on process exit
    - Collections follow the Motor call signatures used by CollectionHandle
    - Unique indexes are enforced and raise pymongo DuplicateKeyError
    - Documents are deep-copied in and out; callers never share state

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep the query subset in step with what handles actually send
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pymongo import errors as mongo_errors

logger = logging.getLogger(__name__)


def _get_path(doc: Dict[str, Any], path: str) -> Tuple[bool, Any]:
    current: Any = doc
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return False, None
        current = current[part]
    return True, current


_TYPE_NAMES = {
    "string": str,
    "bool": bool,
    "int": int,
    "double": float,
    "object": dict,
    "array": list,
}


def _match_operator(present: bool, value: Any, op: str, operand: Any) -> bool:
    if op == "$eq":
        return (value if present else None) == operand
    if op == "$ne":
        return (value if present else None) != operand
    if op == "$in":
        return (value if present else None) in operand
    if op == "$nin":
        return (value if present else None) not in operand
    if op == "$exists":
        return present == bool(operand)
    if op == "$type":
        return present and isinstance(value, _TYPE_NAMES[operand])
    if op in ("$gt", "$gte", "$lt", "$lte"):
        if not present or value is None:
            return False
        if op == "$gt":
            return value > operand
        if op == "$gte":
            return value >= operand
        if op == "$lt":
            return value < operand
        return value <= operand
    raise NotImplementedError(f"Unsupported query operator: {op}")


def matches(doc: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    """Evaluate the supported MongoDB query subset against a document."""
    if not query:
        return True
    for key, condition in query.items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
            continue
        if key == "$and":
            if not all(matches(doc, sub) for sub in condition):
                return False
            continue

        present, value = _get_path(doc, key)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            if not all(_match_operator(present, value, op, operand) for op, operand in condition.items()):
                return False
        elif (value if present else None) != condition:
            return False
    return True


@dataclass
class InsertOneResult:
    inserted_id: Any
    acknowledged: bool = True


@dataclass
class UpdateResult:
    matched_count: int
    modified_count: int
    acknowledged: bool = True


@dataclass
class DeleteResult:
    deleted_count: int
    acknowledged: bool = True


@dataclass
class InMemoryIndex:
    """A declared index; only uniqueness is enforced."""

    name: str
    keys: Tuple[Tuple[str, int], ...]
    unique: bool = False


class InMemoryCursor:
    """Result cursor supporting limit(), to_list() and async iteration."""

    def __init__(self, docs: List[Dict[str, Any]]) -> None:
        self._docs = docs
        self._limit = 0

    def limit(self, count: int) -> InMemoryCursor:
        self._limit = count
        return self

    def _results(self) -> List[Dict[str, Any]]:
        docs = self._docs[: self._limit] if self._limit else self._docs
        return [copy.deepcopy(d) for d in docs]

    async def to_list(self, length: Optional[int] = None) -> List[Dict[str, Any]]:
        results = self._results()
        return results[:length] if length else results

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for doc in self._results():
            yield doc


class InMemoryCollection:
    """A MongoDB-like collection held in a dict.

    Attributes:
        name: Collection name
        calls: Per-operation call counter (test instrumentation)
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._docs: Dict[Any, Dict[str, Any]] = {}
        self._indexes: Dict[str, InMemoryIndex] = {}
        self.calls: Counter = Counter()

    @property
    def indexes(self) -> List[InMemoryIndex]:
        return list(self._indexes.values())

    def _select(self, query: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [doc for doc in self._docs.values() if matches(doc, query)]

    def _check_unique(self, candidate: Dict[str, Any], ignore_id: Any = None) -> None:
        for index in self._indexes.values():
            if not index.unique:
                continue
            fields = [k for k, _ in index.keys]
            key = tuple(_get_path(candidate, f)[1] for f in fields)
            for doc_id, doc in self._docs.items():
                if doc_id == ignore_id:
                    continue
                if tuple(_get_path(doc, f)[1] for f in fields) == key:
                    raise mongo_errors.DuplicateKeyError(
                        f"E11000 duplicate key error collection: {self.name} "
                        f"index: {index.name} dup key: {dict(zip(fields, key))}",
                        code=11000,
                        details={"keyPattern": dict(index.keys), "keyValue": dict(zip(fields, key))},
                    )

    async def create_index(self, keys: Iterable[Tuple[str, int]], **kwargs: Any) -> str:
        self.calls["create_index"] += 1
        key_tuple = tuple((k, d) for k, d in keys)
        name = kwargs.get("name") or "_".join(f"{k}_{d}" for k, d in key_tuple)
        if name not in self._indexes:
            self._indexes[name] = InMemoryIndex(
                name=name, keys=key_tuple, unique=bool(kwargs.get("unique", False))
            )
        return name

    async def find_one(self, query: Optional[Dict[str, Any]] = None, *args: Any, **kwargs: Any) -> Optional[Dict[str, Any]]:
        self.calls["find_one"] += 1
        found = self._select(query)
        return copy.deepcopy(found[0]) if found else None

    def find(self, query: Optional[Dict[str, Any]] = None, *args: Any, **kwargs: Any) -> InMemoryCursor:
        self.calls["find"] += 1
        return InMemoryCursor(self._select(query))

    async def count_documents(self, query: Dict[str, Any], **kwargs: Any) -> int:
        self.calls["count_documents"] += 1
        return len(self._select(query))

    async def insert_one(self, document: Dict[str, Any], **kwargs: Any) -> InsertOneResult:
        self.calls["insert_one"] += 1
        doc = copy.deepcopy(document)
        if "_id" not in doc:
            raise ValueError("InMemoryCollection requires documents with an _id")
        if doc["_id"] in self._docs:
            raise mongo_errors.DuplicateKeyError(
                f"E11000 duplicate key error collection: {self.name} index: _id_",
                code=11000,
                details={"keyPattern": {"_id": 1}, "keyValue": {"_id": doc["_id"]}},
            )
        self._check_unique(doc)
        self._docs[doc["_id"]] = doc
        return InsertOneResult(inserted_id=doc["_id"])

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any], **kwargs: Any) -> UpdateResult:
        self.calls["update_one"] += 1
        found = self._select(query)
        if not found:
            return UpdateResult(matched_count=0, modified_count=0)

        current = found[0]
        updated = copy.deepcopy(current)
        for key, value in update.get("$set", {}).items():
            updated[key] = copy.deepcopy(value)
        for key in update.get("$unset", {}):
            updated.pop(key, None)
        self._check_unique(updated, ignore_id=current["_id"])
        modified = updated != current
        self._docs[current["_id"]] = updated
        return UpdateResult(matched_count=1, modified_count=int(modified))

    async def delete_one(self, query: Dict[str, Any], **kwargs: Any) -> DeleteResult:
        self.calls["delete_one"] += 1
        found = self._select(query)
        if not found:
            return DeleteResult(deleted_count=0)
        del self._docs[found[0]["_id"]]
        return DeleteResult(deleted_count=1)


class InMemoryDatabase:
    """A named set of collections, created on first access."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.collections: Dict[str, InMemoryCollection] = {}

    def __getitem__(self, name: str) -> InMemoryCollection:
        if name not in self.collections:
            self.collections[name] = InMemoryCollection(name)
        return self.collections[name]


class InMemoryShardClient:
    """ShardClient over an InMemoryDatabase."""

    def __init__(self, connector: InMemoryShardConnector, database: InMemoryDatabase) -> None:
        self._connector = connector
        self._database = database
        self.database_name = database.name
        self.closed = False

    def collection(self, name: str) -> InMemoryCollection:
        return self._database[name]

    async def ping(self) -> None:
        if self.closed or self.database_name in self._connector.down:
            raise mongo_errors.ServerSelectionTimeoutError(
                f"{self.database_name}: connection refused"
            )

    async def close(self) -> None:
        self.closed = True


@dataclass
class _InjectedFailure:
    error: BaseException
    remaining: int


class InMemoryShardConnector:
    """ShardConnector that keeps every shard database in memory.

    Attributes:
        databases: Databases by name; they outlive the clients
        open_attempts: Connect attempts per database name
        opened_uris: Every URI passed to open(), in order
        down: Database names whose server is unreachable
        connect_delay: Seconds each open() waits, to widen race windows

    Example:
        >>> connector = InMemoryShardConnector()
        >>> connector.fail_next("pos_db_2", ServerSelectionTimeoutError("timeout"), times=2)
    """

    def __init__(self, connect_delay: float = 0.0) -> None:
        self.databases: Dict[str, InMemoryDatabase] = {}
        self.open_attempts: Counter = Counter()
        self.opened_uris: List[str] = []
        self.down: set[str] = set()
        self.connect_delay = connect_delay
        self._failures: Dict[str, _InjectedFailure] = {}
        self.clients: List[InMemoryShardClient] = []

    def database(self, name: str) -> InMemoryDatabase:
        if name not in self.databases:
            self.databases[name] = InMemoryDatabase(name)
        return self.databases[name]

    def fail_next(self, database_name: str, error: BaseException, times: int = 1) -> None:
        """Make the next `times` open() calls for database_name raise error."""
        self._failures[database_name] = _InjectedFailure(error=error, remaining=times)

    async def open(self, uri: str, database_name: str) -> InMemoryShardClient:
        self.open_attempts[database_name] += 1
        self.opened_uris.append(uri)
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)

        failure = self._failures.get(database_name)
        if failure and failure.remaining > 0:
            failure.remaining -= 1
            raise failure.error

        client = InMemoryShardClient(self, self.database(database_name))
        await client.ping()
        self.clients.append(client)
        logger.debug("InMemoryShardConnector opened", extra={"database": database_name})
        return client
