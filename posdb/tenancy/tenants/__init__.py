"""
Tenant module - tenant identity, the store registry and shard placement.

This module handles:
- The Tenant sum type (SYSTEM, DEFAULT, STORE)
- Store registry backends (MongoDB and in-memory)
- Resolving raw tenant identifiers to a (prefix, shard) placement
- Choosing shards for new and unassigned stores
"""

from .assignment import ShardAssigner
from .resolver import TenantResolver
from .stores import STORES_COLLECTION, InMemoryStoreRegistry, MongoStoreRegistry, StoreRegistry
from .types import (
    Placement,
    Tenant,
    TenantKind,
    TenantRecord,
    is_valid_prefix,
    normalize_identifier,
    validate_prefix,
)

__all__ = [
    "ShardAssigner",
    "TenantResolver",
    "STORES_COLLECTION",
    "InMemoryStoreRegistry",
    "MongoStoreRegistry",
    "StoreRegistry",
    "Placement",
    "Tenant",
    "TenantKind",
    "TenantRecord",
    "is_valid_prefix",
    "normalize_identifier",
    "validate_prefix",
]
