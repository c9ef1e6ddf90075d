"""
POS Tenancy - tenant-to-shard routing for a multi-tenant point-of-sale backend.

Stores ("tenants") each own a logical dataset, packed onto a fixed number
of MongoDB databases ("shards"). This package decides where a tenant's
data lives and hands out typed collection handles for it:

    caller ──▶ ModelFactory / UserDirectory
                   │            │
                   │            └──▶ DirectoryCache (email/username -> tenant)
                   ▼
               TenantResolver ──▶ StoreRegistry (`stores` collection)
                   │
                   ▼
               ShardRegistry ──▶ pos_db_1 … pos_db_N

Invariants:
    - Shard ids lie in [1, N]; database k is named {DATABASE_PREFIX}_{k}
    - One live connection per shard, one handle per (shard, collection)
    - Tenant namespaces are SYSTEM, DEFAULT or STORE(prefix), never an
      empty prefix
    - Cross-shard user migration is best-effort, not transactional

How to change safely:
    - Never change shard or collection naming for a live deployment
    - Add entity kinds in models.schemas; everything else is generic

Version: see _version.py.
"""

from ._version import __version__
from .config import TenancyConfig
from .errors import (
    ConfigurationError,
    ConflictError,
    ConnectionError,
    NotFoundError,
    TenancyError,
    ValidationError,
)
from .models import CollectionHandle, EntityKind, ModelFactory, UserRecord
from .service import TenancyService
from .shards import ShardRegistry
from .tenants import Placement, Tenant, TenantKind, TenantRecord, TenantResolver
from .users import DirectoryCache, UserDirectory

__all__ = [
    "__version__",
    "TenancyConfig",
    "ConfigurationError",
    "ConflictError",
    "ConnectionError",
    "NotFoundError",
    "TenancyError",
    "ValidationError",
    "CollectionHandle",
    "EntityKind",
    "ModelFactory",
    "UserRecord",
    "TenancyService",
    "ShardRegistry",
    "Placement",
    "Tenant",
    "TenantKind",
    "TenantRecord",
    "TenantResolver",
    "DirectoryCache",
    "UserDirectory",
]
