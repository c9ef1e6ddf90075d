"""
Models module - entity schemas and per-tenant collection handles.

This module handles:
- Entity kinds, their pydantic record types and indexes
- Tenant collection naming
- Typed collection handles
- The handle factory and its cache
"""

from .factory import ModelFactory
from .handle import CollectionHandle
from .schemas import (
    MAX_COLLECTION_NAME_LENGTH,
    SCHEMAS,
    Category,
    Customer,
    CustomerPayment,
    EntityKind,
    EntitySchema,
    IndexSpec,
    PaymentMethod,
    Permission,
    Product,
    TenantDocument,
    Unit,
    UserRecord,
    UserRole,
    UserStatus,
    collection_name,
    schema_for,
)

__all__ = [
    "ModelFactory",
    "CollectionHandle",
    "MAX_COLLECTION_NAME_LENGTH",
    "SCHEMAS",
    "Category",
    "Customer",
    "CustomerPayment",
    "EntityKind",
    "EntitySchema",
    "IndexSpec",
    "PaymentMethod",
    "Permission",
    "Product",
    "TenantDocument",
    "Unit",
    "UserRecord",
    "UserRole",
    "UserStatus",
    "collection_name",
    "schema_for",
]
