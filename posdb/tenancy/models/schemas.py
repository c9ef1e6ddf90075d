"""
Entity schemas and collection naming.

Every tenant-scoped entity is described once, by an EntitySchema:
- EntityKind: the typed entity enum, with its collection suffix and the
  tenant-less namespaces it allows
- A pydantic record model (field shapes, defaults, normalization)
- The indexes each collection carries

Collection naming:
    STORE tenant   -> {prefix}_{suffix}     e.g. acme_customer_payments
    DEFAULT tenant -> {suffix}              e.g. products
    SYSTEM tenant  -> system_{suffix}       e.g. system_users

Invariants:
    - Collection names never exceed 255 characters
    - DEFAULT is only valid for categories, products and units; SYSTEM only
      for users
    - UserRecord.password_hash never appears in model_dump() output; only
      to_document() writes it

How to change safely:
    - Field aliases are the stored document keys; renaming one orphans
      existing data
    - Adding a unique index to a populated collection fails if duplicates
      already exist
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Type

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..errors import ValidationError
from ..tenants.types import Tenant, TenantKind

MAX_COLLECTION_NAME_LENGTH = 255
EMAIL_PATTERN = re.compile(r"^\S+@\S+\.\S+$")


def new_id() -> str:
    return str(ObjectId())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntityKind(Enum):
    """Tenant-scoped entity types. The value is the collection suffix."""

    CATEGORY = "categories"
    PRODUCT = "products"
    CUSTOMER = "customers"
    CUSTOMER_PAYMENT = "customer_payments"
    UNIT = "units"
    USER = "users"

    @property
    def collection_suffix(self) -> str:
        return self.value

    @property
    def namespaces(self) -> FrozenSet[TenantKind]:
        """Tenant kinds this entity may be stored under."""
        return _NAMESPACES[self]


_NAMESPACES: Dict[EntityKind, FrozenSet[TenantKind]] = {
    EntityKind.CATEGORY: frozenset({TenantKind.STORE, TenantKind.DEFAULT}),
    EntityKind.PRODUCT: frozenset({TenantKind.STORE, TenantKind.DEFAULT}),
    EntityKind.CUSTOMER: frozenset({TenantKind.STORE}),
    EntityKind.CUSTOMER_PAYMENT: frozenset({TenantKind.STORE}),
    EntityKind.UNIT: frozenset({TenantKind.STORE, TenantKind.DEFAULT}),
    EntityKind.USER: frozenset({TenantKind.STORE, TenantKind.SYSTEM}),
}


def collection_name(tenant: Tenant, kind: EntityKind) -> str:
    """Collection name for an entity kind in a tenant namespace.

    Raises:
        ValidationError: If the namespace is not allowed for the kind, or
            the name exceeds 255 characters
    """
    if tenant.kind not in kind.namespaces:
        raise ValidationError(
            f"{kind.name} does not support the {tenant.kind.value} namespace",
            field_name="tenant",
            value=str(tenant),
        )

    suffix = kind.collection_suffix
    if tenant.kind == TenantKind.STORE:
        name = f"{tenant.prefix}_{suffix}"
    elif tenant.kind == TenantKind.SYSTEM:
        name = f"system_{suffix}"
    else:
        name = suffix

    if len(name) > MAX_COLLECTION_NAME_LENGTH:
        raise ValidationError(
            f"Collection name exceeds {MAX_COLLECTION_NAME_LENGTH} characters ({len(name)})",
            field_name="collection_name",
            value=name,
        )
    return name


class TenantDocument(BaseModel):
    """Base for every stored record.

    Field names are snake_case in Python and camelCase in MongoDB; the id
    is stored as `_id`.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        use_enum_values=True,
        validate_default=True,
        extra="ignore",
    )

    id: str = Field(default_factory=new_id, alias="_id", description="Document id")
    store_id: Optional[str] = Field(None, description="Owning store id, None for system and default records")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return str(value) if isinstance(value, ObjectId) else value

    @field_validator("store_id", mode="before")
    @classmethod
    def _normalize_store_id(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("created_at", "updated_at", mode="after")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        # The driver returns naive UTC datetimes
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    def to_document(self) -> Dict[str, Any]:
        """Document to store, keyed by alias."""
        return self.model_dump(by_alias=True)

    @classmethod
    def from_document(cls, doc: Dict[str, Any]):
        return cls.model_validate(doc)


class Category(TenantDocument):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    image_url: Optional[str] = None


class Product(TenantDocument):
    name: str = Field(..., min_length=1)
    barcode: Optional[str] = None
    cost_price: float = Field(0, ge=0)
    price: float = Field(..., ge=0)
    stock: float = Field(0, ge=0)
    warehouse_id: Optional[str] = None
    category_id: Optional[str] = None
    brand_id: Optional[str] = None
    main_unit_id: Optional[str] = None
    description: Optional[str] = None
    low_stock_alert: float = Field(10, ge=0)
    internal_sku: Optional[str] = Field(None, alias="internalSKU")
    vat_percentage: float = Field(0, ge=0)
    vat_inclusive: bool = False


class Customer(TenantDocument):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    address: Optional[str] = None
    previous_balance: float = Field(0, ge=0)


class PaymentMethod(str, Enum):
    CASH = "Cash"
    BANK_TRANSFER = "Bank Transfer"
    CHEQUE = "Cheque"


class CustomerPayment(TenantDocument):
    customer_id: str
    date: datetime = Field(default_factory=utcnow)
    amount: float = Field(..., ge=0)
    method: PaymentMethod = PaymentMethod.CASH
    invoice_id: Optional[str] = None
    notes: Optional[str] = None


class Unit(TenantDocument):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None


class UserRole(str, Enum):
    ADMIN = "Admin"
    MANAGER = "Manager"
    CASHIER = "Cashier"


class UserStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"


class Permission(str, Enum):
    DASHBOARD = "dashboard"
    PRODUCTS = "products"
    CATEGORIES = "categories"
    BRANDS = "brands"
    PURCHASES = "purchases"
    EXPENSES = "expenses"
    SALES_TODAY = "salesToday"
    SALES_HISTORY = "salesHistory"
    POS_RETAIL = "posRetail"
    POS_WHOLESALE = "posWholesale"
    REFUNDS = "refunds"
    PREFERENCES = "preferences"
    USERS = "users"


class UserRecord(TenantDocument):
    """A user account.

    password_hash is stored under `password` and excluded from model_dump(),
    so API responses built from a record can never leak it.
    """

    full_name: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    email: str
    password_hash: Optional[str] = Field(None, alias="password", exclude=True, repr=False)
    role: UserRole = UserRole.CASHIER
    permissions: List[Permission] = Field(default_factory=list)
    status: UserStatus = UserStatus.ACTIVE
    last_login: Optional[datetime] = None

    @field_validator("username", "email", mode="after")
    @classmethod
    def _lowercase(cls, value: str) -> str:
        return value.lower()

    @field_validator("email", mode="after")
    @classmethod
    def _check_email(cls, value: str) -> str:
        if not EMAIL_PATTERN.match(value):
            raise ValueError("Please provide a valid email")
        return value

    def to_document(self) -> Dict[str, Any]:
        doc = super().to_document()
        doc["password"] = self.password_hash
        return doc


@dataclass(frozen=True)
class IndexSpec:
    """An index declared on every collection of a kind."""

    keys: Tuple[Tuple[str, int], ...]
    unique: bool = False

    @property
    def name(self) -> str:
        return "_".join(f"{k}_{d}" for k, d in self.keys)


@dataclass(frozen=True)
class EntitySchema:
    """Everything needed to bind a collection to an entity kind."""

    kind: EntityKind
    record_type: Type[TenantDocument]
    indexes: Tuple[IndexSpec, ...] = field(default_factory=tuple)

    def field_alias(self, name: str) -> str:
        """Stored key for a record field, accepting either spelling.

        Raises:
            ValidationError: If the record type has no such field
        """
        fields = self.record_type.model_fields
        if name in fields:
            return fields[name].alias or name
        for info in fields.values():
            if info.alias == name:
                return name
        raise ValidationError(
            f"{self.record_type.__name__} has no field '{name}'",
            field_name=name,
        )


SCHEMAS: Dict[EntityKind, EntitySchema] = {
    EntityKind.CATEGORY: EntitySchema(
        EntityKind.CATEGORY,
        Category,
        (IndexSpec((("name", 1),), unique=True),),
    ),
    EntityKind.PRODUCT: EntitySchema(
        EntityKind.PRODUCT,
        Product,
        (
            IndexSpec((("name", 1),)),
            IndexSpec((("barcode", 1),)),
            IndexSpec((("categoryId", 1),)),
            IndexSpec((("storeId", 1), ("createdAt", -1))),
        ),
    ),
    EntityKind.CUSTOMER: EntitySchema(
        EntityKind.CUSTOMER,
        Customer,
        (
            IndexSpec((("storeId", 1), ("phone", 1)), unique=True),
            IndexSpec((("storeId", 1), ("name", 1))),
            IndexSpec((("storeId", 1), ("createdAt", -1))),
        ),
    ),
    EntityKind.CUSTOMER_PAYMENT: EntitySchema(
        EntityKind.CUSTOMER_PAYMENT,
        CustomerPayment,
        (
            IndexSpec((("customerId", 1), ("storeId", 1))),
            IndexSpec((("date", -1), ("storeId", 1))),
            IndexSpec((("method", 1), ("storeId", 1))),
            IndexSpec((("invoiceId", 1), ("storeId", 1))),
        ),
    ),
    EntityKind.UNIT: EntitySchema(
        EntityKind.UNIT,
        Unit,
        (IndexSpec((("name", 1),)),),
    ),
    EntityKind.USER: EntitySchema(
        EntityKind.USER,
        UserRecord,
        (
            IndexSpec((("storeId", 1), ("username", 1)), unique=True),
            IndexSpec((("storeId", 1), ("email", 1)), unique=True),
            IndexSpec((("role", 1),)),
        ),
    ),
}


def schema_for(kind: EntityKind) -> EntitySchema:
    return SCHEMAS[kind]
