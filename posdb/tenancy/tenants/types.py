"""
Tenant identity types.

A tenant is one of three namespaces:
- SYSTEM: administrators not bound to any store (users only)
- DEFAULT: legacy tenant-less collections (categories, products, units)
- STORE: a store's own collections, named by its prefix

Invariants:
    - A STORE tenant always carries a prefix matching ^[a-z0-9_]+$
    - SYSTEM and DEFAULT never carry a prefix
    - "No tenant" is never represented by an empty prefix

How to change safely:
    - Add new namespaces as TenantKind members and handle them in
      models.schemas.collection_name
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from ..errors import NotFoundError, ValidationError

PREFIX_PATTERN = re.compile(r"^[a-z0-9_]+$")


def normalize_identifier(raw: str) -> str:
    """Lowercase and trim a tenant identifier or prefix."""
    return raw.strip().lower()


def is_valid_prefix(value: str) -> bool:
    return bool(PREFIX_PATTERN.match(value))


def validate_prefix(raw: Any) -> str:
    """Normalize and validate a tenant prefix.

    Args:
        raw: Prefix as supplied by the caller

    Returns:
        The normalized prefix

    Raises:
        ValidationError: If the prefix is not a string or has characters
            outside [a-z0-9_] after normalization
    """
    if not isinstance(raw, str):
        raise ValidationError(
            f"Tenant prefix must be a string, got {type(raw).__name__}",
            field_name="prefix",
            value=raw,
        )
    prefix = normalize_identifier(raw)
    if not is_valid_prefix(prefix):
        raise ValidationError(
            f"Invalid tenant prefix '{raw}': only lowercase letters, digits and underscores are allowed",
            field_name="prefix",
            value=raw,
        )
    return prefix


class TenantKind(Enum):
    """Namespace a tenant lives in."""

    SYSTEM = "system"
    DEFAULT = "default"
    STORE = "store"


@dataclass(frozen=True)
class Tenant:
    """A collection namespace.

    Build instances with the constructors, not directly:

        >>> Tenant.system()
        >>> Tenant.default()
        >>> Tenant.store("acme")
    """

    kind: TenantKind
    prefix: Optional[str] = None

    def __post_init__(self) -> None:
        if self.kind == TenantKind.STORE:
            if self.prefix is None or not is_valid_prefix(self.prefix):
                raise ValidationError(
                    f"Store tenant needs a valid prefix, got {self.prefix!r}",
                    field_name="prefix",
                    value=self.prefix,
                )
        elif self.prefix is not None:
            raise ValidationError(
                f"{self.kind.value} tenant cannot carry a prefix",
                field_name="prefix",
                value=self.prefix,
            )

    @classmethod
    def system(cls) -> Tenant:
        return cls(TenantKind.SYSTEM)

    @classmethod
    def default(cls) -> Tenant:
        return cls(TenantKind.DEFAULT)

    @classmethod
    def store(cls, prefix: str) -> Tenant:
        return cls(TenantKind.STORE, validate_prefix(prefix))

    @property
    def is_store(self) -> bool:
        return self.kind == TenantKind.STORE

    def __str__(self) -> str:
        return self.prefix if self.kind == TenantKind.STORE else self.kind.value


@dataclass(frozen=True)
class TenantRecord:
    """A store as listed in the store registry.

    Attributes:
        store_id: Canonical store id (lowercase)
        prefix: Collection prefix
        shard_id: Shard hosting the store, None until assigned
        name: Display name
    """

    store_id: str
    prefix: str
    shard_id: Optional[int] = None
    name: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return {
            "storeId": self.store_id,
            "prefix": self.prefix,
            "databaseId": self.shard_id,
            "name": self.name,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> TenantRecord:
        return cls(
            store_id=normalize_identifier(doc["storeId"]),
            prefix=normalize_identifier(doc["prefix"]),
            shard_id=doc.get("databaseId"),
            name=doc.get("name"),
        )


@dataclass(frozen=True)
class Placement:
    """Where a tenant's data lives.

    Attributes:
        prefix: Collection prefix
        shard_id: Hosting shard, None when the tenant was resolved only by
            prefix syntax and has no registry entry
        store_id: Canonical store id, None on the same fallback path
    """

    prefix: str
    shard_id: Optional[int] = None
    store_id: Optional[str] = None

    @property
    def tenant(self) -> Tenant:
        return Tenant.store(self.prefix)

    @property
    def tenant_id(self) -> str:
        """Identifier cached in the directory: the store id when known."""
        return self.store_id or self.prefix

    def require_shard(self) -> int:
        """Return the shard id.

        Raises:
            NotFoundError: If no shard is known for this tenant
        """
        if self.shard_id is None:
            raise NotFoundError(
                f"Tenant '{self.prefix}' has no shard assigned",
                resource_type="shard",
                resource_id=self.prefix,
            )
        return self.shard_id
