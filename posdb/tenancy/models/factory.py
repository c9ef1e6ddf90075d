"""
Model factory - cached per-tenant collection handles.

The factory turns (tenant, shard, entity kind) into a CollectionHandle,
creating it on first request and returning the same instance afterwards.

Validation order for get_handle():
    1. Tenant prefix syntax
    2. Namespace allowed for the entity kind
    3. Collection name length
    4. Shard id bounds

Invariants:
    - One handle per (shard_id, collection_name), for the process lifetime
      or until clear_cache()
    - Concurrent first requests for one key create a single handle, and
      its indexes are created once
    - A handle whose index creation failed is not cached

How to change safely:
    - Handle identity is part of the contract; never rebuild a cached
      handle in place
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional, Tuple, Union

from ..errors import ValidationError
from ..shards.registry import ShardRegistry
from ..tenants.resolver import TenantResolver
from ..tenants.types import Tenant, TenantKind
from .handle import CollectionHandle
from .schemas import EntityKind, collection_name, schema_for

logger = logging.getLogger(__name__)

HandleKey = Tuple[int, str]


class ModelFactory:
    """Creates and caches CollectionHandles.

    Thread safety:
        Designed for a single asyncio event loop; per-key asyncio locks
        give singleflight creation.

    Example:
        >>> factory = ModelFactory(shards, resolver)
        >>> products = await factory.get_handle_for_tenant("acme", EntityKind.PRODUCT)
        >>> products is await factory.get_handle_for_tenant("ACME", EntityKind.PRODUCT)
        True
    """

    def __init__(self, shards: ShardRegistry, resolver: TenantResolver) -> None:
        self.shards = shards
        self.resolver = resolver
        self._handles: Dict[HandleKey, CollectionHandle] = {}
        self._locks: Dict[HandleKey, asyncio.Lock] = {}

    @property
    def system_shard_id(self) -> int:
        return self.shards.config.system_shard_id

    async def get_handle(
        self,
        tenant: Union[Tenant, str],
        shard_id: int,
        kind: EntityKind,
    ) -> CollectionHandle:
        """Return the handle for a tenant collection, creating it if needed.

        Args:
            tenant: Tenant namespace, or a store prefix
            shard_id: Shard hosting the tenant
            kind: Entity kind

        Returns:
            The cached handle for (shard_id, collection name)

        Raises:
            ValidationError: Invalid prefix, namespace, name length or shard id
            ConnectionError: If the shard is unreachable
        """
        if not isinstance(tenant, Tenant):
            tenant = Tenant.store(tenant)
        schema = schema_for(kind)
        name = collection_name(tenant, kind)
        self.shards.database_name(shard_id)

        await self.shards.connection_for(shard_id)

        key = (shard_id, name)
        cached = self._handles.get(key)
        if cached is not None:
            return cached

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            cached = self._handles.get(key)
            if cached is not None:
                return cached

            handle = CollectionHandle(self.shards, shard_id, tenant, schema, name)
            await handle.ensure_indexes()
            self._handles[key] = handle
            logger.info(
                f"Created handle for {name}",
                extra={"shard_id": shard_id, "collection": name, "kind": kind.name},
            )
            return handle

    def namespace_for(self, tenant_id: Optional[str], kind: EntityKind) -> Optional[Tenant]:
        """Tenant-less namespace used when no tenant id is supplied.

        Returns None when tenant_id is given.

        Raises:
            ValidationError: If tenant_id is None and the kind has neither a
                system nor a default namespace
        """
        if tenant_id is not None:
            return None
        if TenantKind.SYSTEM in kind.namespaces:
            return Tenant.system()
        if TenantKind.DEFAULT in kind.namespaces:
            return Tenant.default()
        raise ValidationError(
            f"{kind.name} requires a tenant id",
            field_name="tenant_id",
        )

    async def get_handle_for_tenant(self, tenant_id: Optional[str], kind: EntityKind) -> CollectionHandle:
        """Resolve a tenant and return its handle.

        tenant_id=None selects the default namespace (categories, products,
        units) or the system namespace (users), both on the system shard.

        Raises:
            ValidationError: Invalid tenant id, or None for a kind with no
                tenant-less namespace
            NotFoundError: If the tenant is unknown or has no shard
            ConnectionError: If the store registry or shard is unreachable
        """
        namespace = self.namespace_for(tenant_id, kind)
        if namespace is not None:
            return await self.get_handle(namespace, self.system_shard_id, kind)

        placement = await self.resolver.resolve(tenant_id)
        return await self.get_handle(placement.tenant, placement.require_shard(), kind)

    def cache_size(self) -> int:
        return len(self._handles)

    def clear_cache(self) -> None:
        """Drop every cached handle. Later requests build new ones.

        Per-key locks are kept so a build in flight still serializes with
        builds started after the clear.
        """
        count = len(self._handles)
        self._handles.clear()
        logger.info(f"Cleared {count} cached handles")
