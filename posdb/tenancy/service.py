"""
Tenancy service - the consumer-facing API.

Wires the components together and owns their lifecycle:

    ShardRegistry -> StoreRegistry -> TenantResolver -> ModelFactory
                                                     -> UserDirectory (+ DirectoryCache)

Controllers hold one TenancyService per process and call:
- get_handle_for_tenant(tenant_id, kind)
- get_user_handle(tenant_id | None)
- find_across_tenants(query, tenant_hint)
- find_by_id_across_tenants(user_id, tenant_id)
- migrate_user(user, new_tenant_id)
- invalidate_directory_cache(email, username)

Invariants:
    - Nothing connects at construction; shards connect on first use
    - close() releases every shard connection and may be called twice

How to change safely:
    - Build components only here; never keep module-level instances
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .config import TenancyConfig
from .models.factory import ModelFactory
from .models.handle import CollectionHandle
from .models.schemas import EntityKind, UserRecord
from .shards.base import ShardConnector
from .shards.motor import MotorShardConnector
from .shards.registry import ShardRegistry
from .tenants.assignment import ShardAssigner
from .tenants.resolver import TenantResolver
from .tenants.stores import MongoStoreRegistry, StoreRegistry
from .users.cache import DirectoryCache
from .users.directory import OMITTED, UserDirectory

logger = logging.getLogger(__name__)


class TenancyService:
    """Process-wide entry point to tenant routing.

    Attributes:
        config: Tenancy configuration
        shards: Shard connection registry
        stores: Store registry
        resolver: Tenant resolver
        factory: Handle factory
        cache: Directory cache
        users: User directory
        assigner: Shard assigner for stores

    Example:
        >>> async with TenancyService() as tenancy:
        ...     products = await tenancy.get_handle_for_tenant("acme", EntityKind.PRODUCT)
        ...     bob = await tenancy.find_across_tenants({"username": "bob"})
    """

    def __init__(
        self,
        config: Optional[TenancyConfig] = None,
        connector: Optional[ShardConnector] = None,
        store_registry: Optional[StoreRegistry] = None,
        **directory_options: Any,
    ) -> None:
        """Build the component graph.

        Args:
            config: Configuration (loaded from env if not provided)
            connector: Shard backend (Motor if not provided)
            store_registry: Store registry (the `stores` collection on the
                system shard if not provided)
            **directory_options: Extra UserDirectory arguments
                (e.g., password_rounds)
        """
        self.config = config or TenancyConfig.from_env()
        self.shards = ShardRegistry(self.config.shards, connector or MotorShardConnector(self.config.shards))
        self.stores = store_registry if store_registry is not None else MongoStoreRegistry(self.shards)
        self.resolver = TenantResolver(self.stores)
        self.factory = ModelFactory(self.shards, self.resolver)
        self.cache = DirectoryCache(
            ttl_seconds=self.config.directory_cache.ttl_seconds,
            max_entries=self.config.directory_cache.max_entries,
        )
        self.users = UserDirectory(self.factory, self.stores, self.cache, **directory_options)
        self.assigner = ShardAssigner(self.config.shards, self.stores)
        self._started = False

    async def start(self, warm: bool = False) -> None:
        """Prepare the service.

        Args:
            warm: Connect every shard now instead of on first use
        """
        if self._started:
            logger.warning("Tenancy service already started")
            return
        logger.info("Starting tenancy service")
        self.config.log_config()
        if warm:
            await self.shards.warm_all()
        self._started = True

    async def close(self) -> None:
        """Close every shard connection and drop cached handles."""
        await self.shards.close_all()
        self.factory.clear_cache()
        self._started = False
        logger.info("Tenancy service stopped")

    async def __aenter__(self) -> TenancyService:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def get_handle_for_tenant(self, tenant_id: Optional[str], kind: EntityKind) -> CollectionHandle:
        return await self.factory.get_handle_for_tenant(tenant_id, kind)

    async def get_user_handle(self, tenant_id: Optional[str]) -> CollectionHandle:
        return await self.users.get_user_handle(tenant_id)

    async def find_across_tenants(
        self,
        query: Dict[str, Any],
        tenant_hint: Optional[str] = None,
    ) -> Optional[UserRecord]:
        return await self.users.find_across_tenants(query, tenant_hint)

    async def find_by_id_across_tenants(self, user_id: str, tenant_id: Optional[str] = OMITTED) -> Optional[UserRecord]:
        return await self.users.find_by_id_across_tenants(user_id, tenant_id)

    async def migrate_user(self, user: UserRecord, new_tenant_id: Optional[str]) -> UserRecord:
        return await self.users.migrate_user(user, new_tenant_id)

    def invalidate_directory_cache(self, email: Optional[str] = None, username: Optional[str] = None) -> None:
        self.users.invalidate_directory_cache(email, username)

    def stats(self) -> Dict[str, Any]:
        """Snapshot for health endpoints."""
        return {
            "shard_connections": self.shards.count(),
            "shard_states": {shard_id: state.value for shard_id, state in self.shards.states().items()},
            "cached_handles": self.factory.cache_size(),
            "users": self.users.stats(),
        }
