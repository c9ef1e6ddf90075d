"""
Tenant resolution.

Maps a raw tenant identifier (store id or prefix, any case) to a Placement.

Resolution order:
    1. Store registry lookup by prefix
    2. Store registry lookup by store id
    3. A syntactically valid identifier is its own prefix, with no shard

Invariants:
    - Registry errors propagate untouched; retries belong to ShardRegistry
    - The fallback placement never invents a shard id
"""

from __future__ import annotations

import logging

from ..errors import NotFoundError, ValidationError
from .stores import StoreRegistry
from .types import Placement, TenantRecord, is_valid_prefix, normalize_identifier

logger = logging.getLogger(__name__)


def _placement(record: TenantRecord) -> Placement:
    return Placement(prefix=record.prefix, shard_id=record.shard_id, store_id=record.store_id)


class TenantResolver:
    """Resolves tenant identifiers through the store registry.

    Example:
        >>> resolver = TenantResolver(stores)
        >>> await resolver.resolve(" ACME ")
        Placement(prefix='acme', shard_id=1, store_id='store-001')
    """

    def __init__(self, stores: StoreRegistry) -> None:
        self.stores = stores

    async def resolve(self, raw_tenant_id: str) -> Placement:
        """Resolve a tenant identifier.

        Args:
            raw_tenant_id: Store id or prefix, case-insensitive

        Returns:
            The tenant's placement; shard_id is None when only the
            prefix fallback applied

        Raises:
            NotFoundError: If nothing matches and the identifier is not a
                valid prefix
            ConnectionError: If the store registry is unreachable
        """
        if not isinstance(raw_tenant_id, str):
            raise ValidationError(
                f"Tenant id must be a string, got {type(raw_tenant_id).__name__}",
                field_name="tenant_id",
                value=raw_tenant_id,
            )
        tenant_id = normalize_identifier(raw_tenant_id)

        record = await self.stores.find_by_prefix(tenant_id)
        if record is None:
            record = await self.stores.find_by_store_id(tenant_id)
        if record is not None:
            return _placement(record)

        if tenant_id and is_valid_prefix(tenant_id):
            logger.debug(f"Tenant '{tenant_id}' not registered, using it as its own prefix")
            return Placement(prefix=tenant_id)

        raise NotFoundError(
            f"Tenant '{raw_tenant_id}' not found",
            resource_type="tenant",
            resource_id=raw_tenant_id,
        )
