"""
Shard assignment for stores.

New stores are packed onto shards in fill order (STORES_PER_DATABASE per
shard, the last shard absorbing any overflow). Stores registered before
they had a shard are spread onto the least-loaded shards.

Invariants:
    - Assigned shard ids always lie in [1, N]
    - An existing assignment is never changed here; moving a store is a
      migration
"""

from __future__ import annotations

import logging
from typing import Dict, List, Tuple

from ..config import ShardConfig
from .stores import StoreRegistry

logger = logging.getLogger(__name__)


class ShardAssigner:
    """Chooses shards for stores.

    Example:
        >>> assigner = ShardAssigner(config.shards, stores)
        >>> await assigner.shard_for_new_store()
        1
    """

    def __init__(self, config: ShardConfig, stores: StoreRegistry) -> None:
        self.config = config
        self.stores = stores

    async def shard_for_new_store(self) -> int:
        """Shard for the next store to be registered.

        A failing count is logged and treated as zero, placing the store
        on shard 1 rather than blocking store creation.
        """
        try:
            total = await self.stores.count()
        except Exception as e:
            logger.error(f"Error counting stores, defaulting to shard 1: {e}")
            total = 0

        shard_id = min(total // self.config.stores_per_database + 1, self.config.database_count)
        logger.info(f"Assigning store {total + 1} to database {shard_id}")
        return shard_id

    async def distribution(self) -> Dict[int, int]:
        """Number of stores on each shard, every shard listed."""
        counts = {shard_id: 0 for shard_id in range(1, self.config.database_count + 1)}
        for record in await self.stores.list_all():
            if record.shard_id in counts:
                counts[record.shard_id] += 1
        return counts

    async def assign_unassigned(self, dry_run: bool = False) -> List[Tuple[str, int]]:
        """Assign every store without a shard to the least-loaded shard.

        Ties go to the lowest shard id. Stores are processed in registry
        order.

        Args:
            dry_run: Compute assignments without writing them

        Returns:
            (store_id, shard_id) for each store assigned
        """
        records = await self.stores.list_all()
        counts = {shard_id: 0 for shard_id in range(1, self.config.database_count + 1)}
        for record in records:
            if record.shard_id in counts:
                counts[record.shard_id] += 1

        unassigned = [r for r in records if r.shard_id is None]
        if not unassigned:
            logger.info("All stores already have a shard assigned")
            return []

        assignments = []
        for record in unassigned:
            target = min(counts, key=lambda shard_id: (counts[shard_id], shard_id))
            counts[target] += 1
            if not dry_run:
                await self.stores.set_shard(record.store_id, target)
            assignments.append((record.store_id, target))
            logger.info(
                f"Assigned store {record.store_id} to database {target}",
                extra={"store_id": record.store_id, "shard_id": target, "dry_run": dry_run},
            )
        return assignments
