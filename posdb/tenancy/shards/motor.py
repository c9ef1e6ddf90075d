"""
Motor (async MongoDB) shard backend.

This module provides the production ShardConnector. Each shard gets its own
AsyncIOMotorClient whose pool is sized by ShardConfig; concurrent queries on
one shard are governed by that pool, not by the registry.

Invariants:
    - open() returns only after a successful ping
    - A client whose ping failed or was cancelled is closed before the
      error propagates
    - Writes use retryWrites=true and w=majority

How to change safely:
    - Test against a real replica set or Atlas cluster before deploying
    - Keep pool sizes small: every process holds up to N pools
"""

from __future__ import annotations

import logging
from typing import Any

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection

from ..config import ShardConfig
from .base import ShardClient

logger = logging.getLogger(__name__)


class MotorShardClient:
    """ShardClient backed by an AsyncIOMotorClient.

    Attributes:
        database_name: Shard database name
    """

    def __init__(self, client: AsyncIOMotorClient, database_name: str) -> None:
        self._client = client
        self.database_name = database_name
        self._database = client[database_name]

    def collection(self, name: str) -> AsyncIOMotorCollection:
        return self._database[name]

    async def ping(self) -> None:
        await self._client.admin.command("ping")

    async def close(self) -> None:
        self._client.close()


class MotorShardConnector:
    """Opens Motor clients with the configured pool and timeout settings.

    Example:
        >>> connector = MotorShardConnector(ShardConfig.from_env())
        >>> client = await connector.open("mongodb://localhost/pos_db_1", "pos_db_1")
    """

    def __init__(self, config: ShardConfig) -> None:
        """Initialize the connector.

        Args:
            config: Shard configuration (pool sizes, timeouts)
        """
        self.config = config

    def client_options(self) -> dict[str, Any]:
        """Driver options applied to every shard client."""
        return {
            "maxPoolSize": self.config.max_pool_size,
            "minPoolSize": self.config.min_pool_size,
            "serverSelectionTimeoutMS": self.config.server_selection_timeout_ms,
            "socketTimeoutMS": self.config.socket_timeout_ms,
            "connectTimeoutMS": self.config.connect_timeout_ms,
            "retryWrites": True,
            "w": "majority",
        }

    async def open(self, uri: str, database_name: str) -> ShardClient:
        client = AsyncIOMotorClient(uri, **self.client_options())
        shard_client = MotorShardClient(client, database_name)
        try:
            await shard_client.ping()
        except BaseException:
            # Includes cancellation from the registry's connect timeout
            client.close()
            raise
        logger.debug("Opened Motor client", extra={"database": database_name})
        return shard_client
