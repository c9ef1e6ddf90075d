"""
E2E test fixtures for the tenancy layer.

These tests need a reachable MongoDB deployment (a replica set, since
writes use w=majority) given by MONGODB_URI.
"""

import os
import uuid

import pytest
from motor.motor_asyncio import AsyncIOMotorClient

from posdb.tenancy.config import DirectoryCacheConfig, ShardConfig, TenancyConfig

# Skip E2E tests if not in E2E mode
E2E_ENABLED = os.environ.get("POSDB_E2E_TESTS", "0") == "1"

pytestmark = pytest.mark.skipif(
    not E2E_ENABLED,
    reason="E2E tests disabled. Set POSDB_E2E_TESTS=1 and MONGODB_URI to enable."
)


@pytest.fixture
def mongodb_uri() -> str:
    uri = os.environ.get("MONGODB_URI")
    if not uri:
        pytest.skip("MONGODB_URI not set")
    return uri


@pytest.fixture
def e2e_config(mongodb_uri) -> TenancyConfig:
    """Two shards under a unique database prefix, for test isolation."""
    return TenancyConfig(
        shards=ShardConfig(
            base_uri=mongodb_uri,
            database_prefix=f"posdb_e2e_{uuid.uuid4().hex[:8]}",
            database_count=2,
            stores_per_database=1,
            server_selection_timeout_ms=5000,
            max_retries=1,
            retry_delay_ms=100,
        ),
        directory_cache=DirectoryCacheConfig(ttl_seconds=60),
    )


@pytest.fixture
def drop_databases(mongodb_uri, e2e_config):
    """Coroutine that drops every shard database created by a test."""

    async def drop():
        client = AsyncIOMotorClient(mongodb_uri)
        try:
            for shard_id in range(1, e2e_config.shards.database_count + 1):
                await client.drop_database(f"{e2e_config.shards.database_prefix}_{shard_id}")
        finally:
            client.close()

    return drop
