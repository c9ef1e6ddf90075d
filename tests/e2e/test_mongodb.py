"""
End-to-end tests against a real MongoDB deployment.

Tests cover:
- Shard connection through Motor
- Store registration and index creation
- User lookup and migration across two shard databases
- Unique index conflicts from the server
"""

import os

import pytest

from posdb.tenancy.errors import ConflictError
from posdb.tenancy.models.schemas import Customer, EntityKind
from posdb.tenancy.service import TenancyService
from posdb.tenancy.tenants.types import TenantRecord

# Skip if not in E2E mode
E2E_ENABLED = os.environ.get("POSDB_E2E_TESTS", "0") == "1"
pytestmark = pytest.mark.skipif(
    not E2E_ENABLED, reason="E2E tests disabled. Set POSDB_E2E_TESTS=1 to enable."
)


class TestMongoFlow:
    """Full routing flow on two shard databases."""

    @pytest.mark.asyncio
    async def test_user_moves_between_shards(self, e2e_config, drop_databases):
        try:
            async with TenancyService(e2e_config, password_rounds=4) as tenancy:
                await tenancy.stores.add(TenantRecord("store-001", "acme", await tenancy.assigner.shard_for_new_store()))
                await tenancy.stores.add(TenantRecord("store-002", "beta", await tenancy.assigner.shard_for_new_store()))
                assert await tenancy.assigner.distribution() == {1: 1, 2: 1}

                bob = await tenancy.users.create_user(
                    "acme", full_name="Bob", username="bob", email="bob@x.com", password="hunter22"
                )
                tenancy.invalidate_directory_cache(email="bob@x.com", username="bob")
                assert (await tenancy.find_across_tenants({"email": "bob@x.com"})).id == bob.id

                moved = await tenancy.migrate_user(bob, "beta")

                assert moved.store_id == "store-002"
                assert await tenancy.find_by_id_across_tenants(bob.id, "acme") is None
                found = await tenancy.find_across_tenants({"username": "bob"})
                assert found.store_id == "store-002"
                assert await tenancy.users.verify_password(found, "hunter22")
        finally:
            await drop_databases()

    @pytest.mark.asyncio
    async def test_server_unique_index_conflict(self, e2e_config, drop_databases):
        try:
            async with TenancyService(e2e_config) as tenancy:
                await tenancy.stores.add(TenantRecord("store-001", "acme", 1))
                customers = await tenancy.get_handle_for_tenant("acme", EntityKind.CUSTOMER)
                await customers.insert(Customer(name="Ann", phone="555", store_id="store-001"))

                with pytest.raises(ConflictError) as exc_info:
                    await customers.insert(Customer(name="Ann B", phone="555", store_id="store-001"))
                assert exc_info.value.field_name == "phone"
        finally:
            await drop_databases()
