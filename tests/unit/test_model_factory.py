"""
Unit tests for ModelFactory and CollectionHandle.

Tests cover:
- Handle caching and identity
- One-time index creation, including under concurrency
- Validation order
- Tenant-less namespaces
- Handle CRUD and error translation
"""

import asyncio
from datetime import datetime, timezone

import pytest

from posdb.tenancy.errors import ConflictError, ConnectionError, NotFoundError, ValidationError
from posdb.tenancy.models.factory import ModelFactory
from posdb.tenancy.models.handle import CollectionHandle
from posdb.tenancy.models.schemas import Customer, EntityKind, Product, Unit, UserRecord
from posdb.tenancy.shards.memory import InMemoryShardConnector
from posdb.tenancy.shards.registry import ShardRegistry
from posdb.tenancy.tenants.resolver import TenantResolver
from posdb.tenancy.tenants.stores import InMemoryStoreRegistry
from posdb.tenancy.tenants.types import Tenant, TenantRecord


@pytest.fixture
def stores(store_records):
    return InMemoryStoreRegistry(store_records + [TenantRecord("store-004", "delta")])


@pytest.fixture
def factory(shards, stores):
    return ModelFactory(shards, TenantResolver(stores))


class TestGetHandle:
    """Tests for get_handle()."""

    @pytest.mark.asyncio
    async def test_same_instance_returned(self, factory):
        first = await factory.get_handle("acme", 2, EntityKind.PRODUCT)
        second = await factory.get_handle(Tenant.store("ACME"), 2, EntityKind.PRODUCT)

        assert first is second
        assert first.name == "acme_products"
        assert first.shard_id == 2
        assert factory.cache_size() == 1

    @pytest.mark.asyncio
    async def test_indexes_created_once(self, factory, connector):
        """Each declared index is created exactly once per collection."""
        for _ in range(3):
            await factory.get_handle("acme", 2, EntityKind.PRODUCT)

        collection = connector.database("pos_db_2")["acme_products"]
        assert collection.calls["create_index"] == 4
        assert len(collection.indexes) == 4

    @pytest.mark.asyncio
    async def test_concurrent_first_requests(self, shard_config, sleeper, stores):
        """Racing requests share one handle and one round of index creation."""
        connector = InMemoryShardConnector(connect_delay=0.01)
        factory = ModelFactory(ShardRegistry(shard_config, connector, sleep=sleeper), TenantResolver(stores))

        handles = await asyncio.gather(
            *(factory.get_handle("beta", 3, EntityKind.CUSTOMER) for _ in range(20))
        )

        assert all(h is handles[0] for h in handles)
        assert connector.database("pos_db_3")["beta_customers"].calls["create_index"] == 3
        assert connector.open_attempts["pos_db_3"] == 1

    @pytest.mark.asyncio
    async def test_same_collection_on_different_shards(self, factory):
        one = await factory.get_handle("acme", 1, EntityKind.UNIT)
        two = await factory.get_handle("acme", 2, EntityKind.UNIT)
        assert one is not two

    @pytest.mark.asyncio
    async def test_invalid_prefix_rejected_first(self, factory, connector):
        """Prefix errors win over shard errors, and nothing is opened."""
        with pytest.raises(ValidationError) as exc_info:
            await factory.get_handle("Acme!", 99, EntityKind.PRODUCT)

        assert exc_info.value.field_name == "prefix"
        assert connector.opened_uris == []

    @pytest.mark.asyncio
    async def test_namespace_checked_before_shard(self, factory):
        with pytest.raises(ValidationError) as exc_info:
            await factory.get_handle(Tenant.default(), 99, EntityKind.USER)
        assert exc_info.value.field_name == "tenant"

    @pytest.mark.asyncio
    async def test_name_length_checked_before_shard(self, factory):
        with pytest.raises(ValidationError) as exc_info:
            await factory.get_handle("a" * 250, 99, EntityKind.PRODUCT)
        assert exc_info.value.field_name == "collection_name"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("shard_id", [0, 6])
    async def test_shard_out_of_range(self, factory, shard_id):
        with pytest.raises(ValidationError) as exc_info:
            await factory.get_handle("acme", shard_id, EntityKind.PRODUCT)
        assert exc_info.value.field_name == "shard_id"

    @pytest.mark.asyncio
    async def test_unreachable_shard_not_cached(self, factory, connector):
        connector.down.add("pos_db_4")

        with pytest.raises(ConnectionError):
            await factory.get_handle("acme", 4, EntityKind.PRODUCT)
        assert factory.cache_size() == 0

        connector.down.clear()
        assert (await factory.get_handle("acme", 4, EntityKind.PRODUCT)).shard_id == 4

    @pytest.mark.asyncio
    async def test_clear_cache(self, factory):
        first = await factory.get_handle("acme", 1, EntityKind.UNIT)
        factory.clear_cache()

        assert factory.cache_size() == 0
        assert await factory.get_handle("acme", 1, EntityKind.UNIT) is not first

    @pytest.mark.asyncio
    async def test_clear_cache_during_build(self, factory, shards, monkeypatch):
        """A request after a clear waits for the build already in flight."""
        gate = asyncio.Event()

        async def gated_indexes(handle):
            await gate.wait()
            return True

        monkeypatch.setattr(CollectionHandle, "ensure_indexes", gated_indexes)
        await shards.connect(1)

        first = asyncio.ensure_future(factory.get_handle("acme", 1, EntityKind.UNIT))
        for _ in range(5):
            await asyncio.sleep(0)
        factory.clear_cache()
        second = asyncio.ensure_future(factory.get_handle("acme", 1, EntityKind.UNIT))
        for _ in range(5):
            await asyncio.sleep(0)
        gate.set()

        assert await first is await second
        assert factory.cache_size() == 1


class TestGetHandleForTenant:
    """Tests for get_handle_for_tenant()."""

    @pytest.mark.asyncio
    async def test_resolves_shard_from_registry(self, factory):
        handle = await factory.get_handle_for_tenant("store-002", EntityKind.PRODUCT)

        assert handle.name == "beta_products"
        assert handle.shard_id == 2
        assert handle is await factory.get_handle_for_tenant("BETA", EntityKind.PRODUCT)

    @pytest.mark.asyncio
    async def test_none_selects_default_namespace(self, factory):
        handle = await factory.get_handle_for_tenant(None, EntityKind.PRODUCT)
        assert (handle.name, handle.shard_id) == ("products", 1)

    @pytest.mark.asyncio
    async def test_none_selects_system_users(self, factory):
        handle = await factory.get_handle_for_tenant(None, EntityKind.USER)
        assert (handle.name, handle.shard_id) == ("system_users", 1)

    @pytest.mark.asyncio
    async def test_none_rejected_for_store_only_kind(self, factory):
        with pytest.raises(ValidationError):
            await factory.get_handle_for_tenant(None, EntityKind.CUSTOMER)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tenant_id", ["delta", "unregistered"])
    async def test_tenant_without_shard(self, factory, tenant_id):
        with pytest.raises(NotFoundError):
            await factory.get_handle_for_tenant(tenant_id, EntityKind.PRODUCT)

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, factory):
        with pytest.raises(NotFoundError):
            await factory.get_handle_for_tenant("no-such-store", EntityKind.PRODUCT)


class TestCollectionHandle:
    """Tests for CollectionHandle operations."""

    @pytest.mark.asyncio
    async def test_insert_and_find(self, factory):
        products = await factory.get_handle("acme", 1, EntityKind.PRODUCT)
        tea = await products.insert(Product(name="Tea", price=3.5, store_id="store-001"))

        assert await products.find_by_id(tea.id) == tea
        assert [p.name for p in await products.find({"name": "Tea"})] == ["Tea"]
        assert await products.count() == 1

    @pytest.mark.asyncio
    async def test_find_limit(self, factory):
        products = await factory.get_handle("acme", 1, EntityKind.PRODUCT)
        for i in range(5):
            await products.insert(Product(name=f"P{i}", price=1))

        assert len(await products.find(limit=2)) == 2

    @pytest.mark.asyncio
    async def test_insert_wrong_record_type(self, factory):
        products = await factory.get_handle("acme", 1, EntityKind.PRODUCT)
        with pytest.raises(ValidationError):
            await products.insert(Unit(name="kg"))

    @pytest.mark.asyncio
    async def test_update_refreshes_timestamp(self, factory):
        products = await factory.get_handle("acme", 1, EntityKind.PRODUCT)
        last_week = datetime(2024, 3, 1, tzinfo=timezone.utc)
        tea = await products.insert(Product(name="Tea", price=3.5, created_at=last_week, updated_at=last_week))

        updated = await products.update(tea.id, {"price": 4.0, "categoryId": "c1"})

        assert updated.price == 4.0
        assert updated.category_id == "c1"
        assert updated.updated_at > last_week
        assert updated.created_at == tea.created_at
        assert await products.find_by_id(tea.id) == updated

    @pytest.mark.asyncio
    async def test_update_missing_record(self, factory):
        products = await factory.get_handle("acme", 1, EntityKind.PRODUCT)
        assert await products.update("nope", {"price": 1}) is None

    @pytest.mark.asyncio
    async def test_update_unknown_field(self, factory):
        products = await factory.get_handle("acme", 1, EntityKind.PRODUCT)
        tea = await products.insert(Product(name="Tea", price=3.5))
        with pytest.raises(ValidationError):
            await products.update(tea.id, {"colour": "green"})

    @pytest.mark.asyncio
    async def test_update_invalid_value(self, factory):
        products = await factory.get_handle("acme", 1, EntityKind.PRODUCT)
        tea = await products.insert(Product(name="Tea", price=3.5))
        with pytest.raises(ValidationError) as exc_info:
            await products.update(tea.id, {"price": -2})
        assert exc_info.value.field_name == "price"

    @pytest.mark.asyncio
    async def test_update_cannot_change_id(self, factory):
        products = await factory.get_handle("acme", 1, EntityKind.PRODUCT)
        tea = await products.insert(Product(name="Tea", price=3.5))
        with pytest.raises(ValidationError):
            await products.update(tea.id, {"_id": "other"})

    @pytest.mark.asyncio
    async def test_delete(self, factory):
        products = await factory.get_handle("acme", 1, EntityKind.PRODUCT)
        tea = await products.insert(Product(name="Tea", price=3.5))

        assert await products.delete(tea.id) is True
        assert await products.delete(tea.id) is False
        assert await products.find_by_id(tea.id) is None

    @pytest.mark.asyncio
    async def test_unique_index_conflict(self, factory):
        customers = await factory.get_handle("acme", 1, EntityKind.CUSTOMER)
        await customers.insert(Customer(name="Ann", phone="555", store_id="store-001"))

        with pytest.raises(ConflictError) as exc_info:
            await customers.insert(Customer(name="Ann B", phone="555", store_id="store-001"))
        assert exc_info.value.field_name == "phone"

    @pytest.mark.asyncio
    async def test_users_keep_password_hash(self, factory):
        users = await factory.get_handle("acme", 1, EntityKind.USER)
        bob = UserRecord(full_name="Bob", username="bob", email="bob@x.com", password_hash="h", store_id="store-001")
        await users.insert(bob)

        assert (await users.find_by_id(bob.id)).password_hash == "h"

    @pytest.mark.asyncio
    async def test_handle_survives_reconnect(self, factory, shards):
        """Handles look up the live connection on every call."""
        units = await factory.get_handle("acme", 1, EntityKind.UNIT)
        kg = await units.insert(Unit(name="kg"))

        shards.mark_disconnected(1)

        assert await units.find_by_id(kg.id) == kg

    @pytest.mark.asyncio
    async def test_malformed_document_raises_validation_error(self, factory, connector):
        users = await factory.get_handle("acme", 1, EntityKind.USER)
        await connector.database("pos_db_1")["acme_users"].insert_one({"_id": "legacy-1", "username": "bob"})

        with pytest.raises(ValidationError) as exc_info:
            await users.find_one({"username": "bob"})
        assert exc_info.value.field_name == "fullName"
