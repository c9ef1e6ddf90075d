"""
Unit tests for tenant identity, store registries and resolution.

Tests cover:
- Prefix validation and the Tenant sum type
- Placement shard requirements
- In-memory and MongoDB store registries
- TenantResolver lookup order and fallback
"""

import pytest

from posdb.tenancy.errors import ConflictError, ConnectionError, NotFoundError, ValidationError
from posdb.tenancy.tenants.resolver import TenantResolver
from posdb.tenancy.tenants.stores import InMemoryStoreRegistry, MongoStoreRegistry
from posdb.tenancy.tenants.types import Placement, Tenant, TenantKind, TenantRecord, validate_prefix


class TestPrefix:
    """Tests for validate_prefix."""

    @pytest.mark.parametrize("raw,expected", [("acme", "acme"), (" ACME ", "acme"), ("store_01", "store_01")])
    def test_valid(self, raw, expected):
        assert validate_prefix(raw) == expected

    @pytest.mark.parametrize("raw", ["Acme!", "", "   ", "acme-shop", "acme shop", "café"])
    def test_invalid(self, raw):
        with pytest.raises(ValidationError) as exc_info:
            validate_prefix(raw)
        assert exc_info.value.field_name == "prefix"

    def test_non_string(self):
        with pytest.raises(ValidationError, match="must be a string"):
            validate_prefix(42)


class TestTenant:
    """Tests for the Tenant sum type."""

    def test_constructors(self):
        assert Tenant.system().kind == TenantKind.SYSTEM
        assert Tenant.default().kind == TenantKind.DEFAULT
        store = Tenant.store("Acme")
        assert store.kind == TenantKind.STORE
        assert store.prefix == "acme"
        assert store.is_store

    def test_store_needs_prefix(self):
        with pytest.raises(ValidationError):
            Tenant(TenantKind.STORE)

    def test_system_cannot_have_prefix(self):
        """An empty string is not a way to spell 'no tenant'."""
        with pytest.raises(ValidationError):
            Tenant(TenantKind.SYSTEM, "")

    def test_namespaces_are_distinct(self):
        assert Tenant.system() != Tenant.default()
        assert Tenant.store("system") != Tenant.system()
        assert Tenant.store("acme") == Tenant.store("ACME")

    def test_str(self):
        assert str(Tenant.store("acme")) == "acme"
        assert str(Tenant.system()) == "system"


class TestPlacement:
    """Tests for Placement."""

    def test_require_shard(self):
        assert Placement("acme", 2, "store-001").require_shard() == 2

    def test_require_shard_missing(self):
        with pytest.raises(NotFoundError) as exc_info:
            Placement("acme").require_shard()
        assert exc_info.value.resource_type == "shard"

    def test_tenant_id_prefers_store_id(self):
        assert Placement("acme", 1, "store-001").tenant_id == "store-001"
        assert Placement("acme").tenant_id == "acme"


class TestInMemoryStoreRegistry:
    """Tests for InMemoryStoreRegistry."""

    @pytest.fixture
    def stores(self, store_records):
        return InMemoryStoreRegistry(store_records)

    @pytest.mark.asyncio
    async def test_lookups(self, stores):
        assert (await stores.find_by_prefix("ACME")).store_id == "store-001"
        assert (await stores.find_by_store_id("STORE-002")).prefix == "beta"
        assert await stores.find_by_prefix("nope") is None

    @pytest.mark.asyncio
    async def test_list_all_in_registration_order(self, stores):
        assert [r.prefix for r in await stores.list_all()] == ["acme", "beta", "gamma"]

    @pytest.mark.asyncio
    async def test_add_rejects_duplicates(self, stores):
        with pytest.raises(ConflictError):
            await stores.add(TenantRecord("store-001", "other"))
        with pytest.raises(ConflictError):
            await stores.add(TenantRecord("store-009", "acme"))

    @pytest.mark.asyncio
    async def test_set_shard(self, stores):
        await stores.add(TenantRecord("store-004", "delta"))
        updated = await stores.set_shard("store-004", 4)
        assert updated.shard_id == 4
        assert (await stores.find_by_prefix("delta")).shard_id == 4

    @pytest.mark.asyncio
    async def test_set_shard_unknown_store(self, stores):
        with pytest.raises(NotFoundError):
            await stores.set_shard("store-404", 1)


class TestMongoStoreRegistry:
    """Tests for MongoStoreRegistry over the in-memory backend."""

    @pytest.fixture
    def stores(self, shards):
        return MongoStoreRegistry(shards)

    @pytest.mark.asyncio
    async def test_add_and_find(self, stores, connector):
        await stores.add(TenantRecord("Store-001", "Acme", 1, "Acme Corner Shop"))

        record = await stores.find_by_prefix("acme")

        assert record == TenantRecord("store-001", "acme", 1, "Acme Corner Shop")
        assert await stores.find_by_store_id("STORE-001") == record
        doc = await connector.database("pos_db_1")["stores"].find_one({"_id": "store-001"})
        assert doc["databaseId"] == 1
        assert "createdAt" in doc

    @pytest.mark.asyncio
    async def test_lives_on_system_shard(self, stores, connector):
        await stores.add(TenantRecord("store-002", "beta", 2))
        assert "stores" in connector.database("pos_db_1").collections
        assert "pos_db_2" not in connector.databases

    @pytest.mark.asyncio
    async def test_unique_prefix(self, stores):
        await stores.add(TenantRecord("store-001", "acme", 1))
        with pytest.raises(ConflictError) as exc_info:
            await stores.add(TenantRecord("store-002", "acme", 2))
        assert exc_info.value.field_name == "prefix"

    @pytest.mark.asyncio
    async def test_list_count_and_set_shard(self, stores):
        await stores.add(TenantRecord("store-001", "acme", 1))
        await stores.add(TenantRecord("store-002", "beta"))

        assert await stores.count() == 2
        updated = await stores.set_shard("store-002", 3)

        assert updated.shard_id == 3
        assert [(r.prefix, r.shard_id) for r in await stores.list_all()] == [("acme", 1), ("beta", 3)]

    @pytest.mark.asyncio
    async def test_set_shard_unknown_store(self, stores):
        with pytest.raises(NotFoundError):
            await stores.set_shard("store-404", 1)

    @pytest.mark.asyncio
    async def test_set_shard_store_removed_before_reread(self, stores, monkeypatch):
        await stores.add(TenantRecord("store-002", "beta"))

        async def removed(store_id):
            return None

        monkeypatch.setattr(stores, "find_by_store_id", removed)

        with pytest.raises(NotFoundError):
            await stores.set_shard("store-002", 3)

    @pytest.mark.asyncio
    async def test_unreachable_registry(self, stores, connector):
        """Registry failures surface as ConnectionError."""
        connector.down.add("pos_db_1")
        with pytest.raises(ConnectionError):
            await stores.find_by_prefix("acme")


class TestTenantResolver:
    """Tests for TenantResolver."""

    @pytest.fixture
    def stores(self, store_records):
        return InMemoryStoreRegistry(store_records + [TenantRecord("store-004", "delta")])

    @pytest.fixture
    def resolver(self, stores):
        return TenantResolver(stores)

    @pytest.mark.asyncio
    async def test_resolve_by_prefix(self, resolver):
        assert await resolver.resolve("beta") == Placement("beta", 2, "store-002")

    @pytest.mark.asyncio
    async def test_resolve_normalizes(self, resolver):
        assert await resolver.resolve("  BeTa ") == Placement("beta", 2, "store-002")

    @pytest.mark.asyncio
    async def test_resolve_by_store_id(self, resolver):
        assert await resolver.resolve("STORE-003") == Placement("gamma", 3, "store-003")

    @pytest.mark.asyncio
    async def test_registered_store_without_shard(self, resolver):
        placement = await resolver.resolve("delta")
        assert placement.shard_id is None
        assert placement.store_id == "store-004"

    @pytest.mark.asyncio
    async def test_fallback_to_valid_prefix(self, resolver):
        """An unregistered but well-formed id is its own prefix, shard unknown."""
        placement = await resolver.resolve("newshop")
        assert placement == Placement("newshop", None, None)
        with pytest.raises(NotFoundError):
            placement.require_shard()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["no-such-store", "Acme!", ""])
    async def test_unresolvable(self, resolver, raw):
        with pytest.raises(NotFoundError):
            await resolver.resolve(raw)

    @pytest.mark.asyncio
    async def test_registry_errors_propagate(self, resolver, stores):
        stores.unavailable = ConnectionError("registry down", shard_id=1)
        with pytest.raises(ConnectionError):
            await resolver.resolve("acme")
