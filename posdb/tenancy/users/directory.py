"""
User directory - users across tenants.

Users live in per-tenant collections ({prefix}_users) plus a system
collection (system_users) for administrators not bound to a store. The
directory adds what the generic ModelFactory path cannot do:
- Find a user when the tenant is unknown (login by email or username)
- Find a user by id anywhere
- Move a user to another tenant, possibly on another shard
- Keep the directory cache in step with user writes

Cross-tenant lookup order:
    1. The hinted tenant, or the tenant cached for the email/username
    2. The system namespace
    3. Every registered store, in registry order, skipping step 1's tenant

Invariants:
    - A failure searching one tenant is logged, counted and skipped; it
      never fails the whole lookup
    - Cache values are canonical store ids; system users are never cached
    - migrate_user is create-then-verify-then-delete and is NOT atomic;
      a failure after the create leaves the user in both tenants until
      reconcile_migrations() runs

How to change safely:
    - Keep the lookup order; login latency and correctness both depend on it
    - Never cache a tenant that was not just observed holding the user
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import PyMongoError

from ..errors import ConflictError, NotFoundError, TenancyError, ValidationError
from ..models.factory import ModelFactory
from ..models.handle import CollectionHandle
from ..models.schemas import EntityKind, UserRecord, UserRole, UserStatus, utcnow
from ..tenants.stores import StoreRegistry
from ..tenants.types import Tenant, normalize_identifier
from .cache import DirectoryCache, normalize_key
from .passwords import DEFAULT_ROUNDS, MIN_PASSWORD_LENGTH, hash_password, verify_password

logger = logging.getLogger(__name__)

OMITTED: Any = object()

IDENTITY_FIELDS = ("email", "username")


def normalize_user_query(query: Dict[str, Any]) -> Dict[str, Any]:
    """Trim and lowercase email/username values, at top level and in $or."""
    normalized: Dict[str, Any] = {}
    for key, value in query.items():
        if key in IDENTITY_FIELDS and isinstance(value, str):
            normalized[key] = normalize_key(value)
        elif key == "$or" and isinstance(value, list):
            normalized[key] = [normalize_user_query(sub) for sub in value]
        else:
            normalized[key] = value
    return normalized


def _identity_value(query: Dict[str, Any], field: str) -> Optional[str]:
    value = query.get(field)
    if isinstance(value, str):
        return value
    for sub in query.get("$or") or []:
        if isinstance(sub.get(field), str):
            return sub[field]
    return None


@dataclass
class UserLocation:
    """A user found in a specific tenant namespace.

    Attributes:
        tenant_id: Canonical store id, None for the system namespace
        handle: Users handle of that namespace
        user: The record as stored there
    """

    tenant_id: Optional[str]
    handle: CollectionHandle
    user: UserRecord


class UserDirectory:
    """Tenant-aware user lookup, writes and migration.

    Example:
        >>> directory = UserDirectory(factory, stores, DirectoryCache())
        >>> bob = await directory.find_across_tenants({"username": "bob"})
        >>> bob = await directory.migrate_user(bob, "beta")
    """

    def __init__(
        self,
        factory: ModelFactory,
        stores: StoreRegistry,
        cache: DirectoryCache,
        password_rounds: int = DEFAULT_ROUNDS,
    ) -> None:
        """Initialize the directory.

        Args:
            factory: Handle factory (also provides the tenant resolver)
            stores: Store registry, enumerated for cross-tenant scans
            cache: Directory cache
            password_rounds: bcrypt cost factor for new hashes
        """
        self.factory = factory
        self.resolver = factory.resolver
        self.stores = stores
        self.cache = cache
        self.password_rounds = password_rounds
        self._scan_failures = 0
        self._migrations = 0
        self._partial_migrations = 0

    async def _locate(self, tenant_id: Optional[str]) -> Tuple[CollectionHandle, Optional[str]]:
        """Users handle and canonical tenant id for a tenant (None = system)."""
        if tenant_id is None:
            handle = await self.factory.get_handle(Tenant.system(), self.factory.system_shard_id, EntityKind.USER)
            return handle, None
        placement = await self.resolver.resolve(tenant_id)
        handle = await self.factory.get_handle(placement.tenant, placement.require_shard(), EntityKind.USER)
        return handle, placement.tenant_id

    async def get_user_handle(self, tenant_id: Optional[str]) -> CollectionHandle:
        """Users handle for a tenant; None selects the system namespace.

        Raises:
            ValidationError: If tenant_id is malformed
            NotFoundError: If the tenant is unknown or has no shard
            ConnectionError: If the store registry or shard is unreachable
        """
        handle, _ = await self._locate(tenant_id)
        return handle

    def _record_scan_failure(self, tenant_id: Optional[str], operation: str, error: Exception) -> None:
        self._scan_failures += 1
        logger.warning(
            f"Could not search users in tenant {tenant_id or 'system'}: {error}",
            extra={"tenant_id": tenant_id, "operation": operation, "error": str(error)},
        )

    async def _search(
        self,
        tenant_id: Optional[str],
        query: Dict[str, Any],
        operation: str,
    ) -> Optional[UserLocation]:
        try:
            handle, canonical = await self._locate(tenant_id)
            user = await handle.find_one(query)
        except (TenancyError, PyMongoError) as e:
            self._record_scan_failure(tenant_id, operation, e)
            return None
        if user is None:
            return None
        return UserLocation(tenant_id=canonical, handle=handle, user=user)

    def _remember(self, user: UserRecord, tenant_id: Optional[str]) -> None:
        self.cache.put(user.email, tenant_id)
        self.cache.put(user.username, tenant_id)

    def _cached_tenant(self, query: Dict[str, Any]) -> Optional[str]:
        for field in IDENTITY_FIELDS:
            value = _identity_value(query, field)
            if value:
                tenant_id = self.cache.get(value)
                if tenant_id:
                    return tenant_id
        return None

    async def find_across_tenants(
        self,
        query: Dict[str, Any],
        tenant_hint: Optional[str] = None,
    ) -> Optional[UserRecord]:
        """Find a user without knowing their tenant.

        Args:
            query: MongoDB query, typically on email and/or username
            tenant_hint: Tenant to search first

        Returns:
            The first matching user, or None

        Raises:
            ConnectionError: If the store registry itself is unreachable
        """
        query = normalize_user_query(query)
        target = tenant_hint or self._cached_tenant(query)

        if target:
            found = await self._search(target, query, "find_across_tenants")
            if found is not None:
                self._remember(found.user, found.tenant_id)
                return found.user

        found = await self._search(None, query, "find_across_tenants")
        if found is not None:
            return found.user

        skip = normalize_identifier(target) if target else None
        for record in await self.stores.list_all():
            if skip is not None and skip in (record.store_id, record.prefix):
                continue
            found = await self._search(record.store_id, query, "find_across_tenants")
            if found is not None:
                self._remember(found.user, found.tenant_id)
                return found.user

        return None

    async def find_by_id_across_tenants(self, user_id: str, tenant_id: Optional[str] = OMITTED) -> Optional[UserRecord]:
        """Find a user by id.

        Args:
            user_id: User id
            tenant_id: When given (None meaning the system namespace), only
                that tenant is searched and its errors propagate. When
                omitted, the system namespace and then every store are
                searched.
        """
        if tenant_id is not OMITTED:
            handle = await self.get_user_handle(tenant_id)
            return await handle.find_by_id(user_id)

        query = {"_id": user_id}
        found = await self._search(None, query, "find_by_id_across_tenants")
        if found is not None:
            return found.user

        for record in await self.stores.list_all():
            found = await self._search(record.store_id, query, "find_by_id_across_tenants")
            if found is not None:
                return found.user
        return None

    def invalidate_directory_cache(self, email: Optional[str] = None, username: Optional[str] = None) -> None:
        self.cache.invalidate_user(email, username)

    async def check_available(
        self,
        tenant_id: Optional[str],
        username: Optional[str] = None,
        email: Optional[str] = None,
        exclude_id: Optional[str] = None,
    ) -> None:
        """Ensure a username and email are unused in a tenant.

        Raises:
            ConflictError: If either value is already taken in the tenant
        """
        handle = await self.get_user_handle(tenant_id)
        for field, value in (("username", username), ("email", email)):
            if not value:
                continue
            query: Dict[str, Any] = {field: normalize_key(value)}
            if exclude_id is not None:
                query["_id"] = {"$ne": exclude_id}
            if await handle.find_one(query) is not None:
                raise ConflictError(
                    f"A user with this {field} already exists",
                    field_name=field,
                    tenant_id=tenant_id,
                )

    async def _hash(self, password: str) -> str:
        if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
                field_name="password",
            )
        return await asyncio.to_thread(hash_password, password, self.password_rounds)

    async def create_user(
        self,
        tenant_id: Optional[str],
        *,
        full_name: str,
        username: str,
        email: str,
        password: str,
        role: UserRole = UserRole.CASHIER,
        permissions: Iterable[str] = (),
        status: UserStatus = UserStatus.ACTIVE,
    ) -> UserRecord:
        """Create a user in a tenant (None = system).

        Raises:
            ValidationError: If a field is invalid
            ConflictError: If the username or email is taken in the tenant
        """
        handle, canonical = await self._locate(tenant_id)
        await self.check_available(tenant_id, username=username, email=email)

        password_hash = await self._hash(password)
        try:
            user = UserRecord(
                full_name=full_name,
                username=username,
                email=email,
                password_hash=password_hash,
                role=role,
                permissions=list(permissions),
                status=status,
                store_id=canonical,
            )
        except PydanticValidationError as e:
            loc = e.errors()[0]["loc"] if e.errors() else ()
            raise ValidationError(f"Invalid user: {e}", field_name=str(loc[0]) if loc else None) from e

        await handle.insert(user)
        self._remember(user, canonical)
        logger.info(
            "Created user",
            extra={"user_id": user.id, "tenant_id": canonical, "collection": handle.name},
        )
        return user

    async def update_user(self, user: UserRecord, **changes: Any) -> UserRecord:
        """Update a user in place. A `password` change is re-hashed.

        Moving a user between tenants is migrate_user(), not an update.

        Raises:
            ValidationError: If store_id is changed or a field is invalid
            ConflictError: If a new username or email is taken
            NotFoundError: If the user no longer exists
        """
        if "store_id" in changes or "storeId" in changes:
            raise ValidationError("Use migrate_user to move a user to another tenant", field_name="store_id")

        handle, canonical = await self._locate(user.store_id)
        if "password" in changes:
            changes["password_hash"] = await self._hash(changes.pop("password"))
        await self.check_available(
            user.store_id,
            username=changes.get("username"),
            email=changes.get("email"),
            exclude_id=user.id,
        )

        updated = await handle.update(user.id, changes)
        if updated is None:
            raise NotFoundError(f"User {user.id} not found", resource_type="user", resource_id=user.id)

        self.cache.invalidate_user(user.email, user.username)
        self._remember(updated, canonical)
        return updated

    async def delete_user(self, user: UserRecord) -> bool:
        """Delete a user. Returns False if it was already gone."""
        handle, _ = await self._locate(user.store_id)
        deleted = await handle.delete(user.id)
        self.cache.invalidate_user(user.email, user.username)
        return deleted

    async def verify_password(self, user: UserRecord, candidate: str) -> bool:
        if not user.password_hash:
            return False
        return await asyncio.to_thread(verify_password, candidate, user.password_hash)

    async def migrate_user(self, user: UserRecord, new_tenant_id: Optional[str]) -> UserRecord:
        """Move a user to another tenant (None = system).

        The copy keeps the id, password hash, role, permissions and
        createdAt; updatedAt is refreshed and storeId becomes the
        destination's store id.

        Steps: read the source copy, insert at the destination, read it
        back, delete the source, invalidate the old cache entries. Not
        atomic: if the delete fails the user exists in both tenants, which
        is logged at ERROR and left for reconcile_migrations().

        Returns:
            The destination record (the user unchanged if the destination
            is the source)

        Raises:
            NotFoundError: If the user is not in its source tenant
            ConflictError: If the destination rejects the copy; the source
                is left untouched
        """
        source_handle, source_tenant = await self._locate(user.store_id)
        dest_handle, dest_tenant = await self._locate(new_tenant_id)
        if dest_handle is source_handle:
            logger.info("User already in destination tenant", extra={"user_id": user.id, "tenant_id": dest_tenant})
            return user

        current = await source_handle.find_by_id(user.id)
        if current is None:
            raise NotFoundError(
                f"User {user.id} not found in tenant {source_tenant or 'system'}",
                resource_type="user",
                resource_id=user.id,
            )

        migrated = current.model_copy(update={"store_id": dest_tenant, "updated_at": utcnow()})
        context = {
            "user_id": user.id,
            "source_tenant": source_tenant,
            "destination_tenant": dest_tenant,
            "source_collection": source_handle.name,
            "destination_collection": dest_handle.name,
        }

        await dest_handle.insert(migrated)
        stored = await dest_handle.find_by_id(migrated.id)
        if stored is None:
            logger.error("Migrated user not readable at destination, source kept", extra=context)
            raise TenancyError(
                f"Migration of user {user.id} could not be verified at {dest_handle.name}",
                code="MIGRATION_ERROR",
                details=context,
            )

        try:
            deleted = await source_handle.delete(user.id)
        except BaseException:
            self._partial_migrations += 1
            logger.error("Partial migration: user now exists in both tenants", extra=context)
            raise
        if not deleted:
            logger.warning("Source user vanished during migration", extra=context)

        self.cache.invalidate_user(current.email, current.username)
        self._remember(stored, dest_tenant)
        self._migrations += 1
        logger.info("Migrated user", extra=context)
        return stored

    async def _namespaces(self, operation: str) -> List[Tuple[Optional[str], CollectionHandle]]:
        """Users handle of the system namespace and every reachable store."""
        located: List[Tuple[Optional[str], CollectionHandle]] = []
        seen: Set[Tuple[int, str]] = set()
        for tenant_id in [None] + [record.store_id for record in await self.stores.list_all()]:
            try:
                handle, canonical = await self._locate(tenant_id)
            except TenancyError as e:
                self._record_scan_failure(tenant_id, operation, e)
                continue
            if handle.key not in seen:
                seen.add(handle.key)
                located.append((canonical, handle))
        return located

    async def find_duplicate_users(self) -> Dict[str, List[UserLocation]]:
        """Users whose id exists in more than one tenant.

        These are left behind by migrations interrupted between the create
        and the delete.
        """
        by_id: Dict[str, List[UserLocation]] = {}
        for tenant_id, handle in await self._namespaces("find_duplicate_users"):
            try:
                users = await handle.find({})
            except (TenancyError, PyMongoError) as e:
                self._record_scan_failure(tenant_id, "find_duplicate_users", e)
                continue
            for user in users:
                by_id.setdefault(user.id, []).append(UserLocation(tenant_id, handle, user))
        return {user_id: copies for user_id, copies in by_id.items() if len(copies) > 1}

    async def reconcile_migrations(self, dry_run: bool = True) -> List[Dict[str, Any]]:
        """Remove stale copies of users left by interrupted migrations.

        The copy with the newest updatedAt is kept; the others are deleted
        unless dry_run.

        Returns:
            One entry per duplicated user: user_id, kept tenant, removed
            tenants
        """
        report = []
        for user_id, copies in (await self.find_duplicate_users()).items():
            copies.sort(key=lambda loc: loc.user.updated_at, reverse=True)
            keep, stale = copies[0], copies[1:]
            for location in stale:
                if not dry_run:
                    await location.handle.delete(user_id)
                self.cache.invalidate_user(location.user.email, location.user.username)
            if not dry_run:
                self._remember(keep.user, keep.tenant_id)
            entry = {
                "user_id": user_id,
                "kept": keep.tenant_id,
                "removed": [location.tenant_id for location in stale],
            }
            report.append(entry)
            logger.info(
                f"{'Would remove' if dry_run else 'Removed'} {len(stale)} stale copies of user {user_id}",
                extra={**entry, "dry_run": dry_run},
            )
        return report

    def stats(self) -> Dict[str, Any]:
        return {
            "scan_failures": self._scan_failures,
            "migrations": self._migrations,
            "partial_migrations": self._partial_migrations,
            "cache": self.cache.stats(),
        }
