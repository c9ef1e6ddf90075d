"""
Users module - the cross-tenant user directory.

This module handles:
- Per-tenant and system user handles
- Login lookups when the tenant is unknown, backed by a TTL cache
- User creation, update and deletion with cache upkeep
- Moving users between tenants and cleaning up interrupted moves
"""

from .cache import DirectoryCache, normalize_key
from .directory import UserDirectory, UserLocation, normalize_user_query
from .passwords import hash_password, verify_password

__all__ = [
    "DirectoryCache",
    "normalize_key",
    "UserDirectory",
    "UserLocation",
    "normalize_user_query",
    "hash_password",
    "verify_password",
]
