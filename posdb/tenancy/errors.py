"""
Error types for the POS tenancy layer.

This module defines all exception types raised by the routing core:
- TenancyError: Base exception
- ConfigurationError: Missing or malformed base connection settings
- ValidationError: Invalid tenant prefix, shard id or collection name
- NotFoundError: Tenant, store or user cannot be resolved
- ConnectionError: Shard unreachable after retries
- ConflictError: Duplicate username/email within a tenant

Invariants:
    - All errors inherit from TenancyError
    - Errors include context for debugging
    - Connection strings in messages are always redacted

How to change safely:
    - Callers map these to responses by class, never by message text
    - Add new error codes instead of reusing existing ones
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class TenancyError(Exception):
    """Base exception for all tenancy errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "TENANCY_ERROR"
        self.details = details or {}


class ConfigurationError(TenancyError):
    """Base connection settings are missing or malformed.

    Raised when:
    - MONGODB_URI is not set
    - The URI has no scheme separator
    """

    def __init__(self, message: str, setting: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="CONFIGURATION_ERROR",
            details={"setting": setting},
        )
        self.setting = setting


class ValidationError(TenancyError):
    """Input failed a naming or bounds check.

    Raised when:
    - Tenant prefix has characters outside [a-z0-9_]
    - Collection name exceeds 255 characters
    - Shard id is outside [1, N]
    - Entity kind does not allow the requested namespace
    """

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        value: Any = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name, "value": value},
        )
        self.field_name = field_name
        self.value = value


class NotFoundError(TenancyError):
    """Resource not found.

    Raised when:
    - Tenant identifier matches no store and is not a valid prefix
    - Tenant has no shard assigned
    - User does not exist where it was expected
    """

    def __init__(
        self,
        message: str,
        resource_type: str,
        resource_id: Optional[str],
    ) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={
                "resource_type": resource_type,
                "resource_id": resource_id,
            },
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class ConnectionError(TenancyError):
    """Failed to reach a shard database.

    Raised after transient failures exhausted the retry budget, or
    immediately for non-transient failures such as bad credentials.

    Attributes:
        shard_id: Shard that could not be reached (None for the store registry)
        last_error: The underlying driver exception
    """

    def __init__(
        self,
        message: str,
        shard_id: Optional[int] = None,
        last_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(
            message,
            code="CONNECTION_ERROR",
            details={
                "shard_id": shard_id,
                "last_error": str(last_error) if last_error else None,
            },
        )
        self.shard_id = shard_id
        self.last_error = last_error


class ConflictError(TenancyError):
    """Duplicate value inside one tenant.

    Raised when:
    - A username or email is already used in the tenant
    - A unique index rejects an insert
    """

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="CONFLICT",
            details={"field": field_name, "tenant_id": tenant_id},
        )
        self.field_name = field_name
        self.tenant_id = tenant_id
