"""
Configuration management for the POS tenancy layer.

All configuration is done via environment variables - no config files.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - MONGODB_URI has no default; its absence surfaces as ConfigurationError
      the first time a shard URI is built
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Changing DATABASE_PREFIX or DATABASE_COUNT re-homes every tenant;
      treat it as a data migration, not a config tweak
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShardConfig:
    """Shard database configuration.

    Attributes:
        base_uri: Base MongoDB connection string; the database path segment
            is substituted per shard
        database_prefix: Shard databases are named {prefix}_{shard_id}
        database_count: Number of shards (N); shard ids are 1..N
        stores_per_database: Fill target used when placing new stores
        system_shard_id: Shard hosting the store registry, system users and
            the default (tenant-less) collections
        max_pool_size: Driver connection pool ceiling per shard
        min_pool_size: Driver connection pool floor per shard
        server_selection_timeout_ms: Driver server selection timeout
        socket_timeout_ms: Driver socket timeout
        connect_timeout_ms: Driver TCP connect timeout
        max_retries: Retries for transient connection failures
        retry_delay_ms: First backoff delay, doubled on every retry
    """

    base_uri: str | None = None
    database_prefix: str = "pos_db"
    database_count: int = 5
    stores_per_database: int = 20
    system_shard_id: int = 1
    max_pool_size: int = 2
    min_pool_size: int = 0
    server_selection_timeout_ms: int = 30000
    socket_timeout_ms: int = 60000
    connect_timeout_ms: int = 30000
    max_retries: int = 3
    retry_delay_ms: int = 1000

    @classmethod
    def from_env(cls) -> ShardConfig:
        """Load configuration from environment variables."""
        return cls(
            base_uri=os.getenv("MONGODB_URI"),
            database_prefix=os.getenv("DATABASE_PREFIX", "pos_db"),
            database_count=int(os.getenv("DATABASE_COUNT", "5")),
            stores_per_database=int(os.getenv("STORES_PER_DATABASE", "20")),
            system_shard_id=int(os.getenv("SYSTEM_SHARD_ID", "1")),
            max_pool_size=int(os.getenv("MONGODB_MAX_POOL_SIZE", "2")),
            min_pool_size=int(os.getenv("MONGODB_MIN_POOL_SIZE", "0")),
            server_selection_timeout_ms=int(
                os.getenv("MONGODB_SERVER_SELECTION_TIMEOUT_MS", "30000")
            ),
            socket_timeout_ms=int(os.getenv("MONGODB_SOCKET_TIMEOUT_MS", "60000")),
            connect_timeout_ms=int(os.getenv("MONGODB_CONNECT_TIMEOUT_MS", "30000")),
            max_retries=int(os.getenv("SHARD_CONNECT_MAX_RETRIES", "3")),
            retry_delay_ms=int(os.getenv("SHARD_CONNECT_RETRY_DELAY_MS", "1000")),
        )


@dataclass(frozen=True)
class DirectoryCacheConfig:
    """Email/username -> tenant cache configuration.

    Attributes:
        ttl_seconds: Entry lifetime
        max_entries: Size ceiling (0 = unbounded)
    """

    ttl_seconds: float = 3600.0
    max_entries: int = 0

    @classmethod
    def from_env(cls) -> DirectoryCacheConfig:
        """Load configuration from environment variables."""
        return cls(
            ttl_seconds=float(os.getenv("DIRECTORY_CACHE_TTL_SECONDS", "3600")),
            max_entries=int(os.getenv("DIRECTORY_CACHE_MAX_ENTRIES", "0")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class TenancyConfig:
    """Complete tenancy layer configuration.

    Attributes:
        shards: Shard database configuration
        directory_cache: Directory cache configuration
        observability: Logging configuration
    """

    shards: ShardConfig = field(default_factory=ShardConfig)
    directory_cache: DirectoryCacheConfig = field(default_factory=DirectoryCacheConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> TenancyConfig:
        """Load complete configuration from environment variables.

        Returns:
            TenancyConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is inconsistent.
        """
        config = cls(
            shards=ShardConfig.from_env(),
            directory_cache=DirectoryCacheConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        shards = self.shards
        if shards.database_count < 1:
            raise ValueError("DATABASE_COUNT must be at least 1")
        if not 1 <= shards.system_shard_id <= shards.database_count:
            raise ValueError(
                f"SYSTEM_SHARD_ID must be between 1 and {shards.database_count}, "
                f"got {shards.system_shard_id}"
            )
        if shards.stores_per_database < 1:
            raise ValueError("STORES_PER_DATABASE must be at least 1")
        if shards.max_retries < 0:
            raise ValueError("SHARD_CONNECT_MAX_RETRIES cannot be negative")
        if self.directory_cache.ttl_seconds <= 0:
            raise ValueError("DIRECTORY_CACHE_TTL_SECONDS must be positive")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if not shards.base_uri:
            logger.warning("MONGODB_URI is not set; shard connections will fail until it is")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        from .shards.naming import redact_uri

        logger.info(
            "Tenancy configuration loaded",
            extra={
                "mongodb_uri": redact_uri(self.shards.base_uri) if self.shards.base_uri else None,
                "database_prefix": self.shards.database_prefix,
                "database_count": self.shards.database_count,
                "stores_per_database": self.shards.stores_per_database,
                "system_shard_id": self.shards.system_shard_id,
                "directory_cache_ttl_seconds": self.directory_cache.ttl_seconds,
                "log_level": self.observability.log_level,
            },
        )
