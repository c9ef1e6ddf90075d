"""
Shard connection registry.

The ShardRegistry owns the pool of per-shard connections. It:
- Connects lazily, on first use of a shard
- Retries transient failures with exponential backoff
- Caches live connections and evicts ones found to be dead
- Closes everything on shutdown

Invariants:
    - At most one live connection per shard id
    - Shard ids outside [1, N] are rejected before any I/O
    - Concurrent first connects to one shard share a single attempt
    - Callers never receive a connection that is not CONNECTED

How to change safely:
    - Keep the per-shard lock held for the whole connect, retries included
    - Test retry timing with a patched sleep, never with real delays
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Awaitable, Callable, Dict, Iterator, List, Optional

from pymongo import errors as mongo_errors

from ..config import ShardConfig
from ..errors import ConflictError, ConnectionError
from .base import ShardConnection, ShardConnector, ShardState, is_transient_error
from .naming import build_shard_uri, database_name, redact_uri

logger = logging.getLogger(__name__)


class ShardRegistry:
    """Lazily connected, cached pool of shard connections.

    Attributes:
        config: Shard configuration
        connector: Backend used to open connections

    Thread safety:
        Designed for a single asyncio event loop. Per-shard asyncio locks
        serialize connects to the same shard; different shards connect in
        parallel.

    Example:
        >>> registry = ShardRegistry(config, MotorShardConnector(config))
        >>> conn = await registry.connect(2)
        >>> conn.client.collection("acme_products")
        >>> await registry.close_all()
    """

    def __init__(
        self,
        config: ShardConfig,
        connector: ShardConnector,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the registry.

        Args:
            config: Shard configuration (naming, retries, timeouts)
            connector: Backend used to open connections
            sleep: Backoff sleep, replaceable in tests
        """
        self.config = config
        self.connector = connector
        self._sleep = sleep
        self._connections: Dict[int, ShardConnection] = {}
        self._locks: Dict[int, asyncio.Lock] = {}

    @property
    def shard_count(self) -> int:
        return self.config.database_count

    def database_name(self, shard_id: int) -> str:
        """Database name for a shard.

        Raises:
            ValidationError: If shard_id is outside [1, N]
        """
        return database_name(self.config.database_prefix, shard_id, self.config.database_count)

    def shard_uri(self, shard_id: int) -> str:
        """Connection string for a shard.

        Raises:
            ValidationError: If shard_id is outside [1, N]
            ConfigurationError: If the base URI is missing or malformed
        """
        return build_shard_uri(self.config.base_uri, self.database_name(shard_id))

    async def connect(self, shard_id: int) -> ShardConnection:
        """Return a live connection, connecting if needed.

        Args:
            shard_id: Shard id (1..N)

        Returns:
            A CONNECTED ShardConnection

        Raises:
            ValidationError: If shard_id is outside [1, N]
            ConfigurationError: If the base URI is missing or malformed
            ConnectionError: If the shard stays unreachable after retries,
                or fails with a non-transient error
        """
        name = self.database_name(shard_id)

        cached = self._connections.get(shard_id)
        if cached is not None and cached.is_live:
            return cached

        lock = self._locks.setdefault(shard_id, asyncio.Lock())
        async with lock:
            cached = self._connections.get(shard_id)
            if cached is not None:
                if cached.is_live:
                    return cached
                await self._evict(cached)

            return await self._open(shard_id, name)

    async def connection_for(self, shard_id: int) -> ShardConnection:
        """Return the cached live connection, or connect if there is none."""
        cached = self._connections.get(shard_id)
        if cached is not None and cached.is_live:
            return cached
        return await self.connect(shard_id)

    def mark_disconnected(self, shard_id: int) -> None:
        """Flag a shard's connection as dead after a driver failure.

        The next connect() evicts and replaces it.
        """
        cached = self._connections.get(shard_id)
        if cached is not None and cached.state == ShardState.CONNECTED:
            cached.state = ShardState.DISCONNECTED
            logger.warning(
                "Shard connection marked disconnected",
                extra={"shard_id": shard_id, "database": cached.name},
            )

    @contextmanager
    def driver_errors(self, shard_id: int, target: str) -> Iterator[None]:
        """Translate driver errors raised while querying a shard.

        DuplicateKeyError becomes ConflictError. ConnectionFailure marks the
        shard disconnected and becomes ConnectionError, so the next call
        reconnects instead of reusing a dead client.

        Args:
            shard_id: Shard the query ran against
            target: Collection name, for error messages
        """
        try:
            yield
        except mongo_errors.DuplicateKeyError as e:
            key_pattern = (e.details or {}).get("keyPattern") or {}
            fields = [k for k in key_pattern if k != "storeId"]
            raise ConflictError(
                f"Duplicate key in {target}: {e}",
                field_name=fields[0] if fields else None,
            ) from e
        except mongo_errors.ConnectionFailure as e:
            self.mark_disconnected(shard_id)
            raise ConnectionError(
                f"Lost connection to shard {shard_id} while accessing {target}: {e}",
                shard_id=shard_id,
                last_error=e,
            ) from e

    async def _evict(self, connection: ShardConnection) -> None:
        self._connections.pop(connection.shard_id, None)
        if connection.client is not None:
            try:
                await connection.client.close()
            except Exception as e:
                logger.debug(f"Ignoring error closing stale connection to {connection.name}: {e}")
        connection.client = None
        connection.state = ShardState.CLOSED
        logger.info(
            "Evicted stale shard connection",
            extra={"shard_id": connection.shard_id, "database": connection.name},
        )

    async def _open(self, shard_id: int, name: str) -> ShardConnection:
        uri = self.shard_uri(shard_id)
        connection = ShardConnection(shard_id=shard_id, name=name, state=ShardState.CONNECTING)
        max_attempts = self.config.max_retries + 1
        timeout = self.config.server_selection_timeout_ms / 1000.0
        last_error: Optional[BaseException] = None

        for attempt in range(max_attempts):
            if attempt == 0:
                logger.info(f"Connecting to database {name} with URI: {redact_uri(uri)}")
            else:
                logger.info(f"Retrying connection to database {name} (attempt {attempt + 1}/{max_attempts})")

            try:
                client = await asyncio.wait_for(self.connector.open(uri, name), timeout=timeout)
            except asyncio.CancelledError:
                connection.state = ShardState.DISCONNECTED
                raise
            except Exception as e:
                last_error = e
                if not is_transient_error(e):
                    connection.state = ShardState.DISCONNECTED
                    logger.error(f"Error connecting to database {name}: {e}")
                    raise ConnectionError(
                        f"Failed to connect to database {name}: {e}",
                        shard_id=shard_id,
                        last_error=e,
                    ) from e

                if attempt + 1 < max_attempts:
                    delay = self.config.retry_delay_ms / 1000.0 * (2**attempt)
                    logger.warning(
                        f"Network error connecting to {name}: {e}. Retrying in {delay:.0f}s",
                        extra={"shard_id": shard_id, "attempt": attempt + 1},
                    )
                    await self._sleep(delay)
                continue

            connection.mark_connected(client)
            self._connections[shard_id] = connection
            logger.info(f"Connected to database: {name}", extra={"shard_id": shard_id})
            return connection

        connection.state = ShardState.DISCONNECTED
        logger.error(
            f"Giving up on database {name} after {max_attempts} attempts: {last_error}",
            extra={"shard_id": shard_id},
        )
        raise ConnectionError(
            f"Failed to connect to database {name}: {last_error}",
            shard_id=shard_id,
            last_error=last_error,
        )

    async def warm_all(self) -> List[int]:
        """Connect every shard, one after another.

        Failures are logged and skipped so one bad shard does not block
        the rest. Lazy connection is the normal mode; use this only to
        pre-warm a process.

        Returns:
            Shard ids that connected
        """
        logger.info("Initializing all shard connections")
        connected = []
        for shard_id in range(1, self.config.database_count + 1):
            try:
                await self.connect(shard_id)
                connected.append(shard_id)
            except ConnectionError as e:
                logger.error(
                    f"Failed to connect to shard {shard_id}: {e.message}",
                    extra={"shard_id": shard_id},
                )
        logger.info(f"Initialized {len(connected)} shard connections")
        return connected

    async def close_all(self) -> None:
        """Close every cached connection. Used at process shutdown."""
        logger.info("Closing all shard connections")
        connections = list(self._connections.values())
        self._connections.clear()

        results = await asyncio.gather(
            *(conn.client.close() for conn in connections if conn.client is not None),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Error closing shard connection: {result}")

        for conn in connections:
            conn.client = None
            conn.state = ShardState.CLOSED
        logger.info("All shard connections closed")

    def count(self) -> int:
        """Number of cached connections (for monitoring)."""
        return len(self._connections)

    def states(self) -> Dict[int, ShardState]:
        """State of every cached connection (for monitoring)."""
        return {shard_id: conn.state for shard_id, conn in self._connections.items()}
