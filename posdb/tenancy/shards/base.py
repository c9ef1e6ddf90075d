"""
Base protocol and types for shard connections.

This module defines the ShardConnector/ShardClient protocols that all
backends must implement, along with the connection state model and the
transient-error classification used by the registry's retry loop.

Invariants:
    - A ShardConnection is owned exclusively by the ShardRegistry
    - A connection is usable only in the CONNECTED state
    - Collections returned by ShardClient.collection() follow the Motor
      AsyncIOMotorCollection call signatures

How to change safely:
    - Protocol changes require updating the Motor and in-memory backends
    - Keep is_transient_error conservative: misclassifying an auth failure
      as transient turns a fast failure into a 7 second stall
"""

from __future__ import annotations

import asyncio
import time
from abc import abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable

from pymongo import errors as mongo_errors


class ShardState(Enum):
    """Lifecycle of a shard connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


@runtime_checkable
class ShardClient(Protocol):
    """An open connection to one shard database.

    Example:
        >>> client = await connector.open(uri, "pos_db_1")
        >>> users = client.collection("acme_users")
        >>> await users.find_one({"username": "bob"})
    """

    database_name: str

    @abstractmethod
    def collection(self, name: str) -> Any:
        """Return the driver collection object for name."""
        ...

    @abstractmethod
    async def ping(self) -> None:
        """Round-trip to the server.

        Raises:
            pymongo.errors.PyMongoError: If the server is unreachable
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying driver pool."""
        ...


@runtime_checkable
class ShardConnector(Protocol):
    """Factory for ShardClient instances."""

    @abstractmethod
    async def open(self, uri: str, database_name: str) -> ShardClient:
        """Open and verify a connection.

        Args:
            uri: Connection string already pointing at database_name
            database_name: Shard database name

        Returns:
            A verified, ready client

        Raises:
            Exception: Driver errors, classified by is_transient_error
        """
        ...


@dataclass
class ShardConnection:
    """A cached connection to one shard.

    Attributes:
        shard_id: Shard id (1..N)
        name: Database name (e.g., 'pos_db_1')
        state: Current lifecycle state
        client: Open client, None unless CONNECTED
        connected_at: Unix seconds of the last successful connect
    """

    shard_id: int
    name: str
    state: ShardState = ShardState.DISCONNECTED
    client: Optional[ShardClient] = None
    connected_at: Optional[float] = None

    @property
    def is_live(self) -> bool:
        """Whether the connection can serve queries."""
        return self.state == ShardState.CONNECTED and self.client is not None

    def mark_connected(self, client: ShardClient) -> None:
        self.client = client
        self.state = ShardState.CONNECTED
        self.connected_at = time.time()


_TRANSIENT_MARKERS = (
    "etimeout",
    "etimedout",
    "enotfound",
    "econnrefused",
    "econnreset",
    "err_internet_disconnected",
    "timeout",
    "timed out",
    "network",
    "dns",
)


def is_transient_error(error: BaseException) -> bool:
    """Classify a connection failure as worth retrying.

    Transient: timeouts, DNS failures, refused/reset connections and the
    pymongo ConnectionFailure family. Non-transient: authentication and
    other server-side OperationFailures, malformed URIs.

    Args:
        error: Exception raised while connecting

    Returns:
        True if the connect should be retried
    """
    if isinstance(error, (mongo_errors.OperationFailure, mongo_errors.InvalidURI)):
        return False
    if isinstance(
        error,
        (mongo_errors.ConnectionFailure, asyncio.TimeoutError, TimeoutError, OSError),
    ):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)
