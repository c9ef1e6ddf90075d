"""
Shard module - physical database placement and connection lifecycle.

This module handles:
- Deterministic shard database naming ({prefix}_{k}, k in [1, N])
- Per-shard connection strings derived from one base URI
- Lazy, retried, cached connections (ShardRegistry)
- Motor (production) and in-memory (tests) backends

Invariants:
    - One live connection per shard id
    - The registry exclusively owns every connection

How to change safely:
    - Never change naming for an existing deployment; tenants would be
      routed to empty databases
"""

from .base import ShardClient, ShardConnection, ShardConnector, ShardState, is_transient_error
from .memory import InMemoryShardConnector
from .motor import MotorShardConnector
from .naming import build_shard_uri, database_name, redact_uri
from .registry import ShardRegistry

__all__ = [
    "ShardClient",
    "ShardConnection",
    "ShardConnector",
    "ShardState",
    "is_transient_error",
    "InMemoryShardConnector",
    "MotorShardConnector",
    "build_shard_uri",
    "database_name",
    "redact_uri",
    "ShardRegistry",
]
