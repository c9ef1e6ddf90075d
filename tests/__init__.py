"""
POS Tenancy Test Suite.

This package contains:
- unit/: Unit tests (in-memory shard backend, no database server)
- integration/: Multi-component flows over the in-memory backend
"""
