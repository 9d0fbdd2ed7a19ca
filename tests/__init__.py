"""
DocShift Test Suite.

This package contains:
- unit/: Unit tests (in-memory store, fake S3 client)
- integration/: Cross-component flows (service container, SQLite store)
"""
