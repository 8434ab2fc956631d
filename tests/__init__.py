"""
Selection server test suite.

This package contains:
- unit/: Unit tests (pure logic, single stores)
- integration/: Integration tests (resolver, executor, service and HTTP API
  over SQLite and in-memory stores)
"""
