"""
relgraph test suite.

This package contains:
- unit/: Unit tests (no external dependencies)
- integration/: Processor and pipeline tests (SQLite, in-memory broker)
"""
