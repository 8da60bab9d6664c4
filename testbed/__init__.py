"""
testbed - disposable PostgreSQL databases for isolated test suites.

Each suite gets its own uniquely named database that is created, migrated,
optionally seeded, pooled, and dropped again when the suite is done.
"""

__version__ = "0.1.0"
