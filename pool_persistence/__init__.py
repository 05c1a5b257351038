"""
Pool Persistence module.

This module contains the database implementation of the pool repository.
Currently supports SQLite, but can be extended to PostgreSQL, MySQL, etc.

The persistence layer depends on pool_common for domain models and
interfaces, and is used by both pool_controller and pool_admin.
"""

from .sqlite_repository import SQLitePoolRepository

__all__ = ["SQLitePoolRepository"]
