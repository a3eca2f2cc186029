"""
Lease Plane Record Stores
=========================

- InMemoryStore: asyncio locks, used without a database and in tests
- PostgresStore: asyncpg transactions with row locks
"""

from .base import RecordStore, UnitOfWork
from .memory import InMemoryStore
from .postgres import PostgresStore

__all__ = [
    "RecordStore",
    "UnitOfWork",
    "InMemoryStore",
    "PostgresStore",
]
