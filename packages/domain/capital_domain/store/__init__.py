"""Persistence for the capital engine.

Available stores:
- InMemoryLedgerStore: optimistic, thread-safe, dictionary-backed
- SqlLedgerStore: SQLAlchemy ORM with version_id_col optimistic locking

Usage:
    from capital_domain.store import SqlLedgerStore

    store = SqlLedgerStore.from_url("postgresql+psycopg://.../capital")
    with store.transaction() as tx:
        allocations = tx.list_allocations(fund_id=1)
"""

from .base import LedgerStore, LedgerTransaction, RECORD_TYPES
from .memory import InMemoryLedgerStore, InMemoryTransaction
from .sql import SqlLedgerStore, SqlLedgerTransaction

__all__ = [
    "LedgerStore",
    "LedgerTransaction",
    "RECORD_TYPES",
    "InMemoryLedgerStore",
    "InMemoryTransaction",
    "SqlLedgerStore",
    "SqlLedgerTransaction",
]
