"""Capital accounting domain.

Tracks fund commitments into deals, the capital calls against them, the
payments applied to those calls and the distributions returned, keeping
amounts and statuses consistent across allocation, call and fund.

Packages:
- schemas: pydantic record types, configuration and result models
- engine: the accounting components and the CapitalEngine facade
- blocks: pandas computation blocks for fund rollups
- store: transactional persistence (in-memory and SQLAlchemy)
"""

import logging

from .errors import (
    LedgerError,
    ValidationError,
    ConstraintViolation,
    NotFound,
    ConcurrencyConflict,
)
from .events import EventSink, NullEventSink, LoggingEventSink, InMemoryEventSink
from .schemas import LedgerCFG
from .store import LedgerStore, InMemoryLedgerStore, SqlLedgerStore
from .engine import CapitalEngine

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "LedgerError",
    "ValidationError",
    "ConstraintViolation",
    "NotFound",
    "ConcurrencyConflict",
    "EventSink",
    "NullEventSink",
    "LoggingEventSink",
    "InMemoryEventSink",
    "LedgerCFG",
    "LedgerStore",
    "InMemoryLedgerStore",
    "SqlLedgerStore",
    "CapitalEngine",
]
