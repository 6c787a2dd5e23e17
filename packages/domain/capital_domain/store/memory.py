"""In-memory ledger store with optimistic concurrency.

Reads return copies of committed rows overlaid with the transaction's own
staged writes. Writes are staged and applied atomically at commit under a
single lock, after every saved or deleted row's version has been checked
against the committed version. A transaction that loses the race raises
ConcurrencyConflict and applies nothing.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Set, Tuple, Type

from .base import LedgerStore, LedgerTransaction, RECORD_TYPES, R
from ..errors import ConcurrencyConflict, ConstraintViolation
from ..schemas import StoredRecord, FundAllocation

logger = logging.getLogger(__name__)

Key = Tuple[type, int]


class InMemoryLedgerStore(LedgerStore):
    """Thread-safe dictionary-backed store."""

    def __init__(self):
        self._tables: Dict[type, Dict[int, StoredRecord]] = {t: {} for t in RECORD_TYPES}
        self._next_ids: Dict[type, int] = {t: 1 for t in RECORD_TYPES}
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator["InMemoryTransaction"]:
        tx = InMemoryTransaction(self)
        yield tx
        tx.commit()

    # Internal API used by InMemoryTransaction

    def _allocate_id(self, record_type: type) -> int:
        with self._lock:
            record_id = self._next_ids[record_type]
            self._next_ids[record_type] = record_id + 1
            return record_id

    def _committed(self, record_type: type, record_id: int) -> Optional[StoredRecord]:
        with self._lock:
            row = self._tables[record_type].get(record_id)
            return row.model_copy(deep=True) if row is not None else None

    def _committed_rows(self, record_type: type) -> List[StoredRecord]:
        with self._lock:
            return [row.model_copy(deep=True) for row in self._tables[record_type].values()]


class InMemoryTransaction(LedgerTransaction):
    """Staged unit of work against an InMemoryLedgerStore."""

    def __init__(self, store: InMemoryLedgerStore):
        self._store = store
        self._writes: Dict[Key, StoredRecord] = {}
        self._inserted: Set[Key] = set()
        self._expected: Dict[Key, int] = {}
        self._deleted: Dict[Key, int] = {}

    @staticmethod
    def _key(record: StoredRecord) -> Key:
        return (type(record), record.id)

    def get(self, record_type: Type[R], record_id: int, lock: bool = False) -> Optional[R]:
        key = (record_type, record_id)
        if key in self._deleted:
            return None
        if key in self._writes:
            return self._writes[key].model_copy(deep=True)
        return self._store._committed(record_type, record_id)

    def select(self, record_type: Type[R], **filters) -> List[R]:
        rows = {row.id: row for row in self._store._committed_rows(record_type)}
        for (write_type, record_id), record in self._writes.items():
            if write_type is record_type:
                rows[record_id] = record.model_copy(deep=True)
        for (delete_type, record_id) in self._deleted:
            if delete_type is record_type:
                rows.pop(record_id, None)
        matches = [
            row for row in rows.values()
            if all(getattr(row, name) == value for name, value in filters.items())
        ]
        return sorted(matches, key=lambda row: row.id)

    def add(self, record: R) -> R:
        if record.id is not None:
            raise ValueError(f"{type(record).__name__} already has id {record.id}")
        record.id = self._store._allocate_id(type(record))
        key = self._key(record)
        self._writes[key] = record
        self._inserted.add(key)
        return record

    def save(self, record: R) -> R:
        key = self._key(record)
        if key in self._deleted:
            raise ValueError(f"{type(record).__name__} {record.id} was deleted in this transaction")
        if key not in self._inserted:
            self._expected.setdefault(key, record.version)
        self._writes[key] = record
        return record

    def delete(self, record: StoredRecord) -> None:
        key = self._key(record)
        self._writes.pop(key, None)
        if key in self._inserted:
            self._inserted.discard(key)
            return
        self._deleted[key] = self._expected.pop(key, record.version)

    def commit(self) -> None:
        store = self._store
        with store._lock:
            for (record_type, record_id), expected in {**self._expected, **self._deleted}.items():
                current = store._tables[record_type].get(record_id)
                if current is None or current.version != expected:
                    raise ConcurrencyConflict(
                        f"{record_type.__name__} {record_id} was modified by a concurrent transaction",
                        {"entity": record_type.__name__, "entity_id": record_id},
                    )
            self._check_unique_allocations()

            for (record_type, record_id) in self._deleted:
                store._tables[record_type].pop(record_id, None)
            for (record_type, record_id), record in self._writes.items():
                record.version = record.version + 1 if (record_type, record_id) not in self._inserted else 1
                store._tables[record_type][record_id] = record.model_copy(deep=True)

        logger.debug(
            "Committed %d writes, %d deletes", len(self._writes), len(self._deleted)
        )

    def _check_unique_allocations(self) -> None:
        """One allocation per (fund, deal) pair, across committed and staged rows."""
        staged = [r for (t, _), r in self._writes.items() if t is FundAllocation]
        if not staged:
            return
        pairs: Dict[Tuple[int, int], int] = {}
        for row in self._store._tables[FundAllocation].values():
            if (FundAllocation, row.id) not in self._deleted and (FundAllocation, row.id) not in self._writes:
                pairs[(row.fund_id, row.deal_id)] = row.id
        for record in staged:
            pair = (record.fund_id, record.deal_id)
            owner = pairs.get(pair)
            if owner is not None and owner != record.id:
                raise ConstraintViolation(
                    f"Fund {record.fund_id} already has an allocation to deal {record.deal_id}",
                    {"fund_id": record.fund_id, "deal_id": record.deal_id, "allocation_id": owner},
                )
            pairs[pair] = record.id
