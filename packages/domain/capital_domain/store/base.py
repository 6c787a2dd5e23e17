"""Repository interfaces for the capital engine.

Components receive a LedgerStore through their constructor and do all reads
and writes of one operation inside a single transaction:

    with store.transaction() as tx:
        call = tx.require(CapitalCall, call_id, lock=True)
        ...
        tx.save(call)

Leaving the block normally commits; any exception rolls everything back.
Stores must detect lost updates: saving or deleting a record whose version
changed since it was read raises ConcurrencyConflict.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import List, Optional, Type, TypeVar

from ..errors import NotFound
from ..schemas import (
    StoredRecord,
    Fund,
    Deal,
    FundAllocation,
    CapitalCall,
    Payment,
    Distribution,
)

R = TypeVar("R", bound=StoredRecord)

RECORD_TYPES = (Fund, Deal, FundAllocation, CapitalCall, Payment, Distribution)


# =============================================================================
# Transaction
# =============================================================================

class LedgerTransaction(ABC):
    """Unit of work over the ledger's records.

    Subclasses implement the five primitives (get, select, add, save, delete);
    the typed helpers below are shared.
    """

    @abstractmethod
    def get(self, record_type: Type[R], record_id: int, lock: bool = False) -> Optional[R]:
        """Fetch one record by id.

        Args:
            record_type: Record class (Fund, CapitalCall, ...)
            record_id: Store-assigned id
            lock: Request a row lock for the rest of the transaction where the
                backend supports it; optimistic stores rely on the version check

        Returns:
            A detached copy of the record, or None
        """
        pass

    @abstractmethod
    def select(self, record_type: Type[R], **filters) -> List[R]:
        """Fetch records whose fields equal the given filters, ordered by id."""
        pass

    @abstractmethod
    def add(self, record: R) -> R:
        """Insert a new record; assigns `id` (and `version` once persisted)."""
        pass

    @abstractmethod
    def save(self, record: R) -> R:
        """Update an existing record, checking its version."""
        pass

    @abstractmethod
    def delete(self, record: StoredRecord) -> None:
        """Delete an existing record, checking its version."""
        pass

    def require(self, record_type: Type[R], record_id: int, lock: bool = False) -> R:
        """Like get(), but raises NotFound when the record is absent."""
        record = self.get(record_type, record_id, lock=lock)
        if record is None:
            raise NotFound(record_type.__name__, record_id)
        return record

    # -------------------------------------------------------------------------
    # Typed helpers
    # -------------------------------------------------------------------------

    def get_fund(self, fund_id: int) -> Optional[Fund]:
        return self.get(Fund, fund_id)

    def get_deal(self, deal_id: int) -> Optional[Deal]:
        return self.get(Deal, deal_id)

    def get_allocation(self, allocation_id: int, lock: bool = False) -> Optional[FundAllocation]:
        return self.get(FundAllocation, allocation_id, lock=lock)

    def get_capital_call(self, capital_call_id: int, lock: bool = False) -> Optional[CapitalCall]:
        return self.get(CapitalCall, capital_call_id, lock=lock)

    def list_funds(self) -> List[Fund]:
        return self.select(Fund)

    def list_deals(self) -> List[Deal]:
        return self.select(Deal)

    def list_allocations(
        self,
        fund_id: Optional[int] = None,
        deal_id: Optional[int] = None,
    ) -> List[FundAllocation]:
        filters = {}
        if fund_id is not None:
            filters["fund_id"] = fund_id
        if deal_id is not None:
            filters["deal_id"] = deal_id
        return self.select(FundAllocation, **filters)

    def find_allocation(self, fund_id: int, deal_id: int) -> Optional[FundAllocation]:
        matches = self.select(FundAllocation, fund_id=fund_id, deal_id=deal_id)
        return matches[0] if matches else None

    def list_capital_calls(self, allocation_id: Optional[int] = None) -> List[CapitalCall]:
        if allocation_id is None:
            return self.select(CapitalCall)
        return self.select(CapitalCall, allocation_id=allocation_id)

    def list_payments(self, capital_call_id: Optional[int] = None) -> List[Payment]:
        if capital_call_id is None:
            return self.select(Payment)
        return self.select(Payment, capital_call_id=capital_call_id)

    def list_distributions(self, allocation_id: Optional[int] = None) -> List[Distribution]:
        if allocation_id is None:
            return self.select(Distribution)
        return self.select(Distribution, allocation_id=allocation_id)


# =============================================================================
# Store
# =============================================================================

class LedgerStore(ABC):
    """Transactional persistence for funds, deals, allocations, calls,
    payments and distributions."""

    @abstractmethod
    def transaction(self) -> AbstractContextManager:
        """Open a transaction; yields a LedgerTransaction."""
        pass
