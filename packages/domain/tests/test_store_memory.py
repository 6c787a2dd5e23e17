"""Tests for InMemoryLedgerStore transactions."""

import pytest
from decimal import Decimal

from capital_domain import ConcurrencyConflict, ConstraintViolation, InMemoryLedgerStore, NotFound
from capital_domain.schemas import Deal, Fund, FundAllocation


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def fund(store):
    with store.transaction() as tx:
        return tx.add(Fund(name="Fund I"))


def test_add_assigns_id_and_version(store, fund):
    assert fund.id == 1
    with store.transaction() as tx:
        stored = tx.get_fund(fund.id)
        second = tx.add(Fund(name="Fund II"))
    assert stored.version == 1
    assert second.id == 2


def test_reads_are_copies(store, fund):
    with store.transaction() as tx:
        copy = tx.get_fund(fund.id)
        copy.name = "Renamed"
    with store.transaction() as tx:
        assert tx.get_fund(fund.id).name == "Fund I"


def test_read_your_writes(store, fund):
    with store.transaction() as tx:
        record = tx.get_fund(fund.id)
        record.aum = Decimal("42")
        tx.save(record)
        assert tx.get_fund(fund.id).aum == Decimal("42")
        assert [f.aum for f in tx.list_funds()] == [Decimal("42")]


def test_exception_rolls_back(store, fund):
    with pytest.raises(RuntimeError):
        with store.transaction() as tx:
            tx.add(Deal(name="Ghost"))
            record = tx.get_fund(fund.id)
            record.name = "Changed"
            tx.save(record)
            raise RuntimeError("boom")

    with store.transaction() as tx:
        assert tx.list_deals() == []
        assert tx.get_fund(fund.id).name == "Fund I"


def test_select_filters_and_orders(store):
    with store.transaction() as tx:
        for deal_id in (3, 1, 2):
            tx.add(FundAllocation(fund_id=1, deal_id=deal_id, committed_amount=Decimal("1000")))
        tx.add(FundAllocation(fund_id=2, deal_id=1, committed_amount=Decimal("1000")))

    with store.transaction() as tx:
        assert [a.deal_id for a in tx.list_allocations(fund_id=1)] == [3, 1, 2]
        assert tx.find_allocation(2, 1).fund_id == 2
        assert tx.find_allocation(2, 3) is None


def test_require_missing(store):
    with store.transaction() as tx:
        with pytest.raises(NotFound, match="Fund 9 not found"):
            tx.require(Fund, 9)


def test_add_with_id_rejected(store, fund):
    with store.transaction() as tx:
        with pytest.raises(ValueError, match="already has id"):
            tx.add(fund)


def test_delete_then_save_rejected(store, fund):
    with store.transaction() as tx:
        record = tx.get_fund(fund.id)
        tx.delete(record)
        assert tx.get_fund(fund.id) is None
        with pytest.raises(ValueError, match="was deleted"):
            tx.save(record)


# =============================================================================
# Concurrency
# =============================================================================

class TestOptimisticConcurrency:

    def test_lost_update_detected(self, store, fund):
        with pytest.raises(ConcurrencyConflict, match="concurrent transaction") as exc_info:
            with store.transaction() as tx_a:
                mine = tx_a.get_fund(fund.id)
                with store.transaction() as tx_b:
                    theirs = tx_b.get_fund(fund.id)
                    theirs.aum = Decimal("1")
                    tx_b.save(theirs)
                mine.aum = Decimal("2")
                tx_a.save(mine)

        assert exc_info.value.retryable
        with store.transaction() as tx:
            assert tx.get_fund(fund.id).aum == Decimal("1")

    def test_delete_of_modified_record_detected(self, store, fund):
        with pytest.raises(ConcurrencyConflict):
            with store.transaction() as tx_a:
                mine = tx_a.get_fund(fund.id)
                with store.transaction() as tx_b:
                    theirs = tx_b.get_fund(fund.id)
                    tx_b.save(theirs)
                tx_a.delete(mine)

    def test_conflicting_transaction_applies_nothing(self, store, fund):
        with pytest.raises(ConcurrencyConflict):
            with store.transaction() as tx_a:
                tx_a.add(Deal(name="Late"))
                mine = tx_a.get_fund(fund.id)
                with store.transaction() as tx_b:
                    tx_b.save(tx_b.get_fund(fund.id))
                tx_a.save(mine)

        with store.transaction() as tx:
            assert tx.list_deals() == []

    def test_sequential_updates_succeed(self, store, fund):
        for amount in ("1", "2", "3"):
            with store.transaction() as tx:
                record = tx.get_fund(fund.id)
                record.aum = Decimal(amount)
                tx.save(record)
        with store.transaction() as tx:
            stored = tx.get_fund(fund.id)
        assert stored.aum == Decimal("3")
        assert stored.version == 4


class TestUniqueAllocations:

    def test_duplicate_pair_in_one_transaction(self, store):
        with pytest.raises(ConstraintViolation, match="already has an allocation"):
            with store.transaction() as tx:
                tx.add(FundAllocation(fund_id=1, deal_id=1, committed_amount=Decimal("1000")))
                tx.add(FundAllocation(fund_id=1, deal_id=1, committed_amount=Decimal("2000")))

    def test_duplicate_of_committed_row(self, store):
        with store.transaction() as tx:
            tx.add(FundAllocation(fund_id=1, deal_id=1, committed_amount=Decimal("1000")))
        with pytest.raises(ConstraintViolation):
            with store.transaction() as tx:
                tx.add(FundAllocation(fund_id=1, deal_id=1, committed_amount=Decimal("1000")))

    def test_pair_reusable_after_delete(self, store):
        with store.transaction() as tx:
            first = tx.add(FundAllocation(fund_id=1, deal_id=1, committed_amount=Decimal("1000")))
        with store.transaction() as tx:
            tx.delete(tx.get_allocation(first.id))
            tx.add(FundAllocation(fund_id=1, deal_id=1, committed_amount=Decimal("5000")))
        with store.transaction() as tx:
            assert [a.committed_amount for a in tx.list_allocations()] == [Decimal("5000")]
