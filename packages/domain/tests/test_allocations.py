"""Tests for AllocationLedger.

Tests cover:
- Creation bounds, duplicate pairs, missing references
- Patches that re-derive status and reject contradicting labels
- Explicit overrides and clearing them
- Cascading deletion, previews and batch deletes
- Repair via sync_allocation / sync_fund
"""

import pytest
from decimal import Decimal
from datetime import date

from capital_domain import (
    ConstraintViolation,
    LedgerCFG,
    NotFound,
    ValidationError,
)
from capital_domain.schemas import AllocationPatch, FundAllocation


# =============================================================================
# Creation
# =============================================================================

class TestCreateAllocation:

    def test_new_allocation_starts_committed(self, engine, fund, deal, sink):
        allocation = engine.create_allocation(deal.id, fund.id, Decimal("1000000"), "preferred")

        assert allocation.id is not None
        assert allocation.status == "committed"
        assert allocation.called_amount == Decimal("0")
        assert allocation.paid_amount == Decimal("0")
        assert allocation.security_type == "preferred"
        assert allocation.allocation_date == date(2024, 1, 15)
        assert len(sink.of_type("allocation_created")) == 1

    def test_fund_committed_capital_refreshed(self, engine, fund, allocation):
        assert engine.get_fund(fund.id).committed_capital == Decimal("1000000")

    @pytest.mark.parametrize("amount", [Decimal("999.99"), Decimal("100000000.01"), Decimal("-5")])
    def test_amount_outside_bounds(self, engine, fund, deal, amount):
        with pytest.raises(ValidationError, match="outside allowed range"):
            engine.create_allocation(deal.id, fund.id, amount)

    def test_bounds_are_inclusive(self, engine, fund, deal):
        allocation = engine.create_allocation(deal.id, fund.id, Decimal("1000"))
        assert allocation.committed_amount == Decimal("1000")

    def test_configured_bounds(self, store, fund, deal):
        from capital_domain import CapitalEngine

        strict = CapitalEngine(store, LedgerCFG(min_commitment=Decimal("50000")))
        with pytest.raises(ValidationError):
            strict.create_allocation(deal.id, fund.id, Decimal("10000"))

    def test_non_numeric_amount(self, engine, fund, deal):
        with pytest.raises(ValidationError, match="must be a number"):
            engine.create_allocation(deal.id, fund.id, "lots")

    def test_validation_error_is_value_error(self, engine, fund, deal):
        with pytest.raises(ValueError):
            engine.create_allocation(deal.id, fund.id, Decimal("1"))

    def test_unknown_security_type(self, engine, fund, deal):
        with pytest.raises(ValidationError, match="security_type"):
            engine.create_allocation(deal.id, fund.id, Decimal("5000"), "bond")

    def test_duplicate_pair_rejected(self, engine, fund, deal, allocation):
        with pytest.raises(ConstraintViolation, match="already has an allocation") as exc_info:
            engine.create_allocation(deal.id, fund.id, Decimal("5000"))
        assert exc_info.value.details["allocation_id"] == allocation.id

    def test_missing_fund(self, engine, deal):
        with pytest.raises(NotFound, match="Fund 99 not found"):
            engine.create_allocation(deal.id, 99, Decimal("5000"))

    def test_missing_deal(self, engine, fund):
        with pytest.raises(NotFound) as exc_info:
            engine.create_allocation(42, fund.id, Decimal("5000"))
        assert exc_info.value.entity == "Deal"
        assert exc_info.value.entity_id == 42


# =============================================================================
# Reads
# =============================================================================

def test_list_allocations_filters(engine, fund, deal, allocation):
    other_deal = engine.register_deal("Beta", sector="Health")
    other = engine.create_allocation(other_deal.id, fund.id, Decimal("2000"))

    assert [a.id for a in engine.allocations.list_allocations(fund_id=fund.id)] == [allocation.id, other.id]
    assert [a.id for a in engine.allocations.list_allocations(deal_id=other_deal.id)] == [other.id]


def test_get_missing_allocation(engine):
    with pytest.raises(NotFound):
        engine.allocations.get_allocation(123)


# =============================================================================
# Updates
# =============================================================================

class TestUpdateAllocation:

    def test_patch_fields(self, engine, allocation):
        updated = engine.allocations.update_allocation(
            allocation.id,
            {"market_value": Decimal("1500000"), "notes": "Series B lead"},
        )
        assert updated.market_value == Decimal("1500000")
        assert updated.notes == "Series B lead"

    def test_raising_commitment_rederives_status(self, engine, allocation):
        call = engine.create_capital_call(allocation.id, amount=Decimal("1000000"))
        engine.process_payment(call.id, Decimal("1000000"))
        assert engine.allocations.get_allocation(allocation.id).status == "funded"

        updated = engine.allocations.update_allocation(
            allocation.id, AllocationPatch(committed_amount=Decimal("2000000"))
        )
        assert updated.status == "partially_paid"

    def test_commitment_below_called_rejected(self, engine, allocation):
        engine.create_capital_call(allocation.id, amount=Decimal("600000"))
        with pytest.raises(ConstraintViolation, match="below"):
            engine.allocations.update_allocation(allocation.id, {"committed_amount": Decimal("500000")})

    def test_commitment_bounds_apply_to_patches(self, engine, allocation):
        with pytest.raises(ValidationError):
            engine.allocations.update_allocation(allocation.id, {"committed_amount": Decimal("10")})

    def test_malformed_patch(self, engine, allocation):
        with pytest.raises(ValidationError):
            engine.allocations.update_allocation(allocation.id, {"market_value": "-3"})

    def test_contradicting_status_flagged_not_applied(self, engine, allocation, sink):
        updated = engine.allocations.update_allocation(allocation.id, {"status": "funded"})

        assert updated.status == "committed"
        rejected = sink.of_type("allocation_status_override_rejected")
        assert len(rejected) == 1
        assert rejected[0].payload["requested"] == "funded"
        assert rejected[0].payload["derived"] == "committed"

    def test_override_status_through_patch(self, engine, allocation):
        updated = engine.allocations.update_allocation(allocation.id, {"status": "unfunded"})
        assert updated.status == "unfunded"

    def test_patch_with_derived_status_clears_unfunded(self, engine, allocation):
        engine.allocations.override_status(allocation.id, "unfunded")
        updated = engine.allocations.update_allocation(allocation.id, {"status": "committed"})
        assert updated.status == "committed"


# =============================================================================
# Overrides
# =============================================================================

class TestOverrides:

    def test_mark_unfunded(self, engine, allocation, sink):
        updated = engine.allocations.override_status(allocation.id, "unfunded", reason="LP default")
        assert updated.status == "unfunded"
        event = sink.of_type("allocation_status_changed")[-1]
        assert event.payload == {"from": "committed", "to": "unfunded", "override": True, "reason": "LP default"}

    def test_only_override_statuses(self, engine, allocation):
        with pytest.raises(ValidationError, match="can be set explicitly"):
            engine.allocations.override_status(allocation.id, "funded")

    def test_unfunded_refused_once_paid(self, engine, allocation):
        call = engine.create_capital_call(allocation.id, amount=Decimal("100000"))
        engine.process_payment(call.id, Decimal("50000"))
        with pytest.raises(ConstraintViolation, match="cannot move"):
            engine.allocations.override_status(allocation.id, "unfunded")

    def test_unfunded_cleared_by_payment(self, engine, allocation):
        engine.allocations.override_status(allocation.id, "unfunded")
        call = engine.create_capital_call(allocation.id, amount=Decimal("100000"))
        assert engine.allocations.get_allocation(allocation.id).status == "unfunded"

        engine.process_payment(call.id, Decimal("100000"))
        assert engine.allocations.get_allocation(allocation.id).status == "partially_paid"

    def test_written_off_is_sticky(self, engine, allocation):
        call = engine.create_capital_call(allocation.id, amount=Decimal("100000"))
        engine.allocations.override_status(allocation.id, "written_off")
        engine.process_payment(call.id, Decimal("100000"))

        assert engine.allocations.get_allocation(allocation.id).status == "written_off"
        with pytest.raises(ConstraintViolation):
            engine.allocations.override_status(allocation.id, "unfunded")

    def test_clear_override(self, engine, allocation):
        call = engine.create_capital_call(allocation.id, amount=Decimal("100000"))
        engine.process_payment(call.id, Decimal("100000"))
        engine.allocations.override_status(allocation.id, "written_off")

        cleared = engine.allocations.clear_override(allocation.id)
        assert cleared.status == "partially_paid"

    def test_clear_without_override_is_noop(self, engine, allocation):
        assert engine.allocations.clear_override(allocation.id).status == "committed"


# =============================================================================
# Deletion
# =============================================================================

class TestDeletion:

    def _populate(self, engine, allocation):
        paid_call = engine.create_capital_call(allocation.id, amount=Decimal("100000"))
        engine.process_payment(paid_call.id, Decimal("100000"))
        open_call = engine.create_capital_call(allocation.id, amount=Decimal("200000"))
        engine.process_payment(open_call.id, Decimal("50000"))
        engine.distributions.record_distribution(allocation.id, Decimal("1000"))

    def test_preview(self, engine, allocation):
        self._populate(engine, allocation)
        preview = engine.allocations.preview_deletion(allocation.id)

        assert preview.capital_calls == 2
        assert preview.open_capital_calls == 1
        assert preview.payments == 2
        assert preview.distributions == 1
        assert preview.paid_amount == Decimal("150000")
        assert preview.requires_cascade

    def test_open_calls_require_cascade(self, engine, allocation):
        self._populate(engine, allocation)
        with pytest.raises(ConstraintViolation, match="cascade=True") as exc_info:
            engine.allocations.delete_allocation(allocation.id)
        assert exc_info.value.details["open_capital_calls"] == 1
        assert engine.allocations.get_allocation(allocation.id).paid_amount == Decimal("150000")

    def test_cascade_removes_children_and_refreshes_fund(self, engine, store, fund, allocation, sink):
        self._populate(engine, allocation)
        engine.allocations.delete_allocation(allocation.id, cascade=True)

        with pytest.raises(NotFound):
            engine.allocations.get_allocation(allocation.id)
        with store.transaction() as tx:
            assert tx.list_capital_calls() == []
            assert tx.list_payments() == []
            assert tx.list_distributions() == []
        refreshed = engine.get_fund(fund.id)
        assert refreshed.committed_capital == Decimal("0")
        assert refreshed.aum == Decimal("0")
        assert sink.of_type("allocation_deleted")[0].payload["cascade"] is True

    def test_without_calls_no_cascade_needed(self, engine, allocation):
        preview = engine.allocations.delete_allocation(allocation.id)
        assert preview.capital_calls == 0

    def test_batch_delete(self, engine, fund, allocation):
        other_deal = engine.register_deal("Beta")
        other = engine.create_allocation(other_deal.id, fund.id, Decimal("5000"))
        engine.create_capital_call(other.id, amount=Decimal("1000"))

        result = engine.allocations.delete_allocations([allocation.id, other.id, 999])

        assert result.deleted == [allocation.id]
        assert set(result.failed) == {other.id, 999}
        assert result.success_count == 1
        assert result.failure_count == 2


# =============================================================================
# Repair
# =============================================================================

class TestSync:

    def test_sync_allocation_repairs_drift(self, engine, store, fund, allocation):
        call = engine.create_capital_call(allocation.id, amount=Decimal("300000"))
        engine.process_payment(call.id, Decimal("300000"))

        with store.transaction() as tx:
            drifted = tx.require(FundAllocation, allocation.id)
            drifted.paid_amount = Decimal("0")
            drifted.called_amount = Decimal("5")
            drifted.status = "funded"
            tx.save(drifted)

        synced = engine.allocations.sync_allocation(allocation.id)
        assert synced.called_amount == Decimal("300000")
        assert synced.paid_amount == Decimal("300000")
        assert synced.status == "partially_paid"

    def test_sync_fund(self, engine, store, fund, allocation):
        engine.create_capital_call(allocation.id, amount=Decimal("300000"))
        with store.transaction() as tx:
            stale = tx.get_fund(fund.id)
            stale.called_capital = Decimal("1")
            tx.save(stale)

        repaired = engine.allocations.sync_fund(fund.id)
        assert repaired.called_capital == Decimal("300000")
