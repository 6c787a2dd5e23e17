"""Tests for CapitalMetricsAggregator.

Tests cover:
- Allocation and fund metrics under every capital view
- Dynamic weights (sum to 100, zero totals)
- Sector distribution with top-N collapse and missing sectors
- Fund refresh, retries and the post-commit wrapper
- DataFrame rollups via the blocks
"""

import logging
from contextlib import contextmanager

import pandas as pd
import pytest
from decimal import Decimal
from datetime import date

from capital_domain import (
    CapitalEngine,
    ConcurrencyConflict,
    InMemoryLedgerStore,
    LedgerCFG,
    NotFound,
    ValidationError,
)
from capital_domain.engine import CapitalMetricsAggregator as Agg
from capital_domain.schemas import CAPITAL_VIEWS, Deal, FundAllocation
from capital_domain.store import InMemoryTransaction


def make_allocation(allocation_id, deal_id, committed, called="0", paid="0"):
    return FundAllocation(
        id=allocation_id,
        fund_id=1,
        deal_id=deal_id,
        committed_amount=Decimal(committed),
        called_amount=Decimal(called),
        paid_amount=Decimal(paid),
    )


@pytest.fixture
def portfolio(engine, fund):
    """Three allocations in different states.

    Acme (Industrials):  1,000,000 committed, 400,000 called, 250,000 paid
    Beta (Software):       500,000 committed, 100,000 called, 100,000 paid
    Gamma (no sector):     250,000 committed, nothing called
    """
    acme = engine.register_deal("Acme", sector="Industrials")
    beta = engine.register_deal("Beta", sector="Software")
    gamma = engine.register_deal("Gamma")

    a = engine.create_allocation(acme.id, fund.id, Decimal("1000000"))
    b = engine.create_allocation(beta.id, fund.id, Decimal("500000"))
    c = engine.create_allocation(gamma.id, fund.id, Decimal("250000"))

    call_a = engine.create_capital_call(a.id, percentage=40)
    engine.process_payment(call_a.id, Decimal("250000"))
    call_b = engine.create_capital_call(b.id, percentage=20)
    engine.process_payment(call_b.id, Decimal("100000"))
    return a, b, c


# =============================================================================
# Pure calculations
# =============================================================================

class TestAllocationMetrics:

    def test_views(self):
        metrics = Agg.calculate_allocation_metrics(make_allocation(1, 1, "1000", "600", "450"))
        assert metrics.committed == Decimal("1000")
        assert metrics.called == Decimal("600")
        assert metrics.paid == Decimal("450")
        assert metrics.uncalled == Decimal("400")
        assert metrics.outstanding == Decimal("150")

    def test_called_resummed_from_calls(self, engine, allocation):
        engine.create_capital_call(allocation.id, amount=Decimal("300"))
        engine.create_capital_call(allocation.id, amount=Decimal("200"))
        calls = engine.capital_calls.list_capital_calls(allocation.id)

        stale = allocation.model_copy(update={"called_amount": Decimal("0")})
        metrics = Agg.calculate_allocation_metrics(stale, calls)
        assert metrics.called == Decimal("500")

    def test_display_amount_per_view(self):
        metrics = Agg.calculate_allocation_metrics(make_allocation(1, 1, "1000", "600", "450"))
        expected = {
            "committed": Decimal("1000"),
            "called": Decimal("600"),
            "paid": Decimal("450"),
            "uncalled": Decimal("400"),
            "outstanding": Decimal("150"),
        }
        for view in CAPITAL_VIEWS:
            assert Agg.get_display_amount(metrics, view) == expected[view]

    def test_unknown_view(self):
        metrics = Agg.calculate_allocation_metrics(make_allocation(1, 1, "1000"))
        with pytest.raises(ValidationError, match="Unknown capital view"):
            Agg.get_display_amount(metrics, "distributed")


def test_fund_metrics_sum_allocations():
    totals = Agg.calculate_fund_metrics([
        make_allocation(1, 1, "1000", "600", "450"),
        make_allocation(2, 2, "500", "100", "0"),
    ])
    assert totals.allocation_count == 2
    assert totals.committed == Decimal("1500")
    assert totals.called == Decimal("700")
    assert totals.paid == Decimal("450")
    assert totals.uncalled == Decimal("800")
    assert totals.outstanding == Decimal("250")


class TestWeights:

    ALLOCATIONS = [
        make_allocation(1, 1, "1000000", "400000", "250000"),
        make_allocation(2, 2, "500000", "100000", "100000"),
        make_allocation(3, 3, "250000"),
    ]

    @pytest.mark.parametrize("view", CAPITAL_VIEWS)
    def test_weights_sum_to_100(self, view):
        weights = Agg.portfolio_weights(self.ALLOCATIONS, view)
        assert abs(sum(w.weight for w in weights) - Decimal("100")) < Decimal("1e-20")

    def test_dynamic_weight(self):
        weight = Agg.calculate_dynamic_weight(self.ALLOCATIONS[0], self.ALLOCATIONS, "called")
        assert weight == Decimal("80")

    def test_outstanding_view_concentrates_on_open_calls(self):
        weights = {w.allocation_id: w.weight for w in Agg.portfolio_weights(self.ALLOCATIONS, "outstanding")}
        assert weights == {1: Decimal("100"), 2: Decimal("0"), 3: Decimal("0")}

    def test_zero_total_gives_zero_weights(self):
        uncalled = [make_allocation(1, 1, "1000"), make_allocation(2, 2, "2000")]
        weights = Agg.portfolio_weights(uncalled, "paid")
        assert [w.weight for w in weights] == [Decimal("0"), Decimal("0")]
        assert Agg.calculate_dynamic_weight(uncalled[0], uncalled, "called") == Decimal("0")


class TestSectorDistribution:

    def test_top_n_collapse(self):
        deals = {i: Deal(id=i, name=f"Deal {i}", sector=f"Sector {i}") for i in range(1, 10)}
        allocations = [make_allocation(i, i, str(10000 - i * 100)) for i in range(1, 10)]

        slices = Agg.sector_distribution(allocations, deals, "committed", top_n=7)

        assert len(slices) == 8
        assert [s.sector for s in slices[:7]] == [f"Sector {i}" for i in range(1, 8)]
        assert slices[-1].sector == "Other"
        assert slices[-1].amount == Decimal("9200") + Decimal("9100")
        assert slices[-1].allocation_count == 2
        assert abs(sum(s.percentage for s in slices) - Decimal("100")) < Decimal("1e-20")

    def test_no_collapse_at_or_below_top_n(self):
        deals = {i: Deal(id=i, name=f"Deal {i}", sector=f"Sector {i}") for i in range(1, 4)}
        allocations = [make_allocation(i, i, "1000") for i in range(1, 4)]
        slices = Agg.sector_distribution(allocations, deals, "committed", top_n=3)
        assert "Other" not in [s.sector for s in slices]

    def test_ties_ordered_by_name(self):
        deals = {
            1: Deal(id=1, name="A", sector="Software"),
            2: Deal(id=2, name="B", sector="Energy"),
        }
        allocations = [make_allocation(1, 1, "1000"), make_allocation(2, 2, "1000")]
        slices = Agg.sector_distribution(allocations, deals, "committed")
        assert [s.sector for s in slices] == ["Energy", "Software"]

    def test_missing_sector_labelled(self):
        deals = {1: Deal(id=1, name="A"), 2: Deal(id=2, name="B", sector="")}
        allocations = [make_allocation(1, 1, "1000"), make_allocation(2, 2, "3000"), make_allocation(3, 99, "1000")]
        slices = Agg.sector_distribution(allocations, deals, "committed")
        assert [(s.sector, s.allocation_count) for s in slices] == [("Unspecified", 3)]
        assert slices[0].percentage == Decimal("100")

    def test_same_sector_merged(self):
        deals = {1: Deal(id=1, name="A", sector="Software"), 2: Deal(id=2, name="B", sector="Software")}
        allocations = [make_allocation(1, 1, "1000", "100"), make_allocation(2, 2, "1000", "300")]
        slices = Agg.sector_distribution(allocations, deals, "called")
        assert len(slices) == 1
        assert slices[0].amount == Decimal("400")

    def test_zero_total(self):
        deals = {1: Deal(id=1, name="A", sector="Software")}
        slices = Agg.sector_distribution([make_allocation(1, 1, "1000")], deals, "paid")
        assert slices[0].percentage == Decimal("0")


# =============================================================================
# Store-backed
# =============================================================================

class TestFundMetrics:

    def test_report(self, engine, fund, portfolio):
        a, b, c = portfolio
        report = engine.get_fund_metrics(fund.id, "called")

        assert report.view == "called"
        assert report.total_amount == Decimal("500000")
        assert report.totals.committed == Decimal("1750000")
        assert {w.allocation_id: w.weight for w in report.weights} == {
            a.id: Decimal("80"),
            b.id: Decimal("20"),
            c.id: Decimal("0"),
        }
        assert [s.sector for s in report.sector_distribution] == ["Industrials", "Software", "Unspecified"]

    def test_default_view_is_committed(self, engine, fund, portfolio):
        report = engine.get_fund_metrics(fund.id)
        assert report.view == "committed"
        assert report.total_amount == Decimal("1750000")

    def test_unknown_view(self, engine, fund):
        with pytest.raises(ValidationError):
            engine.get_fund_metrics(fund.id, "nav")

    def test_unknown_fund(self, engine):
        with pytest.raises(NotFound):
            engine.get_fund_metrics(404)

    def test_configured_sector_labels(self, store, fund, portfolio):
        cfg = LedgerCFG(sector_top_n=1, other_sector_label="Rest", missing_sector_label="n/a")
        report = CapitalEngine(store, cfg).get_fund_metrics(fund.id)
        assert [s.sector for s in report.sector_distribution] == ["Industrials", "Rest"]

    def test_fund_totals_on_read(self, engine, fund, portfolio):
        totals = engine.metrics.get_fund_totals(fund.id)
        assert totals.paid == Decimal("350000")
        assert totals.deployment_rate == Decimal("500000") / Decimal("1750000") * 100


class TestRefreshFund:

    def test_refresh_resums(self, engine, fund, portfolio, sink):
        refreshed = engine.metrics.refresh_fund(fund.id)

        assert refreshed.committed_capital == Decimal("1750000")
        assert refreshed.called_capital == Decimal("500000")
        assert refreshed.uncalled_capital == Decimal("1250000")
        assert refreshed.aum == Decimal("350000")
        assert sink.of_type("fund_refreshed")[-1].entity_ids == {"fund_id": fund.id}

    def test_refresh_all_funds(self, engine, fund, portfolio):
        empty = engine.register_fund("Fund II")
        refreshed = {f.id: f for f in engine.metrics.refresh_all_funds()}
        assert refreshed[fund.id].aum == Decimal("350000")
        assert refreshed[empty.id].committed_capital == Decimal("0")

    def test_missing_fund(self, engine):
        with pytest.raises(NotFound):
            engine.metrics.refresh_fund(12)


class FlakyStore(InMemoryLedgerStore):
    """Loses the version race for the next `failures` commits."""

    def __init__(self):
        super().__init__()
        self.failures = 0

    @contextmanager
    def transaction(self):
        tx = InMemoryTransaction(self)
        yield tx
        if self.failures:
            self.failures -= 1
            raise ConcurrencyConflict("simulated conflict")
        tx.commit()


class TestRefreshRetries:

    def _engine(self, retries=3):
        store = FlakyStore()
        engine = CapitalEngine(store, LedgerCFG(max_refresh_retries=retries), clock=lambda: date(2024, 1, 15))
        fund = engine.register_fund("Fund I")
        deal = engine.register_deal("Acme", sector="Software")
        engine.create_allocation(deal.id, fund.id, Decimal("5000"))
        return store, engine, fund

    def test_retries_until_success(self):
        store, engine, fund = self._engine()
        store.failures = 2
        assert engine.metrics.refresh_fund(fund.id).committed_capital == Decimal("5000")

    def test_gives_up_after_retries(self):
        store, engine, fund = self._engine(retries=1)
        store.failures = 2
        with pytest.raises(ConcurrencyConflict):
            engine.metrics.refresh_fund(fund.id)

    def test_post_commit_refresh_logs_and_continues(self, caplog):
        store, engine, fund = self._engine(retries=0)
        store.failures = 1
        with caplog.at_level(logging.WARNING, logger="capital_domain"):
            assert engine.metrics.refresh_after_commit(fund.id) is None
        assert "left stale" in caplog.text


# =============================================================================
# DataFrame rollups
# =============================================================================

class TestFundMetricsFrames:

    def test_frames(self, engine, fund, portfolio):
        a, b, c = portfolio
        engine.allocations.update_allocation(a.id, {"market_value": Decimal("1500000")})
        engine.distributions.record_distribution(b.id, Decimal("250000"))

        frames = engine.metrics.fund_metrics_frames(fund.id, "paid")

        assert set(frames) == {
            "allocation_metrics",
            "portfolio_weights",
            "sector_distribution",
            "returns_by_allocation",
            "returns_summary",
        }
        metrics_df = frames["allocation_metrics"]
        assert list(metrics_df["allocation_id"]) == [a.id, b.id, c.id]

        weights_df = frames["portfolio_weights"]
        assert weights_df["weight"].sum() == pytest.approx(100.0)
        assert weights_df.iloc[0]["allocation_id"] == a.id

        sectors_df = frames["sector_distribution"]
        assert list(sectors_df["sector"]) == ["Industrials", "Software", "Unspecified"]
        assert sectors_df["percentage"].sum() == pytest.approx(100.0)

        summary = frames["returns_summary"].iloc[0]
        assert summary["total_committed"] == pytest.approx(1750000.0)
        assert summary["aggregate_moic"] == pytest.approx(1750000.0 / 1750000.0)

    def test_empty_fund(self, engine, fund):
        frames = engine.metrics.fund_metrics_frames(fund.id)
        assert frames["allocation_metrics"].empty
        assert frames["sector_distribution"].empty
        summary = frames["returns_summary"].iloc[0]
        assert summary["total_committed"] == 0.0
        assert pd.isna(summary["aggregate_moic"])
