"""Shared fixtures: an in-memory engine on a fixed clock."""

import pytest
from decimal import Decimal
from datetime import date

from capital_domain import CapitalEngine, InMemoryEventSink, InMemoryLedgerStore, LedgerCFG

TODAY = date(2024, 1, 15)


@pytest.fixture
def cfg():
    return LedgerCFG()


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def sink():
    return InMemoryEventSink()


@pytest.fixture
def engine(store, cfg, sink):
    return CapitalEngine(store, cfg, sink, clock=lambda: TODAY)


@pytest.fixture
def fund(engine):
    return engine.register_fund("Fund I", vintage=2023)


@pytest.fixture
def deal(engine):
    return engine.register_deal("Acme Robotics", sector="Industrials")


@pytest.fixture
def allocation(engine, fund, deal):
    """$1,000,000 commitment from Fund I into Acme Robotics."""
    return engine.create_allocation(deal.id, fund.id, Decimal("1000000"))
