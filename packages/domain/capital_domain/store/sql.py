"""SQLAlchemy-backed ledger store.

Tables mirror the record types field for field. Every table carries a
`version` column registered as the mapper's version_id_col, so UPDATE and
DELETE statements are issued as `... WHERE id = ? AND version = ?` and a
lost update surfaces as StaleDataError, which the transaction translates to
ConcurrencyConflict. Row locks (SELECT ... FOR UPDATE) are requested for
reads made with lock=True on backends that support them.
"""

import logging
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Type

from sqlalchemy import (
    Column,
    Date,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from .base import LedgerStore, LedgerTransaction, R
from ..errors import ConcurrencyConflict, ConstraintViolation
from ..schemas import (
    StoredRecord,
    Fund,
    Deal,
    FundAllocation,
    CapitalCall,
    Payment,
    Distribution,
)

logger = logging.getLogger(__name__)

Base = declarative_base()

MONEY = Numeric(18, 2)


# =============================================================================
# Tables
# =============================================================================

class FundRow(Base):
    __tablename__ = "funds"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    vintage = Column(Integer)
    committed_capital = Column(MONEY, nullable=False, default=0)
    called_capital = Column(MONEY, nullable=False, default=0)
    uncalled_capital = Column(MONEY, nullable=False, default=0)
    aum = Column(MONEY, nullable=False, default=0)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class DealRow(Base):
    __tablename__ = "deals"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    stage = Column(String(50), nullable=False)
    sector = Column(String(100))
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class AllocationRow(Base):
    __tablename__ = "fund_allocations"
    __table_args__ = (
        UniqueConstraint("fund_id", "deal_id", name="uq_fund_allocations_fund_deal"),
    )

    id = Column(Integer, primary_key=True)
    fund_id = Column(Integer, ForeignKey("funds.id"), nullable=False, index=True)
    deal_id = Column(Integer, ForeignKey("deals.id"), nullable=False, index=True)
    committed_amount = Column(MONEY, nullable=False)
    called_amount = Column(MONEY, nullable=False, default=0)
    paid_amount = Column(MONEY, nullable=False, default=0)
    distribution_paid = Column(MONEY, nullable=False, default=0)
    total_returned = Column(MONEY, nullable=False, default=0)
    market_value = Column(MONEY, nullable=False, default=0)
    security_type = Column(String(50), nullable=False)
    status = Column(String(50), nullable=False)
    allocation_date = Column(Date)
    notes = Column(Text)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class CapitalCallRow(Base):
    __tablename__ = "capital_calls"

    id = Column(Integer, primary_key=True)
    allocation_id = Column(Integer, ForeignKey("fund_allocations.id"), nullable=False, index=True)
    call_amount = Column(MONEY, nullable=False)
    call_percentage = Column(Numeric(9, 4))
    call_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=False)
    paid_amount = Column(MONEY, nullable=False, default=0)
    outstanding_amount = Column(MONEY, nullable=False, default=0)
    status = Column(String(50), nullable=False)
    initial_status = Column(String(50), nullable=False)
    notes = Column(Text)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class PaymentRow(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    capital_call_id = Column(Integer, ForeignKey("capital_calls.id"), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    payment_date = Column(Date, nullable=False)
    reference = Column(String(255))
    notes = Column(Text)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class DistributionRow(Base):
    __tablename__ = "distributions"

    id = Column(Integer, primary_key=True)
    allocation_id = Column(Integer, ForeignKey("fund_allocations.id"), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    distribution_date = Column(Date, nullable=False)
    distribution_type = Column(String(50), nullable=False)
    notes = Column(Text)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


ROW_TYPES: Dict[type, type] = {
    Fund: FundRow,
    Deal: DealRow,
    FundAllocation: AllocationRow,
    CapitalCall: CapitalCallRow,
    Payment: PaymentRow,
    Distribution: DistributionRow,
}


def _to_record(record_type: Type[R], row) -> R:
    return record_type.model_validate(
        {column.key: getattr(row, column.key) for column in row.__table__.columns}
    )


def _copy_fields(record: StoredRecord, row) -> None:
    for name, value in record.model_dump(exclude={"id", "version"}).items():
        setattr(row, name, value)


# =============================================================================
# Transaction / Store
# =============================================================================

class SqlLedgerTransaction(LedgerTransaction):
    """One SQLAlchemy session."""

    def __init__(self, session: Session):
        self.session = session

    def _check_version(self, record: StoredRecord, row) -> None:
        if row is None or row.version != record.version:
            raise ConcurrencyConflict(
                f"{type(record).__name__} {record.id} was modified by a concurrent transaction",
                {"entity": type(record).__name__, "entity_id": record.id},
            )

    def get(self, record_type: Type[R], record_id: int, lock: bool = False) -> Optional[R]:
        row = self.session.get(
            ROW_TYPES[record_type],
            record_id,
            with_for_update=True if lock else None,
            populate_existing=lock,
        )
        return _to_record(record_type, row) if row is not None else None

    def select(self, record_type: Type[R], **filters) -> List[R]:
        row_type = ROW_TYPES[record_type]
        stmt = select(row_type).filter_by(**filters).order_by(row_type.id)
        return [_to_record(record_type, row) for row in self.session.scalars(stmt)]

    def add(self, record: R) -> R:
        row = ROW_TYPES[type(record)](**record.model_dump(exclude={"id", "version"}))
        self.session.add(row)
        self.session.flush()
        record.id = row.id
        record.version = row.version
        return record

    def save(self, record: R) -> R:
        row = self.session.get(ROW_TYPES[type(record)], record.id)
        self._check_version(record, row)
        _copy_fields(record, row)
        self.session.flush()
        record.version = row.version
        return record

    def delete(self, record: StoredRecord) -> None:
        row = self.session.get(ROW_TYPES[type(record)], record.id)
        self._check_version(record, row)
        self.session.delete(row)
        self.session.flush()


class SqlLedgerStore(LedgerStore):
    """Session-per-transaction store over any SQLAlchemy engine."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str, **engine_kwargs) -> "SqlLedgerStore":
        """Create an engine for `url` and make sure the schema exists."""
        engine = create_engine(url, **engine_kwargs)
        Base.metadata.create_all(bind=engine)
        return cls(engine)

    @contextmanager
    def transaction(self) -> Iterator[SqlLedgerTransaction]:
        session = self._session_factory()
        try:
            yield SqlLedgerTransaction(session)
            session.commit()
        except StaleDataError as exc:
            session.rollback()
            raise ConcurrencyConflict("Record was modified by a concurrent transaction") from exc
        except IntegrityError as exc:
            session.rollback()
            logger.warning("Integrity error rolled back: %s", exc.orig)
            raise ConstraintViolation(
                "Write rejected by a database constraint", {"reason": str(exc.orig)}
            ) from exc
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()
