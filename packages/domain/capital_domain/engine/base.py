"""Shared plumbing for engine components.

Every component is constructed with its collaborators explicitly:

    store       LedgerStore (transactions over the records)
    cfg         LedgerCFG (limits and tolerances)
    event_sink  EventSink (fire-and-forget audit/notification)
    clock       zero-argument callable returning today's date

There are no module-level singletons; a CapitalEngine facade wires one set of
collaborators into all components.
"""

from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError
from ..events import EventSink, NullEventSink, emit_event
from ..schemas import LedgerCFG
from ..store import LedgerStore

Clock = Callable[[], date]
M = TypeVar("M", bound=BaseModel)


class LedgerComponent:
    """Base class holding a component's injected collaborators."""

    def __init__(
        self,
        store: LedgerStore,
        cfg: Optional[LedgerCFG] = None,
        event_sink: Optional[EventSink] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.cfg = cfg if cfg is not None else LedgerCFG()
        self.event_sink = event_sink if event_sink is not None else NullEventSink()
        self.clock = clock if clock is not None else date.today

    def today(self) -> date:
        return self.clock()

    def emit(
        self,
        event_type: str,
        entity_ids: Dict[str, Optional[int]],
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Send an event after commit; sink failures are logged, never raised."""
        emit_event(self.event_sink, event_type, entity_ids, payload)


def build_record(model: Type[M], **fields: Any) -> M:
    """Construct a pydantic model, reporting failures as ValidationError."""
    try:
        return model(**fields)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first["loc"]) or model.__name__
        raise ValidationError(
            f"Invalid {model.__name__}: {location}: {first['msg']}",
            {"errors": exc.errors(include_url=False)},
        ) from exc


def coerce_amount(value: Any, name: str = "amount") -> Decimal:
    """Convert caller input to a finite Decimal.

    Raises:
        ValidationError: not a number, or NaN/infinite
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{name} must be a number", {name: value})
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{name} must be a number", {name: value}) from exc
    if not amount.is_finite():
        raise ValidationError(f"{name} must be finite", {name: value})
    return amount
