"""
events.py - Loan Notifications

Every committed lifecycle operation and every configuration change produces
one LoanEvent. Events are published only after the ledger transaction has
committed, so an observer never sees an operation that did not happen.

Observers are advisory: an exception raised by one is logged and the next
observer still runs. The committed operation is not affected.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from .logging import get_logger

logger = get_logger(__name__)


LOAN_CREATED = "LoanCreated"
LOAN_APPROVED = "LoanApproved"
LOAN_CANCELLED = "LoanCancelled"
LOAN_PAYMENT = "LoanPayment"
LOAN_EXTENDED = "LoanExtended"
ITEMS_WITHDRAWN = "ItemsWithdrawn"
CONFIG_CHANGED = "ConfigChanged"

EVENT_TYPES = frozenset({
    LOAN_CREATED, LOAN_APPROVED, LOAN_CANCELLED, LOAN_PAYMENT,
    LOAN_EXTENDED, ITEMS_WITHDRAWN, CONFIG_CHANGED,
})


@dataclass(frozen=True, slots=True)
class LoanEvent:
    """
    Notification of a committed change.

    Attributes:
        event_type: One of EVENT_TYPES
        loan_id: Loan concerned, None for configuration changes
        actor: Wallet that performed the operation
        timestamp: Ledger time of the commit
        status: Loan status after the operation (None for config events)
        params: Operation details as sorted (key, value) pairs
        sequence: Position in the bus's event log, starting at 0
    """
    event_type: str
    loan_id: Optional[int]
    actor: str
    timestamp: datetime
    status: Optional[int] = None
    params: Tuple[Tuple[str, Any], ...] = ()
    sequence: int = -1

    def __post_init__(self):
        if self.event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {self.event_type}")

    @property
    def details(self) -> Dict[str, Any]:
        return dict(self.params)


Observer = Callable[[LoanEvent], None]


class EventBus:
    """In-memory event log with synchronous fan-out to observers."""

    def __init__(self):
        self._observers: List[Observer] = []
        self.events: List[LoanEvent] = []

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """
        Register an observer. Returns a function that unsubscribes it.

        Example:
            unsubscribe = bus.subscribe(print)
            ...
            unsubscribe()
        """
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def publish(
        self,
        event_type: str,
        loan_id: Optional[int],
        actor: str,
        timestamp: datetime,
        status: Optional[int] = None,
        **params: Any,
    ) -> LoanEvent:
        """Append an event to the log, then notify every observer."""
        event = LoanEvent(
            event_type=event_type,
            loan_id=loan_id,
            actor=actor,
            timestamp=timestamp,
            status=None if status is None else int(status),
            params=tuple(sorted(params.items())),
            sequence=len(self.events),
        )
        self.events.append(event)

        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:
                logger.exception(
                    "observer %r failed on %s #%d", observer, event.event_type, event.sequence
                )
        return event

    def events_for(self, loan_id: int) -> List[LoanEvent]:
        return [e for e in self.events if e.loan_id == loan_id]
