"""Domain events raised by the engine after a transaction commits.

The engine only guarantees that each event is published once per successful
operation; delivery to notification or audit consumers is up to subscribers.
"""

import logging
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DomainEvent:
    """Base class for engine events."""

    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC), kw_only=True)


@dataclass(frozen=True)
class BillGenerated(DomainEvent):
    bill_id: int
    account_id: int
    billing_period: str
    total_amount: Decimal


@dataclass(frozen=True)
class BillVoided(DomainEvent):
    bill_id: int
    account_id: int
    reason: str
    replacement_bill_id: int | None = None


@dataclass(frozen=True)
class BillPaid(DomainEvent):
    bill_id: int
    account_id: int


@dataclass(frozen=True)
class PaymentReconciled(DomainEvent):
    payment_id: int
    account_id: int
    total_allocated: Decimal
    remaining_amount: Decimal


@dataclass(frozen=True)
class ReconciliationReversed(DomainEvent):
    payment_id: int
    account_id: int
    allocations_reversed: int


@dataclass(frozen=True)
class CarryForwardCreated(DomainEvent):
    carry_forward_id: int
    account_id: int
    amount: Decimal


@dataclass(frozen=True)
class BulkReadingDistributed(DomainEvent):
    bulk_reading_id: int
    meter_id: int
    bulk_consumption: Decimal
    sub_reading_ids: tuple[int, ...]


Handler = Callable[[DomainEvent], None]


class EventDispatcher:
    """In-process publish/subscribe registry keyed by event class."""

    def __init__(self) -> None:
        self._handlers: dict[type[DomainEvent], list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type[DomainEvent], handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: type[DomainEvent], handler: Handler) -> None:
        if handler in self._handlers[event_type]:
            self._handlers[event_type].remove(handler)

    def clear(self) -> None:
        self._handlers.clear()

    def publish(self, events: Iterable[DomainEvent]) -> None:
        """Deliver committed events to their subscribers, in order.

        The write is already committed, so a failing subscriber is logged and
        the remaining subscribers still run.
        """
        for event in events:
            logger.debug("Publishing %s", type(event).__name__)
            for handler in list(self._handlers[type(event)]):
                try:
                    handler(event)
                except Exception:
                    logger.exception(
                        "Subscriber %r failed handling %s", handler, type(event).__name__
                    )


dispatcher = EventDispatcher()
