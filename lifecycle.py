"""
Quotation and order lifecycles

Statuses are closed enums and every allowed move is listed in a transition
table. Anything not in a table is an InvalidStateTransition.
"""

import logging
from datetime import datetime, timezone
from enum import Enum

from errors import InvalidStateTransition
from pricing import as_utc

logger = logging.getLogger("rental.lifecycle")


class QuotationStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    CONVERTED = "CONVERTED"


class QuotationEvent(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    EXPIRE = "EXPIRE"
    CONVERT = "CONVERT"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PICKED_UP = "PICKED_UP"
    RETURNED = "RETURNED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class OrderEvent(str, Enum):
    MARK_PAID = "MARK_PAID"
    CANCEL = "CANCEL"
    PICK_UP = "PICK_UP"
    RETURN = "RETURN"
    COMPLETE = "COMPLETE"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class ItemStatus(str, Enum):
    RESERVED = "RESERVED"
    PICKED_UP = "PICKED_UP"
    RETURNED = "RETURNED"
    CANCELLED = "CANCELLED"


QUOTATION_TRANSITIONS = {
    (QuotationStatus.PENDING, QuotationEvent.APPROVE): QuotationStatus.APPROVED,
    (QuotationStatus.PENDING, QuotationEvent.REJECT): QuotationStatus.REJECTED,
    (QuotationStatus.PENDING, QuotationEvent.EXPIRE): QuotationStatus.EXPIRED,
    (QuotationStatus.APPROVED, QuotationEvent.EXPIRE): QuotationStatus.EXPIRED,
    (QuotationStatus.APPROVED, QuotationEvent.CONVERT): QuotationStatus.CONVERTED,
}

ORDER_TRANSITIONS = {
    (OrderStatus.PENDING, OrderEvent.MARK_PAID): OrderStatus.CONFIRMED,
    (OrderStatus.PENDING, OrderEvent.CANCEL): OrderStatus.CANCELLED,
    (OrderStatus.CONFIRMED, OrderEvent.PICK_UP): OrderStatus.PICKED_UP,
    (OrderStatus.PICKED_UP, OrderEvent.RETURN): OrderStatus.RETURNED,
    (OrderStatus.RETURNED, OrderEvent.COMPLETE): OrderStatus.COMPLETED,
}

TERMINAL_QUOTATION_STATUSES = frozenset(
    {QuotationStatus.REJECTED, QuotationStatus.EXPIRED, QuotationStatus.CONVERTED}
)
TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.COMPLETED})

# Orders holding stock against their rental windows
ACTIVE_ORDER_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PICKED_UP})


def next_quotation_status(current, event) -> QuotationStatus:
    current, event = QuotationStatus(current), QuotationEvent(event)
    try:
        new = QUOTATION_TRANSITIONS[(current, event)]
    except KeyError:
        raise InvalidStateTransition(
            f"Cannot {event.value.lower()} quotation with status: {current.value}"
        ) from None
    logger.debug("quotation %s --%s--> %s", current.value, event.value, new.value)
    return new


def next_order_status(current, event) -> OrderStatus:
    current, event = OrderStatus(current), OrderEvent(event)
    try:
        new = ORDER_TRANSITIONS[(current, event)]
    except KeyError:
        action = event.value.lower().replace("_", " ")
        raise InvalidStateTransition(
            f"Cannot {action} order with status: {current.value}"
        ) from None
    logger.debug("order %s --%s--> %s", current.value, event.value, new.value)
    return new


def is_past(valid_until, now: datetime = None) -> bool:
    if valid_until is None:
        return False
    now = as_utc(now or datetime.now(timezone.utc))
    return as_utc(valid_until) < now


def effective_quotation_status(status, valid_until, now: datetime = None) -> QuotationStatus:
    """Status as read at `now`: live quotations past valid_until read as EXPIRED."""
    status = QuotationStatus(status)
    if (status, QuotationEvent.EXPIRE) in QUOTATION_TRANSITIONS and is_past(valid_until, now):
        return QuotationStatus.EXPIRED
    return status
