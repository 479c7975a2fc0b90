# services/split_status.py
"""
Closed status types for order splits and their transition tables.

Customer-facing flow:

    new -> confirm -> ready_for_pickup -> out_for_delivery -> delivered
    confirm -> out_for_delivery | delivered (skipping pickup)
    any non-terminal -> on_hold
    on_hold -> confirm | cancel | new (payment received on a held order)
    delivered, cancel: terminal

The admin table is deliberately looser: any status may be forced to any other
status, including out of `cancel`. It is only reachable through the
admin-only override operation.
"""
from enum import Enum
from typing import Dict, FrozenSet, Optional, Union

from .errors import IllegalTransitionError


class OrderStatus(str, Enum):
    NEW = "new"
    CONFIRM = "confirm"
    READY_FOR_PICKUP = "ready_for_pickup"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    ON_HOLD = "on_hold"
    CANCEL = "cancel"


class OnHoldStatus(str, Enum):
    OPEN = "open"
    PENDING = "pending"
    CLOSED = "closed"


TERMINAL: FrozenSet[OrderStatus] = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCEL})

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.NEW: frozenset({OrderStatus.CONFIRM, OrderStatus.ON_HOLD}),
    OrderStatus.CONFIRM: frozenset({
        OrderStatus.READY_FOR_PICKUP, OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED, OrderStatus.ON_HOLD,
    }),
    OrderStatus.READY_FOR_PICKUP: frozenset({
        OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED, OrderStatus.ON_HOLD,
    }),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.DELIVERED, OrderStatus.ON_HOLD}),
    OrderStatus.ON_HOLD: frozenset({OrderStatus.CONFIRM, OrderStatus.CANCEL, OrderStatus.NEW}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCEL: frozenset(),
}

ADMIN_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    status: frozenset(s for s in OrderStatus if s is not status) for status in OrderStatus
}

ON_HOLD_TRANSITIONS: Dict[OnHoldStatus, FrozenSet[OnHoldStatus]] = {
    OnHoldStatus.OPEN: frozenset({OnHoldStatus.PENDING, OnHoldStatus.CLOSED}),
    OnHoldStatus.PENDING: frozenset({OnHoldStatus.OPEN, OnHoldStatus.CLOSED}),
    OnHoldStatus.CLOSED: frozenset({OnHoldStatus.OPEN, OnHoldStatus.PENDING}),
}

# Timeline labels for the split detail page.
STATUS_LABELS: Dict[OrderStatus, str] = {
    OrderStatus.NEW: "New",
    OrderStatus.CONFIRM: "Confirmed",
    OrderStatus.READY_FOR_PICKUP: "Ready for pickup",
    OrderStatus.OUT_FOR_DELIVERY: "Out for delivery",
    OrderStatus.DELIVERED: "Delivered",
    OrderStatus.ON_HOLD: "On hold",
    OrderStatus.CANCEL: "Cancelled",
}


def parse_status(value: Union[str, OrderStatus]) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValueError(f"Unknown order status: {value!r}") from None


def parse_on_hold_status(value: Union[str, OnHoldStatus]) -> OnHoldStatus:
    try:
        return OnHoldStatus(value)
    except ValueError:
        raise ValueError(f"Unknown on-hold status: {value!r}") from None


def allowed_targets(current: Union[str, OrderStatus], admin: bool = False) -> FrozenSet[OrderStatus]:
    table = ADMIN_TRANSITIONS if admin else TRANSITIONS
    return table[parse_status(current)]


def can_transition(current: Union[str, OrderStatus], target: Union[str, OrderStatus], admin: bool = False) -> bool:
    return parse_status(target) in allowed_targets(current, admin)


def check_transition(current: Union[str, OrderStatus], target: Union[str, OrderStatus], admin: bool = False) -> OrderStatus:
    target = parse_status(target)
    if not can_transition(current, target, admin):
        raise IllegalTransitionError(parse_status(current).value, target.value)
    return target


def check_on_hold_transition(current: Optional[Union[str, OnHoldStatus]], target: Union[str, OnHoldStatus]) -> OnHoldStatus:
    target = parse_on_hold_status(target)
    if current is None:
        return target
    current = parse_on_hold_status(current)
    if target not in ON_HOLD_TRANSITIONS[current]:
        raise IllegalTransitionError(f"on_hold:{current.value}", f"on_hold:{target.value}")
    return target
