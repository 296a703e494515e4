"""
Mapping of external payment/order statuses onto internal order statuses.

Notifications can arrive late or twice, so applying a status is a
reconciliation against what is stored: a status only replaces the current one
when it ranks strictly higher.
"""

from __future__ import annotations

from typing import Mapping

from marketplace_bridge.models.webhook import OrderStatus

PAYMENT_STATUS_MAP: Mapping[str, OrderStatus] = {
    "approved": OrderStatus.PAID,
    "authorized": OrderStatus.PENDING,
    "pending": OrderStatus.PENDING,
    "in_process": OrderStatus.PENDING,
    "in_mediation": OrderStatus.PENDING,
    "rejected": OrderStatus.REJECTED,
    "cancelled": OrderStatus.CANCELLED,
    "refunded": OrderStatus.RETURNED,
    "charged_back": OrderStatus.FAILED,
}

MARKETPLACE_ORDER_STATUS_MAP: Mapping[str, OrderStatus] = {
    "paid": OrderStatus.PAID,
    "confirmed": OrderStatus.PAID,
    "partially_paid": OrderStatus.PAID,
    "payment_required": OrderStatus.PENDING,
    "payment_in_process": OrderStatus.PENDING,
    "cancelled": OrderStatus.CANCELLED,
    "invalid": OrderStatus.REJECTED,
}

STATUS_MAPS: Mapping[str, Mapping[str, OrderStatus]] = {
    "payment": PAYMENT_STATUS_MAP,
    "orders": MARKETPLACE_ORDER_STATUS_MAP,
}

STATUS_PRECEDENCE: Mapping[OrderStatus, int] = {
    OrderStatus.PENDING: 0,
    OrderStatus.PAID: 1,
    OrderStatus.SHIPPED: 2,
    OrderStatus.DELIVERED: 3,
    OrderStatus.FAILED: 4,
    OrderStatus.RETURNED: 4,
    OrderStatus.CANCELLED: 5,
    OrderStatus.REJECTED: 5,
}

TERMINAL_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.REJECTED})


def map_external_status(family: str, external_status: str | None) -> OrderStatus | None:
    """Translate an external status; ``None`` means unmapped and must leave the order alone."""
    if not external_status:
        return None
    table = STATUS_MAPS.get(family)
    if table is None:
        return None
    return table.get(external_status.strip().lower())


def reconcile(current: OrderStatus, incoming: OrderStatus) -> OrderStatus:
    """Return the status to store; never regresses and never leaves a terminal status."""
    if current in TERMINAL_STATUSES:
        return current
    if STATUS_PRECEDENCE[incoming] > STATUS_PRECEDENCE[current]:
        return incoming
    return current


__all__ = [
    "MARKETPLACE_ORDER_STATUS_MAP",
    "PAYMENT_STATUS_MAP",
    "STATUS_MAPS",
    "STATUS_PRECEDENCE",
    "TERMINAL_STATUSES",
    "map_external_status",
    "reconcile",
]
