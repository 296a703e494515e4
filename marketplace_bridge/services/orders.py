"""Order persistence over the shared key-value store."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from marketplace_bridge.clients.sqlite_store import SQLiteStore
from marketplace_bridge.models.webhook import Order, OrderStatus


class OrderRepository:
    """Store orders and look them up by the reference shared with the payments platform."""

    def __init__(self, store: SQLiteStore) -> None:
        self._store = store

    def get(self, order_id: str) -> Order | None:
        record = self._store.get_item(partition_key=f"order#{order_id}", sort_key="order")
        if not record:
            return None
        return Order.model_validate(_strip_keys(record))

    def get_by_external_reference(self, external_reference: str) -> Order | None:
        index = self._store.get_item(partition_key="order-ref", sort_key=external_reference)
        if not index:
            return None
        return self.get(index["order_id"])

    def save(self, order: Order) -> Order:
        order.updated_at = datetime.now(timezone.utc)
        record = order.model_dump(mode="json")
        record.update({"pk": f"order#{order.order_id}", "sk": "order"})
        self._store.put_item(record)
        self._store.put_item(
            {"pk": "order-ref", "sk": order.external_reference, "order_id": order.order_id}
        )
        return order

    def create(
        self,
        *,
        order_id: str,
        external_reference: str | None = None,
        status: OrderStatus = OrderStatus.PENDING,
    ) -> Order:
        return self.save(
            Order(
                order_id=order_id,
                external_reference=external_reference or order_id,
                status=status,
            )
        )


def _strip_keys(record: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in record.items() if key not in ("pk", "sk")}


__all__ = ["OrderRepository"]
