"""
Read-only access to local records.

The host system owns its orders; the engine only reads them through
``OrderSource``.
"""

import json
from datetime import date
from pathlib import Path
from typing import Iterable, Protocol

import structlog

from books_sync.exceptions import ConfigurationError
from books_sync.models import LocalOrder

logger = structlog.get_logger(__name__)


class OrderSource(Protocol):
    def get(self, record_id: str) -> LocalOrder | None:
        ...

    def find_in_date_range(self, start: date, end: date) -> list[LocalOrder]:
        ...


class InMemoryOrderSource:
    """Orders held in a dict. Used by tests and embedding hosts."""

    def __init__(self, orders: Iterable[LocalOrder] = ()):
        self._orders: dict[str, LocalOrder] = {}
        for order in orders:
            self.add(order)

    def add(self, order: LocalOrder) -> None:
        self._orders[order.id] = order

    def get(self, record_id: str) -> LocalOrder | None:
        return self._orders.get(str(record_id))

    def find_in_date_range(self, start: date, end: date) -> list[LocalOrder]:
        orders = [
            o for o in self._orders.values()
            if start <= o.created_at.date() <= end
        ]
        return sorted(orders, key=lambda o: o.created_at)

    def __len__(self) -> int:
        return len(self._orders)


class JsonOrderSource(InMemoryOrderSource):
    """
    Orders exported from the host as JSON.

    Accepts either a list of orders or ``{"orders": [...]}``.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        try:
            with open(self.path) as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read orders file {self.path}: {e}")

        items = raw.get("orders", []) if isinstance(raw, dict) else raw
        orders = []
        for item in items:
            try:
                orders.append(LocalOrder.model_validate(item))
            except ValueError as e:
                logger.warning("Skipping invalid order", order_id=item.get("id"), error=str(e))

        super().__init__(orders)
        logger.info("Loaded orders", path=str(self.path), count=len(orders))
