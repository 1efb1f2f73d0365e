"""
Local-to-remote field mapping.

Which local fields land in which remote fields is configuration owned by
the host. The entity services only see the ``FieldMapper`` protocol.
"""

from typing import Any, Protocol

from books_sync.config import MappingSettings, PaymentModeMapping
from books_sync.models import LocalOrder

# Used when a gateway has no configured mapping
DEFAULT_PAYMENT_MODES = {
    "paypal": "PayPal",
    "stripe": "Credit Card",
    "stripe_cc": "Credit Card",
    "bacs": "Bank Transfer",
    "cheque": "Check",
    "cod": "Cash",
    "square": "Credit Card",
    "braintree": "Credit Card",
    "amazon_payments_advanced": "Amazon Pay",
}
FALLBACK_PAYMENT_MODE = "Others"

META_PREFIX = "meta:"


class FieldMapper(Protocol):
    def custom_fields(self, order: LocalOrder) -> list[dict[str, Any]]:
        ...

    def item_id(self, sku: str | None) -> str | None:
        ...

    def payment_mode(self, method: str | None) -> PaymentModeMapping:
        ...


class StaticFieldMapper:
    """FieldMapper backed by the ``mapping`` settings section."""

    def __init__(self, settings: MappingSettings | None = None):
        self.settings = settings or MappingSettings()

    @staticmethod
    def extract(order: LocalOrder, field: str) -> Any:
        """Value of a local field; ``meta:<key>`` reads order meta."""
        if field.startswith(META_PREFIX):
            return order.meta.get(field[len(META_PREFIX):])
        if field in LocalOrder.model_fields:
            return getattr(order, field)
        return order.meta.get(field)

    def custom_fields(self, order: LocalOrder) -> list[dict[str, Any]]:
        fields = []
        for local_field, remote_id in self.settings.fields.items():
            value = self.extract(order, local_field)
            if value is None or value == "":
                continue
            fields.append({"customfield_id": remote_id, "value": str(value)})
        return fields

    def item_id(self, sku: str | None) -> str | None:
        if sku is None:
            return None
        # "0" is a valid remote id
        return self.settings.items.get(sku)

    def payment_mode(self, method: str | None) -> PaymentModeMapping:
        if method and method in self.settings.payment_modes:
            return self.settings.payment_modes[method]
        return PaymentModeMapping(
            mode=DEFAULT_PAYMENT_MODES.get(method or "", FALLBACK_PAYMENT_MODE)
        )
