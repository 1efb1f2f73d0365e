"""Remote contact (customer) resolution."""

from typing import Any

import structlog

from books_sync.cache import BoundedLRUCache
from books_sync.client import BooksApiClient
from books_sync.config import ContactMatchKey
from books_sync.exceptions import NotFoundError
from books_sync.models import LocalOrder, RemoteContact

logger = structlog.get_logger(__name__)


class ContactService:
    """
    Find-or-create remote contacts for local orders.

    Lookups go through a bounded TTL cache; a bulk run over one customer's
    orders searches the remote once.
    """

    def __init__(
        self,
        client: BooksApiClient,
        match_key: ContactMatchKey = ContactMatchKey.EMAIL,
        cache: BoundedLRUCache[str, RemoteContact] | None = None,
    ):
        self.client = client
        self.match_key = ContactMatchKey(match_key)
        self.cache = cache or BoundedLRUCache(max_size=5000, ttl_seconds=600.0)

    def _lookup_filter(self, order: LocalOrder) -> tuple[str, str]:
        """Remote search filter for the configured match key."""
        if self.match_key == ContactMatchKey.EMAIL and order.billing_email:
            return "email", order.billing_email.strip().lower()
        if self.match_key == ContactMatchKey.COMPANY and order.billing_company:
            return "company_name", order.billing_company.strip()
        if order.billing_email:
            return "email", order.billing_email.strip().lower()
        return "contact_name", order.billing_name

    def _build_payload(self, order: LocalOrder) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "contact_name": order.billing_name,
            "contact_type": "customer",
        }
        if order.billing_email:
            payload["email"] = order.billing_email
        if order.billing_company:
            payload["company_name"] = order.billing_company
        if order.billing_phone:
            payload["phone"] = order.billing_phone
        return payload

    def find(self, order: LocalOrder) -> RemoteContact | None:
        key, value = self._lookup_filter(order)
        cache_key = f"{key}:{value.lower()}"

        def load() -> RemoteContact | None:
            matches = self.client.search_contacts(**{key: value})
            return matches[0] if matches else None

        return self.cache.get_or_load(cache_key, load)

    def find_or_create(self, order: LocalOrder) -> RemoteContact:
        log = logger.bind(record_id=order.id, match_key=self.match_key.value)

        contact = self.find(order)
        if contact is not None:
            log.debug("Found existing contact", contact_id=contact.contact_id)
        else:
            contact = self.client.create_contact(self._build_payload(order))
            key, value = self._lookup_filter(order)
            self.cache.set(f"{key}:{value.lower()}", contact)
            log.info("Created contact", contact_id=contact.contact_id)

        if contact.currency_code and contact.currency_code.upper() != order.currency.upper():
            log.warning(
                "Contact currency differs from order currency",
                contact_currency=contact.currency_code,
                order_currency=order.currency,
            )
        return contact

    def resolve(self, order: LocalOrder, stored_contact_id: str | None = None) -> RemoteContact:
        """
        Contact for ``order``, verifying a previously stored id first.

        A stored contact deleted on the remote side is dropped from the
        cache and re-resolved by match key.
        """
        if stored_contact_id:
            try:
                return self.client.get_contact(stored_contact_id)
            except NotFoundError:
                logger.warning(
                    "Stored contact no longer exists, re-resolving",
                    record_id=order.id,
                    contact_id=stored_contact_id,
                )
                self.cache.invalidate_where(lambda c: c.contact_id == stored_contact_id)

        return self.find_or_create(order)
