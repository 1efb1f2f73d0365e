"""Mapping from local record status to the sync it should trigger."""

from dataclasses import dataclass
from enum import Enum

from books_sync.config import TriggerSettings
from books_sync.models import LocalOrder


class TriggerAction(str, Enum):
    SYNC_DRAFT = "sync_draft"
    SYNC_SUBMIT = "sync_submit"
    CREATE_CREDIT_NOTE = "create_credit_note"


@dataclass(frozen=True)
class SyncPlan:
    action: TriggerAction | None
    as_draft: bool
    with_payment: bool = False

    @property
    def is_refund(self) -> bool:
        return self.action == TriggerAction.CREATE_CREDIT_NOTE


class TriggerPolicy:
    """
    Decides draft/final disposition and payment application from status.

    Status-change events and bulk runs share this policy so both paths
    behave identically for the same record.
    """

    def __init__(self, settings: TriggerSettings | None = None):
        self.settings = settings or TriggerSettings()

    def action_for(self, status: str) -> TriggerAction | None:
        status = status.lower().removeprefix("wc-")
        for action in TriggerAction:
            configured = getattr(self.settings, action.value)
            if configured and configured.lower() == status:
                return action
        return None

    def plan(self, order: LocalOrder) -> SyncPlan:
        """
        Plan for ``order`` in its current status.

        Statuses that match no trigger fall back to a draft sync.
        """
        action = self.action_for(order.status)
        if action == TriggerAction.SYNC_SUBMIT:
            with_payment = self.settings.auto_apply_payment and order.amount_paid > 0
            return SyncPlan(action=action, as_draft=False, with_payment=with_payment)
        return SyncPlan(action=action, as_draft=True)
