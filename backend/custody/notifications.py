"""
Notification intents.

The engine never renders or sends messages. It appends intents to the
``NotificationIntent`` outbox once the surrounding transaction commits; an
external notifier consumes them. Outbox failures are logged and never undo
the state change that produced them.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from django.db import transaction
from django.utils import timezone

from .exceptions import ValidationError
from .models import NotificationIntent

logger = logging.getLogger(__name__)


class TemplateKind:
    PARTIAL_DISPATCH_CUSTOMER = "partialDispatchCustomer"
    DISPATCH_CONFIRM_CUSTOMER = "dispatchConfirmCustomer"
    DELIVERY_CONFIRM_ADMIN = "deliveryConfirmAdmin"
    RENEWAL_CONFIRM_CUSTOMER = "renewalConfirmCustomer"
    RENEWAL_CONFIRM_ADMIN = "renewalConfirmAdmin"
    OTP_VERIFICATION = "otpVerification"
    THREE_DAY_REMINDER = "threeDayReminder"
    LAST_DAY_RENEWAL = "lastdayRenewal"
    FINAL_DISPOSAL_REMINDER = "finalDisposalReminder"
    FINAL_DISPOSAL_REMINDER_ADMIN = "finalDisposalReminderAdmin"


TEMPLATE_ARITY = {
    TemplateKind.PARTIAL_DISPATCH_CUSTOMER: 5,
    TemplateKind.DISPATCH_CONFIRM_CUSTOMER: 7,
    TemplateKind.DELIVERY_CONFIRM_ADMIN: 2,
    TemplateKind.RENEWAL_CONFIRM_CUSTOMER: 5,
    TemplateKind.RENEWAL_CONFIRM_ADMIN: 2,
    TemplateKind.OTP_VERIFICATION: 3,
    TemplateKind.THREE_DAY_REMINDER: 5,
    TemplateKind.LAST_DAY_RENEWAL: 5,
    TemplateKind.FINAL_DISPOSAL_REMINDER: 3,
    TemplateKind.FINAL_DISPOSAL_REMINDER_ADMIN: 2,
}


@dataclass(frozen=True)
class Intent:
    template_kind: str
    recipient_mobile: str
    substitution_values: tuple[str, ...]
    correlated_entry_id: int | None = None

    def as_dict(self) -> dict:
        return {
            "template_kind": self.template_kind,
            "recipient_mobile": self.recipient_mobile,
            "substitution_values": list(self.substitution_values),
            "correlated_entry_id": self.correlated_entry_id,
        }


def format_date(value: datetime) -> str:
    return timezone.localtime(value).strftime("%d/%m/%Y")


def build_intent(template_kind: str, recipient_mobile: str, values, correlated_entry_id=None) -> Intent:
    if template_kind not in TEMPLATE_ARITY:
        raise ValidationError(f"Unknown template kind '{template_kind}'")
    values = tuple("" if value is None else str(value) for value in values)
    expected = TEMPLATE_ARITY[template_kind]
    if len(values) != expected:
        raise ValidationError(
            f"{template_kind} takes {expected} values, got {len(values)}",
            template_kind=template_kind,
        )
    if not recipient_mobile:
        raise ValidationError(f"{template_kind} needs a recipient mobile")
    return Intent(
        template_kind=template_kind,
        recipient_mobile=recipient_mobile,
        substitution_values=values,
        correlated_entry_id=correlated_entry_id,
    )


def build_admin_intent(template_kind: str, admin_mobile: str, values, correlated_entry_id=None) -> Intent | None:
    if not admin_mobile:
        logger.info("No admin mobile configured, skipping %s for entry %s", template_kind, correlated_entry_id)
        return None
    return build_intent(template_kind, admin_mobile, values, correlated_entry_id)


def write_intents(intents) -> list[NotificationIntent]:
    created = []
    for intent in intents:
        if intent is None:
            continue
        try:
            created.append(NotificationIntent.objects.create(**intent.as_dict()))
        except Exception:
            logger.exception(
                "Could not queue %s for entry %s", intent.template_kind, intent.correlated_entry_id
            )
    return created


def queue_after_commit(*intents) -> None:
    """Append ``intents`` to the outbox once the current transaction commits."""
    pending = [intent for intent in intents if intent is not None]
    if not pending:
        return
    transaction.on_commit(lambda: write_intents(pending))
