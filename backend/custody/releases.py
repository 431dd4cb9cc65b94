"""
Partial and full releases of pots from an entry's locker.

Every release runs as one transaction against a single entry: inventory
reservation, the entry's counters, the delivery transaction, the payment
record and the dispatch record are written together or not at all. The
entry row is written with a compare-and-set on ``Entry.version`` so a stale
read is detected and the whole step is retried.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from django.utils import timezone

from .audit import log_action, resolve_actor
from .concurrency import run_in_transaction
from .exceptions import InvalidStateError, ValidationError
from .inventory import replace_assignment, reserve_release
from .ledger import (
    PaymentMethod,
    PaymentType,
    calculate_due_amount,
    settlement_type,
    to_money,
    validate_payment_method,
)
from .lifecycle import apply_release, is_releasable, lock_entry
from .models import (
    Delivery,
    DeliveryLogAction,
    DeliveryTransaction,
    DispatchEvent,
    Entry,
    OTPPurpose,
    PaymentRecord,
    ServiceSettings,
)
from .notifications import TemplateKind, build_admin_intent, build_intent, format_date, queue_after_commit
from .otp import consume_verified_challenge
from .validators import normalize_mobile, validate_positive_int

logger = logging.getLogger(__name__)


class DispatchType:
    PARTIAL = "partial"
    FULL = "full"


@dataclass(frozen=True)
class HandoverInfo:
    name: str
    mobile: str


@dataclass(frozen=True)
class PaymentInfo:
    amount: object = 0
    method: str = PaymentMethod.CASH
    due_amount: object = None
    reason: str = ""


@dataclass(frozen=True)
class ReleaseOutcome:
    entry_id: int
    locker_number: int
    pots_released: int
    remaining_pots: int
    is_final_release: bool
    entry_status: str
    delivery_transaction_id: int
    record_id: int
    amount_paid: object
    due_amount: object

    @property
    def dispatch_type(self) -> str:
        return DispatchType.FULL if self.is_final_release else DispatchType.PARTIAL

    def as_dict(self) -> dict:
        return {
            "entry_id": self.entry_id,
            "locker_number": self.locker_number,
            "pots_released": self.pots_released,
            "remaining_pots": self.remaining_pots,
            "is_final_release": self.is_final_release,
            "dispatch_type": self.dispatch_type,
            "entry_status": self.entry_status,
            "delivery_transaction_id": self.delivery_transaction_id,
            "record_id": self.record_id,
            "amount_paid": str(self.amount_paid),
            "due_amount": str(self.due_amount),
        }


def _require_assigned_locker(entry: Entry, locker_number) -> int:
    locker = validate_positive_int(locker_number, "locker_number")
    if locker not in {assignment.locker_number for assignment in entry.lockers}:
        raise ValidationError(
            f"Locker {locker} is not assigned to entry {entry.pk}",
            locker_number=locker,
        )
    return locker


def _commit_release(entry: Entry, locker: int, pots: int, handover: HandoverInfo, payment: PaymentInfo, actor, now):
    """Validate the remaining inputs, then write the entry and its ledger rows."""
    updated = reserve_release(entry, locker, pots)

    handover_mobile = normalize_mobile(handover.mobile, "handover_person_mobile")
    handover_name = (handover.name or "").strip()
    if not handover_name:
        raise ValidationError("handover_person_name is required")
    method = validate_payment_method(payment.method or PaymentMethod.CASH)
    amount_paid = to_money(payment.amount, "amount_paid")
    if payment.due_amount is None:
        rate = ServiceSettings.get_solo().rate_per_locker_per_month
        due_amount = calculate_due_amount(entry.expiry_date, now, rate)
    else:
        due_amount = to_money(payment.due_amount, "due_amount")

    entry.locker_details = replace_assignment(entry, updated)
    apply_release(entry, pots, now)
    entry.save_if_unchanged(["locker_details", "pots_delivered", "status", "completed_at"])

    actor = resolve_actor(actor)
    new_ids = list(updated.dispatched_pots[-pots:])
    delivery_tx = DeliveryTransaction.objects.create(
        entry=entry,
        locker_number=locker,
        pots_delivered=pots,
        release_ids=new_ids,
        handover_person_name=handover_name,
        handover_person_mobile=handover_mobile,
        amount_paid=amount_paid,
        due_amount=due_amount,
        payment_method=method,
        reason=(payment.reason or "").strip(),
        remaining_pots_after_delivery=updated.remaining_pots,
        is_final_release=updated.remaining_pots == 0,
        actor=actor,
        delivered_at=now,
    )
    PaymentRecord.objects.create(
        entry=entry,
        amount=amount_paid,
        due_amount=due_amount,
        payment_type=PaymentType.DELIVERY,
        method=method,
        reason=delivery_tx.reason,
        description=f"Release of {pots} pots from locker {locker}",
        actor=actor,
        paid_at=now,
    )
    return delivery_tx


def _entry_snapshot(entry: Entry) -> dict:
    return {
        "entry_id": entry.pk,
        "customer_id": entry.customer_id,
        "customer_name": entry.customer.name,
        "customer_mobile": entry.customer.mobile,
        "customer_city": entry.customer.city,
        "location_id": entry.location_id,
        "location_name": entry.location.venue_name,
        "total_pots": entry.total_pots,
        "entry_date": entry.entry_date.isoformat(),
        "expiry_date": entry.expiry_date.isoformat(),
        "renewal_count": entry.renewals.count(),
    }


def _queue_release_intents(entry: Entry, delivery_tx: DeliveryTransaction, now: datetime) -> None:
    customer = entry.customer
    location_name = entry.location.venue_name
    if not delivery_tx.is_final_release:
        queue_after_commit(
            build_intent(
                TemplateKind.PARTIAL_DISPATCH_CUSTOMER,
                customer.mobile,
                [
                    customer.name,
                    location_name,
                    delivery_tx.pots_delivered,
                    delivery_tx.remaining_pots_after_delivery,
                    format_date(now),
                ],
                entry.pk,
            )
        )
        return

    admin_mobile = ServiceSettings.get_solo().admin_contact
    queue_after_commit(
        build_intent(
            TemplateKind.DISPATCH_CONFIRM_CUSTOMER,
            customer.mobile,
            [
                customer.name,
                location_name,
                format_date(now),
                delivery_tx.handover_person_name,
                delivery_tx.handover_person_mobile,
                admin_mobile,
                location_name,
            ],
            entry.pk,
        ),
        build_admin_intent(
            TemplateKind.DELIVERY_CONFIRM_ADMIN,
            admin_mobile,
            [customer.name, location_name],
            entry.pk,
        ),
    )


def _outcome(entry: Entry, delivery_tx: DeliveryTransaction, record_id: int) -> ReleaseOutcome:
    return ReleaseOutcome(
        entry_id=entry.pk,
        locker_number=delivery_tx.locker_number,
        pots_released=delivery_tx.pots_delivered,
        remaining_pots=delivery_tx.remaining_pots_after_delivery,
        is_final_release=delivery_tx.is_final_release,
        entry_status=entry.status,
        delivery_transaction_id=delivery_tx.pk,
        record_id=record_id,
        amount_paid=delivery_tx.amount_paid,
        due_amount=delivery_tx.due_amount,
    )


def _release_step(entry_id, locker_number, pots_to_release, handover, payment, actor) -> ReleaseOutcome:
    now = timezone.now()
    entry = lock_entry(entry_id)
    if not is_releasable(entry):
        raise InvalidStateError(f"Entry {entry.pk} is {entry.status} and cannot be released")
    pots = validate_positive_int(pots_to_release, "pots_to_release")
    locker = _require_assigned_locker(entry, locker_number)

    delivery_tx = _commit_release(entry, locker, pots, handover, payment, actor, now)

    event = DispatchEvent.objects.create(
        entry=entry,
        entry_snapshot=_entry_snapshot(entry),
        dispatch_info={
            "dispatch_type": DispatchType.FULL if delivery_tx.is_final_release else DispatchType.PARTIAL,
            "locker_number": locker,
            "pots_dispatched": pots,
            "remaining_pots": delivery_tx.remaining_pots_after_delivery,
            "release_ids": delivery_tx.release_ids,
            "payment_amount": str(delivery_tx.amount_paid),
            "due_amount": str(delivery_tx.due_amount),
            "payment_type": settlement_type(delivery_tx.amount_paid, delivery_tx.due_amount),
            "payment_method": delivery_tx.payment_method,
            "reason": delivery_tx.reason,
            "handover_person_name": delivery_tx.handover_person_name,
            "handover_person_mobile": delivery_tx.handover_person_mobile,
            "dispatched_by_id": delivery_tx.actor_id,
            "dispatched_by_name": delivery_tx.actor.display_name if delivery_tx.actor else "",
            "dispatch_date": now.isoformat(),
            "delivery_transaction_id": delivery_tx.pk,
        },
    )
    log_action(
        DeliveryLogAction.RELEASE_PROCESSED,
        actor,
        entry=entry,
        metadata={
            "locker_number": locker,
            "pots_released": pots,
            "remaining_pots": delivery_tx.remaining_pots_after_delivery,
            "is_final_release": delivery_tx.is_final_release,
            "dispatch_event_id": event.pk,
        },
    )
    _queue_release_intents(entry, delivery_tx, now)
    return _outcome(entry, delivery_tx, event.pk)


def process_release(
    entry_id,
    locker_number,
    pots_to_release,
    handover: HandoverInfo,
    payment: PaymentInfo | None = None,
    actor=None,
) -> ReleaseOutcome:
    outcome = run_in_transaction(
        _release_step,
        entry_id,
        locker_number,
        pots_to_release,
        handover,
        payment or PaymentInfo(),
        actor,
    )
    logger.info(
        "Released %s pots from entry %s locker %s, %s remaining%s",
        outcome.pots_released,
        outcome.entry_id,
        outcome.locker_number,
        outcome.remaining_pots,
        " (final)" if outcome.is_final_release else "",
    )
    return outcome


def _delivery_step(entry_id, handover, payment, actor, challenge_id) -> ReleaseOutcome:
    now = timezone.now()
    entry = lock_entry(entry_id)
    if not is_releasable(entry):
        raise InvalidStateError(f"Entry {entry.pk} is {entry.status} and cannot be delivered")
    # Single locker per entry: a full delivery empties the primary locker.
    assignment = entry.lockers[0] if entry.lockers else None
    if assignment is None or assignment.remaining_pots < 1:
        raise InvalidStateError(f"Entry {entry.pk} has no pots left to deliver")

    challenge = None
    if challenge_id is not None:
        challenge = consume_verified_challenge(challenge_id, entry, OTPPurpose.DELIVERY, now)

    delivery_tx = _commit_release(
        entry, assignment.locker_number, assignment.remaining_pots, handover, payment, actor, now
    )

    operator = delivery_tx.actor
    delivery = Delivery.objects.create(
        entry=entry,
        customer_ref=str(entry.customer_id),
        customer_name=entry.customer.name,
        customer_mobile=entry.customer.mobile,
        customer_city=entry.customer.city,
        location_ref=str(entry.location_id),
        location_name=entry.location.venue_name,
        operator=operator,
        operator_name=operator.display_name if operator else "",
        pots=delivery_tx.pots_delivered,
        delivery_date=now,
        entry_date=entry.entry_date,
        expiry_date=entry.expiry_date,
        renewal_count=entry.renewals.count(),
        amount_paid=delivery_tx.amount_paid,
        due_amount=delivery_tx.due_amount,
        payment_type=settlement_type(delivery_tx.amount_paid, delivery_tx.due_amount),
        reason=delivery_tx.reason,
        handover_person_name=delivery_tx.handover_person_name,
        handover_person_mobile=delivery_tx.handover_person_mobile,
        otp_verified=challenge is not None,
    )
    log_action(
        DeliveryLogAction.DELIVERY_COMPLETED,
        actor,
        entry=entry,
        metadata={
            "locker_number": delivery_tx.locker_number,
            "pots_delivered": delivery_tx.pots_delivered,
            "delivery_id": delivery.pk,
            "otp_challenge_id": challenge.pk if challenge else None,
        },
    )
    _queue_release_intents(entry, delivery_tx, now)
    return _outcome(entry, delivery_tx, delivery.pk)


def process_delivery(
    entry_id,
    handover: HandoverInfo,
    payment: PaymentInfo | None = None,
    actor=None,
    challenge_id=None,
) -> ReleaseOutcome:
    outcome = run_in_transaction(
        _delivery_step,
        entry_id,
        handover,
        payment or PaymentInfo(),
        actor,
        challenge_id,
    )
    logger.info("Delivered remaining %s pots of entry %s", outcome.pots_released, outcome.entry_id)
    return outcome
