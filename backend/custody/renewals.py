import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from django.utils import timezone

from .audit import log_action, resolve_actor
from .concurrency import run_in_transaction
from .exceptions import InvalidStateError, ValidationError
from .ledger import PaymentType, months_to_timedelta, renewal_amount, to_money, validate_payment_method
from .lifecycle import is_expired, lock_entry
from .models import DeliveryLogAction, EntryStatus, OTPPurpose, PaymentRecord, RenewalRecord, ServiceSettings
from .notifications import TemplateKind, build_admin_intent, build_intent, format_date, queue_after_commit
from .otp import consume_verified_challenge
from .validators import validate_positive_int

logger = logging.getLogger(__name__)

MIN_RENEWAL_MONTHS = 1
MAX_RENEWAL_MONTHS = 12


@dataclass(frozen=True)
class RenewalOutcome:
    entry_id: int
    renewal_id: int
    months: int
    amount: Decimal
    method: str
    previous_expiry_date: datetime
    new_expiry_date: datetime
    was_expired: bool

    def as_dict(self) -> dict:
        return {
            "entry_id": self.entry_id,
            "renewal_id": self.renewal_id,
            "months": self.months,
            "amount": str(self.amount),
            "method": self.method,
            "previous_expiry_date": self.previous_expiry_date.isoformat(),
            "new_expiry_date": self.new_expiry_date.isoformat(),
            "was_expired": self.was_expired,
        }


def _renewal_step(entry_id, months: int, method: str, amount, actor, challenge_id) -> RenewalOutcome:
    now = timezone.now()
    entry = lock_entry(entry_id)
    if entry.status == EntryStatus.COMPLETED:
        raise InvalidStateError(f"Entry {entry.pk} is completed and cannot be renewed")

    settings = ServiceSettings.get_solo()
    if amount is None:
        amount = renewal_amount(settings.rate_per_locker_per_month, months, entry.number_of_lockers)

    # Renewal restarts the term from today; it must still move expiry forward.
    new_expiry = now + months_to_timedelta(months)
    previous_expiry = entry.expiry_date
    if new_expiry <= previous_expiry:
        raise ValidationError(
            f"Renewing for {months} months would not extend expiry beyond {format_date(previous_expiry)}"
        )
    was_expired = is_expired(entry, now)

    challenge = None
    if challenge_id is not None:
        challenge = consume_verified_challenge(challenge_id, entry, OTPPurpose.RENEWAL, now)

    entry.expiry_date = new_expiry
    entry.save_if_unchanged(["expiry_date"])

    actor_user = resolve_actor(actor)
    renewal = RenewalRecord.objects.create(
        entry=entry,
        months=months,
        amount=amount,
        method=method,
        previous_expiry_date=previous_expiry,
        new_expiry_date=new_expiry,
        otp_challenge=challenge,
        actor=actor_user,
        renewed_at=now,
    )
    PaymentRecord.objects.create(
        entry=entry,
        amount=amount,
        payment_type=PaymentType.RENEWAL,
        method=method,
        months=months,
        description=f"Renewal for {months} months",
        actor=actor_user,
        paid_at=now,
    )
    log_action(
        DeliveryLogAction.RENEWAL_PROCESSED,
        actor,
        entry=entry,
        metadata={
            "renewal_id": renewal.pk,
            "months": months,
            "amount": str(amount),
            "was_expired": was_expired,
            "new_expiry_date": new_expiry.isoformat(),
        },
    )

    customer = entry.customer
    location = entry.location
    queue_after_commit(
        build_intent(
            TemplateKind.RENEWAL_CONFIRM_CUSTOMER,
            customer.mobile,
            [customer.name, location.venue_name, format_date(new_expiry), location.contact_number, location.venue_name],
            entry.pk,
        ),
        build_admin_intent(
            TemplateKind.RENEWAL_CONFIRM_ADMIN,
            settings.admin_contact,
            [location.venue_name, customer.name],
            entry.pk,
        ),
    )
    return RenewalOutcome(
        entry_id=entry.pk,
        renewal_id=renewal.pk,
        months=months,
        amount=amount,
        method=method,
        previous_expiry_date=previous_expiry,
        new_expiry_date=new_expiry,
        was_expired=was_expired,
    )


def process_renewal(entry_id, months, method, amount=None, actor=None, challenge_id=None) -> RenewalOutcome:
    months = validate_positive_int(months, "months", minimum=MIN_RENEWAL_MONTHS, maximum=MAX_RENEWAL_MONTHS)
    validate_payment_method(method)
    if amount is not None and amount != "":
        amount = to_money(amount)
    else:
        amount = None

    outcome = run_in_transaction(_renewal_step, entry_id, months, method, amount, actor, challenge_id)
    logger.info(
        "Renewed entry %s for %s months, expiry now %s", outcome.entry_id, months, outcome.new_expiry_date
    )
    return outcome
