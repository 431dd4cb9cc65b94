"""
Entry lifecycle.

Stored status is ``active`` or ``completed``. ``expired`` is derived from
``expiry_date`` on every read and never written, so a renewal is all it
takes to bring an expired entry back.
"""

import logging
from datetime import datetime, time, timedelta

from django.db import transaction
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime

from .audit import log_action, resolve_actor
from .exceptions import (
    CustodyError,
    LockerUnavailableError,
    NotFoundError,
    OverReleaseError,
    ValidationError,
)
from .inventory import occupying_entry
from .ledger import LockerAssignment, PaymentMethod, PaymentType, to_money, validate_payment_method
from .models import (
    Customer,
    DeliveryLogAction,
    Entry,
    EntrySource,
    EntryStatus,
    Location,
    PaymentRecord,
    ServiceSettings,
)
from .validators import normalize_mobile, validate_positive_int

logger = logging.getLogger(__name__)

RENEWAL_NOTICE_DAYS = 3


def is_expired(entry: Entry, now: datetime | None = None) -> bool:
    now = now or timezone.now()
    return now > entry.expiry_date


def effective_status(entry: Entry, now: datetime | None = None) -> str:
    if entry.status == EntryStatus.COMPLETED:
        return EntryStatus.COMPLETED
    if is_expired(entry, now):
        return EntryStatus.EXPIRED
    return EntryStatus.ACTIVE


def is_releasable(entry: Entry) -> bool:
    # Overdue entries stay releasable; the due amount is collected at handover.
    return entry.status == EntryStatus.ACTIVE


def lock_entry(entry_id) -> Entry:
    """Load an entry for writing. Must run inside a transaction."""
    try:
        return (
            Entry.objects.select_for_update(of=("self",))
            .select_related("customer", "location")
            .get(pk=entry_id)
        )
    except (Entry.DoesNotExist, ValueError, TypeError):
        raise NotFoundError(f"Entry {entry_id} not found")


def apply_release(entry: Entry, pots: int, now: datetime | None = None) -> Entry:
    """
    Count ``pots`` as delivered on ``entry`` and complete it when nothing remains.

    Mutates the instance only; the release transaction persists it together
    with its ledger rows.
    """
    remaining = entry.remaining_pots
    if pots > remaining:
        raise OverReleaseError(
            f"Cannot release {pots} pots, only {remaining} remain on entry {entry.pk}",
            remaining=remaining,
        )
    entry.pots_delivered += pots
    if entry.remaining_pots == 0:
        entry.status = EntryStatus.COMPLETED
        entry.completed_at = now or timezone.now()
    return entry


def _clean_text(value, field_name: str, required: bool = True) -> str:
    text = "" if value is None else str(value).strip()
    if required and not text:
        raise ValidationError(f"{field_name} is required")
    return text


def get_or_create_customer(name: str, mobile: str, city: str = "", additional_details: str = "") -> Customer:
    customer, created = Customer.objects.get_or_create(
        mobile=mobile,
        defaults={"name": name, "city": city, "additional_details": additional_details},
    )
    if not created:
        updated = []
        if name and not customer.name:
            customer.name = name
            updated.append("name")
        if city and not customer.city:
            customer.city = city
            updated.append("city")
        if updated:
            customer.save(update_fields=updated + ["updated_at"])
    return customer


def create_entry(
    *,
    customer_name,
    customer_mobile,
    location_id,
    locker_number,
    total_pots,
    customer_city="",
    deceased_person_name="",
    additional_details="",
    payment_method=PaymentMethod.CASH,
    entry_date: datetime | None = None,
    actor=None,
    source=EntrySource.MANUAL,
    import_batch_id=None,
) -> Entry:
    name = _clean_text(customer_name, "customer_name")
    mobile = normalize_mobile(customer_mobile, "customer_mobile")
    pots = validate_positive_int(total_pots, "total_pots")
    locker = validate_positive_int(locker_number, "locker_number")
    validate_payment_method(payment_method)
    if source not in EntrySource.values:
        raise ValidationError(f"Invalid source '{source}'")
    entry_date = entry_date or timezone.now()

    with transaction.atomic():
        try:
            # Locking the location serialises locker assignment at that venue.
            location = Location.objects.select_for_update().get(pk=location_id)
        except (Location.DoesNotExist, ValueError, TypeError):
            raise NotFoundError(f"Location {location_id} not found")
        if not location.is_active:
            raise ValidationError(f"Location {location.venue_name} is not accepting entries")

        occupant = occupying_entry(location.pk, locker)
        if occupant is not None:
            raise LockerUnavailableError(
                f"Locker {locker} at {location.venue_name} is occupied by entry {occupant.pk}",
                locker_number=locker,
            )

        settings = ServiceSettings.get_solo()
        customer = get_or_create_customer(
            name,
            mobile,
            city=_clean_text(customer_city, "customer_city", required=False),
            additional_details=_clean_text(additional_details, "additional_details", required=False),
        )
        entry = Entry.objects.create(
            customer=customer,
            location=location,
            operator=resolve_actor(actor),
            deceased_person_name=_clean_text(deceased_person_name, "deceased_person_name", required=False),
            total_pots=pots,
            locker_details=[LockerAssignment(locker_number=locker, total_pots=pots).to_dict()],
            status=EntryStatus.ACTIVE,
            entry_date=entry_date,
            expiry_date=entry_date + timedelta(days=settings.entry_duration_days),
            source=source,
            import_batch_id=import_batch_id,
        )
        PaymentRecord.objects.create(
            entry=entry,
            amount=to_money(settings.entry_fee),
            payment_type=PaymentType.ENTRY,
            method=payment_method,
            months=1,
            description="Entry fee",
            actor=resolve_actor(actor),
            paid_at=entry_date,
        )
        log_action(
            DeliveryLogAction.ENTRY_CREATED,
            actor,
            entry=entry,
            metadata={"locker_number": locker, "total_pots": pots, "source": source},
        )

    logger.info(
        "Entry %s created at %s locker %s with %s pots", entry.pk, location.venue_name, locker, pots
    )
    return entry


def _parse_entry_date(value) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value if timezone.is_aware(value) else timezone.make_aware(value)
    parsed = parse_datetime(str(value))
    if parsed is None:
        day = parse_date(str(value))
        if day is None:
            raise ValidationError(f"Invalid entry_date '{value}'")
        parsed = datetime.combine(day, time.min)
    return parsed if timezone.is_aware(parsed) else timezone.make_aware(parsed)


def new_batch_id(now: datetime | None = None) -> str:
    now = now or timezone.now()
    return f"batch_{int(now.timestamp() * 1000)}"


def bulk_import_entries(rows, actor=None) -> dict:
    """
    Create one entry per row under a shared batch id.

    Rows succeed or fail independently; the result lists each row's outcome.
    """
    batch_id = new_batch_id()
    locations = {location.venue_name.lower(): location for location in Location.objects.all()}
    results = []
    for index, row in enumerate(rows, start=1):
        try:
            if not isinstance(row, dict):
                raise ValidationError("Row must be an object")
            venue = _clean_text(row.get("venue_name"), "venue_name")
            location = locations.get(venue.lower())
            if location is None:
                raise NotFoundError(f"Location '{venue}' not found")
            entry = create_entry(
                customer_name=row.get("customer_name"),
                customer_mobile=row.get("customer_mobile"),
                customer_city=row.get("customer_city", ""),
                location_id=location.pk,
                locker_number=row.get("locker_number"),
                total_pots=row.get("total_pots"),
                deceased_person_name=row.get("deceased_person_name", ""),
                payment_method=row.get("payment_method") or PaymentMethod.CASH,
                entry_date=_parse_entry_date(row.get("entry_date")),
                actor=actor,
                source=EntrySource.BULK_IMPORT,
                import_batch_id=batch_id,
            )
        except CustodyError as exc:
            results.append({"row": index, "success": False, "error": exc.code, "detail": exc.message})
        else:
            results.append({"row": index, "success": True, "entry_id": entry.pk})

    created = sum(1 for result in results if result["success"])
    logger.info("Bulk import %s: %s created, %s failed", batch_id, created, len(results) - created)
    return {
        "batch_id": batch_id,
        "created": created,
        "failed": len(results) - created,
        "results": results,
    }


@transaction.atomic
def rollback_import_batch(batch_id: str, actor=None) -> int:
    if not batch_id:
        raise ValidationError("batch_id is required")
    entries = Entry.objects.select_for_update().filter(import_batch_id=batch_id)
    entry_ids = list(entries.values_list("id", flat=True))
    if not entry_ids:
        raise NotFoundError(f"No entries found for batch {batch_id}")

    log_action(
        DeliveryLogAction.BATCH_ROLLED_BACK,
        actor,
        metadata={"batch_id": batch_id, "entry_ids": entry_ids, "count": len(entry_ids)},
    )
    Entry.objects.filter(pk__in=entry_ids).delete()
    logger.info("Rolled back batch %s (%s entries)", batch_id, len(entry_ids))
    return len(entry_ids)


def entries_needing_renewal(now: datetime | None = None, within_days: int = RENEWAL_NOTICE_DAYS):
    now = now or timezone.now()
    return Entry.objects.filter(
        status=EntryStatus.ACTIVE,
        expiry_date__lte=now + timedelta(days=within_days),
    )
