"""
Unified dispatch reconciliation.

Release records live in three differently shaped places: dispatch events
(snapshot documents), deliveries (flat rows) and completed entries that
predate both. Each source is parsed through its own schema with explicit
defaults and mapped onto ``UnifiedDispatchRecord``. Nothing here writes.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from django.db.models import Exists, OuterRef, Prefetch
from django.utils import timezone
from rest_framework import serializers

from .exceptions import ValidationError
from .ledger import CENTS, PaymentType, SettlementType, settlement_type
from .models import Delivery, DispatchEvent, Entry, EntryStatus, PaymentRecord

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"
NOT_AVAILABLE = "N/A"


class SourceCollection:
    DISPATCH_EVENTS = "dispatch_events"
    DELIVERIES = "deliveries"
    ENTRIES = "entries"

    values = (DISPATCH_EVENTS, DELIVERIES, ENTRIES)


class DispatchType:
    PARTIAL = "partial"
    FULL = "full"

    values = (PARTIAL, FULL)


@dataclass(frozen=True)
class UnifiedDispatchRecord:
    source_collection: str
    source_id: int
    entry_id: int | None
    customer_name: str
    customer_mobile: str
    customer_city: str
    location_name: str
    operator_name: str
    dispatch_type: str
    pots_dispatched: int
    remaining_pots: int
    payment_amount: Decimal
    payment_type: str
    dispatch_date: datetime
    handover_person_name: str
    handover_person_mobile: str

    @property
    def id(self) -> str:
        return f"{self.source_collection}-{self.source_id}"

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "source_collection": self.source_collection,
            "source_id": self.source_id,
            "entry_id": self.entry_id,
            "customer": {
                "name": self.customer_name,
                "mobile": self.customer_mobile,
                "city": self.customer_city,
            },
            "location": {"name": self.location_name},
            "operator": {"name": self.operator_name},
            "dispatch_type": self.dispatch_type,
            "pots_dispatched": self.pots_dispatched,
            "remaining_pots": self.remaining_pots,
            "payment_amount": str(self.payment_amount),
            "payment_type": self.payment_type,
            "dispatch_date": self.dispatch_date.isoformat(),
            "handover_person_name": self.handover_person_name,
            "handover_person_mobile": self.handover_person_mobile,
        }


@dataclass(frozen=True)
class DispatchFilters:
    start_date: date | None = None
    end_date: date | None = None
    location: str | None = None
    operator: str | None = None
    dispatch_type: str | None = None
    source_collection: str | None = None
    entry_id: int | None = None

    def __post_init__(self):
        if self.dispatch_type and self.dispatch_type not in DispatchType.values:
            raise ValidationError(f"Invalid dispatch_type '{self.dispatch_type}'")
        if self.source_collection and self.source_collection not in SourceCollection.values:
            raise ValidationError(f"Invalid source '{self.source_collection}'")
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValidationError("from date must not be after to date")

    def matches(self, record: UnifiedDispatchRecord) -> bool:
        day = timezone.localtime(record.dispatch_date).date()
        if self.start_date and day < self.start_date:
            return False
        if self.end_date and day > self.end_date:
            return False
        if self.location and record.location_name.lower() != self.location.strip().lower():
            return False
        if self.operator and record.operator_name.lower() != self.operator.strip().lower():
            return False
        if self.dispatch_type and record.dispatch_type != self.dispatch_type:
            return False
        if self.source_collection and record.source_collection != self.source_collection:
            return False
        if self.entry_id is not None and record.entry_id != self.entry_id:
            return False
        return True


class _SourceSchema(serializers.Serializer):
    entry_id = serializers.IntegerField(required=False, allow_null=True, default=None)
    customer_name = serializers.CharField(required=False, allow_blank=True, default="")
    customer_mobile = serializers.CharField(required=False, allow_blank=True, default="")
    customer_city = serializers.CharField(required=False, allow_blank=True, default="")
    location_name = serializers.CharField(required=False, allow_blank=True, default="")
    operator_name = serializers.CharField(required=False, allow_blank=True, default="")
    pots_dispatched = serializers.IntegerField(required=False, min_value=0, default=0)
    remaining_pots = serializers.IntegerField(required=False, min_value=0, default=0)
    payment_amount = serializers.DecimalField(
        max_digits=12, decimal_places=2, required=False, min_value=Decimal("0"), default=Decimal("0.00")
    )
    due_amount = serializers.DecimalField(
        max_digits=12, decimal_places=2, required=False, min_value=Decimal("0"), default=Decimal("0.00")
    )
    payment_type = serializers.ChoiceField(
        choices=SettlementType.choices, required=False, allow_blank=True, default=""
    )
    dispatch_date = serializers.DateTimeField(required=False, allow_null=True, default=None)
    handover_person_name = serializers.CharField(required=False, allow_blank=True, default="")
    handover_person_mobile = serializers.CharField(required=False, allow_blank=True, default="")


class DispatchEventSchema(_SourceSchema):
    """Snapshot documents: ``entry_snapshot`` merged with ``dispatch_info``."""

    dispatched_by_name = serializers.CharField(required=False, allow_blank=True, default="")


class DeliverySchema(_SourceSchema):
    pass


class CompletedEntrySchema(_SourceSchema):
    pass


def parse_source_document(schema_class, document: dict, label: str) -> dict:
    """
    Validate ``document`` against ``schema_class``.

    Fields that fail validation are dropped and fall back to their defaults
    so a malformed field never hides the whole record.
    """
    data = {key: value for key, value in document.items() if value is not None}
    schema = schema_class(data=data)
    if schema.is_valid():
        return dict(schema.validated_data)
    invalid = sorted(schema.errors)
    logger.warning("Defaulting invalid fields %s in %s", ", ".join(invalid), label)
    schema = schema_class(data={key: value for key, value in data.items() if key not in invalid})
    schema.is_valid(raise_exception=True)
    return dict(schema.validated_data)


def _text(value: str, fallback: str) -> str:
    value = (value or "").strip()
    return value or fallback


def _build_record(source: str, source_id: int, fields: dict, fallback_date: datetime) -> UnifiedDispatchRecord:
    remaining = fields["remaining_pots"]
    payment_amount = fields["payment_amount"].quantize(CENTS)
    return UnifiedDispatchRecord(
        source_collection=source,
        source_id=source_id,
        entry_id=fields["entry_id"],
        customer_name=_text(fields["customer_name"], UNKNOWN),
        customer_mobile=_text(fields["customer_mobile"], NOT_AVAILABLE),
        customer_city=_text(fields["customer_city"], NOT_AVAILABLE),
        location_name=_text(fields["location_name"], UNKNOWN),
        operator_name=_text(fields["operator_name"], UNKNOWN),
        dispatch_type=DispatchType.PARTIAL if remaining > 0 else DispatchType.FULL,
        pots_dispatched=fields["pots_dispatched"],
        remaining_pots=remaining,
        payment_amount=payment_amount,
        payment_type=fields["payment_type"] or settlement_type(payment_amount, fields["due_amount"]),
        dispatch_date=fields["dispatch_date"] or fallback_date,
        handover_person_name=_text(fields["handover_person_name"], NOT_AVAILABLE),
        handover_person_mobile=_text(fields["handover_person_mobile"], NOT_AVAILABLE),
    )


def _dispatch_event_records():
    for event in DispatchEvent.objects.order_by("id"):
        snapshot = event.entry_snapshot if isinstance(event.entry_snapshot, dict) else {}
        info = event.dispatch_info if isinstance(event.dispatch_info, dict) else {}
        fields = parse_source_document(
            DispatchEventSchema,
            {**snapshot, **info, "entry_id": snapshot.get("entry_id", event.entry_id)},
            f"dispatch event {event.pk}",
        )
        fields["operator_name"] = fields["operator_name"] or fields["dispatched_by_name"]
        yield _build_record(SourceCollection.DISPATCH_EVENTS, event.pk, fields, event.created_at)


def _delivery_records():
    for delivery in Delivery.objects.select_related("operator").order_by("id"):
        operator_name = delivery.operator_name or (delivery.operator.display_name if delivery.operator else "")
        fields = parse_source_document(
            DeliverySchema,
            {
                "entry_id": delivery.entry_id,
                "customer_name": delivery.customer_name,
                "customer_mobile": delivery.customer_mobile,
                "customer_city": delivery.customer_city,
                "location_name": delivery.location_name,
                "operator_name": operator_name,
                "pots_dispatched": delivery.pots,
                "remaining_pots": 0,
                "payment_amount": delivery.amount_paid,
                "due_amount": delivery.due_amount,
                "payment_type": delivery.payment_type,
                "dispatch_date": delivery.delivery_date,
                "handover_person_name": delivery.handover_person_name,
                "handover_person_mobile": delivery.handover_person_mobile,
            },
            f"delivery {delivery.pk}",
        )
        yield _build_record(SourceCollection.DELIVERIES, delivery.pk, fields, delivery.created_at)


def _entry_records():
    # Only entries whose releases were never captured by the other sources.
    entries = (
        Entry.objects.filter(status=EntryStatus.COMPLETED)
        .annotate(
            has_event=Exists(DispatchEvent.objects.filter(entry=OuterRef("pk"))),
            has_delivery=Exists(Delivery.objects.filter(entry=OuterRef("pk"))),
        )
        .filter(has_event=False, has_delivery=False)
        .select_related("customer", "location", "operator")
        .prefetch_related(
            Prefetch(
                "payments",
                queryset=PaymentRecord.objects.filter(payment_type=PaymentType.DELIVERY).select_related("actor"),
                to_attr="delivery_payments",
            ),
            "delivery_history",
        )
        .order_by("id")
    )
    for entry in entries:
        payments = entry.delivery_payments
        last_actor = payments[-1].actor if payments else None
        operator = last_actor or entry.operator
        history = list(entry.delivery_history.all())
        last_handover = history[-1] if history else None
        fields = parse_source_document(
            CompletedEntrySchema,
            {
                "entry_id": entry.pk,
                "customer_name": entry.customer.name if entry.customer_id else "",
                "customer_mobile": entry.customer.mobile if entry.customer_id else "",
                "customer_city": entry.customer.city if entry.customer_id else "",
                "location_name": entry.location.venue_name if entry.location_id else "",
                "operator_name": operator.display_name if operator else "",
                "pots_dispatched": entry.pots_delivered,
                "remaining_pots": entry.remaining_pots,
                "payment_amount": sum((payment.amount for payment in payments), Decimal("0.00")),
                "due_amount": sum((payment.due_amount for payment in payments), Decimal("0.00")),
                "dispatch_date": entry.completed_at,
                "handover_person_name": last_handover.handover_person_name if last_handover else "",
                "handover_person_mobile": last_handover.handover_person_mobile if last_handover else "",
            },
            f"entry {entry.pk}",
        )
        yield _build_record(SourceCollection.ENTRIES, entry.pk, fields, entry.updated_at)


SOURCE_READERS = OrderedDict(
    [
        (SourceCollection.DISPATCH_EVENTS, _dispatch_event_records),
        (SourceCollection.DELIVERIES, _delivery_records),
        (SourceCollection.ENTRIES, _entry_records),
    ]
)


def get_unified_dispatch_records(filters: DispatchFilters | None = None) -> list[UnifiedDispatchRecord]:
    filters = filters or DispatchFilters()
    records = []
    for source, reader in SOURCE_READERS.items():
        if filters.source_collection and source != filters.source_collection:
            continue
        records.extend(record for record in reader() if filters.matches(record))

    records.sort(key=lambda record: (record.source_collection, record.source_id))
    records.sort(key=lambda record: record.dispatch_date, reverse=True)
    return records


def summarize_dispatch_records(records) -> dict:
    total_revenue = Decimal("0.00")
    partial = full = pots = 0
    by_operator = {}
    for record in records:
        total_revenue += record.payment_amount
        pots += record.pots_dispatched
        if record.dispatch_type == DispatchType.PARTIAL:
            partial += 1
        else:
            full += 1
        # Grouped by display name; operators sharing a name are merged.
        bucket = by_operator.setdefault(
            record.operator_name,
            {"dispatches": 0, "pots_dispatched": 0, "revenue": Decimal("0.00")},
        )
        bucket["dispatches"] += 1
        bucket["pots_dispatched"] += record.pots_dispatched
        bucket["revenue"] += record.payment_amount

    total = partial + full
    average = (total_revenue / total).quantize(CENTS) if total else Decimal("0.00")
    return {
        "total_dispatches": total,
        "partial_dispatches": partial,
        "full_dispatches": full,
        "total_pots_dispatched": pots,
        "total_revenue": str(total_revenue.quantize(CENTS)),
        "average_revenue": str(average),
        "by_operator": [
            {
                "operator_name": name,
                "dispatches": bucket["dispatches"],
                "pots_dispatched": bucket["pots_dispatched"],
                "revenue": str(bucket["revenue"].quantize(CENTS)),
            }
            for name, bucket in sorted(by_operator.items())
        ],
    }


def get_unified_dispatch_stats(filters: DispatchFilters | None = None) -> dict:
    return summarize_dispatch_records(get_unified_dispatch_records(filters))
