from datetime import timedelta
from decimal import Decimal

from django.test import TestCase
from django.utils import timezone

from ..exceptions import ValidationError
from ..models import DispatchEvent, Entry, EntryStatus
from ..reconciliation import (
    NOT_AVAILABLE,
    UNKNOWN,
    DispatchEventSchema,
    DispatchFilters,
    DispatchType,
    SourceCollection,
    get_unified_dispatch_records,
    get_unified_dispatch_stats,
    parse_source_document,
)
from ..releases import HandoverInfo, PaymentInfo, process_delivery, process_release
from .helpers import make_entry, make_location, make_user


class UnifiedDispatchRecordTests(TestCase):
    def setUp(self):
        self.location = make_location()
        self.operator = make_user(first_name="Ravi", last_name="Kumar")
        self.handover = HandoverInfo("Sunil Verma", "9812345678")

        self.partial_entry = make_entry(self.location, locker_number=1, total_pots=3)
        process_release(
            self.partial_entry.pk,
            1,
            1,
            self.handover,
            PaymentInfo(amount="100", method="cash"),
            actor=self.operator,
        )

        self.delivered_entry = make_entry(self.location, locker_number=2, total_pots=2, mobile="9876500001")
        process_delivery(self.delivered_entry.pk, self.handover, actor=self.operator)

        self.legacy_entry = make_entry(
            self.location,
            locker_number=3,
            total_pots=2,
            mobile="9876500002",
            customer_name="Meera Shah",
            actor=self.operator,
        )
        Entry.objects.filter(pk=self.legacy_entry.pk).update(
            status=EntryStatus.COMPLETED,
            pots_delivered=2,
            completed_at=timezone.now() - timedelta(days=2),
        )

    def _by_source(self, records):
        return {record.source_collection: record for record in records}

    def test_each_source_is_mapped_once(self):
        records = get_unified_dispatch_records()

        self.assertEqual(len(records), 3)
        by_source = self._by_source(records)
        self.assertEqual(set(by_source), set(SourceCollection.values))

        event_record = by_source[SourceCollection.DISPATCH_EVENTS]
        self.assertEqual(event_record.entry_id, self.partial_entry.pk)
        self.assertEqual(event_record.dispatch_type, DispatchType.PARTIAL)
        self.assertEqual(event_record.pots_dispatched, 1)
        self.assertEqual(event_record.remaining_pots, 2)
        self.assertEqual(event_record.payment_amount, Decimal("100.00"))
        self.assertEqual(event_record.operator_name, "Ravi Kumar")
        self.assertEqual(event_record.handover_person_name, "Sunil Verma")

        delivery_record = by_source[SourceCollection.DELIVERIES]
        self.assertEqual(delivery_record.entry_id, self.delivered_entry.pk)
        self.assertEqual(delivery_record.dispatch_type, DispatchType.FULL)
        self.assertEqual(delivery_record.pots_dispatched, 2)
        self.assertEqual(delivery_record.payment_type, "free")

        legacy_record = by_source[SourceCollection.ENTRIES]
        self.assertEqual(legacy_record.entry_id, self.legacy_entry.pk)
        self.assertEqual(legacy_record.customer_name, "Meera Shah")
        self.assertEqual(legacy_record.dispatch_type, DispatchType.FULL)
        self.assertEqual(legacy_record.operator_name, "Ravi Kumar")
        self.assertEqual(legacy_record.handover_person_name, NOT_AVAILABLE)

    def test_records_are_newest_first(self):
        records = get_unified_dispatch_records()
        dates = [record.dispatch_date for record in records]
        self.assertEqual(dates, sorted(dates, reverse=True))
        self.assertEqual(records[-1].source_collection, SourceCollection.ENTRIES)

    def test_completed_entry_with_dispatch_event_is_not_repeated(self):
        process_release(self.partial_entry.pk, 1, 2, self.handover, actor=self.operator)

        records = get_unified_dispatch_records()

        self.assertEqual(len(records), 4)
        self.assertFalse(
            any(
                record.source_collection == SourceCollection.ENTRIES and record.entry_id == self.partial_entry.pk
                for record in records
            )
        )

    def test_malformed_document_is_backfilled(self):
        event = DispatchEvent.objects.create(
            entry_snapshot={"customer_name": "   ", "pots_dispatched": "lots"},
            dispatch_info={"remaining_pots": -1, "payment_amount": "abc", "payment_type": "barter"},
        )

        records = get_unified_dispatch_records(DispatchFilters(source_collection=SourceCollection.DISPATCH_EVENTS))
        record = next(record for record in records if record.source_id == event.pk)

        self.assertIsNone(record.entry_id)
        self.assertEqual(record.customer_name, UNKNOWN)
        self.assertEqual(record.customer_mobile, NOT_AVAILABLE)
        self.assertEqual(record.location_name, UNKNOWN)
        self.assertEqual(record.operator_name, UNKNOWN)
        self.assertEqual(record.pots_dispatched, 0)
        self.assertEqual(record.remaining_pots, 0)
        self.assertEqual(record.dispatch_type, DispatchType.FULL)
        self.assertEqual(record.payment_amount, Decimal("0.00"))
        self.assertEqual(record.payment_type, "free")
        self.assertEqual(record.dispatch_date, event.created_at)

    def test_parse_source_document_keeps_valid_fields(self):
        fields = parse_source_document(
            DispatchEventSchema,
            {"customer_name": "Asha", "pots_dispatched": "x", "remaining_pots": 2},
            "test document",
        )
        self.assertEqual(fields["customer_name"], "Asha")
        self.assertEqual(fields["pots_dispatched"], 0)
        self.assertEqual(fields["remaining_pots"], 2)

    def test_reads_are_idempotent(self):
        first = [record.as_dict() for record in get_unified_dispatch_records()]
        second = [record.as_dict() for record in get_unified_dispatch_records()]
        self.assertEqual(first, second)
        self.assertEqual(get_unified_dispatch_stats(), get_unified_dispatch_stats())

    def test_filters(self):
        partial = get_unified_dispatch_records(DispatchFilters(dispatch_type=DispatchType.PARTIAL))
        self.assertEqual([record.entry_id for record in partial], [self.partial_entry.pk])

        by_entry = get_unified_dispatch_records(DispatchFilters(entry_id=self.delivered_entry.pk))
        self.assertEqual([record.source_collection for record in by_entry], [SourceCollection.DELIVERIES])

        self.assertEqual(len(get_unified_dispatch_records(DispatchFilters(location="lodhi road"))), 3)
        self.assertEqual(get_unified_dispatch_records(DispatchFilters(location="Nigambodh Ghat")), [])

        today = timezone.localdate()
        recent = get_unified_dispatch_records(DispatchFilters(start_date=today))
        self.assertNotIn(SourceCollection.ENTRIES, {record.source_collection for record in recent})

    def test_invalid_filters(self):
        with self.assertRaises(ValidationError):
            DispatchFilters(dispatch_type="half")
        with self.assertRaises(ValidationError):
            DispatchFilters(source_collection="archive")
        today = timezone.localdate()
        with self.assertRaises(ValidationError):
            DispatchFilters(start_date=today, end_date=today - timedelta(days=1))

    def test_stats(self):
        stats = get_unified_dispatch_stats()

        self.assertEqual(stats["total_dispatches"], 3)
        self.assertEqual(stats["partial_dispatches"], 1)
        self.assertEqual(stats["full_dispatches"], 2)
        self.assertEqual(stats["total_pots_dispatched"], 5)
        self.assertEqual(stats["total_revenue"], "100.00")
        self.assertEqual(stats["average_revenue"], "33.33")
        self.assertEqual(
            stats["by_operator"],
            [{"operator_name": "Ravi Kumar", "dispatches": 3, "pots_dispatched": 5, "revenue": "100.00"}],
        )

    def test_operators_sharing_a_name_are_merged(self):
        namesake = make_user(username="ravi2", first_name="Ravi", last_name="Kumar")
        entry = make_entry(self.location, locker_number=5, total_pots=1, mobile="9876500005")
        process_release(entry.pk, 5, 1, self.handover, actor=namesake)

        stats = get_unified_dispatch_stats()

        self.assertEqual(len(stats["by_operator"]), 1)
        self.assertEqual(stats["by_operator"][0]["dispatches"], 4)

    def test_stats_with_no_records(self):
        stats = get_unified_dispatch_stats(DispatchFilters(location="Nowhere"))
        self.assertEqual(stats["total_dispatches"], 0)
        self.assertEqual(stats["average_revenue"], "0.00")
        self.assertEqual(stats["by_operator"], [])
