import copy
from datetime import timedelta
from decimal import Decimal
from unittest import mock

from django.test import TestCase
from django.utils import timezone

from ..exceptions import (
    InsufficientInventoryError,
    InvalidStateError,
    NotFoundError,
    ExpiredError,
    TransactionConflictError,
    ValidationError,
)
from ..ledger import PaymentType, SettlementType
from ..lifecycle import lock_entry
from ..models import (
    Delivery,
    DeliveryLog,
    DeliveryLogAction,
    DeliveryTransaction,
    DispatchEvent,
    Entry,
    EntryStatus,
    NotificationIntent,
    OTPChallenge,
    OTPPurpose,
    PaymentRecord,
)
from ..otp import issue_challenge, verify_challenge
from ..releases import HandoverInfo, PaymentInfo, process_delivery, process_release
from .helpers import make_entry, make_location, make_user, set_admin_mobile

HANDOVER = HandoverInfo(name="Ravi Verma", mobile="9812345678")


class PartialReleaseTests(TestCase):
    def setUp(self):
        self.operator = make_user()
        self.location = make_location()
        self.entry = make_entry(self.location, locker_number=1, total_pots=3, actor=self.operator)

    def test_partial_then_final_release(self):
        first = process_release(self.entry.pk, 1, 2, HANDOVER, actor=self.operator)
        self.assertEqual(first.remaining_pots, 1)
        self.assertFalse(first.is_final_release)
        self.entry.refresh_from_db()
        self.assertEqual(self.entry.status, EntryStatus.ACTIVE)
        self.assertEqual(self.entry.pots_delivered, 2)

        second = process_release(self.entry.pk, 1, 1, HANDOVER, actor=self.operator)
        self.assertEqual(second.remaining_pots, 0)
        self.assertTrue(second.is_final_release)
        self.entry.refresh_from_db()
        self.assertEqual(self.entry.status, EntryStatus.COMPLETED)
        self.assertEqual(self.entry.pots_delivered, 3)
        self.assertEqual(self.entry.lockers[0].remaining_pots, 0)

        with self.assertRaises(InvalidStateError):
            process_release(self.entry.pk, 1, 1, HANDOVER, actor=self.operator)

    def test_release_more_than_remaining(self):
        with self.assertRaises(InsufficientInventoryError) as ctx:
            process_release(self.entry.pk, 1, 5, HANDOVER)
        self.assertEqual(ctx.exception.remaining, 3)
        self.assertEqual(ctx.exception.as_dict()["remaining"], 3)
        self.entry.refresh_from_db()
        self.assertEqual(self.entry.pots_delivered, 0)

    def test_release_writes_ledger_rows(self):
        outcome = process_release(
            self.entry.pk,
            1,
            2,
            HANDOVER,
            PaymentInfo(amount="150", method="upi", due_amount="300", reason="Overdue storage"),
            actor=self.operator,
        )

        delivery_tx = DeliveryTransaction.objects.get(entry=self.entry)
        self.assertEqual(delivery_tx.pk, outcome.delivery_transaction_id)
        self.assertEqual(delivery_tx.pots_delivered, 2)
        self.assertEqual(delivery_tx.release_ids, ["pot-1", "pot-2"])
        self.assertEqual(delivery_tx.remaining_pots_after_delivery, 1)
        self.assertEqual(delivery_tx.actor, self.operator)

        payment = PaymentRecord.objects.get(entry=self.entry, payment_type=PaymentType.DELIVERY)
        self.assertEqual(payment.amount, Decimal("150.00"))
        self.assertEqual(payment.due_amount, Decimal("300.00"))
        self.assertEqual(payment.method, "upi")

        event = DispatchEvent.objects.get(pk=outcome.record_id)
        self.assertEqual(event.entry_snapshot["customer_name"], "Asha Verma")
        self.assertEqual(event.dispatch_info["pots_dispatched"], 2)
        self.assertEqual(event.dispatch_info["remaining_pots"], 1)
        self.assertEqual(event.dispatch_info["payment_type"], SettlementType.PARTIAL)

        log = DeliveryLog.objects.get(action=DeliveryLogAction.RELEASE_PROCESSED)
        self.assertEqual(log.entry, self.entry)

    def test_due_amount_defaults_to_overdue_charge(self):
        Entry.objects.filter(pk=self.entry.pk).update(expiry_date=timezone.now() - timedelta(days=40))
        outcome = process_release(self.entry.pk, 1, 1, HANDOVER)
        self.assertEqual(outcome.due_amount, Decimal("600.00"))

    def test_validation_happens_before_any_write(self):
        with self.assertRaises(ValidationError):
            process_release(self.entry.pk, 1, 0, HANDOVER)
        with self.assertRaises(ValidationError):
            process_release(self.entry.pk, 2, 1, HANDOVER)
        with self.assertRaises(ValidationError):
            process_release(self.entry.pk, 1, 1, HandoverInfo("Ravi", "0123456789"))
        with self.assertRaises(ValidationError):
            process_release(self.entry.pk, 1, 1, HANDOVER, PaymentInfo(amount="-5"))

        self.entry.refresh_from_db()
        self.assertEqual(self.entry.pots_delivered, 0)
        self.assertFalse(DeliveryTransaction.objects.exists())
        self.assertFalse(DispatchEvent.objects.exists())

    def test_unknown_entry(self):
        with self.assertRaises(NotFoundError):
            process_release(999, 1, 1, HANDOVER)

    def test_expired_entry_is_still_releasable(self):
        Entry.objects.filter(pk=self.entry.pk).update(expiry_date=timezone.now() - timedelta(days=1))
        outcome = process_release(self.entry.pk, 1, 1, HANDOVER)
        self.assertEqual(outcome.remaining_pots, 2)


class ReleaseNotificationTests(TestCase):
    def setUp(self):
        self.location = make_location()
        self.entry = make_entry(self.location, locker_number=1, total_pots=3)

    def test_partial_release_queues_customer_intent(self):
        with self.captureOnCommitCallbacks(execute=True):
            process_release(self.entry.pk, 1, 2, HANDOVER)

        intent = NotificationIntent.objects.get()
        self.assertEqual(intent.template_kind, "partialDispatchCustomer")
        self.assertEqual(intent.recipient_mobile, "9876543210")
        self.assertEqual(intent.correlated_entry_id, self.entry.pk)
        self.assertEqual(len(intent.substitution_values), 5)
        self.assertEqual(intent.substitution_values[:4], ["Asha Verma", "Lodhi Road", "2", "1"])

    def test_final_release_queues_customer_and_admin_intents(self):
        set_admin_mobile("9999999999")
        with self.captureOnCommitCallbacks(execute=True):
            process_release(self.entry.pk, 1, 3, HANDOVER)

        kinds = set(NotificationIntent.objects.values_list("template_kind", flat=True))
        self.assertEqual(kinds, {"dispatchConfirmCustomer", "deliveryConfirmAdmin"})
        customer_intent = NotificationIntent.objects.get(template_kind="dispatchConfirmCustomer")
        self.assertEqual(len(customer_intent.substitution_values), 7)
        self.assertEqual(customer_intent.substitution_values[5], "9999999999")
        admin_intent = NotificationIntent.objects.get(template_kind="deliveryConfirmAdmin")
        self.assertEqual(admin_intent.recipient_mobile, "9999999999")

    def test_admin_intent_skipped_without_admin_mobile(self):
        with self.captureOnCommitCallbacks(execute=True):
            process_release(self.entry.pk, 1, 3, HANDOVER)
        kinds = list(NotificationIntent.objects.values_list("template_kind", flat=True))
        self.assertEqual(kinds, ["dispatchConfirmCustomer"])

    def test_outbox_failure_does_not_undo_release(self):
        with mock.patch(
            "custody.notifications.NotificationIntent.objects.create",
            side_effect=RuntimeError("outbox unavailable"),
        ):
            with self.captureOnCommitCallbacks(execute=True):
                outcome = process_release(self.entry.pk, 1, 2, HANDOVER)

        self.assertEqual(outcome.remaining_pots, 1)
        self.entry.refresh_from_db()
        self.assertEqual(self.entry.pots_delivered, 2)
        self.assertFalse(NotificationIntent.objects.exists())

    def test_no_intent_when_release_fails(self):
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            with self.assertRaises(InsufficientInventoryError):
                process_release(self.entry.pk, 1, 9, HANDOVER)
        self.assertEqual(callbacks, [])


class ConcurrentReleaseTests(TestCase):
    def setUp(self):
        self.entry = make_entry(make_location(), locker_number=1, total_pots=10)

    def test_stale_read_is_retried_and_rejected(self):
        # Snapshot taken before another request releases 6 pots.
        stale = Entry.objects.select_related("customer", "location").get(pk=self.entry.pk)
        process_release(self.entry.pk, 1, 6, HANDOVER)

        calls = []

        def lock_with_stale_first(entry_id):
            calls.append(entry_id)
            if len(calls) == 1:
                return stale
            return lock_entry(entry_id)

        with mock.patch("custody.releases.lock_entry", side_effect=lock_with_stale_first):
            with self.assertRaises(InsufficientInventoryError) as ctx:
                process_release(self.entry.pk, 1, 7, HANDOVER)

        self.assertEqual(len(calls), 2)
        self.assertEqual(ctx.exception.remaining, 4)
        self.entry.refresh_from_db()
        self.assertEqual(self.entry.pots_delivered, 6)
        self.assertEqual(DeliveryTransaction.objects.filter(entry=self.entry).count(), 1)

    def test_persistent_conflict_is_surfaced(self):
        stale = Entry.objects.select_related("customer", "location").get(pk=self.entry.pk)
        process_release(self.entry.pk, 1, 1, HANDOVER)

        with mock.patch("custody.releases.lock_entry", side_effect=lambda entry_id: copy.deepcopy(stale)) as lock:
            with self.assertRaises(TransactionConflictError):
                process_release(self.entry.pk, 1, 2, HANDOVER)

        self.assertEqual(lock.call_count, 3)
        self.entry.refresh_from_db()
        self.assertEqual(self.entry.pots_delivered, 1)


class FullDeliveryTests(TestCase):
    def setUp(self):
        self.operator = make_user()
        self.entry = make_entry(make_location(), locker_number=5, total_pots=4, actor=self.operator)

    def test_delivery_hands_over_everything_left(self):
        process_release(self.entry.pk, 5, 1, HANDOVER, actor=self.operator)
        outcome = process_delivery(self.entry.pk, HANDOVER, PaymentInfo(amount="300"), actor=self.operator)

        self.assertEqual(outcome.pots_released, 3)
        self.assertTrue(outcome.is_final_release)
        self.entry.refresh_from_db()
        self.assertEqual(self.entry.status, EntryStatus.COMPLETED)

        delivery = Delivery.objects.get(pk=outcome.record_id)
        self.assertEqual(delivery.pots, 3)
        self.assertEqual(delivery.customer_name, "Asha Verma")
        self.assertEqual(delivery.operator, self.operator)
        self.assertFalse(delivery.otp_verified)
        self.assertEqual(delivery.payment_type, SettlementType.FULL)
        self.assertEqual(DispatchEvent.objects.filter(entry=self.entry).count(), 1)

    def test_delivery_with_verified_challenge(self):
        challenge = issue_challenge(self.entry.pk, OTPPurpose.DELIVERY)
        verify_challenge(challenge.pk, challenge.code)

        outcome = process_delivery(self.entry.pk, HANDOVER, challenge_id=challenge.pk)

        delivery = Delivery.objects.get(pk=outcome.record_id)
        self.assertTrue(delivery.otp_verified)
        challenge.refresh_from_db()
        self.assertIsNotNone(challenge.consumed_at)

    def test_delivery_rejects_code_verified_long_ago(self):
        challenge = issue_challenge(self.entry.pk, OTPPurpose.DELIVERY)
        verify_challenge(challenge.pk, challenge.code)
        OTPChallenge.objects.filter(pk=challenge.pk).update(verified_at=timezone.now() - timedelta(minutes=11))

        with self.assertRaises(ExpiredError):
            process_delivery(self.entry.pk, HANDOVER, challenge_id=challenge.pk)

        self.entry.refresh_from_db()
        self.assertEqual(self.entry.pots_delivered, 0)
        challenge.refresh_from_db()
        self.assertIsNone(challenge.consumed_at)

    def test_delivery_rejects_unverified_challenge(self):
        challenge = issue_challenge(self.entry.pk, OTPPurpose.DELIVERY)
        with self.assertRaises(InvalidStateError):
            process_delivery(self.entry.pk, HANDOVER, challenge_id=challenge.pk)
        self.entry.refresh_from_db()
        self.assertEqual(self.entry.pots_delivered, 0)

    def test_delivery_rejects_renewal_challenge(self):
        challenge = issue_challenge(self.entry.pk, OTPPurpose.RENEWAL)
        verify_challenge(challenge.pk, challenge.code)
        with self.assertRaises(ValidationError):
            process_delivery(self.entry.pk, HANDOVER, challenge_id=challenge.pk)

    def test_completed_entry_cannot_be_delivered(self):
        process_delivery(self.entry.pk, HANDOVER)
        with self.assertRaises(InvalidStateError):
            process_delivery(self.entry.pk, HANDOVER)
