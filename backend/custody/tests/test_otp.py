from datetime import timedelta
from unittest import mock

from django.db.models.query import QuerySet
from django.test import TestCase

from ..exceptions import AttemptsExhaustedError, ExpiredError, InvalidStateError, NotFoundError, ValidationError
from ..models import DeliveryLog, DeliveryLogAction, Entry, NotificationIntent, OTPChallenge, OTPPurpose
from ..otp import find_outstanding_challenge, issue_challenge, load_challenge, verify_challenge
from ..releases import HandoverInfo, process_release
from .helpers import make_entry, make_location, make_user


def wrong_code_for(challenge):
    return "000000" if challenge.code != "000000" else "111111"


class IssueChallengeTests(TestCase):
    def setUp(self):
        self.operator = make_user()
        self.entry = make_entry(make_location(), total_pots=2)

    def test_issue_creates_fresh_challenge(self):
        challenge = issue_challenge(self.entry.pk, OTPPurpose.DELIVERY, actor=self.operator)

        self.assertEqual(len(challenge.code), 6)
        self.assertTrue(challenge.code.isdigit())
        self.assertEqual(challenge.attempts, 0)
        self.assertEqual(challenge.max_attempts, 3)
        self.assertFalse(challenge.is_verified)
        self.assertAlmostEqual((challenge.expires_at - challenge.created_at).total_seconds(), 600, delta=5)
        self.assertEqual(challenge.issued_by, self.operator)
        self.assertTrue(DeliveryLog.objects.filter(action=DeliveryLogAction.OTP_GENERATED).exists())

    def test_issue_queues_code_to_customer(self):
        with self.captureOnCommitCallbacks(execute=True):
            challenge = issue_challenge(self.entry.pk, OTPPurpose.RENEWAL)

        intent = NotificationIntent.objects.get()
        self.assertEqual(intent.template_kind, "otpVerification")
        self.assertEqual(intent.recipient_mobile, "9876543210")
        self.assertEqual(intent.substitution_values[:2], [challenge.code, "10"])
        self.assertEqual(len(intent.substitution_values[2]), 6)

    def test_new_challenge_supersedes_outstanding_one(self):
        first = issue_challenge(self.entry.pk, OTPPurpose.DELIVERY)
        second = issue_challenge(self.entry.pk, OTPPurpose.DELIVERY)
        renewal = issue_challenge(self.entry.pk, OTPPurpose.RENEWAL)

        self.assertEqual(find_outstanding_challenge(self.entry.pk, OTPPurpose.DELIVERY), second)
        self.assertEqual(find_outstanding_challenge(self.entry.pk, OTPPurpose.RENEWAL), renewal)
        with self.assertRaises(ExpiredError):
            verify_challenge(first.pk, first.code)

    def test_back_to_back_issues_leave_one_outstanding_code(self):
        for _ in range(3):
            latest = issue_challenge(self.entry.pk, OTPPurpose.DELIVERY)

        outstanding = [
            challenge
            for challenge in OTPChallenge.objects.filter(entry=self.entry, purpose=OTPPurpose.DELIVERY)
            if challenge.is_outstanding(latest.created_at)
        ]
        self.assertEqual(outstanding, [latest])

    def test_issue_locks_the_entry_row(self):
        locked = []
        original = QuerySet.select_for_update

        def record(queryset, *args, **kwargs):
            locked.append(queryset.model)
            return original(queryset, *args, **kwargs)

        with mock.patch.object(QuerySet, "select_for_update", autospec=True, side_effect=record):
            issue_challenge(self.entry.pk, OTPPurpose.DELIVERY)

        self.assertIn(Entry, locked)

    def test_issue_rejects_unknown_purpose_or_entry(self):
        with self.assertRaises(ValidationError):
            issue_challenge(self.entry.pk, "transfer")
        with self.assertRaises(NotFoundError):
            issue_challenge(999, OTPPurpose.DELIVERY)

    def test_issue_rejects_completed_entry(self):
        process_release(self.entry.pk, 1, 2, HandoverInfo("Ravi", "9812345678"))
        with self.assertRaises(InvalidStateError):
            issue_challenge(self.entry.pk, OTPPurpose.DELIVERY)


class VerifyChallengeTests(TestCase):
    def setUp(self):
        self.entry = make_entry(make_location())
        self.challenge = issue_challenge(self.entry.pk, OTPPurpose.DELIVERY)

    def test_correct_code_verifies(self):
        result = verify_challenge(self.challenge.pk, self.challenge.code)
        self.assertTrue(result.success)
        self.challenge.refresh_from_db()
        self.assertTrue(self.challenge.is_verified)
        self.assertIsNotNone(self.challenge.verified_at)
        self.assertIsNone(find_outstanding_challenge(self.entry.pk, OTPPurpose.DELIVERY))

    def test_attempts_run_out_after_three_wrong_codes(self):
        wrong = wrong_code_for(self.challenge)
        results = [verify_challenge(self.challenge.pk, wrong) for _ in range(3)]

        self.assertEqual([result.success for result in results], [False, False, False])
        self.assertEqual([result.attempts_remaining for result in results], [2, 1, 0])
        with self.assertRaises(AttemptsExhaustedError):
            verify_challenge(self.challenge.pk, self.challenge.code)

        self.challenge.refresh_from_db()
        self.assertEqual(self.challenge.attempts, 3)
        self.assertFalse(self.challenge.is_verified)
        self.assertEqual(DeliveryLog.objects.filter(action=DeliveryLogAction.OTP_FAILED).count(), 3)

    def test_expired_challenge(self):
        later = self.challenge.expires_at + timedelta(seconds=1)
        with self.assertRaises(ExpiredError):
            verify_challenge(self.challenge.pk, self.challenge.code, now=later)
        self.challenge.refresh_from_db()
        self.assertEqual(self.challenge.attempts, 0)

    def test_verified_challenge_is_not_reused(self):
        verify_challenge(self.challenge.pk, self.challenge.code)
        with self.assertRaises(InvalidStateError):
            verify_challenge(self.challenge.pk, self.challenge.code)

    def test_concurrent_attempt_is_not_lost(self):
        wrong = wrong_code_for(self.challenge)
        # Read before a competing request charges its attempt.
        stale = OTPChallenge.objects.get(pk=self.challenge.pk)
        verify_challenge(self.challenge.pk, wrong)

        reads = []

        def load_stale_first(challenge_id):
            reads.append(challenge_id)
            if len(reads) == 1:
                return stale
            return load_challenge(challenge_id)

        with mock.patch("custody.otp.load_challenge", side_effect=load_stale_first):
            result = verify_challenge(self.challenge.pk, wrong)

        self.assertEqual(len(reads), 2)
        self.assertEqual(result.attempts_remaining, 1)
        self.challenge.refresh_from_db()
        self.assertEqual(self.challenge.attempts, 2)

    def test_blank_code_or_unknown_challenge(self):
        with self.assertRaises(ValidationError):
            verify_challenge(self.challenge.pk, "  ")
        with self.assertRaises(NotFoundError):
            verify_challenge(999, "123456")
