"""
One-time codes gating deliveries and renewals.

A challenge moves from issued to verified, expired or exhausted and is never
reused. Each verification attempt is a single conditional update on the
challenge row, so two concurrent guesses can neither both succeed nor both
be counted as the same attempt.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from django.db import transaction
from django.db.models import F
from django.utils import timezone
from django.utils.crypto import constant_time_compare, get_random_string

from .audit import log_action, resolve_actor
from .concurrency import run_in_transaction
from .exceptions import (
    AttemptsExhaustedError,
    ExpiredError,
    InvalidStateError,
    NotFoundError,
    TransactionConflictError,
    ValidationError,
)
from .models import DeliveryLogAction, Entry, EntryStatus, OTPChallenge, OTPPurpose, ServiceSettings
from .notifications import TemplateKind, build_intent, queue_after_commit
from .validators import validate_positive_int

logger = logging.getLogger(__name__)

CODE_LENGTH = 6


@dataclass(frozen=True)
class VerificationResult:
    challenge_id: int
    success: bool
    attempts_remaining: int

    def as_dict(self) -> dict:
        return {
            "challenge_id": self.challenge_id,
            "success": self.success,
            "attempts_remaining": self.attempts_remaining,
        }


def generate_code() -> str:
    return get_random_string(CODE_LENGTH, allowed_chars="0123456789")


def entry_reference(entry: Entry) -> str:
    return entry.public_id.hex[-6:].upper()


def _validate_purpose(purpose: str) -> str:
    if purpose not in OTPPurpose.values:
        raise ValidationError(f"Invalid purpose '{purpose}'. Use one of: {', '.join(OTPPurpose.values)}")
    return purpose


def find_outstanding_challenge(entry_id, purpose: str, now: datetime | None = None) -> OTPChallenge | None:
    now = now or timezone.now()
    return (
        OTPChallenge.objects.filter(
            entry_id=entry_id,
            purpose=purpose,
            is_verified=False,
            invalidated_at__isnull=True,
            expires_at__gte=now,
            attempts__lt=F("max_attempts"),
        )
        .order_by("-created_at", "-id")
        .first()
    )


@transaction.atomic
def issue_challenge(entry_id, purpose: str, actor=None) -> OTPChallenge:
    """Issue a fresh challenge and invalidate any outstanding one for the same entry and purpose."""
    _validate_purpose(purpose)
    entry_id = validate_positive_int(entry_id, "entry_id")
    # Locking the entry row serialises issuance so only one code stays outstanding.
    entry = Entry.objects.select_for_update(of=("self",)).select_related("customer").filter(pk=entry_id).first()
    if entry is None:
        raise NotFoundError(f"Entry {entry_id} not found")
    if entry.status != EntryStatus.ACTIVE:
        raise InvalidStateError(f"Entry {entry.pk} is {entry.status}, no {purpose} code can be issued")

    settings = ServiceSettings.get_solo()
    now = timezone.now()
    superseded = OTPChallenge.objects.filter(
        entry=entry,
        purpose=purpose,
        is_verified=False,
        invalidated_at__isnull=True,
    ).update(invalidated_at=now, updated_at=now)

    challenge = OTPChallenge.objects.create(
        entry=entry,
        purpose=purpose,
        code=generate_code(),
        expires_at=now + timedelta(minutes=settings.otp_ttl_minutes),
        max_attempts=settings.otp_max_attempts,
        issued_by=resolve_actor(actor),
    )
    log_action(
        DeliveryLogAction.OTP_GENERATED,
        actor,
        entry=entry,
        metadata={"challenge_id": challenge.pk, "purpose": purpose, "superseded": superseded},
    )
    queue_after_commit(
        build_intent(
            TemplateKind.OTP_VERIFICATION,
            entry.customer.mobile,
            [challenge.code, settings.otp_ttl_minutes, entry_reference(entry)],
            entry.pk,
        )
    )
    logger.info("Issued %s code %s for entry %s", purpose, challenge.pk, entry.pk)
    return challenge


def load_challenge(challenge_id) -> OTPChallenge:
    challenge = OTPChallenge.objects.filter(pk=challenge_id).first()
    if challenge is None:
        raise NotFoundError(f"OTP challenge {challenge_id} not found")
    return challenge


def _verify_step(challenge_id, submitted_code: str, now: datetime, actor) -> VerificationResult:
    challenge = load_challenge(challenge_id)
    if challenge.is_verified:
        raise InvalidStateError("This code was already used")
    if challenge.invalidated_at is not None:
        raise ExpiredError("This code was replaced by a newer one")
    if now > challenge.expires_at:
        raise ExpiredError("This code has expired")
    if challenge.attempts >= challenge.max_attempts:
        raise AttemptsExhaustedError("No attempts left for this code", attempts_remaining=0)

    # Guarded on the attempts value just read; a concurrent attempt makes this
    # a conflict and the step is re-read.
    pending = OTPChallenge.objects.filter(pk=challenge.pk, attempts=challenge.attempts, is_verified=False)
    actor = resolve_actor(actor)
    if constant_time_compare(submitted_code, challenge.code):
        verified = pending.update(
            is_verified=True, verified_at=now, verified_by=actor, last_attempt_at=now, updated_at=now
        )
        if not verified:
            raise TransactionConflictError(f"OTP challenge {challenge.pk} changed during verification")
        log_action(
            DeliveryLogAction.OTP_VERIFIED,
            actor,
            entry=challenge.entry,
            metadata={"challenge_id": challenge.pk, "purpose": challenge.purpose},
        )
        return VerificationResult(challenge.pk, True, challenge.attempts_remaining)

    if not pending.update(attempts=F("attempts") + 1, last_attempt_at=now, updated_at=now):
        raise TransactionConflictError(f"OTP challenge {challenge.pk} changed during verification")
    attempts_remaining = max(0, challenge.max_attempts - challenge.attempts - 1)
    log_action(
        DeliveryLogAction.OTP_FAILED,
        actor,
        entry=challenge.entry,
        metadata={
            "challenge_id": challenge.pk,
            "purpose": challenge.purpose,
            "attempts_remaining": attempts_remaining,
        },
    )
    return VerificationResult(challenge.pk, False, attempts_remaining)


def verify_challenge(challenge_id, submitted_code, now: datetime | None = None, actor=None) -> VerificationResult:
    challenge_id = validate_positive_int(challenge_id, "challenge_id")
    code = "" if submitted_code is None else str(submitted_code).strip()
    if not code:
        raise ValidationError("code is required")
    result = run_in_transaction(_verify_step, challenge_id, code, now or timezone.now(), actor)
    if result.success:
        logger.info("OTP challenge %s verified", result.challenge_id)
    else:
        logger.info(
            "Wrong code for OTP challenge %s, %s attempts left", result.challenge_id, result.attempts_remaining
        )
    return result


def consume_verified_challenge(challenge_id, entry: Entry, purpose: str, now: datetime) -> OTPChallenge:
    """Mark a verified challenge as used by the operation it gated."""
    challenge_id = validate_positive_int(challenge_id, "challenge_id")
    challenge = OTPChallenge.objects.select_for_update().filter(pk=challenge_id).first()
    if challenge is None:
        raise NotFoundError(f"OTP challenge {challenge_id} not found")
    if challenge.entry_id != entry.pk or challenge.purpose != purpose:
        raise ValidationError(f"OTP challenge {challenge_id} is not a {purpose} code for entry {entry.pk}")
    if not challenge.is_verified:
        raise InvalidStateError(f"OTP challenge {challenge_id} has not been verified")
    if challenge.consumed_at is not None:
        raise InvalidStateError(f"OTP challenge {challenge_id} was already used")
    ttl = timedelta(minutes=ServiceSettings.get_solo().otp_ttl_minutes)
    if challenge.verified_at is None or now - challenge.verified_at > ttl:
        raise ExpiredError(f"OTP challenge {challenge_id} was verified too long ago, issue a new code")
    challenge.consumed_at = now
    challenge.save(update_fields=["consumed_at", "updated_at"])
    return challenge
