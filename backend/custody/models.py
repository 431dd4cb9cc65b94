import uuid

from django.conf import settings
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from .exceptions import InvalidStateError, TransactionConflictError
from .ledger import LockerAssignment, PaymentMethod, PaymentType, SettlementType


class TimeStampedModel(models.Model):
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class AppendOnlyModel(models.Model):
    """Rows are inserted once and never updated."""

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise InvalidStateError(f"{type(self).__name__} records are append-only")
        super().save(*args, **kwargs)


class Location(TimeStampedModel):
    venue_name = models.CharField(max_length=255, unique=True)
    address = models.TextField(blank=True)
    contact_number = models.CharField(max_length=15, blank=True)
    is_active = models.BooleanField(default=True)

    def __str__(self) -> str:
        return self.venue_name


class Customer(TimeStampedModel):
    name = models.CharField(max_length=255)
    mobile = models.CharField(max_length=15, unique=True)
    city = models.CharField(max_length=100, blank=True)
    additional_details = models.TextField(blank=True)

    def __str__(self) -> str:
        return f"{self.name} ({self.mobile})"


class EntryStatus(models.TextChoices):
    ACTIVE = "active", "Active"
    COMPLETED = "completed", "Completed"
    # Never stored: derived from expiry_date on every read.
    EXPIRED = "expired", "Expired"


class EntrySource(models.TextChoices):
    MANUAL = "manual", "Manual"
    BULK_IMPORT = "bulk_import", "Bulk import"


class Entry(TimeStampedModel):
    public_id = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name="entries")
    location = models.ForeignKey(Location, on_delete=models.PROTECT, related_name="entries")
    operator = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="entries",
    )
    deceased_person_name = models.CharField(max_length=255, blank=True)

    total_pots = models.PositiveIntegerField()
    pots_delivered = models.PositiveIntegerField(default=0)
    # Ordered sequence of LockerAssignment documents. v1 entries hold exactly one.
    locker_details = models.JSONField(default=list)

    status = models.CharField(
        max_length=20,
        choices=[(EntryStatus.ACTIVE, "Active"), (EntryStatus.COMPLETED, "Completed")],
        default=EntryStatus.ACTIVE,
    )
    entry_date = models.DateTimeField(default=timezone.now)
    expiry_date = models.DateTimeField()
    completed_at = models.DateTimeField(blank=True, null=True)

    source = models.CharField(max_length=20, choices=EntrySource.choices, default=EntrySource.MANUAL)
    import_batch_id = models.CharField(max_length=50, blank=True, null=True, db_index=True)

    version = models.PositiveIntegerField(default=0)

    class Meta:
        verbose_name_plural = "entries"
        constraints = [
            models.CheckConstraint(condition=Q(total_pots__gte=1), name="entry_total_pots_positive"),
            models.CheckConstraint(
                condition=Q(pots_delivered__lte=F("total_pots")),
                name="entry_pots_delivered_within_total",
            ),
        ]

    def __str__(self) -> str:
        return f"Entry {self.pk} - {self.customer.name}"

    @property
    def remaining_pots(self) -> int:
        return self.total_pots - self.pots_delivered

    @property
    def lockers(self) -> list[LockerAssignment]:
        return [LockerAssignment.from_dict(item) for item in self.locker_details]

    @property
    def number_of_lockers(self) -> int:
        return len(self.locker_details)

    @property
    def primary_locker_number(self) -> int | None:
        lockers = self.lockers
        return lockers[0].locker_number if lockers else None

    @property
    def display_name(self) -> str:
        return self.deceased_person_name or self.customer.name

    def save_if_unchanged(self, fields: list[str]) -> None:
        """Compare-and-set write of ``fields`` guarded by ``version``."""
        values = {name: getattr(self, name) for name in fields}
        values["updated_at"] = timezone.now()
        updated = type(self).objects.filter(pk=self.pk, version=self.version).update(
            version=F("version") + 1,
            **values,
        )
        if not updated:
            raise TransactionConflictError(f"Entry {self.pk} was modified concurrently")
        self.version += 1
        self.updated_at = values["updated_at"]


class PaymentRecord(AppendOnlyModel):
    entry = models.ForeignKey(Entry, on_delete=models.CASCADE, related_name="payments")
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    due_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    payment_type = models.CharField(max_length=20, choices=PaymentType.choices)
    method = models.CharField(max_length=10, choices=PaymentMethod.choices, default=PaymentMethod.CASH)
    months = models.PositiveIntegerField(blank=True, null=True)
    reason = models.CharField(max_length=255, blank=True)
    description = models.CharField(max_length=255, blank=True)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payments_recorded",
    )
    paid_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["paid_at", "id"]
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gte=0) & Q(due_amount__gte=0),
                name="payment_amounts_non_negative",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.payment_type} {self.amount} ({self.method})"


class RenewalRecord(AppendOnlyModel):
    entry = models.ForeignKey(Entry, on_delete=models.CASCADE, related_name="renewals")
    months = models.PositiveIntegerField()
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    method = models.CharField(max_length=10, choices=PaymentMethod.choices)
    previous_expiry_date = models.DateTimeField()
    new_expiry_date = models.DateTimeField()
    otp_challenge = models.ForeignKey(
        "OTPChallenge",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="renewals",
    )
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="renewals_processed",
    )
    renewed_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["renewed_at", "id"]

    def __str__(self) -> str:
        return f"Renewal {self.months}m for entry {self.entry_id}"


class DeliveryTransaction(AppendOnlyModel):
    entry = models.ForeignKey(Entry, on_delete=models.CASCADE, related_name="delivery_history")
    locker_number = models.PositiveIntegerField()
    pots_delivered = models.PositiveIntegerField()
    release_ids = models.JSONField(default=list)
    handover_person_name = models.CharField(max_length=255)
    handover_person_mobile = models.CharField(max_length=15)
    amount_paid = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    due_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    payment_method = models.CharField(max_length=10, choices=PaymentMethod.choices, default=PaymentMethod.CASH)
    reason = models.CharField(max_length=255, blank=True)
    remaining_pots_after_delivery = models.PositiveIntegerField()
    is_final_release = models.BooleanField(default=False)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="deliveries_handled",
    )
    delivered_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["delivered_at", "id"]
        constraints = [
            models.CheckConstraint(condition=Q(pots_delivered__gte=1), name="delivery_pots_positive"),
        ]

    def __str__(self) -> str:
        return f"{self.pots_delivered} pots from locker {self.locker_number}"


class DispatchEvent(TimeStampedModel):
    """Per-release record with the entry as it looked at dispatch time."""

    entry = models.ForeignKey(
        Entry,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="dispatch_events",
    )
    entry_snapshot = models.JSONField(default=dict)
    dispatch_info = models.JSONField(default=dict)

    def __str__(self) -> str:
        return f"Dispatch event {self.pk} (entry {self.entry_id})"


class Delivery(TimeStampedModel):
    """Full handover of an entry, stored as flat columns."""

    entry = models.ForeignKey(
        Entry,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="deliveries",
    )
    customer_ref = models.CharField(max_length=50, blank=True)
    customer_name = models.CharField(max_length=255, blank=True)
    customer_mobile = models.CharField(max_length=15, blank=True)
    customer_city = models.CharField(max_length=100, blank=True)
    location_ref = models.CharField(max_length=50, blank=True)
    location_name = models.CharField(max_length=255, blank=True)
    operator = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="full_deliveries",
    )
    operator_name = models.CharField(max_length=255, blank=True)
    pots = models.PositiveIntegerField(default=0)
    delivery_date = models.DateTimeField(default=timezone.now)
    entry_date = models.DateTimeField(blank=True, null=True)
    expiry_date = models.DateTimeField(blank=True, null=True)
    renewal_count = models.PositiveIntegerField(default=0)
    amount_paid = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    due_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    payment_type = models.CharField(max_length=10, choices=SettlementType.choices, default=SettlementType.FREE)
    reason = models.CharField(max_length=255, blank=True)
    handover_person_name = models.CharField(max_length=255, blank=True)
    handover_person_mobile = models.CharField(max_length=15, blank=True)
    otp_verified = models.BooleanField(default=False)

    class Meta:
        verbose_name_plural = "deliveries"

    def __str__(self) -> str:
        return f"Delivery {self.pk} - {self.customer_name}"


class OTPPurpose(models.TextChoices):
    RENEWAL = "renewal", "Renewal"
    DELIVERY = "delivery", "Delivery"


class OTPChallenge(TimeStampedModel):
    entry = models.ForeignKey(Entry, on_delete=models.CASCADE, related_name="otp_challenges")
    purpose = models.CharField(max_length=20, choices=OTPPurpose.choices)
    code = models.CharField(max_length=6)
    expires_at = models.DateTimeField()
    attempts = models.PositiveIntegerField(default=0)
    max_attempts = models.PositiveIntegerField(default=3)
    is_verified = models.BooleanField(default=False)
    verified_at = models.DateTimeField(blank=True, null=True)
    last_attempt_at = models.DateTimeField(blank=True, null=True)
    invalidated_at = models.DateTimeField(blank=True, null=True)
    consumed_at = models.DateTimeField(blank=True, null=True)
    issued_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="otp_challenges_issued",
    )
    verified_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="otp_challenges_verified",
    )

    class Meta:
        indexes = [models.Index(fields=["entry", "purpose", "is_verified"], name="custody_otp_entry_purpose_idx")]

    def __str__(self) -> str:
        return f"{self.purpose} OTP for entry {self.entry_id}"

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts)

    def is_outstanding(self, now=None) -> bool:
        now = now or timezone.now()
        return not self.is_verified and self.invalidated_at is None and now <= self.expires_at


class DeliveryLogAction(models.TextChoices):
    ENTRY_CREATED = "entry_created", "Entry Created"
    OTP_GENERATED = "otp_generated", "OTP Generated"
    OTP_VERIFIED = "otp_verified", "OTP Verified"
    OTP_FAILED = "otp_failed", "OTP Failed"
    RELEASE_PROCESSED = "release_processed", "Release Processed"
    DELIVERY_COMPLETED = "delivery_completed", "Delivery Completed"
    RENEWAL_PROCESSED = "renewal_processed", "Renewal Processed"
    BATCH_ROLLED_BACK = "batch_rolled_back", "Batch Rolled Back"


class DeliveryLog(AppendOnlyModel):
    action = models.CharField(max_length=30, choices=DeliveryLogAction.choices)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="delivery_logs",
    )
    entry = models.ForeignKey(
        Entry,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="delivery_logs",
    )
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["created_at", "id"]

    def __str__(self) -> str:
        return f"{self.action} ({self.created_at})"


class NotificationStatus(models.TextChoices):
    QUEUED = "queued", "Queued"
    SENT = "sent", "Sent"
    FAILED = "failed", "Failed"


class NotificationIntent(TimeStampedModel):
    """Outbox row consumed by the external notifier."""

    template_kind = models.CharField(max_length=50)
    recipient_mobile = models.CharField(max_length=15)
    substitution_values = models.JSONField(default=list)
    correlated_entry_id = models.PositiveBigIntegerField(blank=True, null=True, db_index=True)
    status = models.CharField(max_length=10, choices=NotificationStatus.choices, default=NotificationStatus.QUEUED)
    processed_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        ordering = ["created_at", "id"]

    def __str__(self) -> str:
        return f"{self.template_kind} -> {self.recipient_mobile} ({self.status})"


class ServiceSettings(TimeStampedModel):
    entry_fee = models.PositiveIntegerField(default=500)
    rate_per_locker_per_month = models.PositiveIntegerField(default=300)
    entry_duration_days = models.PositiveIntegerField(default=30)
    otp_ttl_minutes = models.PositiveIntegerField(default=10)
    otp_max_attempts = models.PositiveIntegerField(default=3)
    disposal_after_days = models.PositiveIntegerField(default=60)
    admin_mobile = models.CharField(max_length=15, blank=True)

    class Meta:
        verbose_name_plural = "service settings"

    def __str__(self) -> str:
        return "Service Settings"

    @classmethod
    def get_solo(cls) -> "ServiceSettings":
        obj, _ = cls.objects.get_or_create(id=1)
        return obj

    @property
    def admin_contact(self) -> str:
        return self.admin_mobile or getattr(settings, "CUSTODY_ADMIN_MOBILE", "")
