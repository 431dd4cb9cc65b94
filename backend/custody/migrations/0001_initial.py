import uuid

import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Location",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("venue_name", models.CharField(max_length=255, unique=True)),
                ("address", models.TextField(blank=True)),
                ("contact_number", models.CharField(blank=True, max_length=15)),
                ("is_active", models.BooleanField(default=True)),
            ],
            options={
                "abstract": False,
            },
        ),
        migrations.CreateModel(
            name="Customer",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("name", models.CharField(max_length=255)),
                ("mobile", models.CharField(max_length=15, unique=True)),
                ("city", models.CharField(blank=True, max_length=100)),
                ("additional_details", models.TextField(blank=True)),
            ],
            options={
                "abstract": False,
            },
        ),
        migrations.CreateModel(
            name="Entry",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("public_id", models.UUIDField(default=uuid.uuid4, editable=False, unique=True)),
                ("deceased_person_name", models.CharField(blank=True, max_length=255)),
                ("total_pots", models.PositiveIntegerField()),
                ("pots_delivered", models.PositiveIntegerField(default=0)),
                ("locker_details", models.JSONField(default=list)),
                (
                    "status",
                    models.CharField(
                        choices=[("active", "Active"), ("completed", "Completed")],
                        default="active",
                        max_length=20,
                    ),
                ),
                ("entry_date", models.DateTimeField(default=django.utils.timezone.now)),
                ("expiry_date", models.DateTimeField()),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "source",
                    models.CharField(
                        choices=[("manual", "Manual"), ("bulk_import", "Bulk import")],
                        default="manual",
                        max_length=20,
                    ),
                ),
                ("import_batch_id", models.CharField(blank=True, db_index=True, max_length=50, null=True)),
                ("version", models.PositiveIntegerField(default=0)),
                (
                    "customer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="entries",
                        to="custody.customer",
                    ),
                ),
                (
                    "location",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="entries",
                        to="custody.location",
                    ),
                ),
                (
                    "operator",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="entries",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name_plural": "entries",
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("total_pots__gte", 1)), name="entry_total_pots_positive"),
                    models.CheckConstraint(
                        condition=models.Q(("pots_delivered__lte", models.F("total_pots"))),
                        name="entry_pots_delivered_within_total",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="OTPChallenge",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "purpose",
                    models.CharField(choices=[("renewal", "Renewal"), ("delivery", "Delivery")], max_length=20),
                ),
                ("code", models.CharField(max_length=6)),
                ("expires_at", models.DateTimeField()),
                ("attempts", models.PositiveIntegerField(default=0)),
                ("max_attempts", models.PositiveIntegerField(default=3)),
                ("is_verified", models.BooleanField(default=False)),
                ("verified_at", models.DateTimeField(blank=True, null=True)),
                ("last_attempt_at", models.DateTimeField(blank=True, null=True)),
                ("invalidated_at", models.DateTimeField(blank=True, null=True)),
                ("consumed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "entry",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="otp_challenges",
                        to="custody.entry",
                    ),
                ),
                (
                    "issued_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="otp_challenges_issued",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "verified_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="otp_challenges_verified",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "indexes": [models.Index(fields=["entry", "purpose", "is_verified"], name="custody_otp_entry_purpose_idx")],
            },
        ),
        migrations.CreateModel(
            name="PaymentRecord",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("due_amount", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                (
                    "payment_type",
                    models.CharField(
                        choices=[("entry", "Entry"), ("renewal", "Renewal"), ("delivery", "Delivery")],
                        max_length=20,
                    ),
                ),
                (
                    "method",
                    models.CharField(choices=[("cash", "Cash"), ("upi", "UPI")], default="cash", max_length=10),
                ),
                ("months", models.PositiveIntegerField(blank=True, null=True)),
                ("reason", models.CharField(blank=True, max_length=255)),
                ("description", models.CharField(blank=True, max_length=255)),
                ("paid_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "actor",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="payments_recorded",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "entry",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="payments",
                        to="custody.entry",
                    ),
                ),
            ],
            options={
                "ordering": ["paid_at", "id"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount__gte", 0), ("due_amount__gte", 0)),
                        name="payment_amounts_non_negative",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="RenewalRecord",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("months", models.PositiveIntegerField()),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("method", models.CharField(choices=[("cash", "Cash"), ("upi", "UPI")], max_length=10)),
                ("previous_expiry_date", models.DateTimeField()),
                ("new_expiry_date", models.DateTimeField()),
                ("renewed_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "actor",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="renewals_processed",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "entry",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="renewals",
                        to="custody.entry",
                    ),
                ),
                (
                    "otp_challenge",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="renewals",
                        to="custody.otpchallenge",
                    ),
                ),
            ],
            options={
                "ordering": ["renewed_at", "id"],
            },
        ),
        migrations.CreateModel(
            name="DeliveryTransaction",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("locker_number", models.PositiveIntegerField()),
                ("pots_delivered", models.PositiveIntegerField()),
                ("release_ids", models.JSONField(default=list)),
                ("handover_person_name", models.CharField(max_length=255)),
                ("handover_person_mobile", models.CharField(max_length=15)),
                ("amount_paid", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("due_amount", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                (
                    "payment_method",
                    models.CharField(choices=[("cash", "Cash"), ("upi", "UPI")], default="cash", max_length=10),
                ),
                ("reason", models.CharField(blank=True, max_length=255)),
                ("remaining_pots_after_delivery", models.PositiveIntegerField()),
                ("is_final_release", models.BooleanField(default=False)),
                ("delivered_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "actor",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="deliveries_handled",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "entry",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="delivery_history",
                        to="custody.entry",
                    ),
                ),
            ],
            options={
                "ordering": ["delivered_at", "id"],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("pots_delivered__gte", 1)), name="delivery_pots_positive"),
                ],
            },
        ),
        migrations.CreateModel(
            name="DispatchEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("entry_snapshot", models.JSONField(default=dict)),
                ("dispatch_info", models.JSONField(default=dict)),
                (
                    "entry",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="dispatch_events",
                        to="custody.entry",
                    ),
                ),
            ],
            options={
                "abstract": False,
            },
        ),
        migrations.CreateModel(
            name="Delivery",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("customer_ref", models.CharField(blank=True, max_length=50)),
                ("customer_name", models.CharField(blank=True, max_length=255)),
                ("customer_mobile", models.CharField(blank=True, max_length=15)),
                ("customer_city", models.CharField(blank=True, max_length=100)),
                ("location_ref", models.CharField(blank=True, max_length=50)),
                ("location_name", models.CharField(blank=True, max_length=255)),
                ("operator_name", models.CharField(blank=True, max_length=255)),
                ("pots", models.PositiveIntegerField(default=0)),
                ("delivery_date", models.DateTimeField(default=django.utils.timezone.now)),
                ("entry_date", models.DateTimeField(blank=True, null=True)),
                ("expiry_date", models.DateTimeField(blank=True, null=True)),
                ("renewal_count", models.PositiveIntegerField(default=0)),
                ("amount_paid", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("due_amount", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                (
                    "payment_type",
                    models.CharField(
                        choices=[("free", "Free"), ("partial", "Partial"), ("full", "Full")],
                        default="free",
                        max_length=10,
                    ),
                ),
                ("reason", models.CharField(blank=True, max_length=255)),
                ("handover_person_name", models.CharField(blank=True, max_length=255)),
                ("handover_person_mobile", models.CharField(blank=True, max_length=15)),
                ("otp_verified", models.BooleanField(default=False)),
                (
                    "entry",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="deliveries",
                        to="custody.entry",
                    ),
                ),
                (
                    "operator",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="full_deliveries",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name_plural": "deliveries",
            },
        ),
        migrations.CreateModel(
            name="DeliveryLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "action",
                    models.CharField(
                        choices=[
                            ("entry_created", "Entry Created"),
                            ("otp_generated", "OTP Generated"),
                            ("otp_verified", "OTP Verified"),
                            ("otp_failed", "OTP Failed"),
                            ("release_processed", "Release Processed"),
                            ("delivery_completed", "Delivery Completed"),
                            ("renewal_processed", "Renewal Processed"),
                            ("batch_rolled_back", "Batch Rolled Back"),
                        ],
                        max_length=30,
                    ),
                ),
                ("metadata", models.JSONField(blank=True, default=dict)),
                (
                    "actor",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="delivery_logs",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "entry",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="delivery_logs",
                        to="custody.entry",
                    ),
                ),
            ],
            options={
                "ordering": ["created_at", "id"],
            },
        ),
        migrations.CreateModel(
            name="NotificationIntent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("template_kind", models.CharField(max_length=50)),
                ("recipient_mobile", models.CharField(max_length=15)),
                ("substitution_values", models.JSONField(default=list)),
                ("correlated_entry_id", models.PositiveBigIntegerField(blank=True, db_index=True, null=True)),
                (
                    "status",
                    models.CharField(
                        choices=[("queued", "Queued"), ("sent", "Sent"), ("failed", "Failed")],
                        default="queued",
                        max_length=10,
                    ),
                ),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "ordering": ["created_at", "id"],
            },
        ),
        migrations.CreateModel(
            name="ServiceSettings",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("entry_fee", models.PositiveIntegerField(default=500)),
                ("rate_per_locker_per_month", models.PositiveIntegerField(default=300)),
                ("entry_duration_days", models.PositiveIntegerField(default=30)),
                ("otp_ttl_minutes", models.PositiveIntegerField(default=10)),
                ("otp_max_attempts", models.PositiveIntegerField(default=3)),
                ("disposal_after_days", models.PositiveIntegerField(default=60)),
                ("admin_mobile", models.CharField(blank=True, max_length=15)),
            ],
            options={
                "verbose_name_plural": "service settings",
            },
        ),
    ]
