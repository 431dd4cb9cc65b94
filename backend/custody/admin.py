from django.contrib import admin

from .models import (
    Customer,
    Delivery,
    DeliveryLog,
    DeliveryTransaction,
    DispatchEvent,
    Entry,
    Location,
    NotificationIntent,
    OTPChallenge,
    PaymentRecord,
    RenewalRecord,
    ServiceSettings,
)


class ReadOnlyAdmin(admin.ModelAdmin):
    """Ledger and audit rows are written by the engine only."""

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Location)
class LocationAdmin(admin.ModelAdmin):
    list_display = ("venue_name", "contact_number", "is_active")
    search_fields = ("venue_name",)
    list_filter = ("is_active",)


@admin.register(Customer)
class CustomerAdmin(admin.ModelAdmin):
    list_display = ("name", "mobile", "city", "created_at")
    search_fields = ("name", "mobile", "city")


@admin.register(Entry)
class EntryAdmin(ReadOnlyAdmin):
    list_display = ("id", "customer", "location", "total_pots", "pots_delivered", "status", "expiry_date")
    search_fields = ("customer__name", "customer__mobile", "public_id", "import_batch_id")
    list_filter = ("status", "source", "location")


@admin.register(PaymentRecord)
class PaymentRecordAdmin(ReadOnlyAdmin):
    list_display = ("entry", "payment_type", "amount", "due_amount", "method", "paid_at")
    list_filter = ("payment_type", "method")


@admin.register(RenewalRecord)
class RenewalRecordAdmin(ReadOnlyAdmin):
    list_display = ("entry", "months", "amount", "method", "new_expiry_date", "renewed_at")


@admin.register(DeliveryTransaction)
class DeliveryTransactionAdmin(ReadOnlyAdmin):
    list_display = ("entry", "locker_number", "pots_delivered", "remaining_pots_after_delivery", "delivered_at")
    list_filter = ("is_final_release",)


@admin.register(DispatchEvent)
class DispatchEventAdmin(ReadOnlyAdmin):
    list_display = ("id", "entry", "created_at")


@admin.register(Delivery)
class DeliveryAdmin(ReadOnlyAdmin):
    list_display = ("id", "customer_name", "location_name", "pots", "payment_type", "delivery_date")
    search_fields = ("customer_name", "customer_mobile")


@admin.register(OTPChallenge)
class OTPChallengeAdmin(ReadOnlyAdmin):
    list_display = ("entry", "purpose", "attempts", "is_verified", "expires_at")
    list_filter = ("purpose", "is_verified")
    exclude = ("code",)


@admin.register(DeliveryLog)
class DeliveryLogAdmin(ReadOnlyAdmin):
    list_display = ("action", "actor", "entry", "created_at")
    list_filter = ("action", "created_at")
    search_fields = ("actor__username",)


@admin.register(NotificationIntent)
class NotificationIntentAdmin(admin.ModelAdmin):
    list_display = ("template_kind", "recipient_mobile", "correlated_entry_id", "status", "created_at")
    list_filter = ("template_kind", "status")


@admin.register(ServiceSettings)
class ServiceSettingsAdmin(admin.ModelAdmin):
    list_display = (
        "entry_fee",
        "rate_per_locker_per_month",
        "entry_duration_days",
        "otp_ttl_minutes",
        "otp_max_attempts",
        "disposal_after_days",
        "admin_mobile",
    )
