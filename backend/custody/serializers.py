from django.utils import timezone
from rest_framework import serializers

from .ledger import calculate_due_amount
from .lifecycle import effective_status, is_expired
from .models import (
    Customer,
    DeliveryTransaction,
    Entry,
    EntryStatus,
    Location,
    OTPChallenge,
    PaymentRecord,
    RenewalRecord,
    ServiceSettings,
)


class LocationSerializer(serializers.ModelSerializer):
    class Meta:
        model = Location
        fields = ["id", "venue_name", "address", "contact_number", "is_active"]


class CustomerSerializer(serializers.ModelSerializer):
    class Meta:
        model = Customer
        fields = ["id", "name", "mobile", "city"]


class PaymentRecordSerializer(serializers.ModelSerializer):
    actor = serializers.CharField(source="actor.display_name", read_only=True, default=None)

    class Meta:
        model = PaymentRecord
        fields = ["id", "amount", "due_amount", "payment_type", "method", "months", "reason", "actor", "paid_at"]


class RenewalRecordSerializer(serializers.ModelSerializer):
    actor = serializers.CharField(source="actor.display_name", read_only=True, default=None)

    class Meta:
        model = RenewalRecord
        fields = ["id", "months", "amount", "method", "previous_expiry_date", "new_expiry_date", "actor", "renewed_at"]


class DeliveryTransactionSerializer(serializers.ModelSerializer):
    actor = serializers.CharField(source="actor.display_name", read_only=True, default=None)

    class Meta:
        model = DeliveryTransaction
        fields = [
            "id",
            "locker_number",
            "pots_delivered",
            "release_ids",
            "handover_person_name",
            "handover_person_mobile",
            "amount_paid",
            "due_amount",
            "payment_method",
            "reason",
            "remaining_pots_after_delivery",
            "is_final_release",
            "actor",
            "delivered_at",
        ]


class EntrySerializer(serializers.ModelSerializer):
    customer = CustomerSerializer(read_only=True)
    location = LocationSerializer(read_only=True)
    operator = serializers.CharField(source="operator.display_name", read_only=True, default=None)
    remaining_pots = serializers.IntegerField(read_only=True)
    number_of_lockers = serializers.IntegerField(read_only=True)
    effective_status = serializers.SerializerMethodField()
    is_expired = serializers.SerializerMethodField()
    due_amount = serializers.SerializerMethodField()

    class Meta:
        model = Entry
        fields = [
            "id",
            "public_id",
            "customer",
            "location",
            "operator",
            "deceased_person_name",
            "total_pots",
            "pots_delivered",
            "remaining_pots",
            "number_of_lockers",
            "locker_details",
            "status",
            "effective_status",
            "is_expired",
            "due_amount",
            "entry_date",
            "expiry_date",
            "completed_at",
            "source",
            "import_batch_id",
        ]
        read_only_fields = fields

    def _now(self):
        if "now" not in self.context:
            self.context["now"] = timezone.now()
        return self.context["now"]

    def get_effective_status(self, obj):
        return effective_status(obj, self._now())

    def get_is_expired(self, obj):
        return is_expired(obj, self._now())

    def get_due_amount(self, obj):
        if obj.status == EntryStatus.COMPLETED:
            return "0.00"
        if "rate" not in self.context:
            self.context["rate"] = ServiceSettings.get_solo().rate_per_locker_per_month
        return str(calculate_due_amount(obj.expiry_date, self._now(), self.context["rate"]))


class EntryDetailSerializer(EntrySerializer):
    payments = PaymentRecordSerializer(many=True, read_only=True)
    renewals = RenewalRecordSerializer(many=True, read_only=True)
    delivery_history = DeliveryTransactionSerializer(many=True, read_only=True)

    class Meta(EntrySerializer.Meta):
        fields = EntrySerializer.Meta.fields + ["payments", "renewals", "delivery_history"]
        read_only_fields = fields


class OTPChallengeSerializer(serializers.ModelSerializer):
    attempts_remaining = serializers.IntegerField(read_only=True)

    class Meta:
        model = OTPChallenge
        fields = [
            "id",
            "entry",
            "purpose",
            "expires_at",
            "attempts",
            "max_attempts",
            "attempts_remaining",
            "is_verified",
        ]
        read_only_fields = fields
