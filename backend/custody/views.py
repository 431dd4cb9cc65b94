import csv
import io
import uuid

from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response
from rest_framework.views import APIView

from django.http import HttpResponse
from django.utils import timezone
from django.utils.dateparse import parse_date

import qrcode

from .exceptions import ValidationError
from .inventory import is_locker_available
from .lifecycle import bulk_import_entries, create_entry, entries_needing_renewal, rollback_import_batch
from .models import Entry, EntryStatus, Location
from .otp import issue_challenge, verify_challenge
from .reconciliation import DispatchFilters, get_unified_dispatch_records, summarize_dispatch_records
from .releases import HandoverInfo, PaymentInfo, process_delivery, process_release
from .renewals import process_renewal
from .serializers import EntryDetailSerializer, EntrySerializer, OTPChallengeSerializer
from .throttles import OtpEntryRateThrottle, OtpRateThrottle, ReportsRateThrottle
from .validators import normalize_mobile, validate_positive_int
from users.permissions import IsAdminUserRole, IsOperatorOrAdminRole


def _parse_date_range(request):
    start_param = request.query_params.get("from")
    end_param = request.query_params.get("to")
    try:
        start_date = parse_date(start_param) if start_param else None
    except ValueError:
        start_date = None
    try:
        end_date = parse_date(end_param) if end_param else None
    except ValueError:
        end_date = None
    if start_param and not start_date:
        return None, None, Response({"detail": "Invalid from date"}, status=status.HTTP_400_BAD_REQUEST)
    if end_param and not end_date:
        return None, None, Response({"detail": "Invalid to date"}, status=status.HTTP_400_BAD_REQUEST)
    return start_date, end_date, None


def _parse_public_id(value):
    if not value:
        return None, Response({"detail": "public_id is required"}, status=status.HTTP_400_BAD_REQUEST)
    try:
        return uuid.UUID(str(value)), None
    except (ValueError, TypeError):
        return None, Response({"detail": "Invalid public_id"}, status=status.HTTP_400_BAD_REQUEST)


def _dispatch_filters(request):
    start_date, end_date, error_response = _parse_date_range(request)
    if error_response:
        return None, error_response
    params = request.query_params
    entry_id = params.get("entry")
    filters = DispatchFilters(
        start_date=start_date,
        end_date=end_date,
        location=params.get("location") or None,
        operator=params.get("operator") or None,
        dispatch_type=params.get("dispatch_type") or None,
        source_collection=params.get("source") or None,
        entry_id=validate_positive_int(entry_id, "entry") if entry_id else None,
    )
    return filters, None


def _payment_from(data) -> PaymentInfo:
    return PaymentInfo(
        amount=data.get("amount_paid"),
        method=data.get("payment_method") or "cash",
        due_amount=data.get("due_amount"),
        reason=data.get("reason") or "",
    )


def _handover_from(data) -> HandoverInfo:
    return HandoverInfo(
        name=data.get("handover_person_name") or "",
        mobile=data.get("handover_person_mobile") or "",
    )


class EntryViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    queryset = Entry.objects.select_related("customer", "location", "operator").order_by("-entry_date", "-id")
    serializer_class = EntrySerializer
    permission_classes = [IsOperatorOrAdminRole]

    def get_permissions(self):
        if self.action == "rollback_batch":
            return [IsAdminUserRole()]
        return super().get_permissions()

    def get_serializer_class(self):
        if self.action == "retrieve":
            return EntryDetailSerializer
        return super().get_serializer_class()

    def get_queryset(self):
        qs = super().get_queryset()
        if self.action == "retrieve":
            qs = qs.prefetch_related("payments__actor", "renewals__actor", "delivery_history__actor")
        params = self.request.query_params
        status_filter = params.get("status")
        now = timezone.now()
        if status_filter == EntryStatus.EXPIRED:
            qs = qs.filter(status=EntryStatus.ACTIVE, expiry_date__lt=now)
        elif status_filter == EntryStatus.ACTIVE:
            qs = qs.filter(status=EntryStatus.ACTIVE, expiry_date__gte=now)
        elif status_filter:
            qs = qs.filter(status=status_filter)
        location = params.get("location")
        if location:
            if location.isdigit():
                qs = qs.filter(location_id=location)
            else:
                qs = qs.filter(location__venue_name__iexact=location)
        if params.get("needs_renewal") in {"1", "true", "yes"}:
            qs = qs.filter(pk__in=entries_needing_renewal(now).values("pk"))
        return qs

    def create(self, request, *args, **kwargs):
        data = request.data
        entry = create_entry(
            customer_name=data.get("customer_name"),
            customer_mobile=data.get("customer_mobile"),
            customer_city=data.get("customer_city", ""),
            location_id=data.get("location_id"),
            locker_number=data.get("locker_number"),
            total_pots=data.get("total_pots"),
            deceased_person_name=data.get("deceased_person_name", ""),
            additional_details=data.get("additional_details", ""),
            payment_method=data.get("payment_method") or "cash",
            actor=request.user,
        )
        serializer = EntrySerializer(entry, context=self.get_serializer_context())
        return Response(serializer.data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["post"], url_path="release")
    def release(self, request, pk=None):
        data = request.data
        outcome = process_release(
            pk,
            locker_number=data.get("locker_number"),
            pots_to_release=data.get("pots_to_release"),
            handover=_handover_from(data),
            payment=_payment_from(data),
            actor=request.user,
        )
        return Response(outcome.as_dict())

    @action(detail=True, methods=["post"], url_path="deliver")
    def deliver(self, request, pk=None):
        data = request.data
        outcome = process_delivery(
            pk,
            handover=_handover_from(data),
            payment=_payment_from(data),
            actor=request.user,
            challenge_id=data.get("challenge_id"),
        )
        return Response(outcome.as_dict())

    @action(detail=True, methods=["post"], url_path="renew")
    def renew(self, request, pk=None):
        data = request.data
        outcome = process_renewal(
            pk,
            months=data.get("months"),
            method=data.get("method"),
            amount=data.get("amount"),
            actor=request.user,
            challenge_id=data.get("challenge_id"),
        )
        return Response(outcome.as_dict())

    @action(detail=False, methods=["get"], url_path="lookup")
    def lookup(self, request):
        identifier = request.query_params.get("q")
        if not identifier:
            return Response({"detail": "q is required"}, status=status.HTTP_400_BAD_REQUEST)
        identifier = identifier.strip().strip("/")

        qs = self.queryset
        try:
            entries = list(qs.filter(public_id=uuid.UUID(identifier)))
        except ValueError:
            entries = []
        if not entries:
            try:
                mobile = normalize_mobile(identifier)
            except ValidationError:
                mobile = None
            if mobile:
                entries = list(qs.filter(customer__mobile=mobile))
        if not entries:
            return Response({"detail": "Entry not found"}, status=status.HTTP_404_NOT_FOUND)
        return Response(self.get_serializer(entries, many=True).data)

    @action(detail=False, methods=["get"], url_path="qr")
    def qr(self, request):
        public_uuid, error_response = _parse_public_id(request.query_params.get("public_id"))
        if error_response:
            return error_response

        entry = Entry.objects.filter(public_id=public_uuid).first()
        if entry is None:
            return Response({"detail": "Entry not found"}, status=status.HTTP_404_NOT_FOUND)

        img = qrcode.make(str(entry.public_id))
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        return HttpResponse(buffer.getvalue(), content_type="image/png")

    @action(detail=False, methods=["post"], url_path="bulk")
    def bulk(self, request):
        rows = request.data.get("entries")
        if not isinstance(rows, list) or not rows:
            return Response({"detail": "entries must be a non-empty list"}, status=status.HTTP_400_BAD_REQUEST)
        result = bulk_import_entries(rows, actor=request.user)
        return Response(result, status=status.HTTP_201_CREATED if result["created"] else status.HTTP_200_OK)

    @action(detail=False, methods=["post"], url_path="rollback-batch")
    def rollback_batch(self, request):
        batch_id = request.data.get("batch_id")
        deleted = rollback_import_batch(batch_id, actor=request.user)
        return Response({"batch_id": batch_id, "deleted": deleted})


class OtpIssueView(APIView):
    permission_classes = [IsOperatorOrAdminRole]
    throttle_classes = [OtpRateThrottle, OtpEntryRateThrottle]

    def post(self, request):
        challenge = issue_challenge(
            request.data.get("entry_id"),
            request.data.get("purpose"),
            actor=request.user,
        )
        return Response(OTPChallengeSerializer(challenge).data, status=status.HTTP_201_CREATED)


class OtpVerifyView(APIView):
    permission_classes = [IsOperatorOrAdminRole]
    throttle_classes = [OtpRateThrottle]

    def post(self, request):
        result = verify_challenge(
            request.data.get("challenge_id"),
            request.data.get("code"),
            actor=request.user,
        )
        return Response(result.as_dict())


class DispatchRecordsView(APIView):
    permission_classes = [IsOperatorOrAdminRole]
    throttle_classes = [ReportsRateThrottle]

    def get(self, request):
        filters, error_response = _dispatch_filters(request)
        if error_response:
            return error_response
        records = get_unified_dispatch_records(filters)
        return Response([record.as_dict() for record in records])


class DispatchStatsView(APIView):
    permission_classes = [IsOperatorOrAdminRole]
    throttle_classes = [ReportsRateThrottle]

    def get(self, request):
        filters, error_response = _dispatch_filters(request)
        if error_response:
            return error_response
        return Response(summarize_dispatch_records(get_unified_dispatch_records(filters)))


class DispatchCsvView(APIView):
    permission_classes = [IsOperatorOrAdminRole]
    throttle_classes = [ReportsRateThrottle]

    columns = [
        "id",
        "source_collection",
        "entry_id",
        "dispatch_date",
        "customer_name",
        "customer_mobile",
        "location_name",
        "operator_name",
        "dispatch_type",
        "pots_dispatched",
        "remaining_pots",
        "payment_amount",
        "payment_type",
    ]

    def get(self, request):
        filters, error_response = _dispatch_filters(request)
        if error_response:
            return error_response

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(self.columns)
        for record in get_unified_dispatch_records(filters):
            writer.writerow(
                [
                    record.id,
                    record.source_collection,
                    record.entry_id or "",
                    record.dispatch_date.isoformat(),
                    record.customer_name,
                    record.customer_mobile,
                    record.location_name,
                    record.operator_name,
                    record.dispatch_type,
                    record.pots_dispatched,
                    record.remaining_pots,
                    record.payment_amount,
                    record.payment_type,
                ]
            )
        response = HttpResponse(buffer.getvalue(), content_type="text/csv")
        response["Content-Disposition"] = "attachment; filename=\"dispatch_report.csv\""
        return response


class LockerAvailabilityView(APIView):
    permission_classes = [IsOperatorOrAdminRole]

    def get(self, request):
        location_id = validate_positive_int(request.query_params.get("location"), "location")
        locker_number = validate_positive_int(request.query_params.get("locker_number"), "locker_number")
        if not Location.objects.filter(pk=location_id).exists():
            return Response({"detail": "Location not found"}, status=status.HTTP_404_NOT_FOUND)

        return Response(
            {
                "location": location_id,
                "locker_number": locker_number,
                "available": is_locker_available(location_id, locker_number),
            }
        )
