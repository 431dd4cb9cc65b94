import logging
from datetime import datetime, timedelta

from django.utils import timezone

from .models import Entry, EntryStatus, NotificationIntent, ServiceSettings
from .notifications import TemplateKind, build_admin_intent, build_intent, format_date, write_intents

logger = logging.getLogger(__name__)

THREE_DAY_NOTICE = 3


def _already_queued(entry_id: int, template_kind: str, today) -> bool:
    return NotificationIntent.objects.filter(
        correlated_entry_id=entry_id,
        template_kind=template_kind,
        created_at__date=today,
    ).exists()


def reminder_intents_for(entry: Entry, today, settings: ServiceSettings) -> list:
    customer = entry.customer
    location = entry.location
    expiry_day = timezone.localtime(entry.expiry_date).date()
    days_left = (expiry_day - today).days
    renewal_values = [
        customer.name,
        location.venue_name,
        format_date(entry.expiry_date),
        location.contact_number,
        location.venue_name,
    ]

    if days_left == THREE_DAY_NOTICE:
        return [build_intent(TemplateKind.THREE_DAY_REMINDER, customer.mobile, renewal_values, entry.pk)]
    if days_left == 0:
        return [build_intent(TemplateKind.LAST_DAY_RENEWAL, customer.mobile, renewal_values, entry.pk)]
    if days_left == -settings.disposal_after_days:
        disposal_date = entry.expiry_date + timedelta(days=settings.disposal_after_days)
        return [
            build_intent(
                TemplateKind.FINAL_DISPOSAL_REMINDER,
                customer.mobile,
                [customer.name, location.venue_name, format_date(disposal_date)],
                entry.pk,
            ),
            build_admin_intent(
                TemplateKind.FINAL_DISPOSAL_REMINDER_ADMIN,
                settings.admin_contact,
                [customer.name, location.venue_name],
                entry.pk,
            ),
        ]
    return []


def queue_expiry_reminders(now: datetime | None = None) -> int:
    """Queue the reminders due today. Each kind goes out at most once per entry per day."""
    now = now or timezone.now()
    today = timezone.localtime(now).date()
    settings = ServiceSettings.get_solo()
    entries = Entry.objects.filter(status=EntryStatus.ACTIVE).select_related("customer", "location")

    pending = []
    for entry in entries.iterator():
        for intent in reminder_intents_for(entry, today, settings):
            if intent is None or _already_queued(entry.pk, intent.template_kind, today):
                continue
            pending.append(intent)

    queued = write_intents(pending)
    logger.info("Queued %s expiry reminders for %s", len(queued), today.isoformat())
    return len(queued)
