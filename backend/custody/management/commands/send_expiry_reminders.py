from django.core.management.base import BaseCommand

from custody.reminders import queue_expiry_reminders


class Command(BaseCommand):
    help = "Queue renewal and disposal reminders that are due today."

    def handle(self, *args, **options):
        queued = queue_expiry_reminders()
        self.stdout.write(self.style.SUCCESS(f"Queued {queued} reminders"))
