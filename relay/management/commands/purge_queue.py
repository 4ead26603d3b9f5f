"""
Django management command to run retention cleanup.
"""

from datetime import timedelta

from django.core.management.base import BaseCommand

from relay.cleanup import RetentionCleaner
from relay.services import get_services


class Command(BaseCommand):
    help = "Purge finished queue entries, old transfer logs and old sync runs"

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Report what would be deleted without actually deleting",
        )
        parser.add_argument(
            "--queue-hours",
            type=int,
            help="Retention for finished queue entries in hours (default: RELAY_QUEUE_RETENTION_HOURS)",
        )
        parser.add_argument(
            "--log-days",
            type=int,
            help="Retention for logs and sync runs in days (default: RELAY_LOG_RETENTION_DAYS)",
        )

    def handle(self, *args, **options):
        if options["dry_run"]:
            self.stdout.write(self.style.WARNING("Running in dry-run mode"))

        cleaner = RetentionCleaner(
            get_services().queue,
            queue_retention=timedelta(hours=options["queue_hours"]) if options["queue_hours"] else None,
            log_retention=timedelta(days=options["log_days"]) if options["log_days"] else None,
            dry_run=options["dry_run"],
        )
        result = cleaner.run()

        if options["dry_run"]:
            self.stdout.write(
                self.style.WARNING(
                    f"\n[DRY RUN] Would have purged:\n"
                    f"  - {result.logs_purged} transfer logs\n"
                    f"  - {result.sync_runs_purged} sync runs"
                )
            )
        else:
            self.stdout.write(
                self.style.SUCCESS(
                    f"\nCleanup completed:\n"
                    f"  - Purged {result.queue_entries_purged} queue entries\n"
                    f"  - Purged {result.logs_purged} transfer logs\n"
                    f"  - Purged {result.sync_runs_purged} sync runs"
                )
            )
