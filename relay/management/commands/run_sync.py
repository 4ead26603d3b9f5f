"""
Django management command to run a sync job.
"""

from django.core.management.base import BaseCommand, CommandError

from relay.exceptions import RelayError
from relay.models import RunStatus
from relay.results import capture
from relay.services import get_services


class Command(BaseCommand):
    help = "Run a sync job inline, or queue it for a worker with --queue"

    def add_arguments(self, parser):
        parser.add_argument("job_id", nargs="?", help="Sync job id")
        parser.add_argument(
            "--queue",
            action="store_true",
            help="Enqueue the run on the sync lane instead of running it here",
        )
        parser.add_argument(
            "--due",
            action="store_true",
            help="Start every enabled job whose scheduled time has passed",
        )

    def handle(self, *args, **options):
        syncs = get_services().syncs

        if options["due"]:
            started = syncs.trigger_due_syncs()
            self.stdout.write(self.style.SUCCESS(f"Started {len(started)} scheduled sync(s)"))
            for job_id in started:
                self.stdout.write(f"  - {job_id}")
            return

        if not options["job_id"]:
            raise CommandError("Provide a job id or --due")

        try:
            job = syncs.get_sync_job(options["job_id"])
        except RelayError as e:
            raise CommandError(str(e))

        self.stdout.write(self.style.WARNING(f"\nSyncing: {job.name or job.id} ({job.mode})"))

        if options["queue"]:
            try:
                syncs.start_sync(job.id)
            except RelayError as e:
                raise CommandError(f"Could not queue sync: {e}")
            self.stdout.write(self.style.SUCCESS("✓ Sync queued"))
            return

        if not job.is_enabled:
            raise CommandError(f"Sync job {job.id} is disabled")

        outcome = capture(syncs.run_sync, job.id)
        if not outcome.success:
            self.stdout.write(self.style.ERROR(f"\n✗ Sync failed: {outcome.message}"))
            raise CommandError(f"Sync failed ({outcome.error}): {outcome.message}")
        result = outcome.data

        if result["status"] != RunStatus.COMPLETED:
            self.stdout.write(self.style.WARNING(f"\nSync ended with status {result['status']}"))
            return

        self.stdout.write(
            self.style.SUCCESS(
                f"\n✓ Sync completed:\n"
                f"  - Operations planned: {result['operations_planned']}\n"
                f"  - Uploaded: {result['uploads']}\n"
                f"  - Downloaded: {result['downloads']}\n"
                f"  - Deleted: {result['deletes']}\n"
                f"  - Bytes transferred: {result['bytes_transferred']:,}\n"
                f"  - Failures: {result['failures']}"
            )
        )

        errors = result["errors"]
        if errors:
            self.stdout.write(
                self.style.WARNING(f"\n⚠ Encountered {len(errors)} error(s) during sync")
            )
            for i, error in enumerate(errors[:5], 1):
                self.stdout.write(f"  {i}. {error}")
            if len(errors) > 5:
                self.stdout.write(f"  ... and {len(errors) - 5} more")
