"""
Retention cleanup for relay bookkeeping.

Removes finished queue entries, per-file transfer logs and sync run
records once they are older than their retention windows.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import timedelta

from django.conf import settings
from django.utils import timezone

from relay.models import FileTransferLog, RunStatus, TransferJob
from relay.queue.manager import JobQueue
from relay.sync.models import SyncRun

logger = logging.getLogger(__name__)


@dataclass
class CleanupResult:
    """Result of a cleanup run."""

    queue_entries_purged: int = 0
    logs_purged: int = 0
    sync_runs_purged: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class RetentionCleaner:
    def __init__(
        self,
        queue: JobQueue,
        queue_retention: timedelta | None = None,
        log_retention: timedelta | None = None,
        dry_run: bool = False,
    ):
        """
        Args:
            queue: Queue whose finished entries are purged
            queue_retention: Age after which finished entries go (default from settings)
            log_retention: Age after which logs and runs go (default from settings)
            dry_run: If True, count what would be deleted without deleting
        """
        self.queue = queue
        self.queue_retention = queue_retention or timedelta(
            hours=getattr(settings, "RELAY_QUEUE_RETENTION_HOURS", 24)
        )
        self.log_retention = log_retention or timedelta(
            days=getattr(settings, "RELAY_LOG_RETENTION_DAYS", 30)
        )
        self.dry_run = dry_run

    def run(self) -> CleanupResult:
        result = CleanupResult()
        logger.info(f"Starting cleanup (dry_run={self.dry_run})")

        cutoff = timezone.now() - self.log_retention

        # Logs of a transfer that can still resume are kept regardless of age
        logs = FileTransferLog.objects.filter(created_at__lt=cutoff).exclude(
            transfer_job__status__in=TransferJob.RESUMABLE_STATUSES
        )
        runs = SyncRun.objects.filter(started_at__lt=cutoff).exclude(status=RunStatus.RUNNING)

        if self.dry_run:
            result.logs_purged = logs.count()
            result.sync_runs_purged = runs.count()
        else:
            result.queue_entries_purged = self.queue.purge(older_than=self.queue_retention)
            result.logs_purged, _ = logs.delete()
            # Deleting a run cascades to its remaining file logs
            _, deleted = runs.delete()
            result.sync_runs_purged = deleted.get(SyncRun._meta.label, 0)

        logger.info(
            f"Cleanup complete: {result.queue_entries_purged} queue entries, "
            f"{result.logs_purged} logs, {result.sync_runs_purged} sync runs"
        )
        return result
