"""
Models for tracking sync runs.
"""

from django.db import models

from relay.models import RunStatus, SyncJob


class SyncRun(models.Model):
    """
    Records each reconciliation pass for audit and debugging.

    Tracks operation counts, bytes moved and the error that ended the run,
    if any. Per-file detail lives in FileTransferLog.
    """

    sync_job = models.ForeignKey(SyncJob, on_delete=models.CASCADE, related_name="runs")
    trigger = models.CharField(max_length=20, default="manual")
    started_at = models.DateTimeField(auto_now_add=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    status = models.CharField(max_length=20, choices=RunStatus.choices, default=RunStatus.RUNNING)

    # Statistics
    operations_planned = models.PositiveIntegerField(default=0)
    uploads = models.PositiveIntegerField(default=0)
    downloads = models.PositiveIntegerField(default=0)
    deletes = models.PositiveIntegerField(default=0)
    failures = models.PositiveIntegerField(default=0)
    bytes_transferred = models.BigIntegerField(default=0)

    # Error tracking
    error_message = models.TextField(blank=True)

    class Meta:
        indexes = [
            models.Index(fields=["sync_job", "-started_at"]),
            models.Index(fields=["status"]),
        ]
        ordering = ["-started_at"]

    def __str__(self):
        return f"Run of {self.sync_job} - {self.get_status_display()}"
