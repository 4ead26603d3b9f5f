import uuid

from django.core.exceptions import ValidationError
from django.db import models
from django.utils import timezone


class ConnectionStatus(models.TextChoices):
    CONNECTED = "connected", "Connected"
    DISCONNECTED = "disconnected", "Disconnected"
    ERROR = "error", "Error"


class TransferStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    RUNNING = "running", "Running"
    PAUSED = "paused", "Paused"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    CANCELLED = "cancelled", "Cancelled"


class SyncMode(models.TextChoices):
    ONE_WAY = "one_way", "One-way"
    TWO_WAY = "two_way", "Two-way"
    MIRROR = "mirror", "Mirror"


class ConflictPolicy(models.TextChoices):
    SKIP = "skip", "Skip"
    OVERWRITE = "overwrite", "Overwrite"
    RENAME = "rename", "Rename"


class RunStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    RUNNING = "running", "Running"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    STOPPED = "stopped", "Stopped"


class ControlRequest(models.TextChoices):
    NONE = "", "None"
    PAUSE = "pause", "Pause"
    CANCEL = "cancel", "Cancel"


class LogStatus(models.TextChoices):
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    SKIPPED = "skipped", "Skipped"


class Connection(models.Model):
    """
    A user's authenticated link to one storage backend.

    Credentials are stored externally in the secrets file,
    not in the database. See relay/secrets.py.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    owner_id = models.CharField(max_length=255, db_index=True)
    provider_type = models.CharField(max_length=50)
    alias = models.CharField(max_length=255)
    config = models.JSONField(default=dict, blank=True)
    status = models.CharField(
        max_length=20, choices=ConnectionStatus.choices, default=ConnectionStatus.DISCONNECTED
    )
    error_message = models.TextField(blank=True)
    last_contact_at = models.DateTimeField(null=True, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["owner_id", "provider_type"]),
        ]

    def __str__(self):
        return f"{self.alias} ({self.provider_type})"

    def clean(self):
        if self.status == ConnectionStatus.ERROR and not self.error_message.strip():
            raise ValidationError({"error_message": "A connection in error status needs an error message."})

    def mark_connected(self) -> None:
        self.status = ConnectionStatus.CONNECTED
        self.error_message = ""
        self.last_contact_at = timezone.now()
        self.save(update_fields=["status", "error_message", "last_contact_at", "updated_at"])

    def mark_error(self, message: str) -> None:
        if not message or not message.strip():
            raise ValueError("An error status requires a non-empty message")
        self.status = ConnectionStatus.ERROR
        self.error_message = message
        self.save(update_fields=["status", "error_message", "updated_at"])

    def mark_disconnected(self) -> None:
        self.status = ConnectionStatus.DISCONNECTED
        self.error_message = ""
        self.save(update_fields=["status", "error_message", "updated_at"])

    @property
    def is_referenced(self) -> bool:
        return (
            self.outgoing_transfers.exists()
            or self.incoming_transfers.exists()
            or self.outgoing_syncs.exists()
            or self.incoming_syncs.exists()
        )


class TransferJob(models.Model):
    """One directed, bounded copy of a file tree between two connections."""

    RESUMABLE_STATUSES = (
        TransferStatus.PENDING,
        TransferStatus.RUNNING,
        TransferStatus.PAUSED,
    )
    TERMINAL_STATUSES = (
        TransferStatus.COMPLETED,
        TransferStatus.FAILED,
        TransferStatus.CANCELLED,
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    owner_id = models.CharField(max_length=255, db_index=True)
    source_connection = models.ForeignKey(
        Connection, on_delete=models.PROTECT, related_name="outgoing_transfers"
    )
    destination_connection = models.ForeignKey(
        Connection, on_delete=models.PROTECT, related_name="incoming_transfers"
    )
    source_path = models.TextField(default="/")
    destination_path = models.TextField(default="/")
    status = models.CharField(
        max_length=20, choices=TransferStatus.choices, default=TransferStatus.PENDING
    )
    filters = models.JSONField(default=dict, blank=True)
    options = models.JSONField(default=dict, blank=True)

    # Counters
    files_total = models.PositiveIntegerField(default=0)
    files_completed = models.PositiveIntegerField(default=0)
    files_failed = models.PositiveIntegerField(default=0)
    bytes_total = models.BigIntegerField(default=0)
    bytes_transferred = models.BigIntegerField(default=0)

    # Derived metrics
    progress_percentage = models.PositiveSmallIntegerField(default=0)
    transfer_speed = models.FloatField(default=0, help_text="Bytes per second.")
    eta_seconds = models.FloatField(null=True, blank=True)
    current_file = models.TextField(blank=True)

    error_message = models.TextField(blank=True)
    control_request = models.CharField(
        max_length=10, choices=ControlRequest.choices, default=ControlRequest.NONE, blank=True
    )
    queue_entry_id = models.UUIDField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        indexes = [
            models.Index(fields=["owner_id", "status"]),
            models.Index(fields=["status"]),
        ]
        ordering = ["-created_at"]

    def __str__(self):
        return f"Transfer {self.source_path} -> {self.destination_path} ({self.get_status_display()})"

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES


class SyncJob(models.Model):
    """
    A recurring reconciliation rule between two connections.

    ``next_run_at`` is the job's single scheduled trigger; it is set exactly
    when the job has a schedule and is enabled.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    owner_id = models.CharField(max_length=255, db_index=True)
    name = models.CharField(max_length=255, blank=True)
    source_connection = models.ForeignKey(
        Connection, on_delete=models.PROTECT, related_name="outgoing_syncs"
    )
    destination_connection = models.ForeignKey(
        Connection, on_delete=models.PROTECT, related_name="incoming_syncs"
    )
    source_path = models.TextField(default="/")
    destination_path = models.TextField(default="/")
    mode = models.CharField(max_length=20, choices=SyncMode.choices, default=SyncMode.ONE_WAY)
    schedule = models.CharField(
        max_length=100, blank=True, help_text="Cron expression (UTC). Empty = manual only."
    )
    is_enabled = models.BooleanField(default=True)
    last_run_at = models.DateTimeField(null=True, blank=True)
    next_run_at = models.DateTimeField(null=True, blank=True)
    last_run_status = models.CharField(
        max_length=20, choices=RunStatus.choices, default=RunStatus.PENDING
    )
    last_run_message = models.TextField(blank=True)
    filters = models.JSONField(default=dict, blank=True)
    options = models.JSONField(default=dict, blank=True)
    conflict_policy = models.CharField(
        max_length=20, choices=ConflictPolicy.choices, default=ConflictPolicy.SKIP
    )
    control_request = models.CharField(
        max_length=10, choices=ControlRequest.choices, default=ControlRequest.NONE, blank=True
    )
    queue_entry_id = models.UUIDField(null=True, blank=True)
    # Relative path -> fingerprints of both sides after the last successful copy
    sync_state = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["is_enabled", "next_run_at"]),
            models.Index(fields=["owner_id"]),
        ]
        ordering = ["-created_at"]

    def __str__(self):
        label = self.name or f"{self.source_path} -> {self.destination_path}"
        return f"{label} ({self.get_mode_display()})"


class FileTransferLog(models.Model):
    """
    Per-file audit trail for transfers and sync runs.

    Completed entries also let a resumed transfer skip files it already copied.
    """

    transfer_job = models.ForeignKey(
        TransferJob,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="file_logs",
    )
    sync_run = models.ForeignKey(
        "relay.SyncRun",
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="file_logs",
    )
    operation = models.CharField(max_length=20)
    path = models.TextField()
    size = models.BigIntegerField(null=True, blank=True)
    status = models.CharField(max_length=20, choices=LogStatus.choices)
    error_message = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["transfer_job", "status"]),
            models.Index(fields=["created_at"]),
        ]
        ordering = ["created_at"]

    def __str__(self):
        return f"{self.operation} {self.path}: {self.get_status_display()}"


# Models defined in submodules register with this app through these imports
from relay.queue.models import LaneState, QueueEntry  # noqa: E402,F401
from relay.sync.models import SyncRun  # noqa: E402,F401
