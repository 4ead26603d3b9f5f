"""
Durable registry behind the job queue.
"""

import uuid

from django.db import models
from django.utils import timezone


class EntryState(models.TextChoices):
    WAITING = "waiting", "Waiting"
    DELAYED = "delayed", "Delayed"
    ACTIVE = "active", "Active"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    STALLED = "stalled", "Stalled"


class QueueEntry(models.Model):
    """
    One unit of work on a lane.

    An entry is claimed by flipping it to ACTIVE under a lock on its lane,
    which is what guarantees it reaches at most one worker at a time.
    """

    PENDING_STATES = (
        EntryState.WAITING,
        EntryState.DELAYED,
        EntryState.ACTIVE,
        EntryState.STALLED,
    )
    FINISHED_STATES = (EntryState.COMPLETED, EntryState.FAILED)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    lane = models.CharField(max_length=32)
    kind = models.CharField(max_length=64)
    payload = models.JSONField(default=dict, blank=True)
    owner_id = models.CharField(max_length=255, blank=True)
    priority = models.IntegerField(default=0, help_text="Higher values dispatch first.")
    state = models.CharField(max_length=20, choices=EntryState.choices, default=EntryState.WAITING)
    attempts_made = models.PositiveIntegerField(default=0)
    max_attempts = models.PositiveIntegerField(default=3)
    available_at = models.DateTimeField(default=timezone.now)
    started_at = models.DateTimeField(null=True, blank=True)
    heartbeat_at = models.DateTimeField(null=True, blank=True)
    finished_at = models.DateTimeField(null=True, blank=True)
    progress = models.JSONField(null=True, blank=True)
    result = models.JSONField(null=True, blank=True)
    error_message = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["lane", "state", "available_at"]),
            models.Index(fields=["state", "finished_at"]),
        ]
        ordering = ["-priority", "created_at"]
        verbose_name_plural = "Queue entries"

    def __str__(self):
        return f"{self.kind} on {self.lane} ({self.get_state_display()})"


class LaneState(models.Model):
    """Administrative state of a lane; the row is also the lane's dispatch lock."""

    lane = models.CharField(max_length=32, primary_key=True)
    is_paused = models.BooleanField(default=False)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.lane} ({'paused' if self.is_paused else 'running'})"
