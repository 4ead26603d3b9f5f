"""
Durable multi-lane job queue.

Units of work are QueueEntry rows. ``dispatch`` claims eligible entries on a
lane (up to its free concurrency slots) by flipping them to ACTIVE while
holding the lane's row lock, then hands each claimed entry to the sender,
by default a Celery task routed to the lane's Celery queue. The worker
calls ``process``, which runs the handler registered for the entry's kind
and records completion, a delayed retry, or permanent failure.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from django.conf import settings
from django.db import transaction
from django.db.models import Count
from django.utils import timezone

from relay.events import Event, EventBus, EventType
from relay.exceptions import InvalidJobStateError, InvalidRequestError
from relay.providers.errors import RateLimitError
from relay.queue.lanes import LaneConfig, load_lanes
from relay.queue.models import EntryState, LaneState, QueueEntry

logger = logging.getLogger(__name__)

Handler = Callable[[dict, "JobContext"], Any]
# Called with (payload, entry_id, message) once an entry has failed for good
FailureHook = Callable[[dict, Any, str], None]
Sender = Callable[[QueueEntry], None]


def will_retry(error: Exception, attempts_made: int, max_attempts: int) -> bool:
    """True if a handler failing with ``error`` gets another attempt."""
    # Errors without a classification are assumed transient
    return getattr(error, "retryable", True) and attempts_made < max_attempts


def celery_sender(entry: QueueEntry) -> None:
    """Send a claimed entry to the Celery queue named after its lane."""
    from relay.tasks import process_queue_entry

    process_queue_entry.apply_async(args=[str(entry.id)], queue=entry.lane)


@dataclass
class LaneStats:
    lane: str
    waiting: int = 0
    delayed: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    stalled: int = 0
    paused: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class JobContext:
    """Handle given to a running handler for liveness and progress reporting."""

    def __init__(self, queue: "JobQueue", entry: QueueEntry):
        self.queue = queue
        self.entry_id = entry.id
        self.lane = entry.lane
        self.kind = entry.kind
        self.owner_id = entry.owner_id
        self.attempt = entry.attempts_made
        self.max_attempts = entry.max_attempts

    def will_retry(self, error: Exception) -> bool:
        """True if the queue will schedule another attempt after ``error``."""
        return will_retry(error, self.attempt, self.max_attempts)

    def heartbeat(self) -> None:
        QueueEntry.objects.filter(id=self.entry_id, state=EntryState.ACTIVE).update(
            heartbeat_at=timezone.now()
        )

    def progress(self, data: dict) -> None:
        QueueEntry.objects.filter(id=self.entry_id, state=EntryState.ACTIVE).update(
            heartbeat_at=timezone.now(), progress=data
        )
        self.queue.emit(
            EventType.QUEUE_PROGRESS,
            owner_id=self.owner_id,
            payload={"entry_id": str(self.entry_id), "lane": self.lane, "kind": self.kind, "progress": data},
        )


class JobQueue:
    def __init__(
        self,
        lanes: dict[str, LaneConfig] | None = None,
        event_bus: EventBus | None = None,
        sender: Sender | None = None,
        auto_dispatch: bool = True,
    ):
        self.lanes = lanes or load_lanes()
        self.event_bus = event_bus
        self.auto_dispatch = auto_dispatch
        self._sender = sender or celery_sender
        self._handlers: dict[str, Handler] = {}
        self._failure_hooks: dict[str, FailureHook] = {}

    def register_handler(self, kind: str, handler: Handler, on_failure: FailureHook | None = None) -> None:
        """
        Route entries of ``kind`` to ``handler``.

        ``on_failure`` runs when an entry of this kind fails permanently,
        including when it stalls with no attempts left, so the owner of the
        job can settle its own state.
        """
        self._handlers[kind] = handler
        if on_failure is not None:
            self._failure_hooks[kind] = on_failure
        else:
            self._failure_hooks.pop(kind, None)

    def lane(self, name: str) -> LaneConfig:
        try:
            return self.lanes[name]
        except KeyError:
            raise InvalidRequestError(f"Unknown queue lane '{name}'") from None

    def emit(self, event_type: str, owner_id: str = "", payload: dict | None = None) -> None:
        if self.event_bus is None:
            return
        payload = payload or {}
        self.event_bus.publish(Event(
            type=event_type,
            owner_id=owner_id or "",
            job_id=payload.get("job_id"),
            payload=payload,
        ))

    def _emit_for(self, event_type: str, entry: QueueEntry, **extra) -> None:
        payload = {
            "entry_id": str(entry.id),
            "lane": entry.lane,
            "kind": entry.kind,
            "job_id": (entry.payload or {}).get("job_id"),
            **extra,
        }
        self.emit(event_type, owner_id=entry.owner_id, payload=payload)

    def enqueue(
        self,
        lane: str,
        kind: str,
        payload: dict | None = None,
        *,
        owner_id: str = "",
        priority: int = 0,
        delay: float = 0,
        max_attempts: int | None = None,
        entry_id=None,
        auto_dispatch: bool | None = None,
    ) -> QueueEntry:
        """
        Add a unit of work to ``lane``.

        Args:
            lane: Lane name
            kind: Handler key, e.g. "transfer.run"
            payload: JSON-serializable arguments for the handler
            owner_id: Owner the lifecycle events are addressed to
            priority: Higher values dispatch first
            delay: Seconds before the entry becomes eligible
            max_attempts: Override the lane's attempt bound
            entry_id: Id to create the entry under, when the caller has
                already recorded it elsewhere
            auto_dispatch: Override the queue's setting. Callers enqueueing
                inside a transaction pass False and dispatch after commit

        Returns:
            The created QueueEntry
        """
        config = self.lane(lane)
        now = timezone.now()
        fields = {"id": entry_id} if entry_id is not None else {}
        entry = QueueEntry.objects.create(
            **fields,
            lane=lane,
            kind=kind,
            payload=payload or {},
            owner_id=owner_id or "",
            priority=priority,
            state=EntryState.DELAYED if delay > 0 else EntryState.WAITING,
            max_attempts=max_attempts or config.max_attempts,
            available_at=now + timedelta(seconds=delay),
        )
        logger.info(f"Queued {kind} on {lane} as {entry.id} (priority={priority}, delay={delay}s)")
        self._emit_for(EventType.QUEUE_QUEUED, entry)

        if auto_dispatch is None:
            auto_dispatch = self.auto_dispatch
        if auto_dispatch and delay <= 0:
            self.dispatch(lane)
        return entry

    def dispatch(self, lane: str, now: datetime | None = None) -> list[QueueEntry]:
        """
        Claim eligible entries on ``lane`` and send them to workers.

        Eligible means WAITING, STALLED, or DELAYED with ``available_at`` in
        the past. At most ``concurrency`` entries are ACTIVE per lane.
        """
        config = self.lane(lane)
        now = now or timezone.now()
        claimed = []

        with transaction.atomic():
            state, _ = LaneState.objects.select_for_update().get_or_create(lane=lane)
            if state.is_paused:
                return []

            active = QueueEntry.objects.filter(lane=lane, state=EntryState.ACTIVE).count()
            slots = config.concurrency - active
            if slots <= 0:
                return []

            candidates = (
                QueueEntry.objects.select_for_update(skip_locked=True)
                .filter(
                    lane=lane,
                    state__in=[EntryState.WAITING, EntryState.DELAYED, EntryState.STALLED],
                    available_at__lte=now,
                )
                .order_by("-priority", "available_at", "created_at")[:slots]
            )
            for entry in candidates:
                entry.state = EntryState.ACTIVE
                entry.attempts_made += 1
                entry.started_at = now
                entry.heartbeat_at = now
                entry.save(update_fields=["state", "attempts_made", "started_at", "heartbeat_at", "updated_at"])
                claimed.append(entry)

        for entry in claimed:
            try:
                self._sender(entry)
            except Exception as e:
                logger.error(f"Failed to send queue entry {entry.id} to a worker: {e}", exc_info=True)
                QueueEntry.objects.filter(id=entry.id, state=EntryState.ACTIVE).update(
                    state=EntryState.WAITING,
                    attempts_made=entry.attempts_made - 1,
                    heartbeat_at=None,
                )
        return claimed

    def process(self, entry_id) -> Any:
        """
        Run the handler for a claimed entry. Called on the worker.

        Returns:
            The handler's result, or None if the entry was skipped or failed
        """
        try:
            entry = QueueEntry.objects.get(id=entry_id)
        except QueueEntry.DoesNotExist:
            logger.warning(f"Queue entry {entry_id} not found")
            return None

        if entry.state != EntryState.ACTIVE:
            logger.warning(f"Queue entry {entry.id} is {entry.state}, not active; skipping")
            return None

        handler = self._handlers.get(entry.kind)
        if handler is None:
            self._finish_failed(entry, f"No handler registered for '{entry.kind}'")
            return None

        logger.info(f"Processing {entry.kind} {entry.id} (attempt {entry.attempts_made}/{entry.max_attempts})")
        self._emit_for(EventType.QUEUE_STARTED, entry, attempt=entry.attempts_made)

        try:
            result = handler(entry.payload or {}, JobContext(self, entry))
        except Exception as e:
            self._handle_failure(entry, e)
            self._refill(entry.lane)
            return None

        QueueEntry.objects.filter(id=entry.id).update(
            state=EntryState.COMPLETED,
            finished_at=timezone.now(),
            result=result if isinstance(result, (dict, list)) else None,
            error_message="",
        )
        logger.info(f"Completed {entry.kind} {entry.id}")
        self._emit_for(EventType.QUEUE_COMPLETED, entry)
        self._refill(entry.lane)
        return result

    def _refill(self, lane: str) -> None:
        """A slot just freed up on ``lane``; hand it the next eligible entry."""
        if not self.auto_dispatch:
            return
        try:
            self.dispatch(lane)
        except Exception as e:
            logger.error(f"Dispatch after completion failed on {lane}: {e}", exc_info=True)

    def _handle_failure(self, entry: QueueEntry, error: Exception) -> None:
        config = self.lane(entry.lane)
        message = f"{type(error).__name__}: {error}"

        if will_retry(error, entry.attempts_made, entry.max_attempts):
            delay = config.backoff_for(entry.attempts_made)
            if isinstance(error, RateLimitError) and error.retry_after:
                delay = max(delay, error.retry_after)

            QueueEntry.objects.filter(id=entry.id).update(
                state=EntryState.DELAYED,
                available_at=timezone.now() + timedelta(seconds=delay),
                heartbeat_at=None,
                error_message=message,
            )
            logger.warning(
                f"{entry.kind} {entry.id} failed on attempt {entry.attempts_made}/"
                f"{entry.max_attempts}: {message}. Retrying in {delay:.0f}s"
            )
            self._emit_for(EventType.QUEUE_FAILED, entry, error=message, will_retry=True)
            return

        logger.error(f"{entry.kind} {entry.id} failed permanently: {message}", exc_info=error)
        self._finish_failed(entry, message)

    def _finish_failed(self, entry: QueueEntry, message: str) -> None:
        QueueEntry.objects.filter(id=entry.id).update(
            state=EntryState.FAILED,
            finished_at=timezone.now(),
            error_message=message,
        )
        self._emit_for(EventType.QUEUE_FAILED, entry, error=message, will_retry=False)

        hook = self._failure_hooks.get(entry.kind)
        if hook is None:
            return
        try:
            hook(entry.payload or {}, entry.id, message)
        except Exception as e:
            logger.error(f"Failure hook for {entry.kind} {entry.id} raised: {e}", exc_info=True)

    def check_stalled(self, now: datetime | None = None) -> int:
        """
        Mark ACTIVE entries without a recent heartbeat as STALLED.

        Stalled entries are eligible for dispatch again; entries that already
        used all their attempts are failed instead.
        """
        now = now or timezone.now()
        stalled = 0

        for name, config in self.lanes.items():
            cutoff = now - timedelta(seconds=config.stall_timeout_seconds)
            entries = QueueEntry.objects.filter(
                lane=name, state=EntryState.ACTIVE, heartbeat_at__lt=cutoff
            )
            for entry in entries:
                if entry.attempts_made >= entry.max_attempts:
                    logger.error(f"{entry.kind} {entry.id} stalled with no attempts left")
                    self._finish_failed(entry, "Worker stopped reporting liveness")
                    continue

                updated = QueueEntry.objects.filter(id=entry.id, state=EntryState.ACTIVE).update(
                    state=EntryState.STALLED, available_at=now
                )
                if updated:
                    stalled += 1
                    logger.warning(f"{entry.kind} {entry.id} stalled (last heartbeat {entry.heartbeat_at})")
                    self._emit_for(EventType.QUEUE_STALLED, entry)
        return stalled

    def pump(self, now: datetime | None = None) -> dict:
        """Periodic maintenance: detect stalls, then dispatch every lane."""
        now = now or timezone.now()
        stalled = self.check_stalled(now)
        dispatched = {name: len(self.dispatch(name, now)) for name in self.lanes}
        return {"stalled": stalled, "dispatched": dispatched}

    def pause_lane(self, lane: str) -> None:
        self.lane(lane)
        LaneState.objects.update_or_create(lane=lane, defaults={"is_paused": True})
        logger.info(f"Paused lane {lane}")

    def resume_lane(self, lane: str) -> None:
        self.lane(lane)
        LaneState.objects.update_or_create(lane=lane, defaults={"is_paused": False})
        logger.info(f"Resumed lane {lane}")
        if self.auto_dispatch:
            self.dispatch(lane)

    def is_paused(self, lane: str) -> bool:
        return LaneState.objects.filter(lane=lane, is_paused=True).exists()

    def stats(self, lane: str) -> LaneStats:
        self.lane(lane)
        stats = LaneStats(lane=lane, paused=self.is_paused(lane))
        counts = (
            QueueEntry.objects.filter(lane=lane)
            .values("state")
            .annotate(count=Count("id"))
            .order_by()
        )
        for row in counts:
            setattr(stats, row["state"], row["count"])
        return stats

    def purge(self, older_than: timedelta | None = None, lane: str | None = None) -> int:
        """Delete completed and failed entries finished before the retention window."""
        if older_than is None:
            older_than = timedelta(hours=getattr(settings, "RELAY_QUEUE_RETENTION_HOURS", 24))
        cutoff = timezone.now() - older_than

        entries = QueueEntry.objects.filter(
            state__in=QueueEntry.FINISHED_STATES, finished_at__lt=cutoff
        )
        if lane is not None:
            entries = entries.filter(lane=lane)
        deleted, _ = entries.delete()
        logger.info(f"Purged {deleted} finished queue entries older than {older_than}")
        return deleted

    def get_entry(self, entry_id) -> QueueEntry | None:
        if entry_id is None:
            return None
        return QueueEntry.objects.filter(id=entry_id).first()

    def has_pending(self, entry_id) -> bool:
        """True if the entry exists and has not finished."""
        if entry_id is None:
            return False
        return QueueEntry.objects.filter(id=entry_id, state__in=QueueEntry.PENDING_STATES).exists()

    def remove_entry(self, entry_id) -> bool:
        """
        Remove an entry that is not running.

        Raises:
            InvalidJobStateError: If the entry is ACTIVE
        """
        entry = self.get_entry(entry_id)
        if entry is None:
            return False
        if entry.state == EntryState.ACTIVE:
            raise InvalidJobStateError(f"Queue entry {entry.id} is active and cannot be removed")
        entry.delete()
        return True
