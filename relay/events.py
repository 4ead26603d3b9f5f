"""
Lifecycle events and their fire-and-forget delivery.

Engines and the job queue publish typed events to an EventBus. Subscribers
run on a small thread pool (or inline when configured) so publishing never
blocks on delivery, and a failing subscriber is logged and otherwise ignored.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Protocol

from django.conf import settings
from django.utils import timezone
from django.utils.dateparse import parse_datetime

if TYPE_CHECKING:
    from relay.queue.manager import JobQueue

logger = logging.getLogger(__name__)


class EventType:
    JOB_CREATED = "job.created"
    JOB_UPDATED = "job.updated"
    JOB_PROGRESS = "job.progress"
    JOB_DELETED = "job.deleted"

    QUEUE_QUEUED = "queue.queued"
    QUEUE_STARTED = "queue.started"
    QUEUE_PROGRESS = "queue.progress"
    QUEUE_COMPLETED = "queue.completed"
    QUEUE_FAILED = "queue.failed"
    QUEUE_STALLED = "queue.stalled"


@dataclass
class Event:
    type: str
    owner_id: str = ""
    job_id: str | None = None
    payload: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=timezone.now)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "owner_id": self.owner_id,
            "job_id": self.job_id,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Event":
        timestamp = parse_datetime(data.get("timestamp") or "") or timezone.now()
        return cls(
            type=data["type"],
            owner_id=data.get("owner_id") or "",
            job_id=data.get("job_id"),
            payload=data.get("payload") or {},
            timestamp=timestamp,
        )


Subscriber = Callable[[Event], None]


class EventBus:
    """Publish events to any number of subscribers without blocking the publisher."""

    def __init__(self, asynchronous: bool | None = None, max_workers: int = 4):
        if asynchronous is None:
            asynchronous = getattr(settings, "RELAY_ASYNC_EVENTS", True)
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()
        self._executor = (
            ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="relay-events")
            if asynchronous
            else None
        )

    def subscribe(self, subscriber: Subscriber) -> Subscriber:
        with self._lock:
            self._subscribers.append(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    def publish(self, event: Event) -> None:
        with self._lock:
            subscribers = list(self._subscribers)

        for subscriber in subscribers:
            if self._executor is not None:
                self._executor.submit(self._deliver, subscriber, event)
            else:
                self._deliver(subscriber, event)

    @staticmethod
    def _deliver(subscriber: Subscriber, event: Event) -> None:
        try:
            subscriber(event)
        except Exception as e:
            logger.error(f"Event subscriber {subscriber!r} failed for {event.type}: {e}", exc_info=True)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)


class Notifier(Protocol):
    """Push channel to observers (websocket gateway, webhook, ...)."""

    def publish(self, owner_id: str, event: Event) -> None:
        ...


class LoggingNotifier:
    """Default notifier: writes the event to the log."""

    def publish(self, owner_id: str, event: Event) -> None:
        logger.info(f"Notify owner={owner_id} {event.type} job={event.job_id} {event.payload}")


class NotificationForwarder:
    """
    Bus subscriber that turns job lifecycle events into ``notify`` units on
    the notification lane, so delivery gets the queue's retry policy.

    Progress events fire every few seconds per running job and stay on the
    in-process bus; only lifecycle changes are worth a queue entry.
    """

    forwarded = (EventType.JOB_CREATED, EventType.JOB_UPDATED, EventType.JOB_DELETED)

    def __init__(self, queue: JobQueue, lane: str, kind: str):
        self.queue = queue
        self.lane = lane
        self.kind = kind

    def __call__(self, event: Event) -> None:
        if event.type not in self.forwarded:
            return
        self.queue.enqueue(
            self.lane,
            self.kind,
            {"event": event.to_dict()},
            owner_id=event.owner_id,
        )
