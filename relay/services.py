"""
Process-wide wiring of the relay components.

Exactly one factory, event bus, queue and engine pair exist per process.
``build_services`` constructs them and registers the queue handlers;
Celery tasks and management commands reach them through ``get_services``.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from relay.cleanup import RetentionCleaner
from relay.connections import ConnectionService
from relay.events import (
    Event,
    EventBus,
    LoggingNotifier,
    NotificationForwarder,
    Notifier,
)
from relay.providers.factory import ProviderFactory, build_default_factory
from relay.queue.lanes import (
    CLEANUP,
    NOTIFICATION_LANE,
    NOTIFY,
    SYNC_RUN,
    TRANSFER_RUN,
    LaneConfig,
)
from relay.queue.manager import JobContext, JobQueue, Sender
from relay.sync.engine import SyncEngine
from relay.transfer.engine import TransferEngine

logger = logging.getLogger(__name__)


@dataclass
class Services:
    factory: ProviderFactory
    event_bus: EventBus
    queue: JobQueue
    connections: ConnectionService
    transfers: TransferEngine
    syncs: SyncEngine
    notifier: Notifier

    def shutdown(self) -> None:
        self.event_bus.shutdown()


def build_services(
    factory: ProviderFactory | None = None,
    event_bus: EventBus | None = None,
    sender: Sender | None = None,
    notifier: Notifier | None = None,
    lanes: dict[str, LaneConfig] | None = None,
    forward_notifications: bool = True,
) -> Services:
    factory = factory or build_default_factory()
    event_bus = event_bus or EventBus()
    notifier = notifier or LoggingNotifier()

    queue = JobQueue(lanes=lanes, event_bus=event_bus, sender=sender)
    connections = ConnectionService(factory)
    transfers = TransferEngine(connections, queue, event_bus)
    syncs = SyncEngine(connections, queue, event_bus)

    def run_transfer(payload: dict, context: JobContext):
        return transfers.run_transfer(payload["job_id"], context)

    def run_sync(payload: dict, context: JobContext):
        return syncs.run_sync(payload["job_id"], context, trigger=payload.get("trigger", "manual"))

    def cleanup(payload: dict, context: JobContext):
        return RetentionCleaner(queue).run().to_dict()

    def notify(payload: dict, context: JobContext):
        event = Event.from_dict(payload["event"])
        notifier.publish(context.owner_id or event.owner_id, event)

    queue.register_handler(TRANSFER_RUN, run_transfer, on_failure=transfers.handle_queue_failure)
    queue.register_handler(SYNC_RUN, run_sync, on_failure=syncs.handle_queue_failure)
    queue.register_handler(CLEANUP, cleanup)
    queue.register_handler(NOTIFY, notify)

    if forward_notifications:
        event_bus.subscribe(NotificationForwarder(queue, NOTIFICATION_LANE, NOTIFY))

    return Services(
        factory=factory,
        event_bus=event_bus,
        queue=queue,
        connections=connections,
        transfers=transfers,
        syncs=syncs,
        notifier=notifier,
    )


_services: Services | None = None
_lock = threading.Lock()


def get_services() -> Services:
    """Return this process's services, building them on first use."""
    global _services
    with _lock:
        if _services is None:
            _services = build_services()
            logger.info("Relay services initialized")
        return _services


def set_services(services: Services | None) -> None:
    """Install (or clear, with None) the process's services. Used by tests."""
    global _services
    with _lock:
        _services = services
