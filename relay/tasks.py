"""
Celery tasks for relay operations.

``process_queue_entry`` runs one claimed queue entry on a worker consuming
the entry's lane. The remaining tasks are driven by beat: pumping the queue
(stall detection and dispatch of due entries), firing due sync schedules
and enqueueing retention cleanup.
"""

import logging

from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task(acks_late=True, ignore_result=True)
def process_queue_entry(entry_id: str):
    """
    Execute a queue entry claimed by ``JobQueue.dispatch``.

    Failures are recorded on the entry by the queue itself, which owns the
    retry policy, so nothing propagates back to Celery.
    """
    from relay.services import get_services

    get_services().queue.process(entry_id)


@shared_task
def pump_queues():
    """Mark stalled entries and dispatch everything that is due."""
    from relay.services import get_services

    result = get_services().queue.pump()
    dispatched = sum(result["dispatched"].values())
    if dispatched or result["stalled"]:
        logger.info(f"Queue pump: {dispatched} dispatched, {result['stalled']} stalled")
    return result


@shared_task
def run_due_syncs():
    """Start sync jobs whose next_run_at has passed."""
    from relay.services import get_services

    started = get_services().syncs.trigger_due_syncs()
    return {"started": started}


@shared_task
def enqueue_cleanup():
    """Queue a retention cleanup unit on the cleanup lane."""
    from relay.queue.lanes import CLEANUP, CLEANUP_LANE
    from relay.services import get_services

    entry = get_services().queue.enqueue(CLEANUP_LANE, CLEANUP)
    return {"entry_id": str(entry.id)}
