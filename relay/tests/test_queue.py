"""Tests for the durable job queue."""

import uuid
from datetime import timedelta

from django.test import TestCase
from django.utils import timezone

from relay.events import EventBus, EventType
from relay.exceptions import InvalidJobStateError, InvalidRequestError
from relay.providers.errors import AuthenticationError, NetworkError, RateLimitError
from relay.queue.lanes import DEFAULT_LANES, LaneConfig, load_lanes
from relay.queue.manager import JobQueue
from relay.queue.models import EntryState, QueueEntry

WORK = "work"


class JobQueueTestCase(TestCase):
    auto_dispatch = True

    def setUp(self):
        self.sent = []
        self.events = []
        bus = EventBus(asynchronous=False)
        bus.subscribe(self.events.append)
        self.queue = JobQueue(
            lanes={WORK: LaneConfig(WORK, concurrency=1, max_attempts=2, backoff_seconds=10, stall_timeout_seconds=60)},
            event_bus=bus,
            sender=self.sent.append,
            auto_dispatch=self.auto_dispatch,
        )
        self.calls = []

    def handler(self, payload, context):
        self.calls.append((payload, context.attempt))
        return {"echo": payload.get("value")}

    def reload(self, entry):
        return QueueEntry.objects.get(id=entry.id)

    def event_types(self):
        return [event.type for event in self.events]


class DispatchTests(JobQueueTestCase):
    auto_dispatch = False

    def test_enqueue_waits_without_auto_dispatch(self):
        entry = self.queue.enqueue(WORK, "echo", {"value": 1}, owner_id="user-1")

        self.assertEqual(entry.state, EntryState.WAITING)
        self.assertEqual(entry.max_attempts, 2)
        self.assertEqual(self.sent, [])
        self.assertEqual(self.event_types(), [EventType.QUEUE_QUEUED])
        self.assertEqual(self.events[0].owner_id, "user-1")

    def test_enqueue_with_chosen_id_and_no_dispatch(self):
        queue = JobQueue(lanes=self.queue.lanes, sender=self.sent.append, auto_dispatch=True)
        entry_id = uuid.uuid4()

        entry = queue.enqueue(WORK, "echo", entry_id=entry_id, auto_dispatch=False)

        self.assertEqual(entry.id, entry_id)
        self.assertEqual(self.reload(entry).state, EntryState.WAITING)
        self.assertEqual(self.sent, [])

    def test_priority_and_concurrency(self):
        low = self.queue.enqueue(WORK, "echo", priority=0)
        high = self.queue.enqueue(WORK, "echo", priority=5)
        self.queue.enqueue(WORK, "echo", priority=1)

        claimed = self.queue.dispatch(WORK)

        self.assertEqual([entry.id for entry in claimed], [high.id])
        self.assertEqual(self.reload(high).state, EntryState.ACTIVE)
        self.assertEqual(self.reload(high).attempts_made, 1)
        self.assertEqual(self.reload(low).state, EntryState.WAITING)
        # The single slot is taken
        self.assertEqual(self.queue.dispatch(WORK), [])
        self.assertEqual(len(self.sent), 1)

    def test_delayed_entry_waits_for_available_at(self):
        entry = self.queue.enqueue(WORK, "echo", delay=30)

        self.assertEqual(entry.state, EntryState.DELAYED)
        self.assertEqual(self.queue.dispatch(WORK), [])
        claimed = self.queue.dispatch(WORK, now=timezone.now() + timedelta(seconds=31))
        self.assertEqual([c.id for c in claimed], [entry.id])

    def test_sender_failure_returns_entry_to_waiting(self):
        def broken_sender(entry):
            raise RuntimeError("broker down")

        self.queue._sender = broken_sender
        entry = self.queue.enqueue(WORK, "echo")

        self.queue.dispatch(WORK)

        entry = self.reload(entry)
        self.assertEqual(entry.state, EntryState.WAITING)
        self.assertEqual(entry.attempts_made, 0)

    def test_unknown_lane(self):
        with self.assertRaises(InvalidRequestError):
            self.queue.enqueue("nope", "echo")


class ProcessTests(JobQueueTestCase):
    def setUp(self):
        super().setUp()
        self.queue.register_handler("echo", self.handler)

    def test_success_stores_result_and_refills(self):
        first = self.queue.enqueue(WORK, "echo", {"value": "a", "job_id": "job-1"})
        second = self.queue.enqueue(WORK, "echo", {"value": "b"})
        self.assertEqual([entry.id for entry in self.sent], [first.id])

        result = self.queue.process(first.id)

        self.assertEqual(result, {"echo": "a"})
        first = self.reload(first)
        self.assertEqual(first.state, EntryState.COMPLETED)
        self.assertEqual(first.result, {"echo": "a"})
        self.assertIsNotNone(first.finished_at)
        self.assertEqual([entry.id for entry in self.sent], [first.id, second.id])
        self.assertEqual(self.reload(second).state, EntryState.ACTIVE)

        completed = [e for e in self.events if e.type == EventType.QUEUE_COMPLETED]
        self.assertEqual(completed[0].job_id, "job-1")

    def test_retryable_failure_is_delayed_with_backoff(self):
        outcomes = [NetworkError("reset"), NetworkError("reset again")]

        def flaky(payload, context):
            raise outcomes.pop(0)

        self.queue.register_handler("flaky", flaky)
        entry = self.queue.enqueue(WORK, "flaky")

        self.assertIsNone(self.queue.process(entry.id))

        entry = self.reload(entry)
        self.assertEqual(entry.state, EntryState.DELAYED)
        self.assertIn("NetworkError", entry.error_message)
        self.assertGreater(entry.available_at, timezone.now() + timedelta(seconds=9))
        self.assertEqual(self.queue.dispatch(WORK), [])

        self.queue.dispatch(WORK, now=timezone.now() + timedelta(seconds=11))
        self.assertEqual(self.reload(entry).attempts_made, 2)

        self.queue.process(entry.id)

        entry = self.reload(entry)
        self.assertEqual(entry.state, EntryState.FAILED)
        failures = [e.payload["will_retry"] for e in self.events if e.type == EventType.QUEUE_FAILED]
        self.assertEqual(failures, [True, False])

    def test_non_retryable_failure_fails_immediately(self):
        def rejected(payload, context):
            raise AuthenticationError("token revoked")

        self.queue.register_handler("rejected", rejected)
        entry = self.queue.enqueue(WORK, "rejected")

        self.queue.process(entry.id)

        entry = self.reload(entry)
        self.assertEqual(entry.state, EntryState.FAILED)
        self.assertEqual(entry.attempts_made, 1)

    def test_unclassified_errors_are_retried(self):
        def buggy(payload, context):
            raise ValueError("boom")

        self.queue.register_handler("buggy", buggy)
        entry = self.queue.enqueue(WORK, "buggy")

        self.queue.process(entry.id)

        self.assertEqual(self.reload(entry).state, EntryState.DELAYED)

    def test_rate_limit_retry_after_extends_backoff(self):
        def limited(payload, context):
            raise RateLimitError(retry_after=120)

        self.queue.register_handler("limited", limited)
        entry = self.queue.enqueue(WORK, "limited")

        self.queue.process(entry.id)

        self.assertGreater(self.reload(entry).available_at, timezone.now() + timedelta(seconds=110))

    def test_permanent_failure_runs_failure_hook(self):
        failures = []

        def rejected(payload, context):
            raise AuthenticationError("token revoked")

        self.queue.register_handler("rejected", rejected, on_failure=lambda *args: failures.append(args))
        entry = self.queue.enqueue(WORK, "rejected", {"job_id": "job-1"})

        self.queue.process(entry.id)

        self.assertEqual(len(failures), 1)
        payload, entry_id, message = failures[0]
        self.assertEqual((payload, entry_id), ({"job_id": "job-1"}, entry.id))
        self.assertIn("AuthenticationError", message)

    def test_failure_hook_not_run_while_retries_remain(self):
        failures = []

        def flaky(payload, context):
            raise NetworkError("reset")

        self.queue.register_handler("flaky", flaky, on_failure=lambda *args: failures.append(args))
        entry = self.queue.enqueue(WORK, "flaky")

        self.queue.process(entry.id)

        self.assertEqual(self.reload(entry).state, EntryState.DELAYED)
        self.assertEqual(failures, [])

    def test_failure_hook_errors_are_logged(self):
        def broken_hook(payload, entry_id, message):
            raise RuntimeError("hook broke")

        def rejected(payload, context):
            raise AuthenticationError("token revoked")

        self.queue.register_handler("rejected", rejected, on_failure=broken_hook)
        entry = self.queue.enqueue(WORK, "rejected")

        with self.assertLogs("relay.queue.manager", level="ERROR") as logs:
            self.queue.process(entry.id)

        self.assertEqual(self.reload(entry).state, EntryState.FAILED)
        self.assertTrue(any("hook broke" in line for line in logs.output))

    def test_context_predicts_retry(self):
        seen = []

        def handler(payload, context):
            seen.append((context.will_retry(NetworkError("reset")), context.will_retry(AuthenticationError())))
            return None

        self.queue.register_handler("predict", handler)
        entry = self.queue.enqueue(WORK, "predict")
        self.queue.process(entry.id)

        QueueEntry.objects.filter(id=entry.id).update(state=EntryState.ACTIVE, attempts_made=2)
        self.queue.process(entry.id)

        self.assertEqual(seen, [(True, False), (False, False)])

    def test_missing_handler(self):
        entry = self.queue.enqueue(WORK, "unknown")

        self.queue.process(entry.id)

        entry = self.reload(entry)
        self.assertEqual(entry.state, EntryState.FAILED)
        self.assertIn("No handler registered", entry.error_message)

    def test_inactive_entry_is_skipped(self):
        self.queue.pause_lane(WORK)
        entry = self.queue.enqueue(WORK, "echo")

        self.assertIsNone(self.queue.process(entry.id))
        self.assertEqual(self.reload(entry).state, EntryState.WAITING)
        self.assertEqual(self.calls, [])

    def test_progress_is_recorded(self):
        def reporting(payload, context):
            context.progress({"done": 1, "total": 2})
            return None

        self.queue.register_handler("reporting", reporting)
        entry = self.queue.enqueue(WORK, "reporting")

        self.queue.process(entry.id)

        entry = self.reload(entry)
        self.assertEqual(entry.progress, {"done": 1, "total": 2})
        self.assertIsNone(entry.result)
        self.assertIn(EventType.QUEUE_PROGRESS, self.event_types())


class MaintenanceTests(JobQueueTestCase):
    def test_stalled_entry_is_redispatched_then_failed(self):
        entry = self.queue.enqueue(WORK, "echo")
        old = timezone.now() - timedelta(seconds=120)
        QueueEntry.objects.filter(id=entry.id).update(heartbeat_at=old)

        self.assertEqual(self.queue.check_stalled(), 1)
        self.assertEqual(self.reload(entry).state, EntryState.STALLED)
        self.assertIn(EventType.QUEUE_STALLED, self.event_types())

        self.queue.dispatch(WORK)
        self.assertEqual(self.reload(entry).attempts_made, 2)

        QueueEntry.objects.filter(id=entry.id).update(heartbeat_at=old)
        self.assertEqual(self.queue.check_stalled(), 0)
        self.assertEqual(self.reload(entry).state, EntryState.FAILED)

    def test_stall_with_no_attempts_left_runs_failure_hook(self):
        failures = []
        self.queue.register_handler("echo", self.handler, on_failure=lambda *args: failures.append(args))
        entry = self.queue.enqueue(WORK, "echo", {"job_id": "job-1"})
        QueueEntry.objects.filter(id=entry.id).update(
            attempts_made=2, heartbeat_at=timezone.now() - timedelta(seconds=120)
        )

        self.queue.check_stalled()

        self.assertEqual(failures, [({"job_id": "job-1"}, entry.id, "Worker stopped reporting liveness")])

    def test_recent_heartbeat_is_not_stalled(self):
        self.queue.enqueue(WORK, "echo")
        self.assertEqual(self.queue.check_stalled(), 0)

    def test_pause_and_resume(self):
        self.queue.pause_lane(WORK)
        entry = self.queue.enqueue(WORK, "echo")

        self.assertEqual(self.sent, [])
        stats = self.queue.stats(WORK)
        self.assertTrue(stats.paused)
        self.assertEqual(stats.waiting, 1)

        self.queue.resume_lane(WORK)

        self.assertEqual([e.id for e in self.sent], [entry.id])
        self.assertFalse(self.queue.is_paused(WORK))

    def test_stats(self):
        self.queue.enqueue(WORK, "echo")
        self.queue.enqueue(WORK, "echo")
        self.queue.enqueue(WORK, "echo", delay=60)

        stats = self.queue.stats(WORK).to_dict()

        self.assertEqual(stats["active"], 1)
        self.assertEqual(stats["waiting"], 1)
        self.assertEqual(stats["delayed"], 1)
        self.assertEqual(stats["completed"], 0)

    def test_purge_only_removes_old_finished_entries(self):
        now = timezone.now()
        old = QueueEntry.objects.create(lane=WORK, kind="echo", state=EntryState.COMPLETED, finished_at=now - timedelta(days=2))
        recent = QueueEntry.objects.create(lane=WORK, kind="echo", state=EntryState.FAILED, finished_at=now)
        waiting = QueueEntry.objects.create(lane=WORK, kind="echo")

        self.assertEqual(self.queue.purge(older_than=timedelta(hours=24)), 1)

        remaining = set(QueueEntry.objects.values_list("id", flat=True))
        self.assertEqual(remaining, {recent.id, waiting.id})
        self.assertNotIn(old.id, remaining)

    def test_remove_entry(self):
        active = self.queue.enqueue(WORK, "echo")
        waiting = self.queue.enqueue(WORK, "echo")

        with self.assertRaises(InvalidJobStateError):
            self.queue.remove_entry(active.id)
        self.assertTrue(self.queue.remove_entry(waiting.id))
        self.assertFalse(self.queue.remove_entry(waiting.id))
        self.assertFalse(self.queue.has_pending(waiting.id))
        self.assertTrue(self.queue.has_pending(active.id))

    def test_pump_reports_dispatch(self):
        self.queue.pause_lane(WORK)
        self.queue.enqueue(WORK, "echo")
        self.queue.resume_lane(WORK)

        self.assertEqual(self.queue.pump(), {"stalled": 0, "dispatched": {WORK: 0}})


class LaneConfigTests(TestCase):
    def test_backoff_doubles(self):
        lane = LaneConfig("x", backoff_seconds=5)
        self.assertEqual([lane.backoff_for(n) for n in (1, 2, 3)], [5, 10, 20])

    def test_load_lanes_merges_overrides(self):
        lanes = load_lanes({"transfer": {"concurrency": 9}, "extra": {"concurrency": 2}})

        self.assertEqual(lanes["transfer"].concurrency, 9)
        self.assertEqual(lanes["transfer"].max_attempts, DEFAULT_LANES["transfer"]["max_attempts"])
        self.assertEqual(lanes["extra"].concurrency, 2)
        self.assertIn("notification", lanes)
