"""Tests for the sync engine."""

from dataclasses import replace
from datetime import timedelta
from unittest.mock import patch

from django.utils import timezone

from relay.events import EventType
from relay.exceptions import (
    CapacityError,
    ConflictError,
    InvalidJobStateError,
    InvalidRequestError,
)
from relay.models import ConflictPolicy, FileTransferLog, LogStatus, RunStatus, SyncJob, SyncMode
from relay.providers.base import ProviderCapabilities, UploadOptions
from relay.providers.errors import AuthenticationError, NetworkError
from relay.queue.lanes import SYNC_LANE, SYNC_RUN
from relay.queue.models import EntryState, QueueEntry
from relay.sync.models import SyncRun
from relay.tests.fakes import InMemoryProvider, RelayTestCase


class UploadTimeProvider(InMemoryProvider):
    """Stamps uploads with its own clock, like a WebDAV server that ignores X-OC-Mtime."""

    def upload_file(self, path, stream, options=None):
        return super().upload_file(path, stream, replace(options or UploadOptions(), modified_at=None))


class SyncEngineTestCase(RelayTestCase):
    def setUp(self):
        super().setUp()
        self.source = InMemoryProvider()
        self.source.add_file("/docs/a.txt", b"aaa")
        self.source.add_file("/docs/sub/b.txt", b"bb")
        self.destination = InMemoryProvider()

        self.source_connection = self.make_connection("src", self.source)
        self.destination_connection = self.make_connection("dst", self.destination)
        self.engine = self.services.syncs

    def create_job(self, **kwargs):
        kwargs.setdefault("source_path", "/docs")
        kwargs.setdefault("destination_path", "/mirror")
        return self.engine.create_sync_job(
            self.owner_id,
            self.source_connection.id,
            self.destination_connection.id,
            **kwargs,
        )

    def run_job(self, job):
        """Start the job, process its queue entry and return (job, run)."""
        job = self.engine.start_sync(job.id)
        self.queue.process(job.queue_entry_id)
        job.refresh_from_db()
        return job, job.runs.order_by("-started_at", "-id").first()


class OneWaySyncTests(SyncEngineTestCase):
    def test_first_run_copies_everything(self):
        job, run = self.run_job(self.create_job())

        self.assertEqual(job.last_run_status, RunStatus.COMPLETED)
        self.assertEqual(job.last_run_message, "")
        self.assertIsNotNone(job.last_run_at)
        self.assertEqual(run.status, RunStatus.COMPLETED)
        self.assertEqual(run.operations_planned, 3)
        self.assertEqual(run.uploads, 2)
        self.assertEqual(run.bytes_transferred, 5)
        self.assertEqual(self.destination.read("/mirror/a.txt"), b"aaa")
        self.assertEqual(self.destination.read("/mirror/sub/b.txt"), b"bb")

        logs = FileTransferLog.objects.filter(sync_run=run, status=LogStatus.COMPLETED)
        self.assertEqual(sorted(log.path for log in logs), ["/mirror/a.txt", "/mirror/sub/b.txt"])

    def test_second_run_is_a_no_op(self):
        job = self.create_job()
        self.run_job(job)

        job, run = self.run_job(job)

        self.assertEqual(run.operations_planned, 0)
        self.assertEqual(run.uploads, 0)
        self.assertEqual(self.destination.uploads, ["/mirror/a.txt", "/mirror/sub/b.txt"])
        self.assertEqual(len(self.engine.get_sync_history(job.id)), 2)

    def test_changed_file_is_uploaded_again(self):
        job = self.create_job()
        self.run_job(job)
        self.source.add_file("/docs/a.txt", b"AAAA", modified_at=timezone.now())

        _job, run = self.run_job(job)

        self.assertEqual(run.uploads, 1)
        self.assertEqual(self.destination.read("/mirror/a.txt"), b"AAAA")

    def test_one_way_leaves_extra_destination_files(self):
        self.destination.add_file("/mirror/extra.txt", b"x")

        _job, run = self.run_job(self.create_job())

        self.assertEqual(run.deletes, 0)
        self.assertIn("/mirror/extra.txt", self.destination.files)

    def test_delete_orphans_option(self):
        self.destination.add_file("/mirror/extra.txt", b"x")

        _job, run = self.run_job(self.create_job(options={"delete_orphans": True}))

        self.assertEqual(run.deletes, 1)
        self.assertNotIn("/mirror/extra.txt", self.destination.files)

    def test_progress_reported_to_queue(self):
        job = self.engine.start_sync(self.create_job().id)
        self.queue.process(job.queue_entry_id)

        entry = QueueEntry.objects.get(id=job.queue_entry_id)
        self.assertEqual(entry.progress["completed"], 3)
        self.assertEqual(entry.progress["total"], 3)
        self.assertEqual(entry.result["status"], RunStatus.COMPLETED)


class MirrorAndTwoWayTests(SyncEngineTestCase):
    def test_mirror_deletes_orphans(self):
        self.destination.add_file("/mirror/old.txt", b"x")
        self.destination.add_file("/mirror/stale/inner.txt", b"y")

        _job, run = self.run_job(self.create_job(mode=SyncMode.MIRROR))

        self.assertEqual(run.deletes, 2)
        self.assertNotIn("/mirror/old.txt", self.destination.files)
        self.assertNotIn("/mirror/stale", self.destination.folders)
        self.assertNotIn("/mirror/stale/inner.txt", self.destination.files)
        self.assertIn("/mirror/a.txt", self.destination.files)

    def test_two_way(self):
        self.destination.add_file("/mirror/c.txt", b"cccc")

        _job, run = self.run_job(self.create_job(mode=SyncMode.TWO_WAY))

        self.assertEqual(run.uploads, 2)
        self.assertEqual(run.downloads, 1)
        self.assertEqual(self.source.read("/docs/c.txt"), b"cccc")
        self.assertEqual(self.destination.read("/mirror/a.txt"), b"aaa")

    def test_two_way_converges_when_destination_keeps_upload_time(self):
        stamped = UploadTimeProvider()
        job = self.engine.create_sync_job(
            self.owner_id,
            self.source_connection.id,
            self.make_connection("stamped", stamped).id,
            source_path="/docs",
            destination_path="/mirror",
            mode=SyncMode.TWO_WAY,
        )
        self.run_job(job)
        self.assertGreater(stamped.files["/mirror/a.txt"][1], self.source.files["/docs/a.txt"][1])

        _job, run = self.run_job(job)

        self.assertEqual(run.operations_planned, 0)
        self.assertEqual(self.source.uploads, [])

        stamped.add_file("/mirror/a.txt", b"edited", modified_at=timezone.now())
        _job, run = self.run_job(job)
        self.assertEqual(run.downloads, 1)
        self.assertEqual(self.source.read("/docs/a.txt"), b"edited")

        _job, run = self.run_job(job)
        self.assertEqual(run.operations_planned, 0)

    def test_mirror_on_destination_without_deletes(self):
        self.destination.capabilities = ProviderCapabilities(delete=False)
        self.destination.add_file("/mirror/old.txt", b"x")

        _job, run = self.run_job(self.create_job(mode=SyncMode.MIRROR))

        self.assertEqual(run.deletes, 0)
        self.assertEqual(run.failures, 1)
        self.assertIn("/mirror/old.txt", self.destination.files)
        failed = FileTransferLog.objects.get(sync_run=run, status=LogStatus.FAILED)
        self.assertEqual(failed.operation, "delete")

    def test_changing_paths_resets_baseline(self):
        job = self.create_job()
        self.run_job(job)
        self.assertIn("a.txt", SyncJob.objects.get(id=job.id).sync_state)

        job = self.engine.update_sync_job(job.id, destination_path="/elsewhere")

        self.assertEqual(job.sync_state, {})


class ConflictPolicyTests(SyncEngineTestCase):
    def setUp(self):
        super().setUp()
        # Present on the destination but invisible to the listing
        self.destination.add_file("/mirror/a.txt", b"old")
        self.destination.hidden.add("/mirror/a.txt")

    def test_skip(self):
        job, run = self.run_job(self.create_job(conflict_policy=ConflictPolicy.SKIP))

        self.assertEqual(job.last_run_status, RunStatus.COMPLETED)
        self.assertEqual(job.last_run_message, "1 operation(s) failed")
        self.assertEqual(run.failures, 1)
        self.assertEqual(run.uploads, 1)
        self.assertEqual(self.destination.read("/mirror/a.txt"), b"old")
        failed = FileTransferLog.objects.get(sync_run=run, status=LogStatus.FAILED)
        self.assertEqual(failed.path, "/mirror/a.txt")

    def test_overwrite(self):
        _job, run = self.run_job(self.create_job(conflict_policy=ConflictPolicy.OVERWRITE))

        self.assertEqual(run.failures, 0)
        self.assertEqual(self.destination.read("/mirror/a.txt"), b"aaa")

    def test_rename(self):
        self.destination.add_file("/mirror/a (1).txt", b"taken")

        _job, run = self.run_job(self.create_job(conflict_policy=ConflictPolicy.RENAME))

        self.assertEqual(run.failures, 0)
        self.assertEqual(self.destination.read("/mirror/a.txt"), b"old")
        self.assertEqual(self.destination.read("/mirror/a (1).txt"), b"taken")
        self.assertEqual(self.destination.read("/mirror/a (2).txt"), b"aaa")


class SyncFailureTests(SyncEngineTestCase):
    def test_authentication_failure_fails_run(self):
        self.destination.connect_error = AuthenticationError("token revoked")

        job, run = self.run_job(self.create_job())

        self.assertEqual(job.last_run_status, RunStatus.FAILED)
        self.assertIn("reconnect", job.last_run_message)
        self.assertEqual(run.status, RunStatus.FAILED)
        self.assertEqual(QueueEntry.objects.get(id=job.queue_entry_id).state, EntryState.FAILED)

    def test_authentication_failure_mid_run_aborts(self):
        self.destination.upload_errors["/mirror/a.txt"] = AuthenticationError("expired")

        job, run = self.run_job(self.create_job())

        self.assertEqual(run.status, RunStatus.FAILED)
        self.assertEqual(run.uploads, 0)
        self.assertNotIn("/mirror/sub/b.txt", self.destination.files)

    def test_stop_mid_run(self):
        job = self.create_job()

        def stop_on_a(path):
            if path == "/docs/a.txt":
                self.engine.stop_sync(job.id)

        self.source.on_download = stop_on_a
        job, run = self.run_job(job)

        self.assertEqual(job.last_run_status, RunStatus.STOPPED)
        self.assertEqual(job.last_run_message, "Stopped by request")
        self.assertEqual(job.control_request, "")
        self.assertEqual(run.status, RunStatus.STOPPED)
        self.assertNotIn("/mirror/a.txt", self.destination.files)

    def test_stop_claimed_run_before_it_starts(self):
        job = self.engine.start_sync(self.create_job().id)

        self.engine.stop_sync(job.id)
        result = self.queue.process(job.queue_entry_id)

        job.refresh_from_db()
        self.assertEqual(result["status"], RunStatus.STOPPED)
        self.assertEqual(job.last_run_status, RunStatus.STOPPED)
        self.assertFalse(job.runs.exists())
        self.assertEqual(self.destination.uploads, [])

    def test_stop_waiting_run(self):
        self.queue.pause_lane(SYNC_LANE)
        job = self.engine.start_sync(self.create_job().id)

        job = self.engine.stop_sync(job.id)

        self.assertEqual(job.last_run_status, RunStatus.STOPPED)
        self.assertFalse(QueueEntry.objects.filter(id=job.queue_entry_id).exists())
        with self.assertRaises(InvalidJobStateError):
            self.engine.stop_sync(job.id)


class SyncControlTests(SyncEngineTestCase):
    def test_disabled_job_cannot_start(self):
        job = self.create_job(is_enabled=False)
        with self.assertRaises(InvalidJobStateError):
            self.engine.start_sync(job.id)

    def test_start_twice_conflicts(self):
        job = self.engine.start_sync(self.create_job().id)
        self.assertEqual(job.last_run_status, RunStatus.PENDING)

        with self.assertRaises(ConflictError):
            self.engine.start_sync(job.id)

    def test_capacity(self):
        self.engine.max_concurrent = 1
        busy = self.create_job()
        SyncJob.objects.filter(id=busy.id).update(last_run_status=RunStatus.RUNNING)

        with self.assertRaises(CapacityError):
            self.engine.start_sync(self.create_job().id)

    def test_delete(self):
        job = self.create_job()
        self.run_job(job)
        job_id = str(job.id)

        self.engine.delete_sync_job(job.id)

        self.assertFalse(SyncJob.objects.filter(id=job_id).exists())
        self.assertFalse(SyncRun.objects.filter(sync_job_id=job_id).exists())
        self.assertEqual(self.events[-1].type, EventType.JOB_DELETED)

    def test_delete_running_requests_stop(self):
        job = self.engine.start_sync(self.create_job().id)
        SyncJob.objects.filter(id=job.id).update(last_run_status=RunStatus.RUNNING)

        with self.assertRaises(InvalidJobStateError):
            self.engine.delete_sync_job(job.id)

        job.refresh_from_db()
        self.assertEqual(job.control_request, "cancel")

    def test_concurrent_starts_queue_once(self):
        job = self.create_job()
        # What a second caller read before the first start committed
        stale = self.engine.get_sync_job(job.id)
        self.engine.start_sync(job.id)

        with patch.object(self.engine, "get_sync_job", return_value=stale):
            with self.assertRaises(ConflictError):
                self.engine.start_sync(job.id)

        self.assertEqual(QueueEntry.objects.filter(payload__job_id=str(job.id)).count(), 1)
        self.assertEqual(len(self.sent), 1)

    def test_superseded_queue_entry_is_skipped(self):
        job = self.engine.start_sync(self.create_job().id)
        stray = QueueEntry.objects.create(
            lane=SYNC_LANE,
            kind=SYNC_RUN,
            payload={"job_id": str(job.id)},
            state=EntryState.ACTIVE,
            attempts_made=1,
        )

        result = self.queue.process(stray.id)

        self.assertTrue(result["skipped"])
        self.assertFalse(job.runs.exists())


class AbandonedRunTests(SyncEngineTestCase):
    def start_abandoned(self):
        """A run a worker opened before it died."""
        job = self.engine.start_sync(self.create_job().id)
        SyncJob.objects.filter(id=job.id).update(last_run_status=RunStatus.RUNNING)
        run = SyncRun.objects.create(sync_job_id=job.id, status=RunStatus.RUNNING)
        return job, run

    def test_stall_with_no_attempts_left_fails_run(self):
        job, run = self.start_abandoned()
        QueueEntry.objects.filter(id=job.queue_entry_id).update(max_attempts=1)

        self.queue.check_stalled(now=timezone.now() + timedelta(days=1))

        job.refresh_from_db()
        run.refresh_from_db()
        self.assertEqual(job.last_run_status, RunStatus.FAILED)
        self.assertTrue(job.last_run_message)
        self.assertEqual(run.status, RunStatus.FAILED)
        self.assertIsNotNone(run.completed_at)

        # The job can run again
        job, _run = self.run_job(job)
        self.assertEqual(job.last_run_status, RunStatus.COMPLETED)

    def test_stop_without_worker_closes_run(self):
        job, run = self.start_abandoned()
        QueueEntry.objects.filter(id=job.queue_entry_id).update(state=EntryState.FAILED)

        job = self.engine.stop_sync(job.id)

        run.refresh_from_db()
        self.assertEqual(job.last_run_status, RunStatus.STOPPED)
        self.assertEqual(run.status, RunStatus.STOPPED)

    def test_delete_without_worker(self):
        job, _run = self.start_abandoned()
        QueueEntry.objects.filter(id=job.queue_entry_id).update(state=EntryState.FAILED)

        self.engine.delete_sync_job(job.id)

        self.assertFalse(SyncJob.objects.filter(id=job.id).exists())

    def test_transient_failure_keeps_job_pending(self):
        self.source.connect_error = NetworkError("unreachable")

        job, run = self.run_job(self.create_job())

        self.assertEqual(run.status, RunStatus.FAILED)
        self.assertEqual(job.last_run_status, RunStatus.PENDING)
        self.assertEqual(QueueEntry.objects.get(id=job.queue_entry_id).state, EntryState.DELAYED)

        self.source.connect_error = None
        self.queue.dispatch(SYNC_LANE, now=timezone.now() + timedelta(minutes=10))
        self.queue.process(job.queue_entry_id)

        job.refresh_from_db()
        self.assertEqual(job.last_run_status, RunStatus.COMPLETED)


class SyncSchedulingTests(SyncEngineTestCase):
    def test_schedule_sets_next_run(self):
        job = self.create_job(schedule=" 0  * * * * ")

        self.assertEqual(job.schedule, "0 * * * *")
        self.assertGreater(job.next_run_at, timezone.now())
        self.assertEqual(job.next_run_at.minute, 0)

    def test_manual_job_has_no_next_run(self):
        self.assertIsNone(self.create_job().next_run_at)

    def test_toggle_clears_and_restores_next_run(self):
        job = self.create_job(schedule="0 * * * *")

        job = self.engine.toggle_sync(job.id)
        self.assertFalse(job.is_enabled)
        self.assertIsNone(job.next_run_at)

        job = self.engine.toggle_sync(job.id, enabled=True)
        self.assertTrue(job.is_enabled)
        self.assertIsNotNone(job.next_run_at)

    def test_clearing_schedule(self):
        job = self.create_job(schedule="0 * * * *")

        job = self.engine.update_sync_job(job.id, schedule="")

        self.assertIsNone(job.next_run_at)

    def test_invalid_input(self):
        with self.assertRaises(InvalidRequestError):
            self.create_job(schedule="every day")
        with self.assertRaises(InvalidRequestError):
            self.create_job(mode="sideways")
        with self.assertRaises(InvalidRequestError):
            self.create_job(conflict_policy="merge")
        with self.assertRaises(InvalidRequestError):
            self.create_job(options={"max_depth": 0})

        job = self.create_job()
        with self.assertRaises(InvalidRequestError):
            self.engine.update_sync_job(job.id, last_run_status="completed")

    def test_update_merges_options(self):
        job = self.create_job(options={"delete_orphans": True})

        job = self.engine.update_sync_job(job.id, options={"max_depth": 2}, destination_path="backup//")

        self.assertEqual(job.options["max_depth"], 2)
        self.assertTrue(job.options["delete_orphans"])
        self.assertEqual(job.destination_path, "/backup")

    def test_trigger_due_syncs(self):
        due = self.create_job(schedule="0 * * * *")
        disabled = self.create_job(schedule="0 * * * *", is_enabled=False)
        past = timezone.now() - timedelta(minutes=5)
        SyncJob.objects.filter(id__in=[due.id, disabled.id]).update(next_run_at=past)

        started = self.engine.trigger_due_syncs()

        self.assertEqual(started, [str(due.id)])
        due.refresh_from_db()
        self.assertGreater(due.next_run_at, timezone.now())
        self.assertEqual(due.last_run_status, RunStatus.PENDING)
        self.assertEqual(QueueEntry.objects.get(id=due.queue_entry_id).payload["trigger"], "schedule")

    def test_due_job_already_queued_is_skipped_but_advanced(self):
        job = self.engine.start_sync(self.create_job(schedule="0 * * * *").id)
        SyncJob.objects.filter(id=job.id).update(next_run_at=timezone.now() - timedelta(minutes=5))

        self.assertEqual(self.engine.trigger_due_syncs(), [])

        job.refresh_from_db()
        self.assertGreater(job.next_run_at, timezone.now())

    def test_run_recomputes_next_run(self):
        job = self.create_job(schedule="*/5 * * * *")
        SyncJob.objects.filter(id=job.id).update(next_run_at=None)

        job, _run = self.run_job(job)

        self.assertIsNotNone(job.next_run_at)
        self.assertGreater(job.next_run_at, timezone.now())
