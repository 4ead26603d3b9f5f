"""
Transfer engine: one-shot directed copies of a file tree between connections.

A TransferJob moves ``pending -> running -> completed | failed | cancelled``
with ``running -> paused -> running`` as the only cycle. ``start_transfer``
validates and enqueues; the queue worker calls ``run_transfer``, which owns
the job row for the duration of the execution.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Callable

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from relay.connections import ConnectionService
from relay.events import Event, EventBus, EventType
from relay.exceptions import (
    CapacityError,
    ConflictError,
    InvalidJobStateError,
    InvalidRequestError,
    JobNotFoundError,
)
from relay.execution import (
    CANCEL,
    PAUSE,
    CancellationToken,
    Execution,
    ExecutionRegistry,
    JobCancelled,
    JobPaused,
)
from relay.models import (
    ControlRequest,
    FileTransferLog,
    LogStatus,
    TransferJob,
    TransferStatus,
)
from relay.providers.base import FileDescriptor, FileFilter, StorageProvider
from relay.providers.errors import AuthenticationError, ProviderError, describe_error
from relay.providers.paths import ROOT, join_path, normalize_path, parent_of, relative_to
from relay.queue.lanes import TRANSFER_LANE, TRANSFER_RUN
from relay.queue.manager import JobContext, JobQueue
from relay.queue.models import EntryState
from relay.transfer.pipe import ensure_folder, ensure_parent_folders, pipe_file

logger = logging.getLogger(__name__)


def progress_percentage(files_completed: int, files_total: int) -> int:
    if files_total <= 0:
        return 0
    return round(files_completed / files_total * 100)


@dataclass
class TransferOptions:
    overwrite: bool = False
    preserve_timestamps: bool = True
    verify_integrity: bool = False

    @classmethod
    def from_dict(cls, data: dict | None) -> "TransferOptions":
        data = data or {}
        return cls(
            overwrite=bool(data.get("overwrite", False)),
            preserve_timestamps=bool(data.get("preserve_timestamps", True)),
            verify_integrity=bool(data.get("verify_integrity", False)),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TransferProgress:
    job_id: str
    status: str
    progress_percentage: int = 0
    files_total: int = 0
    files_completed: int = 0
    files_failed: int = 0
    bytes_total: int = 0
    bytes_transferred: int = 0
    transfer_speed: float = 0.0
    eta_seconds: float | None = None
    current_file: str = ""

    @classmethod
    def from_job(cls, job: TransferJob) -> "TransferProgress":
        return cls(
            job_id=str(job.id),
            status=job.status,
            progress_percentage=job.progress_percentage,
            files_total=job.files_total,
            files_completed=job.files_completed,
            files_failed=job.files_failed,
            bytes_total=job.bytes_total,
            bytes_transferred=job.bytes_transferred,
            transfer_speed=job.transfer_speed,
            eta_seconds=job.eta_seconds,
            current_file=job.current_file,
        )

    def to_dict(self) -> dict:
        return asdict(self)


class ProgressTracker:
    """
    In-memory counters for one execution.

    Speed is measured over the bytes moved by this execution only, so a
    resumed job does not report the previous run's bytes as instantaneous
    throughput.
    """

    def __init__(
        self,
        job: TransferJob,
        interval: float,
        clock: Callable[[], float],
        on_flush: Callable[["ProgressTracker"], None],
    ):
        self.job_id = str(job.id)
        self.files_total = 0
        self.files_completed = 0
        self.files_failed = 0
        self.bytes_total = 0
        self.bytes_transferred = 0
        self.current_file = ""
        self._interval = interval
        self._clock = clock
        self._on_flush = on_flush
        self._started = clock()
        self._run_bytes = 0
        self._last_flush = self._started

    @property
    def speed(self) -> float:
        elapsed = self._clock() - self._started
        if elapsed <= 0:
            return 0.0
        return self._run_bytes / elapsed

    @property
    def eta_seconds(self) -> float | None:
        remaining = max(self.bytes_total - self.bytes_transferred, 0)
        if remaining == 0:
            return 0.0
        speed = self.speed
        return remaining / speed if speed > 0 else None

    @property
    def percentage(self) -> int:
        return progress_percentage(self.files_completed, self.files_total)

    def start_file(self, path: str) -> None:
        self.current_file = path

    def add_bytes(self, count: int) -> None:
        self.bytes_transferred += count
        self._run_bytes += count
        if self._clock() - self._last_flush >= self._interval:
            self.flush()

    def file_completed(self) -> None:
        self.files_completed += 1
        self.flush()

    def file_failed(self) -> None:
        self.files_failed += 1
        self.flush()

    def flush(self) -> None:
        self._last_flush = self._clock()
        self._on_flush(self)

    def snapshot(self, status: str) -> TransferProgress:
        return TransferProgress(
            job_id=self.job_id,
            status=status,
            progress_percentage=self.percentage,
            files_total=self.files_total,
            files_completed=self.files_completed,
            files_failed=self.files_failed,
            bytes_total=self.bytes_total,
            bytes_transferred=self.bytes_transferred,
            transfer_speed=self.speed,
            eta_seconds=self.eta_seconds,
            current_file=self.current_file,
        )

    def counters(self) -> dict:
        return {
            "files_total": self.files_total,
            "files_completed": self.files_completed,
            "files_failed": self.files_failed,
            "bytes_total": self.bytes_total,
            "bytes_transferred": self.bytes_transferred,
            "progress_percentage": self.percentage,
            "transfer_speed": self.speed,
            "eta_seconds": self.eta_seconds,
        }


class TransferEngine:
    def __init__(
        self,
        connections: ConnectionService,
        queue: JobQueue,
        event_bus: EventBus | None = None,
        max_concurrent: int | None = None,
        progress_interval: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_concurrent is None:
            max_concurrent = getattr(settings, "RELAY_MAX_CONCURRENT_TRANSFERS", 5)
        if progress_interval is None:
            progress_interval = getattr(settings, "RELAY_PROGRESS_INTERVAL_SECONDS", 2.0)

        self.connections = connections
        self.queue = queue
        self.event_bus = event_bus
        self.max_concurrent = max_concurrent
        self.progress_interval = progress_interval
        self.clock = clock
        self.registry = ExecutionRegistry(max_concurrent, label="Transfer")

    # CRUD

    def create_transfer_job(
        self,
        owner_id: str,
        source_connection_id,
        destination_connection_id,
        source_path: str = ROOT,
        destination_path: str = ROOT,
        filters: dict | None = None,
        options: dict | None = None,
    ) -> TransferJob:
        source = self.connections.get_connection(source_connection_id, owner_id)
        destination = self.connections.get_connection(destination_connection_id, owner_id)

        job = TransferJob.objects.create(
            owner_id=owner_id,
            source_connection=source,
            destination_connection=destination,
            source_path=_clean_path(source_path),
            destination_path=_clean_path(destination_path),
            filters=FileFilter.from_dict(filters).to_dict(),
            options=TransferOptions.from_dict(options).to_dict(),
        )
        logger.info(f"Created transfer {job.id}: {source.alias}:{job.source_path} -> {destination.alias}:{job.destination_path}")
        self._publish(EventType.JOB_CREATED, job)
        return job

    def get_transfer_job(self, job_id, owner_id: str | None = None) -> TransferJob:
        jobs = TransferJob.objects.filter(id=job_id)
        if owner_id is not None:
            jobs = jobs.filter(owner_id=owner_id)
        job = jobs.select_related("source_connection", "destination_connection").first()
        if job is None:
            raise JobNotFoundError(f"Transfer {job_id} not found")
        return job

    def list_transfer_jobs(
        self,
        owner_id: str,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[TransferJob], int]:
        jobs = TransferJob.objects.filter(owner_id=owner_id)
        if status:
            jobs = jobs.filter(status=status)
        total = jobs.count()
        return list(jobs.order_by("-created_at")[offset:offset + limit]), total

    def update_transfer_job(
        self,
        job_id,
        owner_id: str | None = None,
        *,
        filters: dict | None = None,
        options: dict | None = None,
    ) -> TransferJob:
        """Change filters or options of a job that is not running or finished."""
        job = self.get_transfer_job(job_id, owner_id)
        if job.status not in (TransferStatus.PENDING, TransferStatus.PAUSED):
            raise InvalidJobStateError(f"Transfer {job.id} cannot be edited while {job.status}")

        if filters is not None:
            job.filters = FileFilter.from_dict(filters).to_dict()
        if options is not None:
            job.options = TransferOptions.from_dict({**job.options, **options}).to_dict()
        job.save(update_fields=["filters", "options", "updated_at"])
        self._publish(EventType.JOB_UPDATED, job)
        return job

    def delete_transfer_job(self, job_id, owner_id: str | None = None) -> None:
        job = self.get_transfer_job(job_id, owner_id)
        if self._has_live_execution(job):
            raise InvalidJobStateError(f"Transfer {job.id} is running; cancel it before deleting")

        self._drop_queue_entry(job)
        job_id, owner = str(job.id), job.owner_id
        job.delete()
        logger.info(f"Deleted transfer {job_id}")
        self._emit(EventType.JOB_DELETED, owner, job_id, {"kind": "transfer"})

    # Control

    def start_transfer(self, job_id, owner_id: str | None = None) -> TransferJob:
        """
        Validate and enqueue a transfer.

        Raises:
            ConflictError: If the job is already running or queued
            InvalidJobStateError: If the job is not pending or paused
            CapacityError: If the concurrent transfer cap is reached
        """
        job = self.get_transfer_job(job_id, owner_id)

        if (
            self.registry.is_active(job.id)
            or job.status == TransferStatus.RUNNING
            or self.queue.has_pending(job.queue_entry_id)
        ):
            raise ConflictError(f"Transfer {job.id} is already running")
        if job.status not in (TransferStatus.PENDING, TransferStatus.PAUSED):
            raise InvalidJobStateError(f"Transfer {job.id} cannot be started from {job.status}")

        running = TransferJob.objects.filter(status=TransferStatus.RUNNING).count()
        if running >= self.max_concurrent:
            raise CapacityError(
                f"Too many active transfers ({self.max_concurrent}); try again later"
            )

        entry_id = uuid.uuid4()
        with transaction.atomic():
            # Conditional on the state read above so concurrent starts queue at most once
            claimed = TransferJob.objects.filter(
                id=job.id, status=job.status, queue_entry_id=job.queue_entry_id
            ).update(
                status=TransferStatus.PENDING,
                control_request=ControlRequest.NONE,
                error_message="",
                queue_entry_id=entry_id,
                updated_at=timezone.now(),
            )
            if not claimed:
                raise ConflictError(f"Transfer {job.id} is already running")
            self.queue.enqueue(
                TRANSFER_LANE,
                TRANSFER_RUN,
                {"job_id": str(job.id)},
                owner_id=job.owner_id,
                entry_id=entry_id,
                auto_dispatch=False,
            )
        if self.queue.auto_dispatch:
            self.queue.dispatch(TRANSFER_LANE)

        job.refresh_from_db()
        logger.info(f"Queued transfer {job.id} as {entry_id}")
        self._publish(EventType.JOB_UPDATED, job)
        return job

    def pause_transfer(self, job_id, owner_id: str | None = None) -> TransferJob:
        job = self.get_transfer_job(job_id, owner_id)

        if job.status == TransferStatus.PENDING:
            self._drop_queue_entry(job)
            self._set_status(job, TransferStatus.PAUSED)
        elif job.status == TransferStatus.RUNNING:
            execution = self.registry.get(job.id)
            if execution is not None:
                execution.token.request_pause()
            TransferJob.objects.filter(id=job.id).update(control_request=PAUSE)
            logger.info(f"Pause requested for transfer {job.id}")
        else:
            raise InvalidJobStateError(f"Transfer {job.id} cannot be paused from {job.status}")

        job.refresh_from_db()
        return job

    def resume_transfer(self, job_id, owner_id: str | None = None) -> TransferJob:
        job = self.get_transfer_job(job_id, owner_id)
        if job.status != TransferStatus.PAUSED:
            raise InvalidJobStateError(f"Transfer {job.id} is not paused")
        return self.start_transfer(job.id, owner_id)

    def cancel_transfer(self, job_id, owner_id: str | None = None) -> TransferJob:
        job = self.get_transfer_job(job_id, owner_id)

        if job.is_terminal:
            raise InvalidJobStateError(f"Transfer {job.id} is already {job.status}")

        if job.status == TransferStatus.RUNNING and self._has_live_execution(job):
            execution = self.registry.get(job.id)
            if execution is not None:
                execution.token.request_cancel()
            TransferJob.objects.filter(id=job.id).update(control_request=CANCEL)
            logger.info(f"Cancel requested for transfer {job.id}")
        else:
            self._drop_queue_entry(job)
            self._set_status(job, TransferStatus.CANCELLED, completed_at=timezone.now())

        job.refresh_from_db()
        return job

    def get_progress(self, job_id, owner_id: str | None = None) -> TransferProgress:
        job = self.get_transfer_job(job_id, owner_id)
        execution = self.registry.get(job.id)
        if execution is not None and execution.progress is not None:
            return execution.progress
        return TransferProgress.from_job(job)

    # Execution

    def run_transfer(self, job_id, context: JobContext | None = None) -> dict:
        """
        Execute a transfer. Called by the queue worker.

        Returns:
            Summary dict with the final status and counters

        Raises:
            ProviderError: When the job failed, so the queue can decide on a retry
        """
        job = TransferJob.objects.filter(id=job_id).select_related(
            "source_connection", "destination_connection"
        ).first()
        if job is None:
            logger.warning(f"Transfer {job_id} no longer exists")
            return {"status": "missing"}

        if context is not None and str(job.queue_entry_id) != str(context.entry_id):
            logger.info(f"Skipping transfer {job.id}: queue entry {context.entry_id} was superseded")
            return {"status": job.status, "skipped": True}
        if job.status not in (TransferStatus.PENDING, TransferStatus.RUNNING):
            logger.info(f"Skipping transfer {job.id} in status {job.status}")
            return {"status": job.status, "skipped": True}

        token = CancellationToken(
            poll=lambda: self._control_request(job.id),
            poll_interval=min(self.progress_interval, 1.0),
        )
        with self.registry.claim(job.id, token) as execution:
            return self._execute(job, execution, context)

    def _execute(self, job: TransferJob, execution: Execution, context: JobContext | None) -> dict:
        options = TransferOptions.from_dict(job.options)
        filters = FileFilter.from_dict(job.filters)
        token = execution.token

        def flush(tracker: ProgressTracker) -> None:
            self._flush_progress(job, execution, tracker, context)

        tracker = ProgressTracker(job, self.progress_interval, self.clock, flush)

        try:
            source = self.connections.open_provider(job.source_connection)
            destination = self.connections.open_provider(job.destination_connection)
            entries, base = self._collect(source, job.source_path, filters)

            files = [entry for entry in entries if entry.is_file]
            done = set(
                FileTransferLog.objects.filter(
                    transfer_job_id=job.id, status=LogStatus.COMPLETED
                ).values_list("path", flat=True)
            )

            tracker.files_total = len(files)
            tracker.bytes_total = sum(entry.size or 0 for entry in files)
            tracker.files_completed = sum(1 for entry in files if entry.path in done)
            tracker.bytes_transferred = sum(entry.size or 0 for entry in files if entry.path in done)

            started_at = job.started_at or timezone.now()
            # A cancel or pause that landed after the row was read wins
            claimed = TransferJob.objects.filter(
                id=job.id, status__in=[TransferStatus.PENDING, TransferStatus.RUNNING]
            ).update(
                status=TransferStatus.RUNNING,
                started_at=started_at,
                error_message="",
                current_file="",
                updated_at=timezone.now(),
                **tracker.counters(),
            )
            if not claimed:
                job.refresh_from_db(fields=["status"])
                logger.info(f"Transfer {job.id} became {job.status} before it started; skipping")
                return {"status": job.status, "skipped": True}
            job.status = TransferStatus.RUNNING
            logger.info(
                f"Transfer {job.id} running: {tracker.files_total} files, {tracker.bytes_total} bytes"
                + (f" ({tracker.files_completed} already done)" if done else "")
            )
            self._emit(EventType.JOB_UPDATED, job.owner_id, str(job.id), {"kind": "transfer", "status": job.status})

            known_folders: set[str] = set()
            ensure_parent_folders(destination, job.destination_path, known_folders)
            ensure_folder(destination, job.destination_path, known_folders)

            for entry in entries:
                token.check()
                target = join_path(job.destination_path, relative_to(entry.path, base))

                if entry.is_directory:
                    self._copy_folder(destination, target, known_folders)
                    continue
                if entry.path in done:
                    continue

                self._copy_file(job, source, destination, entry, target, options, tracker, token)

        except JobPaused:
            tracker.current_file = ""
            self._finish(job, tracker, TransferStatus.PAUSED)
            logger.info(f"Transfer {job.id} paused")
            return {"status": TransferStatus.PAUSED, **tracker.counters()}
        except JobCancelled:
            tracker.current_file = ""
            self._finish(job, tracker, TransferStatus.CANCELLED, completed_at=timezone.now())
            logger.info(f"Transfer {job.id} cancelled")
            return {"status": TransferStatus.CANCELLED, **tracker.counters()}
        except Exception as e:
            tracker.current_file = ""
            if context is not None and context.will_retry(e):
                # Still pending: the queue runs it again after the backoff
                logger.warning(f"Transfer {job.id} failed on attempt {context.attempt}, will retry: {e}")
                self._finish(job, tracker, TransferStatus.PENDING, error_message=describe_error(e))
            else:
                logger.error(f"Transfer {job.id} failed: {e}", exc_info=True)
                self._finish(
                    job, tracker, TransferStatus.FAILED,
                    error_message=describe_error(e),
                    completed_at=timezone.now(),
                )
            raise

        tracker.current_file = ""
        self._finish(job, tracker, TransferStatus.COMPLETED, completed_at=timezone.now())
        logger.info(
            f"Transfer {job.id} completed: {tracker.files_completed} copied, {tracker.files_failed} failed"
        )
        return {"status": TransferStatus.COMPLETED, **tracker.counters()}

    def _collect(
        self, source: StorageProvider, source_path: str, filters: FileFilter
    ) -> tuple[list[FileDescriptor], str]:
        """List what to copy and the path entries are relative to."""
        source_path = normalize_path(source_path)
        if source_path != ROOT:
            info = source.get_file_info(source_path)
            if info.is_file:
                return [info], parent_of(info.path)
        return list(source.walk(source_path, filters)), source_path

    @staticmethod
    def _copy_folder(destination: StorageProvider, target: str, known: set[str]) -> None:
        try:
            ensure_folder(destination, target, known)
        except AuthenticationError:
            raise
        except ProviderError as e:
            logger.warning(f"Could not create folder {target}: {e}")

    def _copy_file(
        self,
        job: TransferJob,
        source: StorageProvider,
        destination: StorageProvider,
        entry: FileDescriptor,
        target: str,
        options: TransferOptions,
        tracker: ProgressTracker,
        token: CancellationToken,
    ) -> None:
        tracker.start_file(entry.path)
        try:
            transferred = pipe_file(
                source,
                destination,
                entry,
                target,
                overwrite=options.overwrite,
                preserve_timestamps=options.preserve_timestamps,
                verify_integrity=options.verify_integrity,
                on_chunk=tracker.add_bytes,
                token=token,
            )
        except (JobCancelled, AuthenticationError):
            raise
        except Exception as e:
            logger.warning(f"Transfer {job.id}: failed to copy {entry.path}: {e}")
            FileTransferLog.objects.create(
                transfer_job_id=job.id,
                operation="copy",
                path=entry.path,
                size=entry.size,
                status=LogStatus.FAILED,
                error_message=describe_error(e),
            )
            tracker.file_failed()
            return

        FileTransferLog.objects.create(
            transfer_job_id=job.id,
            operation="copy",
            path=entry.path,
            size=transferred,
            status=LogStatus.COMPLETED,
        )
        tracker.file_completed()

    def _flush_progress(
        self,
        job: TransferJob,
        execution: Execution,
        tracker: ProgressTracker,
        context: JobContext | None,
    ) -> None:
        snapshot = tracker.snapshot(TransferStatus.RUNNING)
        execution.progress = snapshot

        # update() so a row deleted meanwhile is not resurrected
        TransferJob.objects.filter(id=job.id, status=TransferStatus.RUNNING).update(
            current_file=tracker.current_file,
            updated_at=timezone.now(),
            **tracker.counters(),
        )
        if context is not None:
            context.progress(snapshot.to_dict())
        self._emit(EventType.JOB_PROGRESS, job.owner_id, str(job.id), snapshot.to_dict())

    def _finish(self, job: TransferJob, tracker: ProgressTracker, status: str, **fields) -> None:
        TransferJob.objects.filter(id=job.id).update(
            status=status,
            control_request=ControlRequest.NONE,
            current_file=tracker.current_file,
            updated_at=timezone.now(),
            **tracker.counters(),
            **fields,
        )
        job.status = status
        self._emit(
            EventType.JOB_UPDATED,
            job.owner_id,
            str(job.id),
            {"kind": "transfer", "status": status, **tracker.counters(), **_serializable(fields)},
        )

    def handle_queue_failure(self, payload: dict, entry_id, message: str) -> None:
        """
        Settle a job whose queue entry failed for good.

        Covers failures the execution could not record itself, such as a
        worker that died mid-run and then exhausted its attempts.
        """
        job = TransferJob.objects.filter(id=payload.get("job_id"), queue_entry_id=entry_id).first()
        if job is None or job.status not in (TransferStatus.PENDING, TransferStatus.RUNNING):
            return

        if job.control_request == CANCEL:
            self._set_status(job, TransferStatus.CANCELLED, completed_at=timezone.now())
            return
        logger.error(f"Transfer {job.id} failed after its queue entry {entry_id} gave up: {message}")
        self._set_status(
            job,
            TransferStatus.FAILED,
            error_message=job.error_message or "The transfer stopped unexpectedly and was not retried",
            current_file="",
            completed_at=timezone.now(),
        )

    # Helpers

    def _has_live_execution(self, job: TransferJob) -> bool:
        """True if a worker may still be executing the job."""
        if self.registry.is_active(job.id):
            return True
        if job.status != TransferStatus.RUNNING:
            return False
        entry = self.queue.get_entry(job.queue_entry_id)
        return entry is not None and entry.state == EntryState.ACTIVE

    @staticmethod
    def _control_request(job_id) -> str:
        return (
            TransferJob.objects.filter(id=job_id)
            .values_list("control_request", flat=True)
            .first()
        ) or ""

    def _drop_queue_entry(self, job: TransferJob) -> None:
        if job.queue_entry_id is None:
            return
        try:
            self.queue.remove_entry(job.queue_entry_id)
        except InvalidJobStateError:
            # Already claimed; the worker skips jobs that are no longer pending
            pass

    def _set_status(self, job: TransferJob, status: str, **fields) -> None:
        TransferJob.objects.filter(id=job.id).update(
            status=status, control_request=ControlRequest.NONE, updated_at=timezone.now(), **fields
        )
        job.status = status
        logger.info(f"Transfer {job.id} is now {status}")
        self._publish(EventType.JOB_UPDATED, job)

    def _publish(self, event_type: str, job: TransferJob) -> None:
        self._emit(event_type, job.owner_id, str(job.id), {"kind": "transfer", "status": job.status})

    def _emit(self, event_type: str, owner_id: str, job_id: str, payload: dict) -> None:
        if self.event_bus is None:
            return
        self.event_bus.publish(Event(type=event_type, owner_id=owner_id, job_id=job_id, payload=payload))


def _clean_path(path: str) -> str:
    try:
        return normalize_path(path)
    except ProviderError as e:
        raise InvalidRequestError(str(e)) from e


def _serializable(fields: dict) -> dict:
    return {
        key: value.isoformat() if hasattr(value, "isoformat") else value
        for key, value in fields.items()
    }
