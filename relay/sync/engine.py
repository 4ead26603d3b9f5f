"""
Sync engine: recurring, policy-driven reconciliation between two connections.

Each run lists both trees, plans the operations for the job's mode, and
executes them one at a time with the transfer pipe primitives. Per-operation
failures are recorded and the run continues; authentication failures abort
it. Scheduling is a single ``next_run_at`` per job, fired by Celery beat
through ``trigger_due_syncs``.
"""

from __future__ import annotations

import logging
import posixpath
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime

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
from relay.execution import CANCEL, CancellationToken, Execution, ExecutionRegistry, JobCancelled
from relay.models import (
    ConflictPolicy,
    ControlRequest,
    FileTransferLog,
    LogStatus,
    RunStatus,
    SyncJob,
    SyncMode,
)
from relay.providers.base import FileDescriptor, FileFilter, StorageProvider
from relay.providers.errors import (
    AlreadyExistsError,
    AuthenticationError,
    NotFoundError,
    ProviderError,
    describe_error,
)
from relay.providers.paths import ROOT, join_path, normalize_path, parent_of
from relay.queue.lanes import SYNC_LANE, SYNC_RUN
from relay.queue.manager import JobContext, JobQueue
from relay.queue.models import EntryState
from relay.sync.models import SyncRun
from relay.sync.reconcile import (
    Direction,
    OperationType,
    SyncOperation,
    baseline_record,
    index_by_relative_path,
    plan_operations,
)
from relay.sync.schedule import next_run_after, parse_schedule
from relay.transfer.pipe import ensure_folder, ensure_parent_folders, pipe_file, require_operation

logger = logging.getLogger(__name__)

# Upper bound on "name (n).ext" candidates tried by the rename policy
MAX_RENAME_ATTEMPTS = 100

EDITABLE_FIELDS = (
    "name",
    "source_path",
    "destination_path",
    "mode",
    "schedule",
    "is_enabled",
    "filters",
    "options",
    "conflict_policy",
)


@dataclass
class SyncOptions:
    """
    ``delete_orphans`` adds the mirror deletion pass to a one-way job;
    mirror jobs always delete.
    """

    delete_orphans: bool = False
    preserve_timestamps: bool = True
    max_depth: int | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> "SyncOptions":
        data = data or {}
        max_depth = data.get("max_depth")
        if max_depth is not None:
            max_depth = int(max_depth)
            if max_depth < 1:
                raise InvalidRequestError("max_depth must be at least 1")
        return cls(
            delete_orphans=bool(data.get("delete_orphans", False)),
            preserve_timestamps=bool(data.get("preserve_timestamps", True)),
            max_depth=max_depth,
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SyncResult:
    """Result of one reconciliation pass."""

    operations_planned: int = 0
    uploads: int = 0
    downloads: int = 0
    deletes: int = 0
    failures: int = 0
    bytes_transferred: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class SyncEngine:
    def __init__(
        self,
        connections: ConnectionService,
        queue: JobQueue,
        event_bus: EventBus | None = None,
        max_concurrent: int | None = None,
    ):
        if max_concurrent is None:
            max_concurrent = getattr(settings, "RELAY_MAX_CONCURRENT_SYNCS", 3)
        self.connections = connections
        self.queue = queue
        self.event_bus = event_bus
        self.max_concurrent = max_concurrent
        self.registry = ExecutionRegistry(max_concurrent, label="Sync")

    # CRUD

    def create_sync_job(
        self,
        owner_id: str,
        source_connection_id,
        destination_connection_id,
        source_path: str = ROOT,
        destination_path: str = ROOT,
        mode: str = SyncMode.ONE_WAY,
        schedule: str = "",
        name: str = "",
        filters: dict | None = None,
        options: dict | None = None,
        conflict_policy: str = ConflictPolicy.SKIP,
        is_enabled: bool = True,
    ) -> SyncJob:
        source = self.connections.get_connection(source_connection_id, owner_id)
        destination = self.connections.get_connection(destination_connection_id, owner_id)
        schedule = self._validate(mode, conflict_policy, schedule)

        job = SyncJob.objects.create(
            owner_id=owner_id,
            name=name,
            source_connection=source,
            destination_connection=destination,
            source_path=_clean_path(source_path),
            destination_path=_clean_path(destination_path),
            mode=mode,
            schedule=schedule,
            is_enabled=is_enabled,
            next_run_at=self.compute_next_run(schedule, is_enabled),
            filters=FileFilter.from_dict(filters).to_dict(),
            options=SyncOptions.from_dict(options).to_dict(),
            conflict_policy=conflict_policy,
        )
        logger.info(f"Created {mode} sync {job.id} ({schedule or 'manual'}), next run {job.next_run_at}")
        self._publish(EventType.JOB_CREATED, job)
        return job

    def get_sync_job(self, job_id, owner_id: str | None = None) -> SyncJob:
        jobs = SyncJob.objects.filter(id=job_id)
        if owner_id is not None:
            jobs = jobs.filter(owner_id=owner_id)
        job = jobs.select_related("source_connection", "destination_connection").first()
        if job is None:
            raise JobNotFoundError(f"Sync {job_id} not found")
        return job

    def list_sync_jobs(
        self,
        owner_id: str,
        is_enabled: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[SyncJob], int]:
        jobs = SyncJob.objects.filter(owner_id=owner_id)
        if is_enabled is not None:
            jobs = jobs.filter(is_enabled=is_enabled)
        total = jobs.count()
        return list(jobs.order_by("-created_at")[offset:offset + limit]), total

    def get_sync_history(self, job_id, owner_id: str | None = None, limit: int = 20) -> list[SyncRun]:
        job = self.get_sync_job(job_id, owner_id)
        return list(job.runs.order_by("-started_at")[:limit])

    def update_sync_job(self, job_id, owner_id: str | None = None, **changes) -> SyncJob:
        """
        Update editable fields. ``next_run_at`` is recomputed whenever the
        schedule or the enabled flag changes.
        """
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise InvalidRequestError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        job = self.get_sync_job(job_id, owner_id)
        mode = changes.get("mode", job.mode)
        policy = changes.get("conflict_policy", job.conflict_policy)
        schedule = self._validate(mode, policy, changes.get("schedule", job.schedule))

        if "schedule" in changes:
            changes["schedule"] = schedule
        for path_field in ("source_path", "destination_path"):
            if path_field in changes:
                changes[path_field] = _clean_path(changes[path_field])
        if "filters" in changes:
            changes["filters"] = FileFilter.from_dict(changes["filters"]).to_dict()
        if "options" in changes:
            changes["options"] = SyncOptions.from_dict({**job.options, **(changes["options"] or {})}).to_dict()

        reschedule = (
            changes.get("schedule", job.schedule) != job.schedule
            or changes.get("is_enabled", job.is_enabled) != job.is_enabled
        )
        # Fingerprints recorded for other folders say nothing about the new ones
        if any(changes.get(name, getattr(job, name)) != getattr(job, name) for name in ("source_path", "destination_path")):
            job.sync_state = {}
        for name, value in changes.items():
            setattr(job, name, value)
        if reschedule:
            job.next_run_at = self.compute_next_run(job.schedule, job.is_enabled)

        job.save()
        logger.info(f"Updated sync {job.id}" + (f", next run {job.next_run_at}" if reschedule else ""))
        self._publish(EventType.JOB_UPDATED, job)
        return job

    def delete_sync_job(self, job_id, owner_id: str | None = None) -> None:
        """
        Delete a sync job.

        Raises:
            InvalidJobStateError: If a run is still active; a stop has been
                requested and the delete can be retried once it ends
        """
        job = self.get_sync_job(job_id, owner_id)

        if self._has_live_execution(job):
            self._request_stop(job)
            raise InvalidJobStateError(f"Sync {job.id} is running; it has been asked to stop")

        SyncJob.objects.filter(id=job.id).update(next_run_at=None, is_enabled=False)
        self._drop_queue_entry(job)
        job_id, owner = str(job.id), job.owner_id
        job.delete()
        logger.info(f"Deleted sync {job_id}")
        self._emit(EventType.JOB_DELETED, owner, job_id, {"kind": "sync"})

    # Control

    def start_sync(self, job_id, owner_id: str | None = None, trigger: str = "manual") -> SyncJob:
        """
        Validate and enqueue a sync run. Scheduled triggers use this too.

        Raises:
            InvalidJobStateError: If the job is disabled
            ConflictError: If the job is already running or queued
            CapacityError: If the concurrent sync cap is reached
        """
        job = self.get_sync_job(job_id, owner_id)

        if not job.is_enabled:
            raise InvalidJobStateError(f"Sync {job.id} is disabled")
        if self._is_running(job) or self.queue.has_pending(job.queue_entry_id):
            raise ConflictError(f"Sync {job.id} is already running")

        running = SyncJob.objects.filter(last_run_status=RunStatus.RUNNING).count()
        if running >= self.max_concurrent:
            raise CapacityError(f"Too many active syncs ({self.max_concurrent}); try again later")

        entry_id = uuid.uuid4()
        with transaction.atomic():
            # Conditional on the state read above so concurrent starts queue at most once
            claimed = SyncJob.objects.filter(
                id=job.id, last_run_status=job.last_run_status, queue_entry_id=job.queue_entry_id
            ).update(
                control_request=ControlRequest.NONE,
                last_run_status=RunStatus.PENDING,
                queue_entry_id=entry_id,
                updated_at=timezone.now(),
            )
            if not claimed:
                raise ConflictError(f"Sync {job.id} is already running")
            self.queue.enqueue(
                SYNC_LANE,
                SYNC_RUN,
                {"job_id": str(job.id), "trigger": trigger},
                owner_id=job.owner_id,
                entry_id=entry_id,
                auto_dispatch=False,
            )
        if self.queue.auto_dispatch:
            self.queue.dispatch(SYNC_LANE)

        job.refresh_from_db()
        logger.info(f"Queued {trigger} run of sync {job.id} as {entry_id}")
        self._publish(EventType.JOB_UPDATED, job)
        return job

    def stop_sync(self, job_id, owner_id: str | None = None) -> SyncJob:
        job = self.get_sync_job(job_id, owner_id)

        if self._has_live_execution(job):
            self._request_stop(job)
        elif self.queue.has_pending(job.queue_entry_id) or job.last_run_status == RunStatus.RUNNING:
            # Queued, or marked running with nothing executing it any more
            started = job.last_run_status == RunStatus.RUNNING
            self._drop_queue_entry(job)
            self._settle(job, RunStatus.STOPPED, "Stopped by request" if started else "Stopped before it started")
            # A worker may already hold the entry; it checks control_request first
            SyncJob.objects.filter(id=job.id).update(control_request=CANCEL)
            logger.info(f"Stopped sync {job.id} without a live run")
        else:
            raise InvalidJobStateError(f"Sync {job.id} is not running")

        job.refresh_from_db()
        self._publish(EventType.JOB_UPDATED, job)
        return job

    def toggle_sync(self, job_id, owner_id: str | None = None, enabled: bool | None = None) -> SyncJob:
        job = self.get_sync_job(job_id, owner_id)
        if enabled is None:
            enabled = not job.is_enabled
        return self.update_sync_job(job.id, owner_id, is_enabled=enabled)

    # Scheduling

    @staticmethod
    def compute_next_run(schedule: str, is_enabled: bool, now: datetime | None = None) -> datetime | None:
        if not schedule or not is_enabled:
            return None
        return next_run_after(schedule, now or timezone.now())

    def trigger_due_syncs(self, now: datetime | None = None) -> list[str]:
        """
        Start every enabled job whose ``next_run_at`` has passed.

        ``next_run_at`` is advanced before starting, so a run that cannot
        start now (conflict, capacity) waits for its next occurrence.

        Returns:
            Ids of the jobs that were queued
        """
        now = now or timezone.now()

        with transaction.atomic():
            due = list(
                SyncJob.objects.select_for_update(skip_locked=True)
                .filter(is_enabled=True, next_run_at__lte=now)
                .exclude(schedule="")
            )
            for job in due:
                try:
                    job.next_run_at = next_run_after(job.schedule, now)
                except InvalidRequestError as e:
                    logger.error(f"Sync {job.id} has an unusable schedule: {e}")
                    job.next_run_at = None
                job.save(update_fields=["next_run_at", "updated_at"])

        started = []
        for job in due:
            try:
                self.start_sync(job.id, trigger="schedule")
            except (ConflictError, CapacityError, InvalidJobStateError) as e:
                logger.info(f"Skipping scheduled run of sync {job.id}: {e}")
                continue
            started.append(str(job.id))

        if started:
            logger.info(f"Triggered {len(started)} scheduled sync(s)")
        return started

    # Execution

    def run_sync(self, job_id, context: JobContext | None = None, trigger: str = "manual") -> dict:
        """
        Execute one reconciliation pass. Called by the queue worker.

        Raises:
            ProviderError: When the run failed, so the queue can decide on a retry
        """
        job = SyncJob.objects.filter(id=job_id).select_related(
            "source_connection", "destination_connection"
        ).first()
        if job is None:
            logger.warning(f"Sync {job_id} no longer exists")
            return {"status": "missing"}

        if context is not None and str(job.queue_entry_id) != str(context.entry_id):
            logger.info(f"Skipping sync {job.id}: queue entry {context.entry_id} was superseded")
            return {"status": job.last_run_status, "skipped": True}

        if job.control_request == CANCEL:
            SyncJob.objects.filter(id=job.id).update(
                control_request=ControlRequest.NONE,
                last_run_status=RunStatus.STOPPED,
                last_run_message="Stopped before it started",
            )
            return {"status": RunStatus.STOPPED}

        token = CancellationToken(poll=lambda: self._control_request(job.id))
        with self.registry.claim(job.id, token) as execution:
            return self._execute(job, execution, context, trigger)

    def _execute(
        self,
        job: SyncJob,
        execution: Execution,
        context: JobContext | None,
        trigger: str,
    ) -> dict:
        started_at = timezone.now()
        run = SyncRun.objects.create(sync_job=job, trigger=trigger, status=RunStatus.RUNNING)
        SyncJob.objects.filter(id=job.id).update(
            last_run_status=RunStatus.RUNNING,
            last_run_at=started_at,
            last_run_message="",
        )
        self._emit(EventType.JOB_UPDATED, job.owner_id, str(job.id), {"kind": "sync", "status": RunStatus.RUNNING})
        logger.info(f"Starting {job.mode} sync {job.id}: {job.source_path} -> {job.destination_path}")

        result = SyncResult()
        execution.progress = result
        try:
            self._reconcile(job, run, result, execution.token, context)
        except JobCancelled:
            status, message = RunStatus.STOPPED, "Stopped by request"
        except Exception as e:
            if context is not None and context.will_retry(e):
                # The run failed but the job stays pending until the queue retries it
                logger.warning(f"Sync {job.id} failed on attempt {context.attempt}, will retry: {e}")
                self._finish(job, run, result, RunStatus.FAILED, describe_error(e), job_status=RunStatus.PENDING)
            else:
                logger.error(f"Sync {job.id} failed: {e}", exc_info=True)
                self._finish(job, run, result, RunStatus.FAILED, describe_error(e))
            raise
        else:
            status = RunStatus.COMPLETED
            message = f"{result.failures} operation(s) failed" if result.failures else ""

        self._finish(job, run, result, status, message)
        logger.info(
            f"Sync {job.id} {status}: {result.uploads} uploaded, {result.downloads} downloaded, "
            f"{result.deletes} deleted, {result.failures} failed"
        )
        return {"status": status, **result.to_dict()}

    def _reconcile(
        self,
        job: SyncJob,
        run: SyncRun,
        result: SyncResult,
        token: CancellationToken,
        context: JobContext | None,
    ) -> None:
        options = SyncOptions.from_dict(job.options)
        filters = FileFilter.from_dict(job.filters)

        source = self.connections.open_provider(job.source_connection)
        destination = self.connections.open_provider(job.destination_connection)

        source_index = index_by_relative_path(
            source.walk(job.source_path, filters, max_depth=options.max_depth), job.source_path
        )
        destination_index = self._list_destination(destination, job, filters, options.max_depth)

        mode = job.mode
        if mode == SyncMode.ONE_WAY and options.delete_orphans:
            mode = SyncMode.MIRROR
        baseline = {
            relative: record
            for relative, record in (job.sync_state or {}).items()
            if relative in source_index or relative in destination_index
        }
        operations = plan_operations(mode, source_index, destination_index, baseline)

        result.operations_planned = len(operations)
        SyncRun.objects.filter(id=run.id).update(operations_planned=len(operations))
        logger.info(f"Sync {job.id}: {len(operations)} operation(s) planned")

        sides = {
            Direction.SOURCE_TO_DESTINATION: (source, destination, job.destination_path, set()),
            Direction.DESTINATION_TO_SOURCE: (destination, source, job.source_path, set()),
        }
        if operations:
            ensure_parent_folders(destination, job.destination_path)
            ensure_folder(destination, job.destination_path)

        try:
            for index, operation in enumerate(operations, start=1):
                token.check_cancelled()
                origin, receiving, receiving_root, known = sides[operation.direction]
                self._apply(
                    job, run, operation, origin, receiving, receiving_root, known, options, result, token, baseline
                )
                if context is not None:
                    context.progress({"completed": index, "total": len(operations), **result.to_dict()})
        finally:
            SyncJob.objects.filter(id=job.id).update(sync_state=baseline)

    @staticmethod
    def _list_destination(
        destination: StorageProvider, job: SyncJob, filters: FileFilter, max_depth: int | None
    ) -> dict[str, FileDescriptor]:
        try:
            entries = list(destination.walk(job.destination_path, filters, max_depth=max_depth))
        except NotFoundError:
            logger.info(f"Sync {job.id}: destination {job.destination_path} does not exist yet")
            return {}
        return index_by_relative_path(entries, job.destination_path)

    def _apply(
        self,
        job: SyncJob,
        run: SyncRun,
        operation: SyncOperation,
        origin: StorageProvider,
        receiving: StorageProvider,
        receiving_root: str,
        known: set[str],
        options: SyncOptions,
        result: SyncResult,
        token: CancellationToken,
        baseline: dict,
    ) -> None:
        target = join_path(receiving_root, operation.relative_path)
        size = None
        written = None
        try:
            if operation.type == OperationType.DELETE:
                require_operation(receiving, "delete_file")
                receiving.delete_file(target)
                result.deletes += 1
            elif operation.file.is_directory:
                ensure_parent_folders(receiving, target, known)
                ensure_folder(receiving, target, known)
                return
            else:
                ensure_parent_folders(receiving, target, known)
                size, written = self._copy(job, operation, origin, receiving, target, options, token)
                result.bytes_transferred += size
                if operation.type == OperationType.UPLOAD:
                    result.uploads += 1
                else:
                    result.downloads += 1
        except (JobCancelled, AuthenticationError):
            raise
        except Exception as e:
            result.failures += 1
            result.errors.append(f"{operation.type.value} {operation.relative_path}: {describe_error(e)}")
            logger.warning(f"Sync {job.id}: {operation.type.value} of {operation.relative_path} failed: {e}")
            self._log(run, operation, target, LogStatus.FAILED, operation.file.size, describe_error(e))
            return

        self._log(run, operation, target, LogStatus.COMPLETED, size)
        if operation.type == OperationType.DELETE:
            self._forget(baseline, operation.relative_path)
        elif written == target:
            self._remember(baseline, operation, receiving, target)

    @staticmethod
    def _remember(baseline: dict, operation: SyncOperation, receiving: StorageProvider, target: str) -> None:
        """Record both sides of a finished copy as they now stand."""
        try:
            copied = receiving.get_file_info(target)
        except ProviderError as e:
            logger.debug(f"Could not stat {target} after copying it: {e}")
            baseline.pop(operation.relative_path, None)
            return
        if operation.direction == Direction.SOURCE_TO_DESTINATION:
            baseline[operation.relative_path] = baseline_record(operation.file, copied)
        else:
            baseline[operation.relative_path] = baseline_record(copied, operation.file)

    @staticmethod
    def _forget(baseline: dict, relative_path: str) -> None:
        prefix = relative_path + "/"
        for relative in [r for r in baseline if r == relative_path or r.startswith(prefix)]:
            del baseline[relative]

    def _copy(
        self,
        job: SyncJob,
        operation: SyncOperation,
        origin: StorageProvider,
        receiving: StorageProvider,
        target: str,
        options: SyncOptions,
        token: CancellationToken,
    ) -> tuple[int, str]:
        """
        Copy one file, resolving an already-exists failure by the job's conflict policy.

        Returns:
            (bytes copied, path written)
        """

        def copy(path: str, overwrite: bool) -> int:
            return pipe_file(
                origin,
                receiving,
                operation.file,
                path,
                overwrite=overwrite,
                preserve_timestamps=options.preserve_timestamps,
                token=token,
            )

        # Replacing a file the listing showed on the receiving side is the point of an update
        try:
            return copy(target, overwrite=operation.is_update), target
        except AlreadyExistsError:
            if job.conflict_policy == ConflictPolicy.OVERWRITE:
                logger.info(f"Sync {job.id}: overwriting existing {target}")
                return copy(target, overwrite=True), target
            if job.conflict_policy == ConflictPolicy.RENAME:
                renamed = self._free_name(receiving, target)
                logger.info(f"Sync {job.id}: {target} exists, writing {renamed} instead")
                return copy(renamed, overwrite=False), renamed
            raise

    @staticmethod
    def _free_name(provider: StorageProvider, path: str) -> str:
        parent = parent_of(path)
        stem, ext = posixpath.splitext(posixpath.basename(path))
        for n in range(1, MAX_RENAME_ATTEMPTS + 1):
            candidate = join_path(parent, f"{stem} ({n}){ext}")
            if not provider.exists(candidate):
                return candidate
        raise AlreadyExistsError(f"No free name for {path}", path=path)

    @staticmethod
    def _log(
        run: SyncRun,
        operation: SyncOperation,
        path: str,
        status: str,
        size: int | None,
        error_message: str = "",
    ) -> None:
        FileTransferLog.objects.create(
            sync_run_id=run.id,
            operation=operation.type.value,
            path=path,
            size=size,
            status=status,
            error_message=error_message,
        )

    def _finish(
        self,
        job: SyncJob,
        run: SyncRun,
        result: SyncResult,
        status: str,
        message: str,
        job_status: str | None = None,
    ) -> None:
        """Close the run as ``status``; the job records ``job_status`` when given."""
        now = timezone.now()
        SyncRun.objects.filter(id=run.id).update(
            status=status,
            completed_at=now,
            uploads=result.uploads,
            downloads=result.downloads,
            deletes=result.deletes,
            failures=result.failures,
            bytes_transferred=result.bytes_transferred,
            error_message=message,
        )

        current = SyncJob.objects.filter(id=job.id).values("schedule", "is_enabled").first()
        if current is None:
            return
        try:
            next_run_at = self.compute_next_run(current["schedule"], current["is_enabled"], now)
        except InvalidRequestError:
            next_run_at = None

        job_status = job_status or status
        SyncJob.objects.filter(id=job.id).update(
            last_run_status=job_status,
            last_run_message=message,
            next_run_at=next_run_at,
            control_request=ControlRequest.NONE,
            updated_at=now,
        )
        self._emit(
            EventType.JOB_UPDATED,
            job.owner_id,
            str(job.id),
            {"kind": "sync", "status": job_status, "message": message, **result.to_dict()},
        )

    def _settle(self, job: SyncJob, status: str, message: str) -> None:
        """Close out a run that no execution will finish."""
        now = timezone.now()
        SyncRun.objects.filter(sync_job_id=job.id, status=RunStatus.RUNNING).update(
            status=status, completed_at=now, error_message=message
        )
        try:
            next_run_at = self.compute_next_run(job.schedule, job.is_enabled, now)
        except InvalidRequestError:
            next_run_at = None
        SyncJob.objects.filter(id=job.id).update(
            last_run_status=status,
            last_run_message=message,
            next_run_at=next_run_at,
            control_request=ControlRequest.NONE,
            updated_at=now,
        )
        job.last_run_status = status
        job.last_run_message = message
        job.next_run_at = next_run_at

    def handle_queue_failure(self, payload: dict, entry_id, message: str) -> None:
        """
        Settle a job whose queue entry failed for good.

        Covers failures the run could not record itself, such as a worker
        that died mid-run and then exhausted its attempts.
        """
        job = SyncJob.objects.filter(id=payload.get("job_id"), queue_entry_id=entry_id).first()
        if job is None or job.last_run_status not in (RunStatus.PENDING, RunStatus.RUNNING):
            return

        if job.control_request == CANCEL:
            self._settle(job, RunStatus.STOPPED, "Stopped by request")
        else:
            logger.error(f"Sync {job.id} failed after its queue entry {entry_id} gave up: {message}")
            self._settle(
                job,
                RunStatus.FAILED,
                job.last_run_message or "The sync run stopped unexpectedly and was not retried",
            )
        self._publish(EventType.JOB_UPDATED, job)

    # Helpers

    @staticmethod
    def _validate(mode: str, conflict_policy: str, schedule: str) -> str:
        if mode not in SyncMode.values:
            raise InvalidRequestError(f"Unknown sync mode '{mode}'")
        if conflict_policy not in ConflictPolicy.values:
            raise InvalidRequestError(f"Unknown conflict policy '{conflict_policy}'")
        schedule = (schedule or "").strip()
        if schedule:
            return parse_schedule(schedule).expression
        return ""

    def _is_running(self, job: SyncJob) -> bool:
        return self.registry.is_active(job.id) or job.last_run_status == RunStatus.RUNNING

    def _has_live_execution(self, job: SyncJob) -> bool:
        """True if a worker may still be executing the job."""
        if self.registry.is_active(job.id):
            return True
        if job.last_run_status != RunStatus.RUNNING:
            return False
        entry = self.queue.get_entry(job.queue_entry_id)
        return entry is not None and entry.state == EntryState.ACTIVE

    def _request_stop(self, job: SyncJob) -> None:
        execution = self.registry.get(job.id)
        if execution is not None:
            execution.token.request_cancel()
        SyncJob.objects.filter(id=job.id).update(control_request=CANCEL)
        logger.info(f"Stop requested for sync {job.id}")

    @staticmethod
    def _control_request(job_id) -> str:
        return (
            SyncJob.objects.filter(id=job_id).values_list("control_request", flat=True).first()
        ) or ""

    def _drop_queue_entry(self, job: SyncJob) -> None:
        if job.queue_entry_id is None:
            return
        try:
            self.queue.remove_entry(job.queue_entry_id)
        except InvalidJobStateError:
            pass

    def _publish(self, event_type: str, job: SyncJob) -> None:
        self._emit(
            event_type,
            job.owner_id,
            str(job.id),
            {"kind": "sync", "status": job.last_run_status, "next_run_at": _iso(job.next_run_at)},
        )

    def _emit(self, event_type: str, owner_id: str, job_id: str, payload: dict) -> None:
        if self.event_bus is None:
            return
        self.event_bus.publish(Event(type=event_type, owner_id=owner_id, job_id=job_id, payload=payload))


def _clean_path(path: str) -> str:
    try:
        return normalize_path(path)
    except ProviderError as e:
        raise InvalidRequestError(str(e)) from e


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
