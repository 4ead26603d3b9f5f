"""
Active-execution bookkeeping shared by the transfer and sync engines.

Each engine owns one ExecutionRegistry: an in-memory table keyed by job id
that rejects duplicate starts within the process and enforces the engine's
concurrency cap. Pause and cancel travel through a CancellationToken that
the execution checks at well-defined points.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

from relay.exceptions import CapacityError, ConflictError

logger = logging.getLogger(__name__)

PAUSE = "pause"
CANCEL = "cancel"


class JobPaused(Exception):
    """Raised inside an execution when a pause request is observed."""

    pass


class JobCancelled(Exception):
    """Raised inside an execution when a cancel or stop request is observed."""

    pass


class CancellationToken:
    """
    Cooperative pause/cancel signal for one execution.

    Requests arrive either in-process (``request_pause``/``request_cancel``)
    or through ``poll``, a callable returning the control request persisted
    on the job row so that another process can signal the execution. Polling
    is throttled to ``poll_interval`` seconds.
    """

    def __init__(
        self,
        poll: Callable[[], str] | None = None,
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._pause = threading.Event()
        self._cancel = threading.Event()
        self._poll = poll
        self._poll_interval = poll_interval
        self._clock = clock
        self._last_poll: float | None = None

    def request_pause(self) -> None:
        self._pause.set()

    def request_cancel(self) -> None:
        self._cancel.set()

    @property
    def pause_requested(self) -> bool:
        self._refresh()
        return self._pause.is_set()

    @property
    def cancel_requested(self) -> bool:
        self._refresh()
        return self._cancel.is_set()

    def _refresh(self) -> None:
        if self._poll is None:
            return
        now = self._clock()
        if self._last_poll is not None and now - self._last_poll < self._poll_interval:
            return
        self._last_poll = now

        request = self._poll()
        if request == CANCEL:
            self._cancel.set()
        elif request == PAUSE:
            self._pause.set()

    def check(self) -> None:
        """Raise JobCancelled or JobPaused if requested. Cancel wins over pause."""
        if self.cancel_requested:
            raise JobCancelled()
        if self._pause.is_set():
            raise JobPaused()

    def check_cancelled(self) -> None:
        if self.cancel_requested:
            raise JobCancelled()


@dataclass
class Execution:
    job_id: str
    token: CancellationToken
    started_at: float = field(default_factory=time.monotonic)
    progress: Any = None


class ExecutionRegistry:
    """Table of active executions for one engine."""

    def __init__(self, capacity: int, label: str = "Job"):
        self.capacity = capacity
        self.label = label
        self._lock = threading.Lock()
        self._executions: dict[str, Execution] = {}

    def acquire(self, job_id: str, token: CancellationToken) -> Execution:
        """
        Register an execution for ``job_id``.

        Raises:
            ConflictError: If the job already has an active execution
            CapacityError: If the engine is at its concurrency cap
        """
        job_id = str(job_id)
        with self._lock:
            if job_id in self._executions:
                raise ConflictError(f"{self.label} {job_id} is already running")
            if len(self._executions) >= self.capacity:
                raise CapacityError(
                    f"Too many active {self.label.lower()} executions "
                    f"({self.capacity}); try again later"
                )
            execution = Execution(job_id=job_id, token=token)
            self._executions[job_id] = execution
        logger.debug(f"{self.label} {job_id} registered as active")
        return execution

    def release(self, job_id: str) -> None:
        with self._lock:
            self._executions.pop(str(job_id), None)

    def get(self, job_id) -> Execution | None:
        with self._lock:
            return self._executions.get(str(job_id))

    def is_active(self, job_id) -> bool:
        return self.get(job_id) is not None

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._executions)

    @contextmanager
    def claim(self, job_id, token: CancellationToken) -> Iterator[Execution]:
        execution = self.acquire(job_id, token)
        try:
            yield execution
        finally:
            self.release(job_id)
