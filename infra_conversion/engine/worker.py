"""Queue worker: drains due signals, one in-flight invocation per job."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from infra_conversion.engine.clock import Clock, ManualClock, utc_clock
from infra_conversion.engine.job_engine import ConversionJobEngine, DeliveryOutcome
from infra_conversion.engine.signal_scheduler import InMemorySignalQueue
from infra_conversion.observability import log_job_event
from infra_conversion.state_store import JobRepository, parse_timestamp

logger = logging.getLogger(__name__)


@dataclass
class WorkerTickReport:
    delivered: int = 0
    duplicates: int = 0
    rejected: int = 0
    ignored: int = 0
    deadline_aborts: int = 0

    @property
    def processed(self) -> int:
        return self.delivered + self.duplicates + self.rejected + self.ignored

    def merge(self, other: WorkerTickReport) -> None:
        self.delivered += other.delivered
        self.duplicates += other.duplicates
        self.rejected += other.rejected
        self.ignored += other.ignored
        self.deadline_aborts += other.deadline_aborts


class ConversionWorker:
    """Dispatch layer in front of the engine.

    Holds a lease per job id while its handler runs, so messages for a job that
    is already executing stay queued until the lease is released. Also enforces
    the overall job deadline, which the engine itself does not track.
    """

    def __init__(
        self,
        *,
        engine: ConversionJobEngine,
        queue: InMemorySignalQueue,
        repository: JobRepository,
        batch_size: int = 50,
        job_timeout: timedelta = timedelta(hours=36),
        clock: Clock | None = None,
    ) -> None:
        self._engine = engine
        self._queue = queue
        self._repository = repository
        self._batch_size = batch_size
        self._job_timeout = job_timeout
        self._clock = clock or utc_clock
        self._leases: set[str] = set()
        self._lock = threading.Lock()

    def run_once(self, now: datetime | None = None) -> WorkerTickReport:
        now = now or self._clock()
        report = WorkerTickReport(deadline_aborts=self.enforce_deadlines(now))
        with self._lock:
            held = set(self._leases)
        for message in self._queue.pop_due(now=now, limit=self._batch_size, held_job_ids=held):
            if not self._acquire(message.job_id):
                self._queue.put(message)
                continue
            try:
                outcome = self._engine.deliver(message)
            finally:
                self._release(message.job_id)
            if outcome == DeliveryOutcome.APPLIED:
                report.delivered += 1
            elif outcome == DeliveryOutcome.DUPLICATE:
                report.duplicates += 1
            elif outcome == DeliveryOutcome.REJECTED:
                report.rejected += 1
            else:
                report.ignored += 1
        return report

    def run_until_idle(
        self,
        *,
        clock: ManualClock,
        max_ticks: int = 100_000,
        on_tick: Callable[[WorkerTickReport], None] | None = None,
    ) -> WorkerTickReport:
        """Drain the queue, jumping the manual clock to each next deferred delivery."""
        total = WorkerTickReport()
        for _ in range(max_ticks):
            if len(self._queue) == 0:
                return total
            report = self.run_once(clock())
            total.merge(report)
            if on_tick is not None:
                on_tick(report)
            if report.processed == 0 and report.deadline_aborts == 0:
                next_delivery = self._queue.next_delivery_at()
                if next_delivery is None or next_delivery <= clock():
                    raise RuntimeError("Queue holds messages that can never become due")
                clock.advance_to(next_delivery)
        raise RuntimeError(f"Queue not drained after {max_ticks} ticks")

    def enforce_deadlines(self, now: datetime) -> int:
        aborted = 0
        for job in self._repository.list_jobs():
            if job.finished or job.timed_out_at is not None:
                continue
            if now - parse_timestamp(job.created_at) <= self._job_timeout:
                continue
            if not self._acquire(job.id):
                continue
            try:
                if self._engine.abort_overdue(job.id):
                    aborted += 1
                    log_job_event(
                        logger,
                        level=logging.WARNING,
                        message="Job exceeded its overall deadline; aborting.",
                        job_id=job.id,
                        component="worker",
                        operation="deadline_abort",
                        state=job.state,
                        timeoutHours=self._job_timeout.total_seconds() / 3600,
                    )
            finally:
                self._release(job.id)
        return aborted

    def _acquire(self, job_id: str) -> bool:
        with self._lock:
            if job_id in self._leases:
                return False
            self._leases.add(job_id)
            return True

    def _release(self, job_id: str) -> None:
        with self._lock:
            self._leases.discard(job_id)


__all__ = ["ConversionWorker", "WorkerTickReport"]
