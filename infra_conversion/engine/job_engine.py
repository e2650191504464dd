"""Durable signal-driven job engine with lifecycle overlays."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from enum import StrEnum
from typing import Any

from infra_conversion.engine.clock import Clock, utc_clock
from infra_conversion.engine.ports import OwningTask
from infra_conversion.engine.progress_tracker import ProgressPhase, ProgressTracker
from infra_conversion.engine.retry_guard import RetryTimeoutGuard
from infra_conversion.engine.signal_scheduler import SignalMessage, SignalScheduler
from infra_conversion.engine.state_descriptors import StateDescriptorRegistry
from infra_conversion.engine.trace_service import JobTraceService
from infra_conversion.engine.transitions import (
    CANCELING_STATE,
    WAITING_TO_START_STATE,
    OverlaySignal,
    TransitionTable,
)
from infra_conversion.errors import HandlerRegistrationError, JobTransitionError
from infra_conversion.observability import log_job_event
from infra_conversion.state_store import (
    AggregateProgress,
    ConversionJobRecord,
    JobContext,
    JobRepository,
    JobStatus,
    format_timestamp,
    normalize_status,
)

logger = logging.getLogger(__name__)

Handler = Callable[..., None]
TaskResolver = Callable[[ConversionJobRecord], OwningTask]

CANCELATION_REQUESTED_MESSAGE = "Migration cancelation requested"


class DeliveryOutcome(StrEnum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    IGNORED = "ignored"


class JobRun:
    """Handler-facing view of one signal invocation.

    Once an abort has been queued during the invocation, further
    ``queue_signal`` calls are dropped so the job never has two signals in
    flight.
    """

    def __init__(self, *, engine: ConversionJobEngine, job: ConversionJobRecord, task: OwningTask) -> None:
        self._engine = engine
        self.job = job
        self.task = task
        self.abort_queued = False

    @property
    def state(self) -> str:
        return self.job.state

    @property
    def context(self) -> JobContext:
        return self.job.context

    def now(self) -> datetime:
        return self._engine.clock()

    def update_progress(
        self,
        phase: ProgressPhase,
        progress: Mapping[str, Any] | None = None,
    ) -> AggregateProgress:
        aggregate = self._engine.progress_tracker.update(
            job=self.job,
            task=self.task,
            phase=phase,
            progress=progress,
        )
        if self.task.cancel_requested():
            self.abort_conversion(CANCELATION_REQUESTED_MESSAGE, "ok")
        return aggregate

    def polling_timeout(self) -> bool:
        decision = self._engine.retry_guard.check(state=self.job.state, context=self.job.context)
        if decision.timed_out:
            log_job_event(
                logger,
                level=logging.WARNING,
                message="Polling retry budget exhausted.",
                job_id=self.job.id,
                component="engine",
                operation="polling_timeout",
                state=self.job.state,
                retries=decision.retries,
                maxRetries=decision.max_retries,
            )
        return decision.timed_out

    def retries(self) -> int:
        return self.job.context.retry_count(self.job.state)

    def queue_signal(self, signal: str, *args: Any, deliver_on: datetime | None = None) -> SignalMessage | None:
        if self.abort_queued:
            log_job_event(
                logger,
                level=logging.INFO,
                message="Signal suppressed because an abort is pending.",
                job_id=self.job.id,
                component="engine",
                operation="signal_suppressed",
                state=self.job.state,
                signal=str(signal),
            )
            return None
        return self._engine.enqueue(self.job, signal, *args, deliver_on=deliver_on)

    def queue_deferred(self, signal: str, *args: Any) -> SignalMessage | None:
        return self.queue_signal(signal, *args, deliver_on=self.now() + self._engine.scheduler.retry_interval)

    def abort_conversion(self, message: str, status: str = "error") -> None:
        if self.abort_queued:
            return
        if not self.task.cancel_requested():
            self.task.cancel()
        self._engine.enqueue(self.job, OverlaySignal.ABORT, message, status)
        self.abort_queued = True

    def record_error(self, message: str, status: str = "error") -> None:
        self._engine.dispatch(self, OverlaySignal.ERROR, (message, status))

    def set_status(self, message: str | None, status: str | None = None) -> None:
        self.job.message = message
        if status is not None:
            self.job.status = normalize_status(status)


class ConversionJobEngine:
    """Validates signals against the transition table and runs bound handlers.

    Lifecycle overlays (``initializing``, ``finish``, ``abort``, ``cancel``,
    ``error``) are implemented here for every job; every other signal in the
    table must be bound to exactly one handler at construction.
    """

    def __init__(
        self,
        *,
        transitions: TransitionTable,
        descriptors: StateDescriptorRegistry,
        handlers: Mapping[str, Handler],
        repository: JobRepository,
        task_resolver: TaskResolver,
        scheduler: SignalScheduler,
        trace_service: JobTraceService | None = None,
        start_signal: str = "start",
        teardown_signal: str | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._transitions = transitions
        self._descriptors = descriptors
        self._handlers: dict[str, Handler] = {str(signal): handler for signal, handler in handlers.items()}
        self._repository = repository
        self._task_resolver = task_resolver
        self._scheduler = scheduler
        self._trace_service = trace_service
        self._start_signal = str(start_signal)
        self._teardown_signal = str(teardown_signal) if teardown_signal is not None else None
        self._clock = clock or utc_clock
        self._retry_guard = RetryTimeoutGuard(descriptors=descriptors)
        self._progress_tracker = ProgressTracker(
            descriptors=descriptors,
            retry_guard=self._retry_guard,
            clock=self._clock,
        )
        self._overlays: dict[str, Handler] = {
            OverlaySignal.INITIALIZING: self._on_initializing,
            OverlaySignal.FINISH: self._on_finish,
            OverlaySignal.ABORT: self._on_abort,
            OverlaySignal.CANCEL: self._on_cancel,
            OverlaySignal.ERROR: self._on_error,
        }
        self._validate_registration()

    @property
    def transitions(self) -> TransitionTable:
        return self._transitions

    @property
    def descriptors(self) -> StateDescriptorRegistry:
        return self._descriptors

    @property
    def progress_tracker(self) -> ProgressTracker:
        return self._progress_tracker

    @property
    def retry_guard(self) -> RetryTimeoutGuard:
        return self._retry_guard

    @property
    def scheduler(self) -> SignalScheduler:
        return self._scheduler

    def clock(self) -> datetime:
        return self._clock()

    def create_job(self, *, task_id: str, zone: str | None = None) -> ConversionJobRecord:
        now = format_timestamp(self._clock())
        job = ConversionJobRecord(
            id=self._repository.next_job_id(),
            task_id=task_id,
            zone=zone,
            created_at=now,
            updated_at=now,
        )
        self._record_trace(job_id=job.id, event="job_created", step="create", from_state=None, to_state=job.state)
        self.enqueue(job, OverlaySignal.INITIALIZING)
        self._repository.save_job(job)
        log_job_event(
            logger,
            level=logging.INFO,
            message="Conversion job created.",
            job_id=job.id,
            component="engine",
            operation="create_job",
            state=job.state,
            taskId=task_id,
        )
        return job

    def get_job(self, job_id: str) -> ConversionJobRecord:
        return self._repository.get_job(job_id)

    def task_for(self, job: ConversionJobRecord) -> OwningTask:
        return self._task_resolver(job)

    def deliver(self, message: SignalMessage) -> DeliveryOutcome:
        """Apply a dequeued message; stale and post-terminal deliveries are no-ops."""
        job = self._repository.get_job(message.job_id)
        if job.finished:
            self._record_trace(
                job_id=job.id,
                event="signal_ignored",
                step=message.signal,
                from_state=job.state,
                to_state=None,
                metadata={"sequence": message.sequence},
            )
            return DeliveryOutcome.IGNORED
        if message.sequence <= job.processed_sequence:
            log_job_event(
                logger,
                level=logging.WARNING,
                message="Duplicate signal delivery dropped.",
                job_id=job.id,
                component="engine",
                operation="duplicate_dropped",
                state=job.state,
                signal=message.signal,
                sequence=message.sequence,
                processedSequence=job.processed_sequence,
            )
            self._record_trace(
                job_id=job.id,
                event="signal_duplicate_dropped",
                step=message.signal,
                from_state=job.state,
                to_state=None,
                metadata={"sequence": message.sequence},
            )
            return DeliveryOutcome.DUPLICATE

        job.processed_sequence = message.sequence
        job.signal_sequence = max(job.signal_sequence, message.sequence)
        if not self._transitions.can_apply(message.signal, job.state):
            self._reject(job, message)
            return DeliveryOutcome.REJECTED

        self._run(job, message.signal, message.args)
        return DeliveryOutcome.APPLIED

    def signal(self, job_id: str, signal: str, *args: Any) -> ConversionJobRecord:
        """Apply ``signal`` synchronously; raises ``JobTransitionError`` when illegal."""
        job = self._repository.get_job(job_id)
        self._transitions.resolve(signal, job.state)
        return self._run(job, signal, args)

    def queue_external_signal(
        self,
        job_id: str,
        signal: str,
        *args: Any,
        deliver_on: datetime | None = None,
    ) -> SignalMessage:
        """Queue an out-of-band signal; any signal already in flight for the job is superseded."""
        job = self._repository.get_job(job_id)
        self._transitions.resolve(signal, job.state)
        message = self.enqueue(job, signal, *args, deliver_on=deliver_on)
        self._supersede_in_flight(job)
        self._repository.save_job(job)
        return message

    def request_cancel(self, job_id: str) -> ConversionJobRecord:
        """Flag the owning task; the running handler observes it at its next progress report."""
        job = self._repository.get_job(job_id)
        if job.finished:
            raise JobTransitionError(signal=OverlaySignal.CANCEL, state=job.state)
        task = self._task_resolver(job)
        if not task.cancel_requested() and not task.is_canceling():
            task.cancel()
            log_job_event(
                logger,
                level=logging.INFO,
                message="Cancelation requested.",
                job_id=job.id,
                component="engine",
                operation="request_cancel",
                state=job.state,
            )
        return job

    def abort_overdue(self, job_id: str, *, reason: str = "Job timed out") -> bool:
        job = self._repository.get_job(job_id)
        if job.finished or job.timed_out_at is not None:
            return False
        job.timed_out_at = format_timestamp(self._clock())
        run = JobRun(engine=self, job=job, task=self._task_resolver(job))
        run.abort_conversion(reason, "error")
        self._supersede_in_flight(job)
        self._record_trace(
            job_id=job.id,
            event="job_deadline_exceeded",
            step="abort_overdue",
            from_state=job.state,
            to_state=None,
        )
        self._repository.save_job(job)
        return True

    def enqueue(
        self,
        job: ConversionJobRecord,
        signal: str,
        *args: Any,
        deliver_on: datetime | None = None,
    ) -> SignalMessage:
        if str(signal) not in self._transitions.signals:
            raise HandlerRegistrationError(f"Signal {signal!r} is not declared in the transition table")
        return self._scheduler.enqueue(job, signal, *args, deliver_on=deliver_on)

    def dispatch(self, run: JobRun, signal: str, args: tuple[Any, ...]) -> None:
        job = run.job
        previous = job.state
        job.state = self._transitions.resolve(signal, previous)
        log_job_event(
            logger,
            level=logging.INFO,
            message="Signal applied.",
            job_id=job.id,
            component="engine",
            operation="transition",
            signal=str(signal),
            fromState=previous,
            toState=job.state,
        )
        self._record_trace(
            job_id=job.id,
            event="state_transition",
            step=str(signal),
            from_state=previous,
            to_state=job.state,
        )

        overlay = self._overlays.get(str(signal))
        if overlay is not None:
            overlay(run, *args)
            return
        try:
            self._handlers[str(signal)](run, *args)
        except Exception as exc:
            logger.exception(
                "Unhandled error in handler for signal %s",
                signal,
                extra={"jobId": job.id, "component": "engine", "operation": "handler_failed", "state": job.state},
            )
            run.abort_conversion(str(exc) or exc.__class__.__name__, "error")

    def _run(self, job: ConversionJobRecord, signal: str, args: tuple[Any, ...]) -> ConversionJobRecord:
        run = JobRun(engine=self, job=job, task=self._task_resolver(job))
        try:
            self.dispatch(run, signal, args)
        finally:
            job.updated_at = format_timestamp(self._clock())
            self._repository.save_job(job)
        return job

    def _supersede_in_flight(self, job: ConversionJobRecord) -> None:
        job.processed_sequence = max(job.processed_sequence, job.signal_sequence - 1)

    def _reject(self, job: ConversionJobRecord, message: SignalMessage) -> None:
        diagnostic = (
            f"Signal {message.signal!r} is not allowed from state {job.state!r}; "
            "transition table and handler set are out of sync"
        )
        log_job_event(
            logger,
            level=logging.ERROR,
            message=diagnostic,
            job_id=job.id,
            component="engine",
            operation="transition_rejected",
            state=job.state,
            signal=message.signal,
            sequence=message.sequence,
        )
        self._record_trace(
            job_id=job.id,
            event="transition_rejected",
            step=message.signal,
            from_state=job.state,
            to_state=None,
            metadata={"sequence": message.sequence},
        )
        job.status = JobStatus.ERROR
        job.message = diagnostic
        run = JobRun(engine=self, job=job, task=self._task_resolver(job))
        run.abort_conversion(diagnostic, "error")
        job.updated_at = format_timestamp(self._clock())
        self._repository.save_job(job)

    # --- Lifecycle overlays --- #

    def _on_initializing(self, run: JobRun, *args: Any) -> None:
        run.queue_signal(self._start_signal, *args)

    def _on_finish(self, run: JobRun, message: str | None = None, status: str | None = None) -> None:
        if message is not None:
            # An error recorded earlier is not cleared by a successful hand-over.
            if run.job.status == JobStatus.ERROR:
                status = None
            run.set_status(message, status)
        log_job_event(
            logger,
            level=logging.INFO,
            message="Conversion job finished.",
            job_id=run.job.id,
            component="engine",
            operation="finish",
            status=str(run.job.status),
        )

    def _on_abort(self, run: JobRun, message: str = "Job aborted", status: str = "error") -> None:
        log_job_event(
            logger,
            level=logging.ERROR,
            message=f"Job aborting, {message}",
            job_id=run.job.id,
            component="engine",
            operation="abort",
        )
        run.set_status(message, status)
        run.task.canceling()
        run.queue_signal(OverlaySignal.CANCEL, message)

    def _on_cancel(self, run: JobRun, message: str | None = None) -> None:
        run.job.message = message or run.job.message or "Job canceled"
        if not run.task.is_canceling():
            run.task.canceling()
        log_job_event(
            logger,
            level=logging.INFO,
            message="Job canceling.",
            job_id=run.job.id,
            component="engine",
            operation="cancel",
            reason=run.job.message,
        )
        if self._teardown_signal is not None:
            run.queue_signal(self._teardown_signal)
        else:
            run.queue_signal(OverlaySignal.FINISH)

    def _on_error(self, run: JobRun, message: str | None = None, status: str = "error") -> None:
        log_job_event(
            logger,
            level=logging.ERROR,
            message=f"Job error recorded, {message}",
            job_id=run.job.id,
            component="engine",
            operation="error",
            state=run.job.state,
        )
        run.set_status(message, status)

    def _validate_registration(self) -> None:
        table_signals = self._transitions.signals
        overlay_signals = {str(signal) for signal in OverlaySignal}
        missing_overlays = overlay_signals - table_signals
        if missing_overlays:
            raise HandlerRegistrationError(f"Transition table lacks overlay signals: {sorted(missing_overlays)}")
        reserved = overlay_signals & self._handlers.keys()
        if reserved:
            raise HandlerRegistrationError(f"Handlers may not be bound to overlay signals: {sorted(reserved)}")
        domain_signals = table_signals - overlay_signals
        unbound = domain_signals - self._handlers.keys()
        if unbound:
            raise HandlerRegistrationError(f"Signals without a handler: {sorted(unbound)}")
        undeclared = self._handlers.keys() - domain_signals
        if undeclared:
            raise HandlerRegistrationError(f"Handlers bound to undeclared signals: {sorted(undeclared)}")
        if self._transitions.allowed(self._start_signal, WAITING_TO_START_STATE) is None:
            raise HandlerRegistrationError(
                f"Start signal {self._start_signal!r} must leave state {WAITING_TO_START_STATE!r}"
            )
        if (
            self._teardown_signal is not None
            and self._transitions.allowed(self._teardown_signal, CANCELING_STATE) is None
        ):
            raise HandlerRegistrationError(
                f"Teardown signal {self._teardown_signal!r} must leave state {CANCELING_STATE!r}"
            )

    def _record_trace(
        self,
        *,
        job_id: str,
        event: str,
        step: str,
        from_state: str | None,
        to_state: str | None,
        metadata: dict[str, object] | None = None,
    ) -> None:
        if self._trace_service is None:
            return
        self._trace_service.record(
            job_id=job_id,
            event=event,
            step=step,
            from_state=from_state,
            to_state=to_state,
            metadata=metadata,
        )


__all__ = [
    "CANCELATION_REQUESTED_MESSAGE",
    "ConversionJobEngine",
    "DeliveryOutcome",
    "Handler",
    "JobRun",
]
