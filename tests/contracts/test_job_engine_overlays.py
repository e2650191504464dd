"""Contract tests for engine overlays, registration checks and delivery outcomes."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

import pytest

from infra_conversion.engine.clock import ManualClock
from infra_conversion.engine.job_engine import (
    CANCELATION_REQUESTED_MESSAGE,
    ConversionJobEngine,
    DeliveryOutcome,
    JobRun,
)
from infra_conversion.engine.progress_tracker import ProgressPhase
from infra_conversion.engine.signal_scheduler import (
    InMemorySignalQueue,
    SignalMessage,
    SignalRouting,
    SignalScheduler,
)
from infra_conversion.engine.state_descriptors import StateDescriptor, StateDescriptorRegistry
from infra_conversion.engine.trace_service import JobTraceService
from infra_conversion.engine.transitions import OverlaySignal, TransitionTable
from infra_conversion.engine.worker import ConversionWorker
from infra_conversion.errors import HandlerRegistrationError, JobTransitionError
from infra_conversion.state_store import AggregateProgress, InMemoryStateStore, JobStatus

TOY_TRANSITIONS = {
    "start": {"waiting_to_start": "working"},
    "work": {"working": "working"},
    "teardown": {"canceling": "tearing_down"},
}


class _Task:
    def __init__(self) -> None:
        self.id = "task-toy"
        self.options: dict[str, Any] = {}
        self.cancel_status: str | None = None
        self.progress: AggregateProgress | None = None

    def transformation_progress(self) -> AggregateProgress | None:
        return self.progress

    def update_transformation_progress(self, progress: AggregateProgress) -> None:
        self.progress = progress

    def cancel_requested(self) -> bool:
        return self.cancel_status == "cancel_requested"

    def cancel(self) -> None:
        if self.cancel_status is None:
            self.cancel_status = "cancel_requested"

    def canceling(self) -> None:
        self.cancel_status = "canceling"

    def is_canceling(self) -> bool:
        return self.cancel_status == "canceling"

    def canceled(self) -> None:
        self.cancel_status = "canceled"

    def get_option(self, key: str, default: Any = None) -> Any:
        return self.options.get(key, default)

    def update_options(self, **options: Any) -> None:
        self.options.update(options)


def _start(run: JobRun) -> None:
    run.queue_signal("work")


def _work(run: JobRun) -> None:
    run.update_progress(ProgressPhase.ENTRY)
    mode = run.task.get_option("mode")
    if mode == "raise":
        raise RuntimeError("boom")
    if mode == "abort":
        run.abort_conversion("gave up")
        run.queue_signal("work")
        return
    if mode == "error":
        run.record_error("soft failure")
    if run.polling_timeout():
        run.abort_conversion("work timed out")
        return
    if run.retries() < 2:
        run.update_progress(ProgressPhase.RETRY)
        run.queue_deferred("work")
        return
    run.update_progress(ProgressPhase.EXIT)
    run.queue_signal(OverlaySignal.FINISH, "all done", "ok")


def _poll_forever(run: JobRun) -> None:
    if run.polling_timeout():
        run.abort_conversion("work timed out")
        return
    run.queue_deferred("work")


def _teardown(run: JobRun) -> None:
    run.task.canceled()
    run.queue_signal(OverlaySignal.FINISH)


class _Harness:
    def __init__(self, handlers: dict[str, Any] | None = None, **engine_options: Any) -> None:
        self.clock = ManualClock()
        self.store = InMemoryStateStore()
        self.queue = InMemorySignalQueue()
        self.task = _Task()
        self.traces = JobTraceService(store=self.store)
        options: dict[str, Any] = {"teardown_signal": "teardown"}
        options.update(engine_options)
        self.engine = ConversionJobEngine(
            transitions=TransitionTable.with_overlays(TOY_TRANSITIONS),
            descriptors=StateDescriptorRegistry({"working": StateDescriptor(weight=100, max_retries=3)}),
            handlers=handlers if handlers is not None else {"start": _start, "work": _work, "teardown": _teardown},
            repository=self.store,
            task_resolver=lambda job: self.task,
            scheduler=SignalScheduler(
                queue=self.queue,
                role="ems_operations",
                zone="default",
                retry_interval=timedelta(seconds=15),
                clock=self.clock,
            ),
            trace_service=self.traces,
            clock=self.clock,
            **options,
        )
        self.worker = ConversionWorker(engine=self.engine, queue=self.queue, repository=self.store, clock=self.clock)

    def run(self) -> None:
        self.worker.run_until_idle(clock=self.clock)

    def path(self, job_id: str) -> list[str]:
        return [
            trace.to_state
            for trace in self.traces.list_job_traces(job_id=job_id)
            if trace.event == "state_transition"
        ]


def test_job_runs_to_finish_with_deferred_polls() -> None:
    harness = _Harness()
    job = harness.engine.create_job(task_id="task-toy")
    assert [message.signal for message in harness.queue.pending()] == ["initializing"]
    started = harness.clock()

    harness.run()

    final = harness.engine.get_job(job.id)
    assert final.state == "finished"
    assert final.status == JobStatus.OK
    assert final.message == "all done"
    assert final.context.retries == {"working": 2}
    assert harness.path(job.id) == ["waiting_to_start", "working", "working", "working", "finished"]
    assert harness.clock() - started == timedelta(seconds=15)
    assert harness.task.progress is not None
    assert harness.task.progress.percent == 100.0


def test_abort_routes_through_cancel_to_teardown_and_suppresses_other_signals() -> None:
    harness = _Harness()
    harness.task.options["mode"] = "abort"
    job = harness.engine.create_job(task_id="task-toy")

    harness.run()

    final = harness.engine.get_job(job.id)
    assert harness.path(job.id) == [
        "waiting_to_start",
        "working",
        "aborting",
        "canceling",
        "tearing_down",
        "finished",
    ]
    assert final.status == JobStatus.ERROR
    assert final.message == "gave up"
    assert harness.task.cancel_status == "canceled"
    assert len(harness.queue) == 0


def test_cancel_without_teardown_finishes_directly() -> None:
    harness = _Harness(
        handlers={"start": _start, "work": _work, "teardown": _teardown},
        teardown_signal=None,
    )
    harness.task.options["mode"] = "abort"
    job = harness.engine.create_job(task_id="task-toy")

    harness.run()

    assert harness.path(job.id)[-3:] == ["aborting", "canceling", "finished"]


def test_cancel_request_is_observed_during_progress_reporting() -> None:
    harness = _Harness()
    job = harness.engine.create_job(task_id="task-toy")
    for _ in range(3):
        harness.worker.run_once()
    assert harness.engine.get_job(job.id).state == "working"

    harness.engine.request_cancel(job.id)
    assert harness.task.cancel_requested()
    harness.run()

    final = harness.engine.get_job(job.id)
    assert final.state == "finished"
    assert final.status == JobStatus.OK
    assert final.message == CANCELATION_REQUESTED_MESSAGE
    assert "aborting" in harness.path(job.id)
    assert harness.task.cancel_status == "canceled"


def test_error_overlay_records_without_changing_state() -> None:
    harness = _Harness()
    harness.task.options["mode"] = "error"
    job = harness.engine.create_job(task_id="task-toy")

    harness.run()

    final = harness.engine.get_job(job.id)
    assert final.state == "finished"
    # finish does not clear an error recorded along the way
    assert final.status == JobStatus.ERROR
    assert final.message == "all done"
    errors = [
        trace for trace in harness.traces.list_job_traces(job_id=job.id) if trace.step == OverlaySignal.ERROR
    ]
    assert errors
    assert all(trace.from_state == trace.to_state == "working" for trace in errors)


def test_unhandled_handler_exception_aborts_the_job() -> None:
    harness = _Harness()
    harness.task.options["mode"] = "raise"
    job = harness.engine.create_job(task_id="task-toy")

    harness.run()

    final = harness.engine.get_job(job.id)
    assert final.state == "finished"
    assert final.status == JobStatus.ERROR
    assert final.message == "boom"
    assert "aborting" in harness.path(job.id)


def test_polling_budget_exhaustion_aborts() -> None:
    harness = _Harness(
        handlers={
            "start": _start,
            "work": _poll_forever,
            "teardown": _teardown,
        }
    )
    job = harness.engine.create_job(task_id="task-toy")

    harness.run()

    final = harness.engine.get_job(job.id)
    assert final.message == "work timed out"
    assert final.context.retries["working"] == 4


def test_redelivered_signal_is_dropped_as_duplicate() -> None:
    harness = _Harness()
    job = harness.engine.create_job(task_id="task-toy")
    initializing = harness.queue.pending()[0]
    harness.worker.run_once()

    outcome = harness.engine.deliver(initializing)

    assert outcome == DeliveryOutcome.DUPLICATE
    current = harness.engine.get_job(job.id)
    assert current.state == "waiting_to_start"
    assert [message.signal for message in harness.queue.pending()] == ["start"]


def test_fresh_illegal_signal_is_rejected_and_aborts() -> None:
    harness = _Harness()
    job = harness.engine.create_job(task_id="task-toy")
    harness.worker.run_once()
    stored = harness.engine.get_job(job.id)
    rogue = SignalMessage(
        id="sig-rogue",
        job_id=job.id,
        signal="teardown",
        sequence=stored.signal_sequence + 5,
        routing=harness.queue.pending()[0].routing,
    )

    outcome = harness.engine.deliver(rogue)

    assert outcome == DeliveryOutcome.REJECTED
    rejected = harness.engine.get_job(job.id)
    assert rejected.status == JobStatus.ERROR
    assert "not allowed from state 'waiting_to_start'" in (rejected.message or "")
    assert [message.signal for message in harness.queue.pending()][-1] == "abort"


def test_messages_for_finished_jobs_are_ignored() -> None:
    harness = _Harness()
    job = harness.engine.create_job(task_id="task-toy")
    harness.run()
    stale = SignalMessage(
        id="sig-late",
        job_id=job.id,
        signal="work",
        sequence=999,
        routing=SignalRouting(zone="default", role="ems_operations"),
    )

    assert harness.engine.deliver(stale) == DeliveryOutcome.IGNORED
    with pytest.raises(JobTransitionError):
        harness.engine.signal(job.id, OverlaySignal.ABORT, "too late")
    with pytest.raises(JobTransitionError):
        harness.engine.request_cancel(job.id)


def test_synchronous_signal_validates_against_the_table() -> None:
    harness = _Harness()
    job = harness.engine.create_job(task_id="task-toy")

    with pytest.raises(JobTransitionError):
        harness.engine.signal(job.id, "work")

    updated = harness.engine.signal(job.id, OverlaySignal.INITIALIZING)
    assert updated.state == "waiting_to_start"


def test_undeclared_signals_cannot_be_enqueued() -> None:
    harness = _Harness()
    job = harness.engine.create_job(task_id="task-toy")

    with pytest.raises(HandlerRegistrationError):
        harness.engine.enqueue(job, "not_declared")


@pytest.mark.parametrize(
    ("handlers", "options", "fragment"),
    [
        ({"start": _start, "work": _work}, {}, "without a handler"),
        ({"start": _start, "work": _work, "teardown": _teardown, "extra": _work}, {}, "undeclared"),
        ({"start": _start, "work": _work, "teardown": _teardown, "cancel": _work}, {}, "overlay"),
        ({"start": _start, "work": _work, "teardown": _teardown}, {"start_signal": "work"}, "Start signal"),
        ({"start": _start, "work": _work, "teardown": _teardown}, {"teardown_signal": "work"}, "Teardown signal"),
    ],
)
def test_handler_registration_is_validated_at_construction(
    handlers: dict[str, Any],
    options: dict[str, Any],
    fragment: str,
) -> None:
    with pytest.raises(HandlerRegistrationError, match=fragment):
        _Harness(handlers=handlers, **options)
