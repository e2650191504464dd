"""Contract tests for per-state progress records and the weighted aggregate."""

from __future__ import annotations

from typing import Any

import pytest

from infra_conversion.engine.clock import ManualClock
from infra_conversion.engine.progress_tracker import ProgressPhase, ProgressTracker
from infra_conversion.engine.state_descriptors import StateDescriptor, StateDescriptorRegistry
from infra_conversion.migration.workflow import build_state_descriptors
from infra_conversion.state_store import AggregateProgress, ConversionJobRecord, JobStatus, ProgressRecord


class _Task:
    def __init__(self, **options: Any) -> None:
        self.id = "task-progress"
        self.options = dict(options)
        self.progress: AggregateProgress | None = None

    def transformation_progress(self) -> AggregateProgress | None:
        return self.progress

    def update_transformation_progress(self, progress: AggregateProgress) -> None:
        self.progress = progress

    def get_option(self, key: str, default: Any = None) -> Any:
        return self.options.get(key, default)


def _tracker(descriptors: StateDescriptorRegistry | None = None) -> ProgressTracker:
    return ProgressTracker(descriptors=descriptors or build_state_descriptors(), clock=ManualClock())


def _job(state: str) -> ConversionJobRecord:
    return ConversionJobRecord(id="conv-job-progress", task_id="task-progress", state=state)


def test_two_finished_states_weighted_60_40_aggregate_to_exactly_100() -> None:
    tracker = _tracker(
        StateDescriptorRegistry({"a": StateDescriptor(weight=60), "b": StateDescriptor(weight=40)})
    )

    percent = tracker.aggregate_percent(
        {
            "a": ProgressRecord(state="finished", percent=100.0),
            "b": ProgressRecord(state="finished", percent=100.0),
        }
    )

    assert percent == 100.0


def test_transforming_vm_at_half_contributes_thirty() -> None:
    tracker = _tracker()

    percent = tracker.aggregate_percent({"transforming_vm": ProgressRecord(percent=50.0)})

    assert percent == 30.0


def test_aggregate_is_clamped_and_ignores_unweighted_states() -> None:
    tracker = _tracker(
        StateDescriptorRegistry({"a": StateDescriptor(weight=100), "b": StateDescriptor(weight=100)})
    )

    percent = tracker.aggregate_percent(
        {
            "a": ProgressRecord(percent=100.0),
            "b": ProgressRecord(percent=100.0),
            "aborting_virtv2v": ProgressRecord(percent=100.0),
        }
    )

    assert percent == 100.0


def test_entry_creates_record_once_and_refreshes_description() -> None:
    tracker = _tracker()
    task = _Task(migration_phase="pre")
    job = _job("running_migration_playbook")

    first = tracker.update(job=job, task=task, phase=ProgressPhase.ENTRY)
    record = first.states["running_migration_playbook"]
    assert record.state == "active"
    assert record.status == JobStatus.OK
    assert record.percent == 0.0
    assert record.description == "Running pre-migration playbook"
    assert first.current_state == "running_migration_playbook"
    assert first.current_description == "Running pre-migration playbook"

    record.percent = 42.0
    task.options["migration_phase"] = "post"
    second = tracker.update(job=job, task=task, phase=ProgressPhase.ENTRY)

    assert second.states["running_migration_playbook"].percent == 42.0
    assert second.states["running_migration_playbook"].description == "Running pre-migration playbook"
    assert second.current_description == "Running post-migration playbook"


def test_retry_computes_percent_from_retry_counter() -> None:
    tracker = _tracker()
    task = _Task()
    job = _job("waiting_for_ip_address")
    tracker.update(job=job, task=task, phase=ProgressPhase.ENTRY)
    for _ in range(60):
        job.context.increment_retries("waiting_for_ip_address")

    aggregate = tracker.update(job=job, task=task, phase=ProgressPhase.RETRY)

    record = aggregate.states["waiting_for_ip_address"]
    assert record.percent == 25.0
    assert record.updated_on == "2026-01-01T00:00:00Z"
    assert aggregate.percent == 0.25


def test_retry_merges_explicit_progress_payload() -> None:
    tracker = _tracker()
    task = _Task()
    job = _job("transforming_vm")
    tracker.update(job=job, task=task, phase=ProgressPhase.ENTRY)

    aggregate = tracker.update(
        job=job,
        task=task,
        phase=ProgressPhase.RETRY,
        progress={"message": "Converting disk 1 / 2 [50.0%].", "percent": 50},
    )

    record = aggregate.states["transforming_vm"]
    assert record.percent == 50.0
    assert record.message == "Converting disk 1 / 2 [50.0%]."
    assert aggregate.percent == 30.0


def test_exit_and_error_finish_the_record() -> None:
    tracker = _tracker()
    task = _Task()
    shutdown = _job("shutting_down_vm")
    transform = _job("transforming_vm")

    tracker.update(job=shutdown, task=task, phase=ProgressPhase.ENTRY)
    exited = tracker.update(job=shutdown, task=task, phase=ProgressPhase.EXIT)
    assert exited.states["shutting_down_vm"].state == "finished"
    assert exited.states["shutting_down_vm"].percent == 100.0

    tracker.update(job=transform, task=task, phase=ProgressPhase.ENTRY)
    tracker.update(job=transform, task=task, phase=ProgressPhase.RETRY, progress={"percent": 20})
    errored = tracker.update(job=transform, task=task, phase=ProgressPhase.ERROR)
    record = errored.states["transforming_vm"]
    assert record.state == "finished"
    assert record.status == JobStatus.ERROR
    assert record.percent == 20.0
    assert errored.percent == 1.0 + 12.0


def test_finished_records_never_regress() -> None:
    tracker = _tracker()
    task = _Task()
    job = _job("waiting_for_ip_address")
    tracker.update(job=job, task=task, phase=ProgressPhase.ENTRY)
    tracker.update(job=job, task=task, phase=ProgressPhase.EXIT)

    tracker.update(job=job, task=task, phase=ProgressPhase.ENTRY)
    aggregate = tracker.update(job=job, task=task, phase=ProgressPhase.RETRY, progress={"percent": 5})

    record = aggregate.states["waiting_for_ip_address"]
    assert record.state == "finished"
    assert record.percent == 100.0
    assert aggregate.percent == 1.0


def test_hooks_other_than_entry_need_an_existing_record() -> None:
    tracker = _tracker()

    with pytest.raises(ValueError, match="on_entry"):
        tracker.update(job=_job("transforming_vm"), task=_Task(), phase=ProgressPhase.EXIT)
