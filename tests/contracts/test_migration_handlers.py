"""Contract tests for individual conversion step handlers and their helpers."""

from __future__ import annotations

import pytest

from infra_conversion.config import Settings
from infra_conversion.engine.clock import ManualClock
from infra_conversion.engine.job_engine import JobRun
from infra_conversion.migration.factory import ConversionRuntime, build_in_memory_runtime
from infra_conversion.migration.handlers import (
    CONVERSION_INITIALIZING,
    InfraConversionHandlers,
    conversion_progress,
    target_vm,
)
from infra_conversion.migration.in_memory import InMemoryMigrationTask, InMemoryVm
from infra_conversion.migration.workflow import ConversionSignal
from infra_conversion.state_store import ConversionJobRecord, JobStatus


def _runtime() -> ConversionRuntime:
    return build_in_memory_runtime(Settings(), clock=ManualClock())


def _handlers(runtime: ConversionRuntime) -> InfraConversionHandlers:
    environment = runtime.environment
    return InfraConversionHandlers(inventory=environment.inventory, service_requests=environment.service_requests)


def _run(runtime: ConversionRuntime, task: InMemoryMigrationTask, state: str) -> JobRun:
    job = ConversionJobRecord(id="conv-job-handler", task_id=task.id, state=state)
    return JobRun(engine=runtime.engine, job=job, task=task)


def _queued(runtime: ConversionRuntime) -> list[str]:
    return [message.signal for message in runtime.queue.pending()]


@pytest.mark.parametrize(
    ("disks", "expected"),
    [
        ([], (CONVERSION_INITIALIZING, 1.0)),
        ([{"percent": 0, "weight": 60}, {"percent": 0, "weight": 40}], (CONVERSION_INITIALIZING, 1.0)),
        ([{"percent": 50, "weight": 60}, {"percent": 0, "weight": 40}], ("Converting disk 1 / 2 [30.0%].", 30.0)),
        ([{"percent": 100, "weight": 60}, {"percent": 25, "weight": 40}], ("Converting disk 2 / 2 [70.0%].", 70.0)),
    ],
)
def test_conversion_progress_weights_started_disks(
    disks: list[dict[str, float]],
    expected: tuple[str, float],
) -> None:
    assert conversion_progress(disks) == expected


def test_target_vm_follows_phase_and_cancelation() -> None:
    runtime = _runtime()
    task = runtime.environment.sample_task()
    destination = InMemoryVm(name=task.source.name, power_state="off")

    assert target_vm(task) is None

    task.update_options(migration_phase="pre")
    assert target_vm(task) is task.source

    task.update_options(migration_phase="post")
    assert target_vm(task) is None
    task.set_destination(destination)
    assert target_vm(task) is destination

    task.canceling()
    assert target_vm(task) is task.source


def test_handler_mapping_covers_every_step_signal() -> None:
    runtime = _runtime()

    assert set(_handlers(runtime).handlers()) == set(ConversionSignal)


def test_restore_vm_attributes_copies_tags_except_folder_paths() -> None:
    runtime = _runtime()
    task = runtime.environment.sample_task()
    task.source.tags.append("/managed/location/emea/berlin")
    destination = InMemoryVm(name=task.source.name, power_state="off")
    task.set_destination(destination)
    run = _run(runtime, task, "restoring_vm_attributes")

    _handlers(runtime).restore_vm_attributes(run)

    assert destination.applied_tags == [
        ("/managed", "department/finance"),
        ("/managed", "location/emea/berlin"),
    ]
    assert destination.service == "svc-erp"
    assert task.source.service is None
    assert destination.saved == 1
    assert _queued(runtime) == ["power_on_vm"]
    progress = task.transformation_progress()
    assert progress is not None
    assert progress.states["restoring_vm_attributes"].state == "finished"


def test_post_provisioning_failures_are_recorded_and_tolerated() -> None:
    runtime = _runtime()
    task = runtime.environment.sample_task()
    run = _run(runtime, task, "restoring_vm_attributes")

    # No destination VM: copying attributes fails.
    _handlers(runtime).restore_vm_attributes(run)

    progress = task.transformation_progress()
    assert progress is not None
    assert progress.states["restoring_vm_attributes"].status == JobStatus.ERROR
    assert _queued(runtime) == ["power_on_vm"]
    assert not run.abort_queued


def test_right_sizing_without_modes_leaves_the_destination_alone() -> None:
    runtime = _runtime()
    task = runtime.environment.sample_task(right_sizing={})
    destination = InMemoryVm(name=task.source.name, cpus=4, memory_mb=8192)
    task.set_destination(destination)

    _handlers(runtime).apply_right_sizing(_run(runtime, task, "applying_right_sizing"))

    assert (destination.cpus, destination.memory_mb) == (4, 8192)
    assert _queued(runtime) == ["restore_vm_attributes"]


def test_shutdown_falls_back_to_hard_stop() -> None:
    runtime = _runtime()
    task = runtime.environment.sample_task()
    task.source.guest_shutdown_supported = False
    task.update_options(migration_phase="pre")

    _handlers(runtime).shutdown_vm(_run(runtime, task, "shutting_down_vm"))

    assert task.source.power_state == "off"
    assert _queued(runtime) == ["poll_shutdown_vm_complete"]
    assert runtime.queue.pending()[0].deliver_on is not None


def test_abort_virtv2v_without_a_running_conversion_powers_on() -> None:
    runtime = _runtime()
    task = runtime.environment.sample_task()

    _handlers(runtime).abort_virtv2v(_run(runtime, task, "aborting_virtv2v"))

    assert task.kill_signals == []
    assert _queued(runtime) == ["power_on_vm"]


def test_abort_virtv2v_sends_term_on_first_attempt() -> None:
    runtime = _runtime()
    task = runtime.environment.sample_task()
    task.run_conversion()
    run = _run(runtime, task, "aborting_virtv2v")
    run.context.increment_retries("aborting_virtv2v")

    _handlers(runtime).abort_virtv2v(run)

    assert task.kill_signals == []
    run.context.retries["aborting_virtv2v"] = 0
    _handlers(runtime).abort_virtv2v(run)

    assert task.kill_signals == ["TERM"]
    assert _queued(runtime) == ["abort_virtv2v", "abort_virtv2v"]


def test_mark_vm_migrated_hands_over_to_automate() -> None:
    runtime = _runtime()
    task = runtime.environment.sample_task()

    _handlers(runtime).mark_vm_migrated(_run(runtime, task, "marking_vm_migrated"))

    assert task.migrated is True
    assert task.source.applied_tags == [("/transformation_status", "migrated")]
    assert task.options["workflow_runner"] == "automate"
    assert task.state == "finished"
    assert _queued(runtime) == ["poll_automate_state_machine"]
    progress = task.transformation_progress()
    assert progress is not None
    assert progress.states["marking_vm_migrated"].state == "finished"


def test_poll_automate_waits_until_the_task_finishes() -> None:
    runtime = _runtime()
    task = runtime.environment.sample_task(vm_name="vm-automate")
    task.update_state("migrate")
    run = _run(runtime, task, "running_in_automate")

    _handlers(runtime).poll_automate_state_machine(run)

    assert run.job.message == "Migration Task vm=vm-automate, state=migrate, status=Ok"
    assert _queued(runtime) == ["poll_automate_state_machine"]
    assert runtime.queue.pending()[0].deliver_on is not None
