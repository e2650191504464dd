"""State handlers for migrating a VM through a conversion host.

Steps before the destination VM exists escalate failures to the abort overlay.
Post-provisioning steps (right-sizing, attribute restore, power-on, marking the
source migrated) record the error and keep going, since aborting there could
orphan the destination VM.
"""

from __future__ import annotations

import logging

from infra_conversion.engine.job_engine import Handler, JobRun
from infra_conversion.engine.progress_tracker import ProgressPhase
from infra_conversion.engine.transitions import OverlaySignal
from infra_conversion.errors import PollingTimeoutError
from infra_conversion.migration.ports import MigrationTask, ServiceRequestCatalog, VirtualMachine, VmInventory
from infra_conversion.migration.workflow import ConversionSignal
from infra_conversion.observability import log_job_event

logger = logging.getLogger(__name__)

PRE_MIGRATION = "pre"
POST_MIGRATION = "post"
PLAYBOOK_REQUEST_KEY = "playbook_service_request_id"
FOLDER_PATH_TAG_PREFIX = "/managed/folder_path_"
CONVERSION_INITIALIZING = "Disk transformation is initializing."


def _task(run: JobRun) -> MigrationTask:
    return run.task  # type: ignore[return-value]


def migration_phase(task: MigrationTask) -> str | None:
    return task.get_option("migration_phase")


def target_vm(task: MigrationTask) -> VirtualMachine | None:
    """Source VM before conversion (or while canceling), destination VM after it."""
    phase = migration_phase(task)
    if phase == PRE_MIGRATION or task.is_canceling():
        return task.source
    if phase == POST_MIGRATION:
        return task.destination
    return None


def handover_to_automate(task: MigrationTask) -> None:
    task.update_options(workflow_runner="automate")


def conversion_progress(disks: list[dict[str, float]]) -> tuple[str, float]:
    """Weighted percent over the disks that have started converting."""
    converted = [disk for disk in disks if float(disk.get("percent", 0))]
    if not converted:
        return CONVERSION_INITIALIZING, 1.0
    percent = 0.0
    for disk in converted:
        percent += float(disk["percent"]) * float(disk["weight"]) / 100.0
    return f"Converting disk {len(converted)} / {len(disks)} [{round(percent, 2)}%].", percent


class InfraConversionHandlers:
    def __init__(self, *, inventory: VmInventory, service_requests: ServiceRequestCatalog) -> None:
        self._inventory = inventory
        self._service_requests = service_requests

    def handlers(self) -> dict[str, Handler]:
        return {
            ConversionSignal.START: self.start,
            ConversionSignal.WAIT_FOR_IP_ADDRESS: self.wait_for_ip_address,
            ConversionSignal.RUN_MIGRATION_PLAYBOOK: self.run_migration_playbook,
            ConversionSignal.POLL_RUN_MIGRATION_PLAYBOOK_COMPLETE: self.poll_run_migration_playbook_complete,
            ConversionSignal.SHUTDOWN_VM: self.shutdown_vm,
            ConversionSignal.POLL_SHUTDOWN_VM_COMPLETE: self.poll_shutdown_vm_complete,
            ConversionSignal.TRANSFORM_VM: self.transform_vm,
            ConversionSignal.POLL_TRANSFORM_VM_COMPLETE: self.poll_transform_vm_complete,
            ConversionSignal.POLL_INVENTORY_REFRESH_COMPLETE: self.poll_inventory_refresh_complete,
            ConversionSignal.APPLY_RIGHT_SIZING: self.apply_right_sizing,
            ConversionSignal.RESTORE_VM_ATTRIBUTES: self.restore_vm_attributes,
            ConversionSignal.POWER_ON_VM: self.power_on_vm,
            ConversionSignal.POLL_POWER_ON_VM_COMPLETE: self.poll_power_on_vm_complete,
            ConversionSignal.MARK_VM_MIGRATED: self.mark_vm_migrated,
            ConversionSignal.POLL_AUTOMATE_STATE_MACHINE: self.poll_automate_state_machine,
            ConversionSignal.ABORT_VIRTV2V: self.abort_virtv2v,
        }

    # Marks the task as migrating; the pre-migration phase starts here.
    def start(self, run: JobRun) -> None:
        task = _task(run)
        task.update_state("migrate")
        task.update_options(migration_phase=PRE_MIGRATION)
        run.queue_signal(ConversionSignal.WAIT_FOR_IP_ADDRESS)

    def wait_for_ip_address(self, run: JobRun) -> None:
        task = _task(run)
        try:
            run.update_progress(ProgressPhase.ENTRY)
            if run.polling_timeout():
                run.abort_conversion("Waiting for IP address timed out", "error")
                return

            # A powered-off VM never reports an address; the playbook may still apply.
            vm = target_vm(task)
            if vm is not None and vm.power_state == "on" and not vm.ipaddresses:
                run.update_progress(ProgressPhase.RETRY)
                run.queue_deferred(ConversionSignal.WAIT_FOR_IP_ADDRESS)
                return

            run.update_progress(ProgressPhase.EXIT)
            run.queue_signal(ConversionSignal.RUN_MIGRATION_PLAYBOOK)
        except Exception as exc:
            run.update_progress(ProgressPhase.ERROR)
            run.abort_conversion(str(exc), "error")

    def run_migration_playbook(self, run: JobRun) -> None:
        task = _task(run)
        phase = migration_phase(task)
        try:
            run.update_progress(ProgressPhase.ENTRY)
            template = task.playbook_service_template(phase)
            if template is not None:
                vm = target_vm(task)
                hosts = vm.ipaddresses[0] if vm is not None and vm.ipaddresses else template.hosts
                request = template.provision_request(
                    task.userid,
                    {"credentials": template.credential_id, "hosts": hosts},
                )
                run.context.set_scratch(phase, PLAYBOOK_REQUEST_KEY, request.id)
                run.update_progress(ProgressPhase.RETRY)
                run.queue_deferred(ConversionSignal.POLL_RUN_MIGRATION_PLAYBOOK_COMPLETE)
                return

            run.update_progress(ProgressPhase.EXIT)
            self._after_playbook(run, phase)
        except Exception as exc:
            self._playbook_failed(run, phase, exc)

    def poll_run_migration_playbook_complete(self, run: JobRun) -> None:
        task = _task(run)
        phase = migration_phase(task)
        try:
            run.update_progress(ProgressPhase.ENTRY)
            if run.polling_timeout():
                run.abort_conversion("Running migration playbook timed out", "error")
                return

            request = self._service_requests.find(run.context.get_scratch(phase, PLAYBOOK_REQUEST_KEY))
            playbooks = dict(task.get_option("playbooks") or {})
            playbooks[phase] = {"job_state": request.request_state}
            task.update_options(playbooks=playbooks)

            if request.request_state == "finished":
                playbooks[phase]["job_status"] = request.status
                playbooks[phase]["job_id"] = request.job_id()
                task.update_options(playbooks=playbooks)
                if request.status == "Error" and phase == PRE_MIGRATION:
                    raise RuntimeError(f"Ansible playbook has failed (migration_phase={phase})")

                run.update_progress(ProgressPhase.EXIT)
                self._after_playbook(run, phase)
                return

            run.update_progress(ProgressPhase.RETRY)
            run.queue_deferred(ConversionSignal.POLL_RUN_MIGRATION_PLAYBOOK_COMPLETE)
        except Exception as exc:
            self._playbook_failed(run, phase, exc)

    def shutdown_vm(self, run: JobRun) -> None:
        task = _task(run)
        try:
            run.update_progress(ProgressPhase.ENTRY)
            vm = target_vm(task)
            if vm.power_state != "off":
                if vm.supports_shutdown_guest():
                    vm.shutdown_guest()
                else:
                    vm.stop()
                run.update_progress(ProgressPhase.RETRY)
                run.queue_deferred(ConversionSignal.POLL_SHUTDOWN_VM_COMPLETE)
                return

            run.update_progress(ProgressPhase.EXIT)
            run.queue_signal(ConversionSignal.TRANSFORM_VM)
        except Exception as exc:
            run.update_progress(ProgressPhase.ERROR)
            run.abort_conversion(str(exc), "error")

    def poll_shutdown_vm_complete(self, run: JobRun) -> None:
        task = _task(run)
        try:
            run.update_progress(ProgressPhase.ENTRY)
            if run.polling_timeout():
                run.abort_conversion("Shutting down VM timed out", "error")
                return

            if target_vm(task).power_state == "off":
                run.update_progress(ProgressPhase.EXIT)
                run.queue_signal(ConversionSignal.TRANSFORM_VM)
                return

            run.update_progress(ProgressPhase.RETRY)
            run.queue_deferred(ConversionSignal.POLL_SHUTDOWN_VM_COMPLETE)
        except Exception as exc:
            run.update_progress(ProgressPhase.ERROR)
            run.abort_conversion(str(exc), "error")

    def transform_vm(self, run: JobRun) -> None:
        task = _task(run)
        try:
            run.update_progress(ProgressPhase.ENTRY)
            task.run_conversion()
            run.update_progress(ProgressPhase.RETRY, {"message": CONVERSION_INITIALIZING, "percent": 1.0})
            run.queue_deferred(ConversionSignal.POLL_TRANSFORM_VM_COMPLETE)
        except Exception as exc:
            run.update_progress(ProgressPhase.ERROR)
            run.abort_conversion(str(exc), "error")

    def poll_transform_vm_complete(self, run: JobRun) -> None:
        task = _task(run)
        try:
            run.update_progress(ProgressPhase.ENTRY)
            if run.polling_timeout():
                run.abort_conversion("Converting disks timed out", "error")
                return

            task.get_conversion_state()
            status = task.get_option("virtv2v_status")
            if status == "active":
                message, percent = conversion_progress(task.get_option("virtv2v_disks") or [])
                run.update_progress(ProgressPhase.RETRY, {"message": message, "percent": percent})
                run.queue_deferred(ConversionSignal.POLL_TRANSFORM_VM_COMPLETE)
            elif status == "failed":
                raise RuntimeError(task.get_option("virtv2v_message") or "Disk conversion failed")
            elif status == "succeeded":
                run.update_progress(ProgressPhase.EXIT)
                run.queue_signal(ConversionSignal.POLL_INVENTORY_REFRESH_COMPLETE)
            else:
                run.update_progress(ProgressPhase.RETRY)
                run.queue_deferred(ConversionSignal.POLL_TRANSFORM_VM_COMPLETE)
        except Exception as exc:
            run.update_progress(ProgressPhase.ERROR)
            run.abort_conversion(str(exc), "error")

    # Waits for the destination provider's inventory to show the new VM rather
    # than forcing a refresh; the budget allows an hour.
    def poll_inventory_refresh_complete(self, run: JobRun) -> None:
        task = _task(run)
        try:
            run.update_progress(ProgressPhase.ENTRY)
            if run.polling_timeout():
                run.abort_conversion("Identify destination VM timed out", "error")
                return

            destination = self._inventory.find_vm(name=task.source.name, provider_id=task.destination_provider_id)
            if destination is None:
                run.update_progress(ProgressPhase.RETRY)
                run.queue_deferred(ConversionSignal.POLL_INVENTORY_REFRESH_COMPLETE)
                return

            task.set_destination(destination)
            task.update_options(migration_phase=POST_MIGRATION)
            run.update_progress(ProgressPhase.EXIT)
            run.queue_signal(ConversionSignal.APPLY_RIGHT_SIZING)
        except Exception as exc:
            run.update_progress(ProgressPhase.ERROR)
            run.abort_conversion(str(exc), "error")

    def apply_right_sizing(self, run: JobRun) -> None:
        task = _task(run)
        try:
            run.update_progress(ProgressPhase.ENTRY)
            cpu_mode = task.right_sizing_mode("cpu")
            if cpu_mode:
                task.destination.set_number_of_cpus(task.source.recommended_vcpus(cpu_mode))
            memory_mode = task.right_sizing_mode("memory")
            if memory_mode:
                task.destination.set_memory(task.source.recommended_memory(memory_mode))
            run.update_progress(ProgressPhase.EXIT)
        except Exception as exc:
            self._tolerate(run, exc)
        run.queue_signal(ConversionSignal.RESTORE_VM_ATTRIBUTES)

    def restore_vm_attributes(self, run: JobRun) -> None:
        task = _task(run)
        try:
            run.update_progress(ProgressPhase.ENTRY)
            source = task.source
            destination = task.destination

            if source.service is not None:
                destination.add_to_service(source.service)
                source.remove_from_service()

            for tag in source.tags:
                if tag.startswith(FOLDER_PATH_TAG_PREFIX):
                    continue
                parts = tag.lstrip("/").split("/")
                namespace = parts.pop(0)
                value = parts.pop()
                destination.tag_add("/".join([*parts, value]), namespace=f"/{namespace}")
            for key, value in source.custom_attributes.items():
                destination.custom_attributes[key] = value

            destination.owner = source.owner
            if source.group:
                destination.group = source.group
            if source.retires_on:
                destination.retires_on = source.retires_on
            if source.retirement_warn:
                destination.retirement_warn = source.retirement_warn
            destination.save()

            run.update_progress(ProgressPhase.EXIT)
        except Exception as exc:
            self._tolerate(run, exc)
        run.queue_signal(ConversionSignal.POWER_ON_VM)

    def power_on_vm(self, run: JobRun) -> None:
        task = _task(run)
        try:
            run.update_progress(ProgressPhase.ENTRY)
            vm = target_vm(task)
            if task.get_option("source_vm_power_state") == "on" and vm.power_state != "on":
                vm.start()
                run.update_progress(ProgressPhase.RETRY)
                run.queue_deferred(ConversionSignal.POLL_POWER_ON_VM_COMPLETE)
                return

            run.update_progress(ProgressPhase.EXIT)
            if vm.power_state == "on" and not task.is_canceling():
                run.queue_signal(ConversionSignal.WAIT_FOR_IP_ADDRESS)
                return
        except Exception as exc:
            self._tolerate(run, exc)
        self._hand_over(run)

    def poll_power_on_vm_complete(self, run: JobRun) -> None:
        task = _task(run)
        try:
            run.update_progress(ProgressPhase.ENTRY)
            # Unlike the other polls, running out of budget here is fatal.
            if run.polling_timeout():
                raise PollingTimeoutError("Powering on VM timed out")

            if target_vm(task).power_state == "on":
                run.update_progress(ProgressPhase.EXIT)
                if not task.is_canceling():
                    run.queue_signal(ConversionSignal.WAIT_FOR_IP_ADDRESS)
                    return
                self._hand_over(run)
                return

            run.update_progress(ProgressPhase.RETRY)
            run.queue_deferred(ConversionSignal.POLL_POWER_ON_VM_COMPLETE)
        except Exception as exc:
            self._tolerate(run, exc)
            self._hand_over(run)

    def mark_vm_migrated(self, run: JobRun) -> None:
        task = _task(run)
        try:
            run.update_progress(ProgressPhase.ENTRY)
            task.mark_vm_migrated()
            run.update_progress(ProgressPhase.EXIT)
        except Exception as exc:
            self._tolerate(run, exc)
        self._hand_over(run)

    # Soft terminate on the first attempt, hard kill once the budget is spent.
    def abort_virtv2v(self, run: JobRun) -> None:
        task = _task(run)
        task.get_conversion_state()
        running = (
            task.get_option("virtv2v_started_on") is not None
            and task.get_option("virtv2v_finished_on") is None
            and task.get_option("virtv2v_wrapper") is not None
        )
        if not running:
            run.queue_signal(ConversionSignal.POWER_ON_VM)
            return

        if run.polling_timeout():
            task.kill_virtv2v("KILL")
            run.queue_signal(ConversionSignal.POWER_ON_VM)
            return

        if run.retries() == 1:
            task.kill_virtv2v("TERM")
        run.queue_deferred(ConversionSignal.ABORT_VIRTV2V)

    def poll_automate_state_machine(self, run: JobRun) -> None:
        task = _task(run)
        if run.polling_timeout():
            message = "Polling Automate state machine timed out"
            # Teardown already handed back to this state; aborting again would loop.
            if task.is_canceling() or task.is_canceled() or run.job.timed_out_at is not None:
                run.queue_signal(OverlaySignal.FINISH, message, "error")
                return
            run.abort_conversion(message, "error")
            return

        message = f"Migration Task vm={task.source.name}, state={task.state}, status={task.status}"
        log_job_event(
            logger,
            level=logging.INFO,
            message=f"MigrationTask id={task.id}, ConversionJob id={run.job.id}. {message}",
            job_id=run.job.id,
            component="handlers",
            operation="poll_automate_state_machine",
            state=run.state,
        )
        run.job.message = message
        if task.state == "finished":
            run.queue_signal(OverlaySignal.FINISH, message, task.status)
            return
        run.queue_deferred(ConversionSignal.POLL_AUTOMATE_STATE_MACHINE)

    def _after_playbook(self, run: JobRun, phase: str | None) -> None:
        if phase == PRE_MIGRATION:
            run.queue_signal(ConversionSignal.SHUTDOWN_VM)
        else:
            run.queue_signal(ConversionSignal.MARK_VM_MIGRATED)

    def _playbook_failed(self, run: JobRun, phase: str | None, exc: Exception) -> None:
        run.update_progress(ProgressPhase.ERROR)
        if phase == PRE_MIGRATION:
            run.abort_conversion(str(exc), "error")
            return
        self._log_tolerated(run, exc)
        run.queue_signal(ConversionSignal.MARK_VM_MIGRATED)

    def _tolerate(self, run: JobRun, exc: Exception) -> None:
        run.update_progress(ProgressPhase.ERROR)
        self._log_tolerated(run, exc)

    def _hand_over(self, run: JobRun) -> None:
        task = _task(run)
        if task.is_canceling():
            task.canceled()
        handover_to_automate(task)
        run.queue_signal(ConversionSignal.POLL_AUTOMATE_STATE_MACHINE)

    def _log_tolerated(self, run: JobRun, exc: Exception) -> None:
        log_job_event(
            logger,
            level=logging.WARNING,
            message=f"Step failed, continuing: {exc}",
            job_id=run.job.id,
            component="handlers",
            operation="step_failed",
            state=run.state,
        )


__all__ = [
    "InfraConversionHandlers",
    "conversion_progress",
    "handover_to_automate",
    "migration_phase",
    "target_vm",
]
