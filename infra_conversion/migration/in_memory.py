"""In-process stand-ins for the hypervisor, service catalog and migration task.

They simulate just enough external progress (playbooks finishing, disks
converting, the destination VM appearing in inventory) for the conversion
workflow to run end to end without real infrastructure.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from infra_conversion.engine.clock import Clock, utc_clock
from infra_conversion.state_store import AggregateProgress, ConversionJobRecord, JobStatus, format_timestamp


@dataclass
class InMemoryVm:
    name: str
    power_state: str = "on"
    ipaddresses: list[str] = field(default_factory=list)
    boot_ipaddresses: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    custom_attributes: dict[str, str] = field(default_factory=dict)
    service: Any = None
    owner: str | None = None
    group: str | None = None
    retires_on: str | None = None
    retirement_warn: int | None = None
    cpus: int = 2
    memory_mb: int = 4096
    guest_shutdown_supported: bool = True
    fails_to_power_on: bool = False
    cpu_recommendations: dict[str, int] = field(default_factory=dict)
    memory_recommendations: dict[str, int] = field(default_factory=dict)
    applied_tags: list[tuple[str, str]] = field(default_factory=list)
    saved: int = 0

    def supports_shutdown_guest(self) -> bool:
        return self.guest_shutdown_supported

    def shutdown_guest(self) -> None:
        self.power_state = "off"
        self.ipaddresses = []

    def stop(self) -> None:
        self.power_state = "off"
        self.ipaddresses = []

    def start(self) -> None:
        if self.fails_to_power_on:
            return
        self.power_state = "on"
        self.ipaddresses = list(self.boot_ipaddresses)

    def set_number_of_cpus(self, count: int) -> None:
        self.cpus = count

    def set_memory(self, megabytes: int) -> None:
        self.memory_mb = megabytes

    def recommended_vcpus(self, mode: str) -> int:
        return self.cpu_recommendations.get(mode, self.cpus)

    def recommended_memory(self, mode: str) -> int:
        return self.memory_recommendations.get(mode, self.memory_mb)

    def add_to_service(self, service: Any) -> None:
        self.service = service

    def remove_from_service(self) -> None:
        self.service = None

    def tag_add(self, tag: str, *, namespace: str) -> None:
        self.applied_tags.append((namespace, tag))
        self.tags.append(f"{namespace}/{tag}")

    def save(self) -> None:
        self.saved += 1


@dataclass
class InMemoryServiceRequest:
    id: str
    request_state: str = "pending"
    status: str = "Ok"
    playbook_job_id: str | None = None
    dialog_options: dict[str, Any] = field(default_factory=dict)
    polls_until_finished: int = 1
    final_status: str = "Ok"

    def job_id(self) -> str | None:
        return self.playbook_job_id

    def advance(self) -> None:
        if self.request_state == "finished":
            return
        self.request_state = "active"
        self.polls_until_finished -= 1
        if self.polls_until_finished <= 0:
            self.request_state = "finished"
            self.status = self.final_status
            self.playbook_job_id = f"ansible-{self.id}"


class InMemoryServiceRequestCatalog:
    """Each ``find`` moves the request one poll closer to finishing."""

    def __init__(self) -> None:
        self.requests: dict[str, InMemoryServiceRequest] = {}
        self._next = 1

    def create(
        self,
        *,
        dialog_options: dict[str, Any],
        polls_until_finished: int,
        final_status: str,
    ) -> InMemoryServiceRequest:
        request = InMemoryServiceRequest(
            id=f"svc-req-{self._next:04d}",
            dialog_options=dict(dialog_options),
            polls_until_finished=polls_until_finished,
            final_status=final_status,
        )
        self._next += 1
        self.requests[request.id] = request
        return request

    def find(self, request_id: str) -> InMemoryServiceRequest:
        request = self.requests.get(request_id)
        if request is None:
            raise LookupError(f"Service request not found: {request_id}")
        request.advance()
        return request


@dataclass
class InMemoryServiceTemplate:
    catalog: InMemoryServiceRequestCatalog
    credential_id: str | None = None
    hosts: str | None = None
    polls_until_finished: int = 1
    final_status: str = "Ok"
    provisioned_by: list[str] = field(default_factory=list)

    def provision_request(self, user_id: str, dialog_options: dict[str, Any]) -> InMemoryServiceRequest:
        self.provisioned_by.append(user_id)
        return self.catalog.create(
            dialog_options=dialog_options,
            polls_until_finished=self.polls_until_finished,
            final_status=self.final_status,
        )


class InMemoryVmInventory:
    def __init__(self) -> None:
        self._vms: list[tuple[str, InMemoryVm]] = []

    def register(self, vm: InMemoryVm, *, provider_id: str) -> None:
        self._vms.append((provider_id, vm))

    def find_vm(self, *, name: str, provider_id: str) -> InMemoryVm | None:
        for owner, vm in self._vms:
            if owner == provider_id and vm.name == name:
                return vm
        return None


class InMemoryMigrationTask:
    """Migration task whose conversion host converts disks a step per poll.

    When the conversion succeeds the destination VM is registered, powered off,
    in the destination provider's inventory. Handing the task over to automate
    completes it immediately, with an ``Error`` status if any step failed.
    """

    def __init__(
        self,
        *,
        task_id: str,
        source: InMemoryVm,
        inventory: InMemoryVmInventory,
        destination_provider_id: str = "ems-destination",
        userid: str = "admin",
        disks: list[dict[str, float]] | None = None,
        conversion_step_percent: float = 25.0,
        conversion_failure: str | None = None,
        honors_term: bool = False,
        playbooks: dict[str, InMemoryServiceTemplate] | None = None,
        right_sizing: dict[str, str] | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.id = task_id
        self.userid = userid
        self.state = "pending"
        self.status = "Ok"
        self.source = source
        self.destination: InMemoryVm | None = None
        self.destination_provider_id = destination_provider_id
        self.inventory = inventory
        self.options: dict[str, Any] = {"source_vm_power_state": source.power_state}
        self.cancel_status: str | None = None
        self.migrated = False
        self.kill_signals: list[str] = []
        self._progress: AggregateProgress | None = None
        self._disk_weights = [float(disk["weight"]) for disk in (disks or [{"weight": 100.0}])]
        self._conversion_step_percent = conversion_step_percent
        self._conversion_failure = conversion_failure
        self._honors_term = honors_term
        self._playbooks = playbooks or {}
        self._right_sizing = right_sizing or {}
        self._clock = clock or utc_clock

    def transformation_progress(self) -> AggregateProgress | None:
        return copy.deepcopy(self._progress)

    def update_transformation_progress(self, progress: AggregateProgress) -> None:
        self._progress = copy.deepcopy(progress)

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

    def is_canceled(self) -> bool:
        return self.cancel_status == "canceled"

    def get_option(self, key: str, default: Any = None) -> Any:
        return self.options.get(key, default)

    def update_options(self, **options: Any) -> None:
        self.options.update(options)
        if options.get("workflow_runner") == "automate":
            self._complete_in_automate()

    def update_state(self, state: str) -> None:
        self.state = state

    def set_destination(self, vm: InMemoryVm) -> None:
        self.destination = vm

    def playbook_service_template(self, phase: str) -> InMemoryServiceTemplate | None:
        return self._playbooks.get(phase)

    def right_sizing_mode(self, item: str) -> str | None:
        return self._right_sizing.get(item)

    def run_conversion(self) -> None:
        self.update_options(
            virtv2v_wrapper={"state_file": f"/tmp/v2v-{self.id}.state"},
            virtv2v_started_on=self._timestamp(),
            virtv2v_finished_on=None,
            virtv2v_status="active",
            virtv2v_disks=[{"percent": 0.0, "weight": weight} for weight in self._disk_weights],
        )

    def get_conversion_state(self) -> None:
        if self.options.get("virtv2v_status") != "active":
            return
        if self._conversion_failure is not None:
            self._finish_conversion("failed", message=self._conversion_failure)
            return
        disks = [dict(disk) for disk in self.options["virtv2v_disks"]]
        for disk in disks:
            if disk["percent"] < 100.0:
                disk["percent"] = min(100.0, disk["percent"] + self._conversion_step_percent)
                break
        self.options["virtv2v_disks"] = disks
        if all(disk["percent"] >= 100.0 for disk in disks):
            self._finish_conversion("succeeded")
            destination = copy.deepcopy(self.source)
            destination.power_state = "off"
            destination.ipaddresses = []
            destination.tags = []
            destination.custom_attributes = {}
            destination.service = None
            destination.owner = None
            destination.group = None
            destination.retires_on = None
            destination.retirement_warn = None
            self.inventory.register(destination, provider_id=self.destination_provider_id)

    def kill_virtv2v(self, signal: str) -> None:
        self.kill_signals.append(signal)
        if signal == "KILL" or self._honors_term:
            self._finish_conversion("failed", message=f"virt-v2v terminated by {signal}")

    def mark_vm_migrated(self) -> None:
        self.migrated = True
        self.source.tag_add("migrated", namespace="/transformation_status")

    def _finish_conversion(self, status: str, *, message: str | None = None) -> None:
        self.options["virtv2v_status"] = status
        self.options["virtv2v_finished_on"] = self._timestamp()
        if message is not None:
            self.options["virtv2v_message"] = message

    def _complete_in_automate(self) -> None:
        failed = self._progress is not None and any(
            record.status == JobStatus.ERROR for record in self._progress.states.values()
        )
        self.state = "finished"
        self.status = "Error" if failed else "Ok"

    def _timestamp(self) -> str:
        return format_timestamp(self._clock())


class InMemoryMigrationEnvironment:
    """Registry of simulated tasks plus the shared inventory and service catalog."""

    def __init__(self, *, clock: Clock | None = None) -> None:
        self.inventory = InMemoryVmInventory()
        self.service_requests = InMemoryServiceRequestCatalog()
        self.tasks: dict[str, InMemoryMigrationTask] = {}
        self._clock = clock or utc_clock
        self._next = 1

    def add_task(self, task: InMemoryMigrationTask) -> InMemoryMigrationTask:
        self.tasks[task.id] = task
        return task

    def task_for(self, job: ConversionJobRecord) -> InMemoryMigrationTask:
        task = self.tasks.get(job.task_id)
        if task is None:
            raise LookupError(f"Migration task not found: {job.task_id}")
        return task

    def playbook(
        self,
        *,
        hosts: str | None = None,
        polls_until_finished: int = 1,
        final_status: str = "Ok",
    ) -> InMemoryServiceTemplate:
        return InMemoryServiceTemplate(
            catalog=self.service_requests,
            credential_id="cred-ansible",
            hosts=hosts,
            polls_until_finished=polls_until_finished,
            final_status=final_status,
        )

    def sample_task(self, *, vm_name: str | None = None, **task_options: Any) -> InMemoryMigrationTask:
        """Register a task migrating a powered-on, tagged VM with pre and post playbooks."""
        task_id = f"task-{self._next:04d}"
        self._next += 1
        source = InMemoryVm(
            name=vm_name or f"vm-{task_id}",
            power_state="on",
            ipaddresses=["10.0.0.10"],
            boot_ipaddresses=["10.0.0.20"],
            tags=[
                "/managed/department/finance",
                "/managed/folder_path_datacenter/dc1",
            ],
            custom_attributes={"cost_center": "cc-100"},
            service="svc-erp",
            owner="owner-1",
            group="group-ops",
            retires_on="2027-01-01",
            retirement_warn=7,
            cpu_recommendations={"aggressive": 1},
            memory_recommendations={"aggressive": 2048},
        )
        options: dict[str, Any] = {
            "disks": [{"weight": 60.0}, {"weight": 40.0}],
            "playbooks": {"pre": self.playbook(), "post": self.playbook()},
            "right_sizing": {"cpu": "aggressive", "memory": "aggressive"},
        }
        options.update(task_options)
        return self.add_task(
            InMemoryMigrationTask(
                task_id=task_id,
                source=source,
                inventory=self.inventory,
                clock=self._clock,
                **options,
            )
        )


__all__ = [
    "InMemoryMigrationEnvironment",
    "InMemoryMigrationTask",
    "InMemoryServiceRequest",
    "InMemoryServiceRequestCatalog",
    "InMemoryServiceTemplate",
    "InMemoryVm",
    "InMemoryVmInventory",
]
