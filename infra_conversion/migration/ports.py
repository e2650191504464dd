"""Collaborator contracts for the VM conversion handlers."""

from __future__ import annotations

from typing import Any, Protocol

from infra_conversion.engine.ports import OwningTask


class VirtualMachine(Protocol):
    """Hypervisor-facing view of a source or destination VM."""

    name: str
    power_state: str
    ipaddresses: list[str]
    tags: list[str]
    custom_attributes: dict[str, str]
    service: Any
    owner: str | None
    group: str | None
    retires_on: str | None
    retirement_warn: int | None

    def supports_shutdown_guest(self) -> bool:
        ...

    def shutdown_guest(self) -> None:
        ...

    def stop(self) -> None:
        ...

    def start(self) -> None:
        ...

    def set_number_of_cpus(self, count: int) -> None:
        ...

    def set_memory(self, megabytes: int) -> None:
        ...

    def recommended_vcpus(self, mode: str) -> int:
        ...

    def recommended_memory(self, mode: str) -> int:
        ...

    def add_to_service(self, service: Any) -> None:
        ...

    def remove_from_service(self) -> None:
        ...

    def tag_add(self, tag: str, *, namespace: str) -> None:
        ...

    def save(self) -> None:
        ...


class ServiceRequest(Protocol):
    """Provisioning request spawned by a playbook service template."""

    id: str
    request_state: str
    status: str

    def job_id(self) -> str | None:
        ...


class PlaybookServiceTemplate(Protocol):
    credential_id: str | None
    hosts: str | None

    def provision_request(self, user_id: str, dialog_options: dict[str, Any]) -> ServiceRequest:
        ...


class ServiceRequestCatalog(Protocol):
    def find(self, request_id: str) -> ServiceRequest:
        ...


class VmInventory(Protocol):
    def find_vm(self, *, name: str, provider_id: str) -> VirtualMachine | None:
        ...


class MigrationTask(OwningTask, Protocol):
    """Owning task of a conversion job: the VM pair plus conversion host controls."""

    userid: str
    state: str
    status: str
    source: VirtualMachine
    destination: VirtualMachine | None
    destination_provider_id: str

    def update_state(self, state: str) -> None:
        ...

    def set_destination(self, vm: VirtualMachine) -> None:
        ...

    def playbook_service_template(self, phase: str) -> PlaybookServiceTemplate | None:
        ...

    def right_sizing_mode(self, item: str) -> str | None:
        ...

    def run_conversion(self) -> None:
        ...

    def get_conversion_state(self) -> None:
        ...

    def kill_virtv2v(self, signal: str) -> None:
        ...

    def is_canceled(self) -> bool:
        ...

    def mark_vm_migrated(self) -> None:
        ...


__all__ = [
    "MigrationTask",
    "PlaybookServiceTemplate",
    "ServiceRequest",
    "ServiceRequestCatalog",
    "VirtualMachine",
    "VmInventory",
]
