"""Transition table and state descriptors for infrastructure VM conversion."""

from __future__ import annotations

from datetime import timedelta
from enum import StrEnum

from infra_conversion.engine.state_descriptors import StateDescriptor, StateDescriptorRegistry, retry_budget
from infra_conversion.engine.transitions import (
    CANCELING_STATE,
    WAITING_TO_START_STATE,
    OverlaySignal,
    TransitionTable,
)


class ConversionSignal(StrEnum):
    START = "start"
    WAIT_FOR_IP_ADDRESS = "wait_for_ip_address"
    RUN_MIGRATION_PLAYBOOK = "run_migration_playbook"
    POLL_RUN_MIGRATION_PLAYBOOK_COMPLETE = "poll_run_migration_playbook_complete"
    SHUTDOWN_VM = "shutdown_vm"
    POLL_SHUTDOWN_VM_COMPLETE = "poll_shutdown_vm_complete"
    TRANSFORM_VM = "transform_vm"
    POLL_TRANSFORM_VM_COMPLETE = "poll_transform_vm_complete"
    POLL_INVENTORY_REFRESH_COMPLETE = "poll_inventory_refresh_complete"
    APPLY_RIGHT_SIZING = "apply_right_sizing"
    RESTORE_VM_ATTRIBUTES = "restore_vm_attributes"
    POWER_ON_VM = "power_on_vm"
    POLL_POWER_ON_VM_COMPLETE = "poll_power_on_vm_complete"
    MARK_VM_MIGRATED = "mark_vm_migrated"
    POLL_AUTOMATE_STATE_MACHINE = "poll_automate_state_machine"
    ABORT_VIRTV2V = "abort_virtv2v"


STARTED = "started"
WAITING_FOR_IP_ADDRESS = "waiting_for_ip_address"
RUNNING_MIGRATION_PLAYBOOK = "running_migration_playbook"
SHUTTING_DOWN_VM = "shutting_down_vm"
TRANSFORMING_VM = "transforming_vm"
WAITING_FOR_INVENTORY_REFRESH = "waiting_for_inventory_refresh"
APPLYING_RIGHT_SIZING = "applying_right_sizing"
RESTORING_VM_ATTRIBUTES = "restoring_vm_attributes"
POWERING_ON_VM = "powering_on_vm"
MARKING_VM_MIGRATED = "marking_vm_migrated"
RUNNING_IN_AUTOMATE = "running_in_automate"
ABORTING_VIRTV2V = "aborting_virtv2v"

# Happy path: waiting_to_start -> started -> waiting_for_ip_address ->
# running_migration_playbook -> shutting_down_vm -> transforming_vm ->
# waiting_for_inventory_refresh -> applying_right_sizing ->
# restoring_vm_attributes -> powering_on_vm -> waiting_for_ip_address (post) ->
# running_migration_playbook (post) -> marking_vm_migrated -> running_in_automate.
INFRA_CONVERSION_TRANSITIONS: dict[str, dict[str, str]] = {
    ConversionSignal.START: {WAITING_TO_START_STATE: STARTED},
    ConversionSignal.WAIT_FOR_IP_ADDRESS: {
        STARTED: WAITING_FOR_IP_ADDRESS,
        POWERING_ON_VM: WAITING_FOR_IP_ADDRESS,
        WAITING_FOR_IP_ADDRESS: WAITING_FOR_IP_ADDRESS,
    },
    ConversionSignal.RUN_MIGRATION_PLAYBOOK: {WAITING_FOR_IP_ADDRESS: RUNNING_MIGRATION_PLAYBOOK},
    ConversionSignal.POLL_RUN_MIGRATION_PLAYBOOK_COMPLETE: {RUNNING_MIGRATION_PLAYBOOK: RUNNING_MIGRATION_PLAYBOOK},
    ConversionSignal.SHUTDOWN_VM: {RUNNING_MIGRATION_PLAYBOOK: SHUTTING_DOWN_VM},
    ConversionSignal.POLL_SHUTDOWN_VM_COMPLETE: {SHUTTING_DOWN_VM: SHUTTING_DOWN_VM},
    ConversionSignal.TRANSFORM_VM: {SHUTTING_DOWN_VM: TRANSFORMING_VM},
    ConversionSignal.POLL_TRANSFORM_VM_COMPLETE: {TRANSFORMING_VM: TRANSFORMING_VM},
    ConversionSignal.POLL_INVENTORY_REFRESH_COMPLETE: {
        TRANSFORMING_VM: WAITING_FOR_INVENTORY_REFRESH,
        WAITING_FOR_INVENTORY_REFRESH: WAITING_FOR_INVENTORY_REFRESH,
    },
    ConversionSignal.APPLY_RIGHT_SIZING: {WAITING_FOR_INVENTORY_REFRESH: APPLYING_RIGHT_SIZING},
    ConversionSignal.RESTORE_VM_ATTRIBUTES: {APPLYING_RIGHT_SIZING: RESTORING_VM_ATTRIBUTES},
    ConversionSignal.POWER_ON_VM: {
        RESTORING_VM_ATTRIBUTES: POWERING_ON_VM,
        ABORTING_VIRTV2V: POWERING_ON_VM,
    },
    ConversionSignal.POLL_POWER_ON_VM_COMPLETE: {POWERING_ON_VM: POWERING_ON_VM},
    ConversionSignal.MARK_VM_MIGRATED: {RUNNING_MIGRATION_PLAYBOOK: MARKING_VM_MIGRATED},
    ConversionSignal.POLL_AUTOMATE_STATE_MACHINE: {
        POWERING_ON_VM: RUNNING_IN_AUTOMATE,
        MARKING_VM_MIGRATED: RUNNING_IN_AUTOMATE,
        RUNNING_IN_AUTOMATE: RUNNING_IN_AUTOMATE,
    },
    ConversionSignal.ABORT_VIRTV2V: {
        CANCELING_STATE: ABORTING_VIRTV2V,
        ABORTING_VIRTV2V: ABORTING_VIRTV2V,
    },
}

START_SIGNAL = ConversionSignal.START
TEARDOWN_SIGNAL = ConversionSignal.ABORT_VIRTV2V


def build_transition_table() -> TransitionTable:
    return TransitionTable.with_overlays(INFRA_CONVERSION_TRANSITIONS)


def build_state_descriptors(retry_interval_seconds: int = 15) -> StateDescriptorRegistry:
    """Descriptor table; time budgets become retry counts at ``retry_interval_seconds``."""

    def budget(duration: timedelta) -> int:
        return retry_budget(duration, retry_interval_seconds)

    return StateDescriptorRegistry(
        {
            WAITING_FOR_IP_ADDRESS: StateDescriptor(
                description="Waiting for VM IP address",
                weight=1,
                max_retries=budget(timedelta(hours=1)),
            ),
            RUNNING_MIGRATION_PLAYBOOK: StateDescriptor(
                description="Running {migration_phase}-migration playbook",
                weight=10,
                max_retries=budget(timedelta(hours=6)),
            ),
            SHUTTING_DOWN_VM: StateDescriptor(
                description="Shutting down virtual machine",
                weight=1,
                max_retries=budget(timedelta(minutes=15)),
            ),
            TRANSFORMING_VM: StateDescriptor(
                description="Converting disks",
                weight=60,
                max_retries=budget(timedelta(days=1)),
            ),
            WAITING_FOR_INVENTORY_REFRESH: StateDescriptor(
                description="Identify destination VM",
                weight=4,
                max_retries=budget(timedelta(hours=1)),
            ),
            APPLYING_RIGHT_SIZING: StateDescriptor(
                description="Apply Right-Sizing Recommendation",
                weight=1,
            ),
            RESTORING_VM_ATTRIBUTES: StateDescriptor(
                description="Restore VM Attributes",
                weight=1,
            ),
            POWERING_ON_VM: StateDescriptor(
                description="Power on virtual machine",
                weight=1,
                max_retries=budget(timedelta(minutes=15)),
            ),
            MARKING_VM_MIGRATED: StateDescriptor(
                description="Mark source as migrated",
                weight=1,
            ),
            ABORTING_VIRTV2V: StateDescriptor(
                description="Abort virt-v2v operation",
                max_retries=budget(timedelta(minutes=1)),
            ),
            RUNNING_IN_AUTOMATE: StateDescriptor(
                max_retries=budget(timedelta(hours=1)),
            ),
        }
    )


__all__ = [
    "ConversionSignal",
    "INFRA_CONVERSION_TRANSITIONS",
    "START_SIGNAL",
    "TEARDOWN_SIGNAL",
    "OverlaySignal",
    "build_state_descriptors",
    "build_transition_table",
]
