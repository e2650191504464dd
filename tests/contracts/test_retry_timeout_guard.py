"""Contract tests for per-state retry budgets and polling timeouts."""

from __future__ import annotations

from datetime import timedelta

import pytest

from infra_conversion.engine.retry_guard import RetryTimeoutGuard, check_timeout
from infra_conversion.engine.state_descriptors import StateDescriptor, StateDescriptorRegistry, retry_budget
from infra_conversion.migration.workflow import build_state_descriptors
from infra_conversion.state_store import JobContext


def test_waiting_for_ip_address_times_out_exactly_once_after_budget() -> None:
    descriptors = build_state_descriptors(retry_interval_seconds=15)
    budget = descriptors["waiting_for_ip_address"].max_retries
    assert budget == 240
    context = JobContext()

    timed_out, context = check_timeout("waiting_for_ip_address", context, descriptors)
    assert timed_out is False
    assert context.retries["waiting_for_ip_address"] == 1

    outcomes = [check_timeout("waiting_for_ip_address", context, descriptors)[0] for _ in range(budget)]
    assert outcomes.count(True) == 1
    assert outcomes[-1] is True
    assert context.retries["waiting_for_ip_address"] == budget + 1


def test_counter_increases_by_one_per_check() -> None:
    guard = RetryTimeoutGuard(descriptors=StateDescriptorRegistry({"polling": StateDescriptor(max_retries=3)}))
    context = JobContext()

    checks = [guard.check(state="polling", context=context) for _ in range(4)]

    assert [check.retries for check in checks] == [1, 2, 3, 4]
    assert [check.timed_out for check in checks] == [False, False, False, True]
    assert [check.remaining_retries for check in checks] == [2, 1, 0, 0]


def test_states_without_budget_never_time_out_and_are_not_counted() -> None:
    descriptors = build_state_descriptors()
    guard = RetryTimeoutGuard(descriptors=descriptors)
    context = JobContext()

    for state in ("applying_right_sizing", "unknown_state"):
        check = guard.check(state=state, context=context)
        assert check.timed_out is False
        assert check.max_retries is None
    assert context.retries == {}


def test_counters_are_kept_per_state() -> None:
    guard = RetryTimeoutGuard(
        descriptors=StateDescriptorRegistry(
            {"a": StateDescriptor(max_retries=5), "b": StateDescriptor(max_retries=5)}
        )
    )
    context = JobContext()

    guard.check(state="a", context=context)
    guard.check(state="a", context=context)
    guard.check(state="b", context=context)

    assert context.retries == {"a": 2, "b": 1}


@pytest.mark.parametrize(
    ("duration", "interval", "expected"),
    [
        (timedelta(hours=1), 15, 240),
        (timedelta(hours=6), 15, 1440),
        (timedelta(minutes=15), 15, 60),
        (timedelta(days=1), 15, 5760),
        (timedelta(minutes=1), 15, 4),
        (timedelta(minutes=1), 40, 1),
    ],
)
def test_time_budgets_become_retry_counts(duration: timedelta, interval: int, expected: int) -> None:
    assert retry_budget(duration, interval) == expected


def test_retry_interval_rescales_every_budget() -> None:
    descriptors = build_state_descriptors(retry_interval_seconds=60)

    assert descriptors["waiting_for_ip_address"].max_retries == 60
    assert descriptors["aborting_virtv2v"].max_retries == 1
    assert descriptors["restoring_vm_attributes"].max_retries is None


def test_descriptor_registry_validates_weights_and_budgets() -> None:
    with pytest.raises(ValueError):
        StateDescriptorRegistry({"heavy": StateDescriptor(weight=120)})
    with pytest.raises(ValueError):
        StateDescriptorRegistry({"negative": StateDescriptor(max_retries=-1)})


def test_descriptions_fill_placeholders_from_task_options() -> None:
    descriptor = build_state_descriptors()["running_migration_playbook"]
    options = {"migration_phase": "post"}

    assert descriptor.describe(options.get) == "Running post-migration playbook"
    assert descriptor.describe(lambda key: None) == "Running {migration_phase}-migration playbook"
    assert build_state_descriptors().total_weight() == 80
