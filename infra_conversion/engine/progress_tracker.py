"""Per-state progress records and the weighted aggregate kept on the owning task."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from typing import Any

from infra_conversion.engine.clock import Clock, utc_clock
from infra_conversion.engine.ports import OwningTask
from infra_conversion.engine.retry_guard import RetryTimeoutGuard
from infra_conversion.engine.state_descriptors import StateDescriptorRegistry
from infra_conversion.state_store import (
    AggregateProgress,
    ConversionJobRecord,
    JobStatus,
    ProgressRecord,
    format_timestamp,
)

_MERGEABLE_FIELDS = ("message", "percent", "description")


class ProgressPhase(StrEnum):
    ENTRY = "on_entry"
    RETRY = "on_retry"
    EXIT = "on_exit"
    ERROR = "on_error"


class ProgressTracker:
    """Applies lifecycle hooks to the current state's record and persists the aggregate.

    Only the current state's record is ever touched. A finished record is never
    regressed: retries against it are ignored, so a state re-entered in a later
    phase keeps the 100% it already earned.
    """

    def __init__(
        self,
        *,
        descriptors: StateDescriptorRegistry,
        retry_guard: RetryTimeoutGuard | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._descriptors = descriptors
        self._retry_guard = retry_guard or RetryTimeoutGuard(descriptors=descriptors)
        self._clock = clock or utc_clock

    def update(
        self,
        *,
        job: ConversionJobRecord,
        task: OwningTask,
        phase: ProgressPhase,
        progress: Mapping[str, Any] | None = None,
    ) -> AggregateProgress:
        state = job.state
        aggregate = task.transformation_progress() or AggregateProgress(current_state=state)
        descriptor = self._descriptors.descriptor_for(state)
        description = descriptor.describe(task.get_option)
        record = aggregate.states.get(state)

        if phase == ProgressPhase.ENTRY:
            record = self.on_entry(record, description=description)
        elif record is None:
            raise ValueError(f"No progress record for state {state!r}; {phase} requires on_entry first")
        elif phase == ProgressPhase.RETRY:
            record = self.on_retry(record, job=job, progress=progress)
        elif phase == ProgressPhase.EXIT:
            record = self.on_exit(record)
        else:
            record = self.on_error(record)

        aggregate.states[state] = record
        aggregate.current_state = state
        if phase == ProgressPhase.ENTRY and description:
            aggregate.current_description = description
        aggregate.percent = self.aggregate_percent(aggregate.states)
        task.update_transformation_progress(aggregate)
        return aggregate

    def on_entry(self, record: ProgressRecord | None, *, description: str | None = None) -> ProgressRecord:
        if record is not None:
            return record
        return ProgressRecord(
            state="active",
            status=JobStatus.OK,
            percent=0.0,
            description=description,
            started_on=self._timestamp(),
        )

    def on_retry(
        self,
        record: ProgressRecord,
        *,
        job: ConversionJobRecord,
        progress: Mapping[str, Any] | None = None,
    ) -> ProgressRecord:
        if record.state == "finished":
            return record
        if progress is None:
            percent = self._retry_guard.retry_percent(state=job.state, context=job.context)
            if percent is not None:
                record.percent = percent
        else:
            for key in _MERGEABLE_FIELDS:
                if key in progress:
                    setattr(record, key, progress[key])
            record.percent = float(record.percent)
        record.percent = min(max(record.percent, 0.0), 100.0)
        record.updated_on = self._timestamp()
        return record

    def on_exit(self, record: ProgressRecord) -> ProgressRecord:
        record.state = "finished"
        record.percent = 100.0
        record.updated_on = self._timestamp()
        return record

    def on_error(self, record: ProgressRecord) -> ProgressRecord:
        record.state = "finished"
        record.status = JobStatus.ERROR
        record.updated_on = self._timestamp()
        return record

    def aggregate_percent(self, states: Mapping[str, ProgressRecord]) -> float:
        total = 0.0
        for state, record in states.items():
            weight = self._descriptors.descriptor_for(state).weight
            if weight is None:
                continue
            total += record.percent * weight / 100.0
        return min(total, 100.0)

    def _timestamp(self) -> str:
        return format_timestamp(self._clock())


__all__ = ["ProgressPhase", "ProgressTracker"]
