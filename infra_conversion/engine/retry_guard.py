"""Per-state retry counter and polling timeout decisions."""

from __future__ import annotations

from dataclasses import dataclass

from infra_conversion.engine.state_descriptors import StateDescriptorRegistry
from infra_conversion.state_store import JobContext


@dataclass(frozen=True)
class TimeoutCheck:
    timed_out: bool
    state: str
    retries: int
    max_retries: int | None

    @property
    def remaining_retries(self) -> int | None:
        if self.max_retries is None:
            return None
        return max(self.max_retries - self.retries, 0)


class RetryTimeoutGuard:
    """Counts polling attempts per state against the descriptor's retry budget.

    Budget ``N`` permits ``N`` attempts; the ``N + 1``th check reports a timeout.
    States without a budget never time out and their counter is left alone.
    """

    def __init__(self, *, descriptors: StateDescriptorRegistry) -> None:
        self._descriptors = descriptors

    def check(self, *, state: str, context: JobContext) -> TimeoutCheck:
        max_retries = self._descriptors.descriptor_for(state).max_retries
        if max_retries is None:
            return TimeoutCheck(
                timed_out=False,
                state=state,
                retries=context.retry_count(state),
                max_retries=None,
            )
        retries = context.increment_retries(state)
        return TimeoutCheck(
            timed_out=retries > max_retries,
            state=state,
            retries=retries,
            max_retries=max_retries,
        )

    def retry_percent(self, *, state: str, context: JobContext) -> float | None:
        max_retries = self._descriptors.descriptor_for(state).max_retries
        if not max_retries:
            return None
        return min(context.retry_count(state) / max_retries * 100.0, 100.0)


def check_timeout(
    state: str,
    context: JobContext,
    descriptors: StateDescriptorRegistry,
) -> tuple[bool, JobContext]:
    decision = RetryTimeoutGuard(descriptors=descriptors).check(state=state, context=context)
    return decision.timed_out, context


__all__ = [
    "RetryTimeoutGuard",
    "TimeoutCheck",
    "check_timeout",
]
