"""Static per-state metadata: progress weight, description and retry budget."""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import Any


@dataclass(frozen=True)
class StateDescriptor:
    description: str | None = None
    weight: float | None = None
    max_retries: int | None = None

    def describe(self, lookup: Callable[[str], Any] | None = None) -> str | None:
        """Render the description, filling ``{placeholders}`` through ``lookup``."""
        if self.description is None:
            return None
        if lookup is None:
            return self.description
        return self.description.format_map(_PlaceholderLookup(lookup))


class _PlaceholderLookup(dict):
    def __init__(self, lookup: Callable[[str], Any]) -> None:
        super().__init__()
        self._lookup = lookup

    def __missing__(self, key: str) -> str:
        value = self._lookup(key)
        return "{" + key + "}" if value is None else str(value)


UNDESCRIBED_STATE = StateDescriptor()


def retry_budget(duration: timedelta, retry_interval_seconds: int) -> int:
    """Number of polling attempts that fit in ``duration``."""
    if retry_interval_seconds <= 0:
        raise ValueError(f"Retry interval must be positive, got {retry_interval_seconds} seconds")
    return int(duration.total_seconds() // retry_interval_seconds)


class StateDescriptorRegistry(Mapping[str, StateDescriptor]):
    """Read-only descriptor table; states without an entry get an empty descriptor."""

    def __init__(self, descriptors: Mapping[str, StateDescriptor]) -> None:
        self._descriptors = dict(descriptors)
        for state, descriptor in self._descriptors.items():
            if descriptor.weight is not None and not 0 <= descriptor.weight <= 100:
                raise ValueError(f"Weight for state {state!r} must be within 0-100")
            if descriptor.max_retries is not None and descriptor.max_retries < 0:
                raise ValueError(f"Retry budget for state {state!r} must not be negative")

    def __getitem__(self, state: str) -> StateDescriptor:
        return self._descriptors[state]

    def __iter__(self) -> Iterator[str]:
        return iter(self._descriptors)

    def __len__(self) -> int:
        return len(self._descriptors)

    def descriptor_for(self, state: str) -> StateDescriptor:
        return self._descriptors.get(state, UNDESCRIBED_STATE)

    def total_weight(self) -> float:
        return sum(d.weight for d in self._descriptors.values() if d.weight is not None)
