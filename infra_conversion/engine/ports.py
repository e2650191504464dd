"""Boundary consumed by the engine for the task that owns a conversion job."""

from __future__ import annotations

from typing import Any, Protocol

from infra_conversion.state_store import AggregateProgress


class OwningTask(Protocol):
    """Progress, option and cancellation surface of a job's owning task.

    Cancellation moves through ``cancel()`` (request observed out of band),
    ``canceling()`` (teardown in progress) and ``canceled()`` (done).
    """

    id: str

    def transformation_progress(self) -> AggregateProgress | None:
        ...

    def update_transformation_progress(self, progress: AggregateProgress) -> None:
        ...

    def cancel_requested(self) -> bool:
        ...

    def cancel(self) -> None:
        ...

    def canceling(self) -> None:
        ...

    def is_canceling(self) -> bool:
        ...

    def canceled(self) -> None:
        ...

    def get_option(self, key: str, default: Any = None) -> Any:
        ...

    def update_options(self, **options: Any) -> None:
        ...


__all__ = ["OwningTask"]
