"""Signal messages, the queue boundary and the scheduler that feeds it."""

from __future__ import annotations

import heapq
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from itertools import count
from typing import Any, Protocol

from infra_conversion.engine.clock import Clock, utc_clock
from infra_conversion.observability import log_job_event
from infra_conversion.state_store import ConversionJobRecord

logger = logging.getLogger(__name__)

_EARLIEST = datetime.min.replace(tzinfo=UTC)


@dataclass(frozen=True)
class SignalRouting:
    zone: str
    role: str


@dataclass(frozen=True)
class SignalMessage:
    """Queue payload; ``sequence`` is the job's signal counter at enqueue time."""

    id: str
    job_id: str
    signal: str
    sequence: int
    routing: SignalRouting
    args: tuple[Any, ...] = ()
    deliver_on: datetime | None = None
    enqueued_at: datetime | None = None

    def due(self, now: datetime) -> bool:
        return self.deliver_on is None or self.deliver_on <= now


class SignalQueue(Protocol):
    """At-least-once delivery boundary; messages are handed out at or after ``deliver_on``."""

    def put(self, message: SignalMessage) -> None:
        ...


class InMemorySignalQueue(SignalQueue):
    """Deterministic queue ordered by delivery time, then insertion order."""

    def __init__(self) -> None:
        self._heap: list[tuple[datetime, int, SignalMessage]] = []
        self._sequence = count(1)
        self._lock = threading.Lock()

    def put(self, message: SignalMessage) -> None:
        when = message.deliver_on or message.enqueued_at or _EARLIEST
        with self._lock:
            heapq.heappush(self._heap, (when, next(self._sequence), message))

    def pop_due(
        self,
        *,
        now: datetime,
        limit: int | None = None,
        held_job_ids: set[str] | None = None,
    ) -> list[SignalMessage]:
        """Remove and return due messages, skipping jobs whose ids are held."""
        held = held_job_ids or set()
        due: list[SignalMessage] = []
        skipped: list[tuple[datetime, int, SignalMessage]] = []
        with self._lock:
            while self._heap and (limit is None or len(due) < limit):
                entry = self._heap[0]
                message = entry[2]
                if not message.due(now):
                    break
                heapq.heappop(self._heap)
                if message.job_id in held:
                    skipped.append(entry)
                    continue
                due.append(message)
            for entry in skipped:
                heapq.heappush(self._heap, entry)
        return due

    def next_delivery_at(self) -> datetime | None:
        with self._lock:
            if not self._heap:
                return None
            return self._heap[0][0]

    def pending(self, *, job_id: str | None = None) -> list[SignalMessage]:
        with self._lock:
            ordered = [entry[2] for entry in sorted(self._heap)]
        if job_id is None:
            return ordered
        return [message for message in ordered if message.job_id == job_id]

    def __len__(self) -> int:
        return len(self._heap)


class SignalScheduler:
    """Stamps identity, routing and sequence on the next signal and enqueues it.

    Nothing here waits: polling is expressed as a deferred signal delivered one
    retry interval later, possibly to a different worker.
    """

    def __init__(
        self,
        *,
        queue: SignalQueue,
        role: str,
        zone: str,
        retry_interval: timedelta,
        id_factory: Callable[[], str] | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._queue = queue
        self._role = role
        self._zone = zone
        self._retry_interval = retry_interval
        self._id_factory = id_factory or _default_id_factory()
        self._clock = clock or utc_clock

    @property
    def retry_interval(self) -> timedelta:
        return self._retry_interval

    def enqueue(
        self,
        job: ConversionJobRecord,
        signal: str,
        *args: Any,
        deliver_on: datetime | None = None,
    ) -> SignalMessage:
        job.signal_sequence += 1
        message = SignalMessage(
            id=self._id_factory(),
            job_id=job.id,
            signal=str(signal),
            sequence=job.signal_sequence,
            routing=SignalRouting(zone=job.zone or self._zone, role=self._role),
            args=tuple(args),
            deliver_on=deliver_on,
            enqueued_at=self._clock(),
        )
        self._queue.put(message)
        log_job_event(
            logger,
            level=logging.DEBUG,
            message="Signal enqueued.",
            job_id=job.id,
            component="scheduler",
            operation="enqueue",
            state=job.state,
            signal=message.signal,
            sequence=message.sequence,
            deliverOn=deliver_on.isoformat() if deliver_on is not None else None,
        )
        return message

    def enqueue_deferred(self, job: ConversionJobRecord, signal: str, *args: Any) -> SignalMessage:
        return self.enqueue(job, signal, *args, deliver_on=self._clock() + self._retry_interval)


def _default_id_factory() -> Callable[[], str]:
    sequence = count(1)
    return lambda: f"sig-{next(sequence):06d}"


__all__ = [
    "InMemorySignalQueue",
    "SignalMessage",
    "SignalQueue",
    "SignalRouting",
    "SignalScheduler",
]
