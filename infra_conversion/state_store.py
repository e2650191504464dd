"""In-memory persistence for conversion jobs, progress and traces."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

from infra_conversion.errors import JobNotFoundError

INITIAL_JOB_STATE = "initialize"
TERMINAL_JOB_STATE = "finished"


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def utc_now() -> str:
    return format_timestamp(datetime.now(tz=UTC))


class JobStatus(StrEnum):
    OK = "Ok"
    ERROR = "Error"


def normalize_status(value: str | None) -> JobStatus:
    if value is not None and value.strip().lower() == "error":
        return JobStatus.ERROR
    return JobStatus.OK


@dataclass
class JobContext:
    """Durable per-job scratch space.

    ``retries`` holds one polling counter per state. ``scratch`` holds handler
    values namespaced by phase (``scratch["pre"]["playbook_service_request_id"]``)
    so that the same key written in two phases never collides.
    """

    retries: dict[str, int] = field(default_factory=dict)
    scratch: dict[str, dict[str, Any]] = field(default_factory=dict)

    def retry_count(self, state: str) -> int:
        return self.retries.get(state, 0)

    def increment_retries(self, state: str) -> int:
        self.retries[state] = self.retries.get(state, 0) + 1
        return self.retries[state]

    def get_scratch(self, namespace: str, key: str, default: Any = None) -> Any:
        return self.scratch.get(namespace, {}).get(key, default)

    def set_scratch(self, namespace: str, key: str, value: Any) -> None:
        self.scratch.setdefault(namespace, {})[key] = value


@dataclass
class ConversionJobRecord:
    id: str
    task_id: str
    state: str = INITIAL_JOB_STATE
    status: JobStatus = JobStatus.OK
    message: str | None = None
    context: JobContext = field(default_factory=JobContext)
    zone: str | None = None
    signal_sequence: int = 0
    processed_sequence: int = 0
    timed_out_at: str | None = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @property
    def finished(self) -> bool:
        return self.state == TERMINAL_JOB_STATE


@dataclass
class ProgressRecord:
    state: str = "active"
    status: JobStatus = JobStatus.OK
    percent: float = 0.0
    description: str | None = None
    message: str | None = None
    started_on: str = field(default_factory=utc_now)
    updated_on: str | None = None


@dataclass
class AggregateProgress:
    current_state: str
    current_description: str | None = None
    percent: float = 0.0
    states: dict[str, ProgressRecord] = field(default_factory=dict)


@dataclass
class JobTraceRecord:
    id: str
    job_id: str
    event: str
    step: str
    from_state: str | None
    to_state: str | None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utc_now)


class JobRepository(Protocol):
    """Persistence boundary for job state and context."""

    def next_job_id(self) -> str:
        ...

    def get_job(self, job_id: str) -> ConversionJobRecord:
        ...

    def save_job(self, job: ConversionJobRecord) -> None:
        ...

    def list_jobs(self) -> list[ConversionJobRecord]:
        ...


class InMemoryStateStore:
    """Simple in-process persistence; every read returns a detached copy."""

    def __init__(self) -> None:
        self.jobs: dict[str, ConversionJobRecord] = {}
        self.job_traces: list[JobTraceRecord] = []
        self._id_counters: dict[str, int] = {
            "job": 1,
            "job_trace": 1,
        }

    def next_id(self, scope: str) -> str:
        idx = self._id_counters.get(scope, 1)
        self._id_counters[scope] = idx + 1
        if scope == "job":
            return f"conv-job-{idx:04d}"
        if scope == "job_trace":
            return f"job-trace-{idx:04d}"
        return f"{scope}-{idx:03d}"

    def next_job_id(self) -> str:
        return self.next_id("job")

    def get_job(self, job_id: str) -> ConversionJobRecord:
        job = self.jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Conversion job not found: {job_id}")
        return copy.deepcopy(job)

    def save_job(self, job: ConversionJobRecord) -> None:
        self.jobs[job.id] = copy.deepcopy(job)

    def list_jobs(self) -> list[ConversionJobRecord]:
        return [copy.deepcopy(job) for job in self.jobs.values()]
