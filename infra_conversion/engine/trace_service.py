"""Job execution trace persistence for signal and transition events."""

from __future__ import annotations

from typing import Mapping

from infra_conversion.state_store import InMemoryStateStore, JobTraceRecord


class JobTraceService:
    """Persists one trace record per applied, dropped or rejected signal."""

    def __init__(self, *, store: InMemoryStateStore) -> None:
        self._store = store

    def record(
        self,
        *,
        job_id: str,
        event: str,
        step: str,
        from_state: str | None,
        to_state: str | None,
        metadata: Mapping[str, object] | None = None,
    ) -> JobTraceRecord:
        trace = JobTraceRecord(
            id=self._store.next_id("job_trace"),
            job_id=job_id,
            event=event,
            step=step,
            from_state=from_state,
            to_state=to_state,
            metadata=dict(metadata or {}),
        )
        self._store.job_traces.append(trace)
        return trace

    def list_job_traces(self, *, job_id: str) -> list[JobTraceRecord]:
        return [trace for trace in self._store.job_traces if trace.job_id == job_id]
