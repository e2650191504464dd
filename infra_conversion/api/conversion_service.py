"""Conversion job endpoints backed by the engine and its in-memory runtime."""

from __future__ import annotations

import logging
from dataclasses import asdict

from infra_conversion.api.schemas import (
    ConversionJob,
    ConversionJobResponse,
    ConversionProgress,
    ConversionProgressResponse,
    CreateConversionJobRequest,
    JobContextPayload,
    JobTrace,
    JobTraceListResponse,
    ProgressRecordPayload,
    RequestContext,
    SignalJobRequest,
    SignalJobResponse,
    WorkerTickResponse,
)
from infra_conversion.engine.transitions import OverlaySignal
from infra_conversion.errors import ConversionAPIError, JobNotFoundError, JobTransitionError
from infra_conversion.migration.factory import ConversionRuntime
from infra_conversion.state_store import ConversionJobRecord

logger = logging.getLogger(__name__)


def job_to_schema(job: ConversionJobRecord) -> ConversionJob:
    return ConversionJob(
        id=job.id,
        taskId=job.task_id,
        state=job.state,
        status=str(job.status),
        message=job.message,
        zone=job.zone,
        context=JobContextPayload(**asdict(job.context)),
        timedOutAt=job.timed_out_at,
        createdAt=job.created_at,
        updatedAt=job.updated_at,
    )


class ConversionJobService:
    """Service layer for conversion job endpoints."""

    def __init__(self, *, runtime: ConversionRuntime) -> None:
        self._runtime = runtime

    async def create_job(
        self,
        *,
        request: CreateConversionJobRequest,
        context: RequestContext,
    ) -> ConversionJobResponse:
        environment = self._runtime.environment
        if request.taskId is None:
            task = environment.sample_task(vm_name=request.vmName)
        else:
            task = environment.tasks.get(request.taskId)
            if task is None:
                raise ConversionAPIError(
                    status_code=404,
                    code="TASK_NOT_FOUND",
                    message=f"Migration task {request.taskId} not found.",
                    request_id=context.request_id,
                )
        job = self._runtime.engine.create_job(task_id=task.id, zone=request.zone)
        return ConversionJobResponse(requestId=context.request_id, job=job_to_schema(job))

    async def get_job(self, *, job_id: str, context: RequestContext) -> ConversionJobResponse:
        job = self._require_job(job_id, context=context)
        return ConversionJobResponse(requestId=context.request_id, job=job_to_schema(job))

    async def get_progress(self, *, job_id: str, context: RequestContext) -> ConversionProgressResponse:
        job = self._require_job(job_id, context=context)
        aggregate = self._runtime.engine.task_for(job).transformation_progress()
        progress = ConversionProgress()
        if aggregate is not None:
            progress = ConversionProgress(
                currentState=aggregate.current_state,
                currentDescription=aggregate.current_description,
                percent=aggregate.percent,
                states={
                    state: ProgressRecordPayload(
                        state=record.state,
                        status=str(record.status),
                        percent=record.percent,
                        description=record.description,
                        message=record.message,
                        startedOn=record.started_on,
                        updatedOn=record.updated_on,
                    )
                    for state, record in aggregate.states.items()
                },
            )
        return ConversionProgressResponse(requestId=context.request_id, jobId=job.id, progress=progress)

    async def list_traces(self, *, job_id: str, context: RequestContext) -> JobTraceListResponse:
        job = self._require_job(job_id, context=context)
        traces = self._runtime.trace_service.list_job_traces(job_id=job.id)
        return JobTraceListResponse(
            requestId=context.request_id,
            jobId=job.id,
            items=[
                JobTrace(
                    id=trace.id,
                    event=trace.event,
                    step=trace.step,
                    fromState=trace.from_state,
                    toState=trace.to_state,
                    metadata=trace.metadata,
                    createdAt=trace.created_at,
                )
                for trace in traces
            ],
        )

    async def cancel_job(self, *, job_id: str, context: RequestContext) -> ConversionJobResponse:
        self._require_job(job_id, context=context)
        try:
            job = self._runtime.engine.request_cancel(job_id)
        except JobTransitionError as exc:
            raise self._transition_error(exc, job_id=job_id, context=context) from exc
        logger.info(
            "Conversion job cancelation requested.",
            extra={
                "requestId": context.request_id,
                "component": "api",
                "operation": "cancel_job",
                "jobId": job_id,
            },
        )
        return ConversionJobResponse(requestId=context.request_id, job=job_to_schema(job))

    async def signal_job(
        self,
        *,
        job_id: str,
        request: SignalJobRequest,
        context: RequestContext,
    ) -> SignalJobResponse:
        self._require_job(job_id, context=context)
        if request.signal == OverlaySignal.ABORT:
            args: tuple[str, ...] = (request.message or "Job aborted by request", request.status)
        else:
            args = (request.message or "Job canceled by request",)
        try:
            message = self._runtime.engine.queue_external_signal(job_id, request.signal, *args)
        except JobTransitionError as exc:
            raise self._transition_error(exc, job_id=job_id, context=context) from exc
        return SignalJobResponse(
            requestId=context.request_id,
            jobId=job_id,
            signal=request.signal,
            signalId=message.id,
            sequence=message.sequence,
        )

    async def run_worker_tick(self, *, context: RequestContext) -> WorkerTickResponse:
        report = self._runtime.worker.run_once()
        return WorkerTickResponse(
            requestId=context.request_id,
            delivered=report.delivered,
            duplicates=report.duplicates,
            rejected=report.rejected,
            ignored=report.ignored,
            deadlineAborts=report.deadline_aborts,
            pending=len(self._runtime.queue),
        )

    def _require_job(self, job_id: str, *, context: RequestContext) -> ConversionJobRecord:
        try:
            return self._runtime.engine.get_job(job_id)
        except JobNotFoundError as exc:
            raise ConversionAPIError(
                status_code=404,
                code="JOB_NOT_FOUND",
                message=f"Conversion job {job_id} not found.",
                request_id=context.request_id,
            ) from exc

    def _transition_error(
        self,
        exc: JobTransitionError,
        *,
        job_id: str,
        context: RequestContext,
    ) -> ConversionAPIError:
        return ConversionAPIError(
            status_code=409,
            code="JOB_TRANSITION_NOT_ALLOWED",
            message=str(exc),
            details={"jobId": job_id, "signal": str(exc.signal), "state": exc.state},
            request_id=context.request_id,
        )


__all__ = ["ConversionJobService", "job_to_schema"]
