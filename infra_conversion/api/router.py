"""FastAPI router implementing the conversion job v1 surface."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated
from uuid import uuid4

from fastapi import APIRouter, Depends, Header, Request, status

from infra_conversion.api.conversion_service import ConversionJobService
from infra_conversion.api.schemas import (
    ConversionJobResponse,
    ConversionProgressResponse,
    CreateConversionJobRequest,
    HealthResponse,
    JobTraceListResponse,
    RequestContext,
    SignalJobRequest,
    SignalJobResponse,
    WorkerTickResponse,
)
from infra_conversion.migration.factory import ConversionRuntime, build_in_memory_runtime

router = APIRouter(prefix="/v1")

_runtime = build_in_memory_runtime()


def get_runtime() -> ConversionRuntime:
    return _runtime


async def _request_context(
    request: Request,
    x_request_id: str | None = Header(default=None, alias="X-Request-Id"),
) -> RequestContext:
    request_id = x_request_id or f"req-{uuid4()}"
    request.state.request_id = request_id
    return RequestContext(request_id=request_id)


def _conversion_service(runtime: Annotated[ConversionRuntime, Depends(get_runtime)]) -> ConversionJobService:
    return ConversionJobService(runtime=runtime)


ContextDep = Annotated[RequestContext, Depends(_request_context)]
ServiceDep = Annotated[ConversionJobService, Depends(_conversion_service)]


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def get_health_v1(
    context: ContextDep,
) -> HealthResponse:
    return HealthResponse(
        status="ok",
        service="infra-conversion-engine",
        timestamp=datetime.now(tz=UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z"),
    )


@router.post(
    "/conversion-jobs",
    response_model=ConversionJobResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Conversion Jobs"],
)
async def create_conversion_job_v1(
    request: CreateConversionJobRequest,
    context: ContextDep,
    service: ServiceDep,
) -> ConversionJobResponse:
    return await service.create_job(request=request, context=context)


@router.get("/conversion-jobs/{jobId}", response_model=ConversionJobResponse, tags=["Conversion Jobs"])
async def get_conversion_job_v1(
    jobId: str,
    context: ContextDep,
    service: ServiceDep,
) -> ConversionJobResponse:
    return await service.get_job(job_id=jobId, context=context)


@router.get(
    "/conversion-jobs/{jobId}/progress",
    response_model=ConversionProgressResponse,
    tags=["Conversion Jobs"],
)
async def get_conversion_progress_v1(
    jobId: str,
    context: ContextDep,
    service: ServiceDep,
) -> ConversionProgressResponse:
    return await service.get_progress(job_id=jobId, context=context)


@router.get("/conversion-jobs/{jobId}/traces", response_model=JobTraceListResponse, tags=["Conversion Jobs"])
async def list_conversion_traces_v1(
    jobId: str,
    context: ContextDep,
    service: ServiceDep,
) -> JobTraceListResponse:
    return await service.list_traces(job_id=jobId, context=context)


@router.post(
    "/conversion-jobs/{jobId}/cancel",
    response_model=ConversionJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Conversion Jobs"],
)
async def cancel_conversion_job_v1(
    jobId: str,
    context: ContextDep,
    service: ServiceDep,
) -> ConversionJobResponse:
    return await service.cancel_job(job_id=jobId, context=context)


@router.post(
    "/conversion-jobs/{jobId}/signals",
    response_model=SignalJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Conversion Jobs"],
)
async def signal_conversion_job_v1(
    jobId: str,
    request: SignalJobRequest,
    context: ContextDep,
    service: ServiceDep,
) -> SignalJobResponse:
    return await service.signal_job(job_id=jobId, request=request, context=context)


@router.post("/worker/ticks", response_model=WorkerTickResponse, tags=["Worker"])
async def run_worker_tick_v1(
    context: ContextDep,
    service: ServiceDep,
) -> WorkerTickResponse:
    return await service.run_worker_tick(context=context)
