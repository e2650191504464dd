"""Pydantic models for the conversion job API v1 surface."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

ExternalSignal = Literal["abort", "cancel"]


class RequestContext(BaseModel):
    """Per-request correlation fields."""

    request_id: str


class HealthResponse(BaseModel):
    status: Literal["ok"]
    service: str
    timestamp: str


class CreateConversionJobRequest(BaseModel):
    taskId: str | None = None
    vmName: str | None = None
    zone: str | None = None


class JobContextPayload(BaseModel):
    retries: dict[str, int] = Field(default_factory=dict)
    scratch: dict[str, dict[str, Any]] = Field(default_factory=dict)


class ConversionJob(BaseModel):
    id: str
    taskId: str
    state: str
    status: Literal["Ok", "Error"]
    message: str | None = None
    zone: str | None = None
    context: JobContextPayload
    timedOutAt: str | None = None
    createdAt: str
    updatedAt: str


class ConversionJobResponse(BaseModel):
    requestId: str
    job: ConversionJob


class ProgressRecordPayload(BaseModel):
    state: Literal["active", "finished"]
    status: Literal["Ok", "Error"]
    percent: float = Field(ge=0, le=100)
    description: str | None = None
    message: str | None = None
    startedOn: str
    updatedOn: str | None = None


class ConversionProgress(BaseModel):
    currentState: str | None = None
    currentDescription: str | None = None
    percent: float = Field(default=0.0, ge=0, le=100)
    states: dict[str, ProgressRecordPayload] = Field(default_factory=dict)


class ConversionProgressResponse(BaseModel):
    requestId: str
    jobId: str
    progress: ConversionProgress


class JobTrace(BaseModel):
    id: str
    event: str
    step: str
    fromState: str | None = None
    toState: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    createdAt: str


class JobTraceListResponse(BaseModel):
    requestId: str
    jobId: str
    items: list[JobTrace]


class SignalJobRequest(BaseModel):
    signal: ExternalSignal
    message: str | None = None
    status: Literal["ok", "error"] = "error"


class SignalJobResponse(BaseModel):
    requestId: str
    jobId: str
    signal: ExternalSignal
    signalId: str
    sequence: int


class WorkerTickResponse(BaseModel):
    requestId: str
    delivered: int
    duplicates: int
    rejected: int
    ignored: int
    deadlineAborts: int
    pending: int
