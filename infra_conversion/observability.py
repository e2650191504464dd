"""Structured observability helpers for engine and API runtime logs."""

from __future__ import annotations

import logging

from fastapi import Request


def job_log_fields(
    *,
    job_id: str,
    component: str,
    operation: str,
    state: str | None = None,
    signal: str | None = None,
    **details: object,
) -> dict[str, object]:
    fields: dict[str, object] = {
        "jobId": job_id,
        "component": component,
        "operation": operation,
    }
    if state is not None:
        fields["state"] = state
    if signal is not None:
        fields["signal"] = signal
    for key, value in details.items():
        if value is None:
            continue
        fields[key] = value
    return fields


def request_log_fields(
    *,
    request: Request,
    component: str,
    operation: str,
    status_code: int | None = None,
    **details: object,
) -> dict[str, object]:
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id") or "req-unknown"
    fields: dict[str, object] = {
        "requestId": request_id,
        "component": component,
        "operation": operation,
        "resourceType": "request",
        "resourceId": request.url.path,
    }
    if status_code is not None:
        fields["statusCode"] = status_code
    for key, value in details.items():
        if value is None:
            continue
        fields[key] = value
    return fields


def log_job_event(
    logger: logging.Logger,
    *,
    level: int,
    message: str,
    job_id: str,
    component: str,
    operation: str,
    state: str | None = None,
    signal: str | None = None,
    **details: object,
) -> None:
    logger.log(
        level,
        message,
        extra=job_log_fields(
            job_id=job_id,
            component=component,
            operation=operation,
            state=state,
            signal=signal,
            **details,
        ),
    )


def log_request_event(
    logger: logging.Logger,
    *,
    level: int,
    message: str,
    request: Request,
    component: str,
    operation: str,
    status_code: int | None = None,
    **details: object,
) -> None:
    logger.log(
        level,
        message,
        extra=request_log_fields(
            request=request,
            component=component,
            operation=operation,
            status_code=status_code,
            **details,
        ),
    )
