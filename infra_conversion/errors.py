"""Error types for the conversion engine and its HTTP surface."""

from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse


class JobTransitionError(ValueError):
    """Raised when a signal is not legal from the job's current state."""

    def __init__(self, *, signal: str, state: str) -> None:
        super().__init__(f"Signal {signal!r} is not allowed from state {state!r}")
        self.signal = signal
        self.state = state


class HandlerRegistrationError(ValueError):
    """Raised when the handler set and the transition table disagree."""


class PollingTimeoutError(RuntimeError):
    """Raised by polling handlers whose timeout is fatal rather than an abort."""


class JobNotFoundError(KeyError):
    """Raised when a job id is unknown to the repository."""


class ConversionAPIError(Exception):
    """Domain error mapped to the canonical error envelope."""

    def __init__(
        self,
        *,
        status_code: int,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details
        self.request_id = request_id


def error_envelope(
    *,
    code: str,
    message: str,
    request_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the canonical ErrorResponse payload."""
    payload: dict[str, Any] = {
        "error": {
            "code": code,
            "message": message,
        },
        "requestId": request_id,
    }
    if details is not None:
        payload["error"]["details"] = details
    return payload


async def conversion_api_error_handler(request: Request, exc: ConversionAPIError) -> JSONResponse:
    """Convert domain exceptions into canonical JSON error payloads."""
    request_id = exc.request_id or getattr(request.state, "request_id", None) or "req-unknown"
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(
            code=exc.code,
            message=exc.message,
            request_id=request_id,
            details=exc.details,
        ),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback handler preserving the error envelope."""
    request_id = getattr(request.state, "request_id", None) or "req-unknown"
    return JSONResponse(
        status_code=500,
        content=error_envelope(
            code="INTERNAL_ERROR",
            message="Internal server error",
            request_id=request_id,
        ),
    )
