"""FastAPI application entry point."""

import logging
from uuid import uuid4

from dotenv import load_dotenv
from fastapi import FastAPI, Request

from infra_conversion.api.router import router as conversion_v1_router
from infra_conversion.config import get_settings
from infra_conversion.errors import (
    ConversionAPIError,
    conversion_api_error_handler,
    unhandled_error_handler,
)
from infra_conversion.observability import log_request_event, request_log_fields

logger = logging.getLogger(__name__)

# Load environment variables
load_dotenv()

settings = get_settings()

app = FastAPI(
    title="Infra Conversion Engine",
    description="Durable, signal-driven VM conversion jobs",
    version="0.1.0",
)


def _is_api_request(path: str) -> bool:
    return path.startswith("/v1/")


@app.middleware("http")
async def observability_context_middleware(request: Request, call_next):
    """Attach request correlation identifiers and emit structured request logs."""
    if _is_api_request(request.url.path):
        request.state.request_id = request.headers.get("X-Request-Id") or f"req-{uuid4()}"
        log_request_event(
            logger,
            level=logging.INFO,
            message="Conversion API request started.",
            request=request,
            component="api",
            operation="request_started",
            method=request.method,
        )

    response = await call_next(request)

    if _is_api_request(request.url.path):
        log_request_event(
            logger,
            level=logging.INFO,
            message="Conversion API request completed.",
            request=request,
            component="api",
            operation="request_completed",
            status_code=response.status_code,
            method=request.method,
        )
    return response


@app.middleware("http")
async def unhandled_error_middleware(request: Request, call_next):
    """Apply the fallback error envelope only to API routes."""
    try:
        return await call_next(request)
    except Exception as exc:
        if _is_api_request(request.url.path):
            logger.exception(
                "Unhandled exception for conversion API request %s",
                request.url.path,
                extra=request_log_fields(
                    request=request,
                    component="api",
                    operation="request_failed_unhandled",
                ),
            )
            return await unhandled_error_handler(request, exc)
        raise


app.include_router(conversion_v1_router)

# Register error envelope handlers.
app.add_exception_handler(ConversionAPIError, conversion_api_error_handler)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {"message": "Infra Conversion Engine", "status": "running"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "infra_conversion.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
