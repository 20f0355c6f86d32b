# ============================================================================
# File: api/middleware.py
# ============================================================================

import logging
import time
import uuid
from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic_core import to_jsonable_python
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from core.exceptions import (
    JobStateError,
    DependencyNotMetError,
    NotFoundError,
    PipelineError,
    ValidationError,
)
from schemas.api import ErrorResponse

logger = logging.getLogger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Injects:
    - request_id (reuses an incoming X-Request-ID)
    - api_latency_ms
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or f"req_{uuid.uuid4().hex[:12]}"
        start_time = time.perf_counter()

        # Attach request_id to request state
        request.state.request_id = request_id

        response: Response = await call_next(request)

        latency_ms = int((time.perf_counter() - start_time) * 1000)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-API-Latency-ms"] = str(latency_ms)
        return response


def _status_for(error: PipelineError) -> int:
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, ValidationError):
        return 422
    if isinstance(error, (JobStateError, DependencyNotMetError)):
        return 409
    return 500


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    """Map orchestrator errors to HTTP status codes with an ErrorResponse body"""
    status_code = _status_for(exc)
    request_id = getattr(request.state, "request_id", None)
    if status_code >= 500:
        logger.error(f"[{request_id}] {request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"[{request_id}] {request.method} {request.url.path} -> {status_code}: {exc.message}")
    body = ErrorResponse(
        error_type=type(exc).__name__,
        message=exc.message,
        context=to_jsonable_python(exc.context, fallback=str),
        timestamp=exc.timestamp
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))

