"""Middleware for request tracing, error handling and slow-request logging."""

import time
import uuid
from datetime import datetime
from typing import Callable

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from ..core.exceptions import (
    RunNotFoundError, ValidationError, WorkflowEngineError, WorkflowNotFoundError, create_error_response
)
from ..core.logging import clear_logging_context, get_logger, set_logging_context

logger = get_logger(__name__)


def status_code_for_error(error: WorkflowEngineError) -> int:
    """HTTP status for an engine error: 400 validation, 404 not found, 500 otherwise."""
    if isinstance(error, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(error, (WorkflowNotFoundError, RunNotFoundError)):
        return status.HTTP_404_NOT_FOUND
    return status.HTTP_500_INTERNAL_SERVER_ERROR


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id and turns escaped errors into JSON responses."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        start_time = time.time()
        token = set_logging_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
            duration = time.time() - start_time
            logger.info(
                f"{request.method} {request.url.path} - Status: {response.status_code} - "
                f"Duration: {duration:.3f}s"
            )
            response.headers["X-Request-ID"] = request_id
            return response

        except WorkflowEngineError as e:
            logger.warning(
                f"Workflow engine error: {request.method} {request.url.path} - {e.error_code}",
                extra={"extra_fields": {"error_details": e.to_dict()}}
            )
            return JSONResponse(
                status_code=status_code_for_error(e),
                content=create_error_response(e),
                headers={"X-Request-ID": request_id}
            )

        except Exception as e:
            logger.error(f"Unexpected error: {request.method} {request.url.path} - {str(e)}", exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "details": {
                        "error_type": type(e).__name__,
                        "timestamp": datetime.utcnow().isoformat()
                    },
                    "request_id": request_id
                },
                headers={"X-Request-ID": request_id}
            )

        finally:
            clear_logging_context(token)


class PerformanceMonitoringMiddleware(BaseHTTPMiddleware):
    """Reports response time and warns about slow requests."""

    def __init__(self, app, slow_request_threshold: float = 5.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        if duration > self.slow_request_threshold:
            logger.warning(
                f"Slow request detected: {request.method} {request.url.path} - "
                f"Duration: {duration:.3f}s (threshold: {self.slow_request_threshold}s)"
            )

        response.headers["X-Response-Time"] = f"{duration:.3f}s"
        return response
