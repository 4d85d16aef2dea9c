"""Request tracing and engine error translation for the HTTP API."""

import time
import uuid
from typing import Callable, List, Tuple, Type

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .date_utils import utc_now
from .exceptions import (
    ExecutionEngineError,
    TransientError,
    WorkflowEngineError,
    WorkflowNotFoundError,
    WorkflowValidationError,
    create_error_response,
)
from .logging import clear_logging_context, get_logger, set_logging_context

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# First match wins; anything else is a server error.
STATUS_BY_ERROR: List[Tuple[Type[WorkflowEngineError], int]] = [
    (WorkflowValidationError, 400),
    (WorkflowNotFoundError, 404),
    (TransientError, 503),
]

# Messages of ExecutionEngineError that mean the execution is in the wrong state.
CONFLICT_MARKERS = ("already", "not waiting", "no longer waiting", "resumed by another caller")


def get_status_code_for_error(error: WorkflowEngineError) -> int:
    """Map a workflow engine error to an HTTP status code."""
    if isinstance(error, ExecutionEngineError):
        message = error.message.lower()
        return 409 if any(marker in message for marker in CONFLICT_MARKERS) else 500
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status_code
    return 500


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """
    Tags each request with an id, logs its outcome and renders engine errors
    that escaped the endpoints as JSON. A caller supplied ``X-Request-ID`` is
    kept so a form submission can be traced across services.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        started = time.perf_counter()
        set_logging_context(request_id=request_id, method=request.method, path=request.url.path)

        try:
            try:
                response = await call_next(request)
            except WorkflowEngineError as e:
                logger.warning(f"{e.error_code} on {request.method} {request.url.path}: {e.message}")
                response = JSONResponse(
                    status_code=get_status_code_for_error(e),
                    content=create_error_response(e)
                )
            except Exception as e:
                logger.error(f"Unhandled error on {request.method} {request.url.path}: {str(e)}", exc_info=True)
                response = JSONResponse(
                    status_code=500,
                    content={
                        "error": "InternalServerError",
                        "message": "An unexpected error occurred",
                        "details": {"error_type": type(e).__name__, "timestamp": utc_now().isoformat()},
                        "request_id": request_id,
                    }
                )

            elapsed_ms = int((time.perf_counter() - started) * 1000)
            logger.info(f"{request.method} {request.url.path} -> {response.status_code} in {elapsed_ms}ms")
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            clear_logging_context("request_id", "method", "path")
