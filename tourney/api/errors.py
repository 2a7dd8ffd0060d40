"""Map domain errors onto HTTP responses.

The engine defines no routes. A host application calls
``install_error_handlers(app)`` once and lets ``TourneyError`` subclasses
escape its endpoints; they are rendered as::

    {"error": {"code": ..., "message": ..., "details": {...}}, "traceId": ...}
"""

import uuid
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError

from tourney.errors import ErrorKind, TourneyError
from tourney.logging_config import get_logger
from tourney.utils.json_utils import ORJSONResponse

logger = get_logger(__name__)

KIND_STATUS = {
    ErrorKind.VALIDATION: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.INSUFFICIENT_FUNDS: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.ALREADY_RESOLVED: status.HTTP_409_CONFLICT,
    ErrorKind.ALREADY_TERMINAL: status.HTTP_409_CONFLICT,
    ErrorKind.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def status_for(error: TourneyError) -> int:
    return KIND_STATUS.get(error.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)


def get_trace_id(request: Request) -> str:
    """Trace id from request state, the X-Request-ID header, or a fresh one."""
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return request.headers.get("X-Request-ID", str(uuid.uuid4()))


def create_error_response(
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    trace_id: str | None = None,
) -> dict[str, Any]:
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
        },
        "traceId": trace_id,
    }


async def tourney_error_handler(request: Request, exc: TourneyError) -> ORJSONResponse:
    trace_id = get_trace_id(request)
    status_code = status_for(exc)

    if status_code >= 500:
        # Internal details stay in the log
        logger.error(
            "tourney_internal_error",
            code=exc.code,
            message=exc.message,
            details=exc.details,
            trace_id=trace_id,
        )
        content = create_error_response(exc.code, "Internal server error", trace_id=trace_id)
    else:
        logger.warning(
            "tourney_error",
            kind=exc.kind.value,
            code=exc.code,
            message=exc.message,
            trace_id=trace_id,
        )
        content = create_error_response(exc.code, exc.message, exc.details, trace_id)

    return ORJSONResponse(status_code=status_code, content=content)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=create_error_response(
            code="INVALID_REQUEST",
            message="Request validation failed",
            details={"errors": exc.errors()},
            trace_id=get_trace_id(request),
        ),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> ORJSONResponse:
    return ORJSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            code="HTTP_ERROR",
            message=str(exc.detail),
            trace_id=get_trace_id(request),
        ),
        headers=getattr(exc, "headers", None),
    )


async def unexpected_error_handler(request: Request, exc: Exception) -> ORJSONResponse:
    trace_id = get_trace_id(request)
    logger.error(
        "unexpected_error",
        error_type=type(exc).__name__,
        error_message=str(exc),
        trace_id=trace_id,
        exc_info=True,
    )
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=create_error_response(
            code="INTERNAL_ERROR",
            message="Internal server error",
            trace_id=trace_id,
        ),
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TourneyError, tourney_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
