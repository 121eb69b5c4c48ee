from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from keygrant.api.schemas import ErrorBody
from keygrant.logging import get_logger
from keygrant.service.errors import Rejection, RejectedError, ServiceError
from keygrant.storage.errors import ConstraintViolation

logger = get_logger(__name__)

INTERNAL_ERROR_MESSAGE = "internal server error"
UPSTREAM_ERROR_MESSAGE = "identity provider error"


def _error_response(status_code: int, body: dict) -> JSONResponse:
    error_body = ErrorBody(**body)
    return JSONResponse(
        status_code=status_code, content=error_body.model_dump(exclude_none=True)
    )


def rejection_response(rejection: Rejection) -> JSONResponse:
    """Render an expected refusal with its wire body and status."""
    return _error_response(rejection.status_code, rejection.to_body())


def generic_error(status_code: int, message: str) -> JSONResponse:
    return _error_response(status_code, {"type": "generic_error", "message": message})


def register_exception_handlers(app: FastAPI) -> None:
    """Map rejections and infrastructure faults onto the client error shapes."""

    @app.exception_handler(RejectedError)
    async def handle_rejected(request: Request, exc: RejectedError):
        logger.info(
            "request_rejected",
            path=request.url.path,
            method=request.method,
            kind=exc.rejection.kind.value,
        )
        return rejection_response(exc.rejection)

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            kind=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        if exc.status_code < 500:
            return generic_error(exc.status_code, exc.message)
        # upstream details stay in the log
        message = UPSTREAM_ERROR_MESSAGE if exc.status_code == 502 else INTERNAL_ERROR_MESSAGE
        return generic_error(exc.status_code, message)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.error(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return generic_error(500, INTERNAL_ERROR_MESSAGE)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg', 'invalid')}" if location else "malformed request"
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            error_count=len(errors),
        )
        return generic_error(400, message)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        return generic_error(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return generic_error(500, INTERNAL_ERROR_MESSAGE)
