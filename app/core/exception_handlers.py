import logging
from fastapi import FastAPI, Request, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from app.core.exceptions import NotFoundError, OrderError, OrderRejected
from app.persistence.port import UniqueViolationError
from app.schemas.response import ErrorBody, ErrorResponse

log = logging.getLogger(__name__)


def _error(status_code: int, code: str, message: str, **extra) -> JSONResponse:
    """Every error leaves the API in the same envelope, with a fresh request id for tracing."""
    body = ErrorResponse(error=ErrorBody(code=code, message=message, **jsonable_encoder(extra)))
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


# ----------- Exception Handlers (called by FastAPI) -----------

def http_exception_handler(request: Request, exc: HTTPException):
    """Handles exceptions raised by HTTPException (e.g., 404, 400)."""
    return _error(exc.status_code, "http_error", exc.detail)


def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handles Pydantic validation errors (422 Unprocessable Entity)."""
    return _error(422, "validation_error", "Invalid input data", details=exc.errors())


def order_error_handler(request: Request, exc: OrderError):
    """
    Rejections carry their specific message (and shortfall details) so the caller can
    adjust the cart. Commit failures stay generic; the cause is only logged.
    """
    if isinstance(exc, OrderRejected):
        extra = {"stage": exc.stage.value} if exc.stage else {}
        details = exc.details()
        if details:
            extra["details"] = details
        return _error(exc.status_code, exc.code, exc.message, **extra)
    log.error(f"Order failure on path {request.url.path}: {exc.message}")
    return _error(exc.status_code, exc.code, "Order could not be placed. Please try again.")


def not_found_handler(request: Request, exc: NotFoundError):
    return _error(404, "not_found", str(exc))


def conflict_handler(request: Request, exc: UniqueViolationError):
    return _error(409, "conflict", "A record with the same unique value already exists.")


def generic_exception_handler(request: Request, exc: Exception):
    """Handles all unhandled exceptions (500 Internal Server Error)."""
    log.exception(f"Unhandled exception on path: {request.url.path}", exc_info=exc)
    return _error(500, "server_error", "Internal Server Error")


# ----------- Registration Function -----------

def setup_exception_handlers(app: FastAPI):
    """Registers all custom exception handlers with the FastAPI application."""
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(OrderError, order_error_handler)
    app.add_exception_handler(NotFoundError, not_found_handler)
    app.add_exception_handler(UniqueViolationError, conflict_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    return app
