"""
Application error type, global error handler and handler registration.
"""

from http import HTTPStatus
from typing import Awaitable, Callable, Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from schemas.responses import ErrorResponse, ValidationErrorResponse
from utils.logging import get_logger

logger = get_logger(__name__)

ErrorHandler = Callable[[Request, Exception], Awaitable[JSONResponse]]


class AppError(Exception):
    """Error raised deliberately by application code, carrying an HTTP status code."""

    def __init__(self, message: str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail
        self.status = "fail" if 400 <= status_code < 500 else "error"
        self.is_operational = True

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, status_code={self.status_code})"


def error_name(status_code: int) -> str:
    """Snake-case reason phrase for a status code, e.g. 404 -> ``not_found``."""
    try:
        phrase = HTTPStatus(status_code).phrase
    except ValueError:
        return "http_error"
    return phrase.lower().replace("-", "_").replace(" ", "_")


def _is_debug(request: Request) -> bool:
    app_settings = getattr(request.app.state, "settings", None)
    return bool(getattr(app_settings, "debug", False))


def _error_response(status_code: int, message: str, detail: Optional[str] = None, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            status="fail" if 400 <= status_code < 500 else "error",
            error=error_name(status_code),
            message=message,
            detail=detail,
            status_code=status_code,
        ).model_dump(),
        headers=headers,
    )


async def global_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Convert any error forwarded along the request chain into a JSON response."""
    debug = _is_debug(request)

    if isinstance(exc, AppError):
        if exc.status_code >= 500:
            logger.error(f"Application error: {exc.message}", request_url=str(request.url), request_method=request.method)
        return _error_response(exc.status_code, exc.message, detail=exc.detail)

    if isinstance(exc, RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=ValidationErrorResponse(
                errors=jsonable_encoder([{"loc": e["loc"], "msg": e["msg"], "type": e["type"]} for e in exc.errors()])
            ).model_dump(),
        )

    if isinstance(exc, StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else error_name(exc.status_code)
        return _error_response(exc.status_code, message, headers=getattr(exc, "headers", None))

    if isinstance(exc, OperationalError):
        logger.error(f"Database error: {exc}")
        return _error_response(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "Database temporarily unavailable",
            detail=str(exc) if debug else None,
            headers={"Retry-After": "30"},
        )

    if isinstance(exc, IntegrityError):
        logger.warning(f"Integrity error: {exc}")
        return _error_response(status.HTTP_409_CONFLICT, "Data integrity violation", detail=str(exc) if debug else None)

    logger.error(
        "Unhandled exception",
        exception_type=type(exc).__name__,
        exception_message=str(exc),
        request_url=str(request.url),
        request_method=request.method,
        exc_info=exc,
    )
    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "An internal server error occurred",
        detail=str(exc) if debug else None,
    )


def register_exception_handlers(app: FastAPI, handler: Optional[ErrorHandler] = None) -> None:
    """Attach the global error handler to the app.

    Registered last so it receives errors from every route and from the body
    parsers. Other exceptions reach it through ``ErrorBoundaryMiddleware``
    rather than an ``Exception`` handler, which Starlette would run outside
    the middleware chain.
    """
    handler = handler or global_error_handler
    app.state.error_handler = handler
    for exc_class in (AppError, StarletteHTTPException, RequestValidationError, SQLAlchemyError):
        app.add_exception_handler(exc_class, handler)
