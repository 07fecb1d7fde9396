"""
HTTP rendering of domain errors.
Every ChatError raised by a service or dependency becomes
{"detail": message, "error_code": code} with the error's status code.
Request body validation failures use the same shape with VALIDATION_ERROR.
"""
import logging
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from api.schemas import ErrorResponse
from core.exceptions import ChatError, UnauthenticatedError, ValidationError

logger = logging.getLogger(__name__)


def _describe_validation_errors(exc: RequestValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()) if item != "body")
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts) or ValidationError.default_message


def register_exception_handlers(app: FastAPI) -> None:
    """Install the ChatError and request validation handlers on the application."""

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
        logger.info(f"{request.method} {request.url.path} -> {exc.http_status} {exc.code}: {exc.message}")

        headers = None
        if isinstance(exc, UnauthenticatedError):
            headers = {"WWW-Authenticate": "Bearer"}

        return JSONResponse(
            status_code=exc.http_status,
            content=ErrorResponse(detail=exc.message, error_code=exc.code).model_dump(),
            headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        detail = _describe_validation_errors(exc)
        logger.info(f"{request.method} {request.url.path} -> {ValidationError.http_status} {ValidationError.code}: {detail}")

        return JSONResponse(
            status_code=ValidationError.http_status,
            content=ErrorResponse(detail=detail, error_code=ValidationError.code).model_dump()
        )
