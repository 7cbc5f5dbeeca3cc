import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from .logging_setup import log_step

logger = logging.getLogger(__name__)

LOG_STEP = "ERRORS"


class AppError(Exception):
    """
    Base class for errors that are rendered as the
    {"success": false, "message": ...} envelope.
    """

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    """Missing or malformed request fields."""

    status_code = 400


class AuthError(AppError):
    """Missing or invalid bearer token or webhook secret."""

    status_code = 401


class NotConnectedError(AppError):
    """
    The operation needs a connected integration.
    Reported as success=false with a 200, not as an HTTP error.
    """

    status_code = 200


class UpstreamError(AppError):
    """A gateway, auth service, Google or database call failed."""

    status_code = 500


class NotFoundError(AppError):
    status_code = 404


def envelope_error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        {"success": False, "message": message}, status_code=status_code
    )


def register_error_handlers(app: FastAPI) -> None:
    """Attach handlers that convert every error into the JSON envelope."""

    @app.exception_handler(AppError)
    async def _app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            with log_step(LOG_STEP):
                logger.error(
                    f"{request.method} {request.url.path} failed: {exc.message}"
                )
        return envelope_error(exc.message, exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _request_validation_handler(
        request: Request, exc: RequestValidationError
    ):
        fields = sorted(
            {
                str(error.get("loc", ["", "body"])[-1])
                for error in exc.errors()
                if error.get("loc")
            }
        )
        message = "Invalid request payload"
        if fields:
            message = f"Invalid or missing fields: {', '.join(fields)}"
        return envelope_error(message, 400)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return envelope_error(str(exc.detail), exc.status_code)

    @app.exception_handler(Exception)
    async def _unhandled_handler(request: Request, exc: Exception):
        with log_step(LOG_STEP):
            logger.error(
                f"Unhandled error in {request.method} {request.url.path}: {exc}",
                exc_info=True,
            )
        return envelope_error("Internal server error", 500)
