"""Error hierarchy and the FastAPI handlers that render it.

Every error a client can see is an :class:`AppError`. Its body is always a
flat ``{"error": ..., "message": ...}`` object, with ``details`` in place of
``message`` for validation failures. Internal causes are logged and never
copied into the response.
"""

import logging
from typing import Dict, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = "Internal server error"

    def __init__(self, message: str, error: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if error is not None:
            self.error = error

    def to_response(self) -> Dict[str, object]:
        return {"error": self.error, "message": self.message}


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "Validation failed"

    def __init__(self, details: List[Dict[str, str]]):
        super().__init__("; ".join(f"{d['field']}: {d['message']}" for d in details))
        self.details = details

    def to_response(self) -> Dict[str, object]:
        return {"error": self.error, "details": self.details}


class InvalidOperationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "Invalid operation"


class AuthenticationError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error = "Authentication failed"

    def __init__(self, message: str = "Invalid or expired token"):
        super().__init__(message)


class AuthorizationError(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    error = "Access denied"


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    error = "User not found"

    def __init__(self, message: str = "No user found with the provided ID"):
        super().__init__(message)


class AbuseDecisionError(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    error = "Forbidden"


class RateLimitError(AppError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error = "Too Many Requests"


class InternalError(AppError):
    pass


class RepositoryError(InternalError):
    """Storage failure; ``str(exc)`` carries the wrapped driver message."""

    def __init__(self, detail: str, message: str = "Database operation failed"):
        super().__init__(message)
        self.detail = detail

    def __str__(self) -> str:
        return self.detail


def register_error_handlers(app: FastAPI) -> None:
    """Register the global error handlers on the FastAPI app."""

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
        else:
            logger.info(
                "%s on %s: %s", type(exc).__name__, request.url.path, exc.message
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ):
        details = [
            {
                "field": ".".join(str(loc) for loc in e["loc"] if loc != "body"),
                "message": e["msg"],
            }
            for e in exc.errors()
        ]
        logger.info("request validation failed on %s: %s", request.url.path, details)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=ValidationError(details).to_response(),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "message": "An unexpected error occurred",
            },
        )
