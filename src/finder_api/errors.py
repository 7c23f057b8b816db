"""
Error taxonomy for the Finder API and the FastAPI handlers that render it.

Every failure a command can produce is a `FinderError` subclass carrying a
stable machine-readable code and the HTTP status it maps to.
"""

import logging
from typing import Any, Dict, Optional

import pydantic
from fastapi import Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class FinderError(Exception):
    """
    Base class for all Finder API errors.

    Attributes:
        message: Human readable description
        code: Machine-readable error code
        status_code: HTTP status the error maps to
        data: Optional partial payload returned alongside the error
    """

    code = "IO_FAILURE"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "", data: Optional[Any] = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.data = data

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class BadRequest(FinderError):
    code = "BAD_REQUEST"
    status_code = status.HTTP_400_BAD_REQUEST


class UnknownStorage(FinderError):
    code = "UNKNOWN_STORAGE"
    status_code = status.HTTP_404_NOT_FOUND


class UnsupportedCommand(FinderError):
    code = "UNSUPPORTED_COMMAND"
    status_code = status.HTTP_400_BAD_REQUEST


class PathTraversal(FinderError):
    code = "PATH_TRAVERSAL"
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(FinderError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class NotADirectory(FinderError):
    code = "NOT_A_DIRECTORY"
    status_code = status.HTTP_400_BAD_REQUEST


class IsADirectory(FinderError):
    code = "IS_A_DIRECTORY"
    status_code = status.HTTP_400_BAD_REQUEST


class Conflict(FinderError):
    code = "CONFLICT"
    status_code = status.HTTP_409_CONFLICT


class DirectoryNotEmpty(FinderError):
    code = "DIRECTORY_NOT_EMPTY"
    status_code = status.HTTP_409_CONFLICT


class SizeLimitExceeded(FinderError):
    code = "SIZE_LIMIT_EXCEEDED"
    status_code = status.HTTP_413_CONTENT_TOO_LARGE


class IOFailure(FinderError):
    code = "IO_FAILURE"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


def error_envelope(code: str, message: str, data: Optional[Any] = None) -> Dict[str, Any]:
    """Build the error variant of the response envelope."""
    return {"status": "error", "data": data, "error": code, "message": message}


async def handle_finder_errors(request: Request, exc: FinderError) -> JSONResponse:
    """Render a `FinderError` raised anywhere below the router."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(exc.code, exc.message, exc.data),
    )


async def handle_pydantic_validation_errors(
    request: Request, exc: pydantic.ValidationError
) -> JSONResponse:
    """Payloads that fail model validation are client errors."""
    errors = exc.errors()
    message = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in errors
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_envelope(BadRequest.code, message or "Invalid request payload"),
    )


async def handle_broad_exceptions(request: Request, call_next):
    """Last line of defense: log the traceback and answer with an IO_FAILURE envelope."""
    try:
        return await call_next(request)
    except Exception as exc:
        logger.exception(f"Unhandled error while serving {request.method} {request.url.path}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_envelope(IOFailure.code, str(exc) or "Internal server error"),
        )
