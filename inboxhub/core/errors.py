"""
Error taxonomy for InboxHub.

Services raise these; the handlers registered in ``inboxhub.main`` turn them
into ``{"success": false, "message": ...}`` responses. Anything else that
escapes a handler is logged and answered with a generic 500.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "An unexpected error occurred"


class InboxError(Exception):
    """Base class for errors that map to a client-visible status code."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = GENERIC_ERROR_MESSAGE
    expose = False

    def __init__(self, message: str = None, **extra):
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)


class Unauthorized(InboxError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Not authenticated"


class Forbidden(InboxError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Permission denied"


class NotFound(InboxError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


class ValidationError(InboxError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class Conflict(InboxError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Already exists"


class Expired(InboxError):
    status_code = status.HTTP_410_GONE
    default_message = "This link has expired"


class ChannelDisabled(Forbidden):
    default_message = "Channel is disabled"


class PlatformError(InboxError):
    """The messaging platform refused a call; its reason is shown to the client."""

    expose = True
    default_message = "Messaging platform error"


def error_response(status_code: int, message: str, **extra) -> JSONResponse:
    content = {"success": False, "message": message}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


async def inbox_error_handler(request: Request, exc: InboxError) -> JSONResponse:
    if exc.status_code >= 500 and not exc.expose:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return error_response(exc.status_code, GENERIC_ERROR_MESSAGE)
    return error_response(exc.status_code, exc.message, **exc.extra)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else GENERIC_ERROR_MESSAGE
    return error_response(exc.status_code, message)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg')}" if field else first.get("msg", message)
    return error_response(status.HTTP_400_BAD_REQUEST, message)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, GENERIC_ERROR_MESSAGE)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(InboxError, inbox_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
