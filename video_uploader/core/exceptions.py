from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger("video_uploader")


class UploadError(Exception):
    """Base error; ``message`` is safe to return to the caller."""

    status_code = 500

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(UploadError):
    status_code = 400


class PayloadTooLargeError(UploadError):
    status_code = 413


class AuthError(UploadError):
    status_code = 401


class ForbiddenError(AuthError):
    status_code = 403


class NotFoundError(UploadError):
    status_code = 404


class BackendError(UploadError):
    """The storage backend rejected a call. Never retried server-side."""

    status_code = 500


def error_response(message: str, status_code: int, *, detail: str | None = None, headers=None) -> JSONResponse:
    body: dict[str, Any] = {"error": message}
    if detail:
        body["detail"] = detail
    return JSONResponse(body, status_code=status_code, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(UploadError)
    async def upload_error_handler(request: Request, exc: UploadError):
        if exc.status_code >= 500:
            logger.error(
                "event=request_failed path=%s status=%s error=%s detail=%s",
                request.url.path,
                exc.status_code,
                exc.message,
                exc.detail,
            )
        else:
            logger.info(
                "event=request_rejected path=%s status=%s error=%s",
                request.url.path,
                exc.status_code,
                exc.message,
            )
        headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
        return error_response(exc.message, exc.status_code, detail=exc.detail, headers=headers)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 405:
            message = "Method not allowed"
        elif exc.status_code == 404 and exc.detail in (None, "", "Not Found"):
            message = "Not found"
        else:
            message = str(exc.detail)
        return error_response(message, exc.status_code, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
            message = f"Invalid {location}: {first.get('msg')}" if location else "Invalid request body"
        else:
            message = "Invalid request"
        return error_response(message, 400)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("event=unhandled_error path=%s", request.url.path)
        return error_response("Internal server error", 500)
