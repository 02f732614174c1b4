"""Application error types and the handlers that render them as API envelopes."""

from __future__ import annotations

import logging
import traceback
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import get_settings

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """A failure that maps directly onto an error envelope."""

    status_code = status.HTTP_400_BAD_REQUEST
    error = "BAD_REQUEST"

    def __init__(self, message: str, error: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if error is not None:
            self.error = error
        if status_code is not None:
            self.status_code = status_code


class ValidationFailed(ApiError):
    error = "VALIDATION_ERROR"


class BusinessRuleViolation(ApiError):
    error = "BUSINESS_RULE_VIOLATION"


class NotAuthenticated(ApiError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error = "UNAUTHORIZED"


class PermissionDenied(ApiError):
    status_code = status.HTTP_403_FORBIDDEN
    error = "FORBIDDEN"


class NotFound(ApiError):
    status_code = status.HTTP_404_NOT_FOUND
    error = "NOT_FOUND"


class RateLimited(ApiError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error = "RATE_LIMITED"


class GatewayError(ApiError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error = "PAYSTACK_ERROR"


def envelope(message: str, data: Any = None, success: bool = True,
             error: Optional[str] = None, pagination: Optional[dict] = None) -> dict:
    """Build the standard response body, omitting keys that carry nothing."""
    body = {"success": success, "message": message}
    if data is not None:
        body["data"] = jsonable_encoder(data)
    if error is not None:
        body["error"] = error
    if pagination is not None:
        body["pagination"] = pagination
    return body


def paginate(page: int, limit: int, total: int) -> dict:
    return {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit if limit else 0}


def _field_message(err: dict) -> str:
    location = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
    field = ".".join(location)
    return f"{field}: {err.get('msg')}" if field else str(err.get("msg"))


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=envelope(exc.message, success=False, error=exc.error),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=envelope(str(exc.detail), success=False, error="HTTP_ERROR"),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    messages = [_field_message(err) for err in exc.errors()]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=envelope(", ".join(messages), data={"errors": messages}, success=False, error="VALIDATION_ERROR"),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    data = None
    if get_settings().is_development:
        data = {"stack": traceback.format_exception(type(exc), exc, exc.__traceback__)}
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=envelope("Something went wrong", data=data, success=False, error="INTERNAL_ERROR"),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
