"""Error taxonomy and the FastAPI handlers that render it."""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class MarketplaceError(Exception):
    status_code = 500
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        self.message = message or self.message


class ValidationFailed(MarketplaceError):
    status_code = 400
    message = "Invalid request"


class AuthenticationFailed(MarketplaceError):
    # Login and reset failures share 400 and deliberately vague text.
    status_code = 400
    message = "Invalid email or password"


class Unauthorized(MarketplaceError):
    status_code = 401
    message = "Could not validate credentials"


class Forbidden(MarketplaceError):
    status_code = 403
    message = "Insufficient permissions"


class NotFound(MarketplaceError):
    status_code = 404
    message = "Not found"


class Conflict(MarketplaceError):
    status_code = 409
    message = "Already exists"


class InfrastructureError(MarketplaceError):
    status_code = 500
    message = "Internal server error"


class DeliveryError(InfrastructureError):
    message = "Could not deliver message"


def error_body(message: str, **extra: Any) -> Dict[str, Any]:
    return {"success": False, "message": message, **extra}


def _describe(error: Dict[str, Any]) -> str:
    loc = [str(p) for p in error.get("loc", ()) if p not in ("body", "query", "path")]
    name = loc[-1] if loc else "request"
    if error.get("type") == "missing":
        return f"{name} is required"
    return f"{name}: {error.get('msg', 'invalid value')}"


async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.message), headers=headers)


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Framework-raised errors (missing bearer header, unknown route) share the envelope.
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = _describe(errors[0]) if errors else "Invalid request"
    return JSONResponse(status_code=400, content=error_body(message))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=error_body("Internal server error"))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(MarketplaceError, marketplace_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
