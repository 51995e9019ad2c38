"""Per-client request limits for the credential endpoints (slowapi)."""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)

LOGIN_LIMIT = "5 per 15 minutes"
RESET_LIMIT = "5 per 30 minutes"

limiter = Limiter(key_func=get_remote_address)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning("Rate limit hit on %s from %s", request.url.path, get_remote_address(request))
    if request.url.path == "/login":
        message = "Too many login attempts. Please try again later."
    else:
        message = "Too many requests. Please try again later."
    return JSONResponse(status_code=429, content={"error": message})
