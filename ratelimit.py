"""
Per-client request limits (slowapi) for the auth endpoints.

All sign-up and sign-in calls from one address share one window; the
password reset endpoints get their own, tighter one.
"""

import logging
import os

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)

AUTH_RATE_LIMIT = os.getenv("AUTH_RATE_LIMIT", "20/15 minutes")
RESET_RATE_LIMIT = os.getenv("RESET_RATE_LIMIT", "8/15 minutes")
RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=os.getenv("RATE_LIMIT_STORAGE_URI", "memory://"),
    enabled=RATE_LIMIT_ENABLED,
)

auth_limit = limiter.shared_limit(AUTH_RATE_LIMIT, scope="auth")
reset_limit = limiter.shared_limit(RESET_RATE_LIMIT, scope="password-reset")


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning(
        "rate limit hit by %s on %s: %s",
        get_remote_address(request),
        request.url.path,
        exc.detail,
    )
    return JSONResponse(
        {"ok": False, "message": "Too many requests. Try again later."},
        status_code=429,
    )
