import logging
import os

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from db import create_db_and_tables
from lifecycle import LifecycleError, NotificationFailure
from ratelimit import limiter, rate_limit_exceeded_handler
from routers import admin, auth, donations, requests

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="CareMatch")

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.on_event("startup")
def on_startup() -> None:
    create_db_and_tables()


# Every error leaves the API as {"ok": false, "message": ...}.


def error_response(status_code: int, message, headers=None) -> JSONResponse:
    return JSONResponse(
        {"ok": False, "message": message},
        status_code=status_code,
        headers=headers,
    )


@app.exception_handler(LifecycleError)
def lifecycle_error_handler(request: Request, exc: LifecycleError) -> JSONResponse:
    # Conflicts and bad transitions are normal outcomes; only 5xx is worth a warning.
    if exc.status_code >= 500 and not isinstance(exc, NotificationFailure):
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return error_response(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return error_response(exc.status_code, exc.detail, getattr(exc, "headers", None))


def validation_message(exc: RequestValidationError) -> str:
    """'Invalid <field>.' for the first bad field, e.g. 'Invalid amount.'"""
    for error in exc.errors():
        names = [part for part in error.get("loc", ()) if isinstance(part, str)]
        # loc starts with where the value came from: body, query, path...
        if len(names) > 1:
            return f"Invalid {names[1]}."
    return "Invalid input."


@app.exception_handler(RequestValidationError)
def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("%s %s rejected: %s", request.method, request.url.path, exc.errors())
    return error_response(422, validation_message(exc))


@app.get("/health")
def health():
    return {"ok": True, "service": "CareMatch"}


app.include_router(auth.router)
app.include_router(requests.router, prefix="/requests")
app.include_router(donations.router, prefix="/guest-donations")
app.include_router(admin.router, prefix="/admin")
