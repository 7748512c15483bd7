"""Structured JSON logging, request ids and the API error envelope.

Every log line is a single JSON object carrying the id of the request (or
``-`` outside a request) so provider calls and webhook handling can be traced
back to the API call that caused them.
"""

import json
import logging
import time
import traceback
import uuid
from contextvars import ContextVar

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from reviewflow.core.config import settings
from reviewflow.core.errors import ReviewFlowError

REQUEST_ID_HEADER = "X-Request-ID"
NO_REQUEST = "-"

_current_request_id: ContextVar[str] = ContextVar("reviewflow_request_id", default=NO_REQUEST)
logger = logging.getLogger("reviewflow.api")

LOGGER_NAMES = (
    "reviewflow.api",
    "reviewflow.auth",
    "reviewflow.campaigns",
    "reviewflow.delivery",
    "reviewflow.dispatch",
    "reviewflow.feedback",
    "reviewflow.worker",
)

_ERROR_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
}


def setup_observability() -> None:
    """Attaches one stdout JSON handler to the reviewflow loggers; safe to call twice."""
    if logger.handlers:
        return
    stream = logging.StreamHandler()
    stream.setFormatter(logging.Formatter("%(message)s"))
    for name in LOGGER_NAMES:
        named = logging.getLogger(name)
        named.addHandler(stream)
        named.setLevel(logging.INFO)
        named.propagate = False


def get_request_id() -> str:
    return _current_request_id.get()


def log_event(target: logging.Logger, event: str, *, level: int = logging.INFO, **fields) -> None:
    target.log(level, json.dumps({"event": event, "request_id": get_request_id(), **fields}, default=str))


def mask_phone(value: str | None) -> str | None:
    if not value:
        return value
    visible = value[-4:] if len(value) > 4 else ""
    return "*" * (len(value) - len(visible)) + visible


def _request_id_for(request: Request) -> str:
    stored = getattr(request.state, "request_id", None)
    if stored:
        return stored
    return request.headers.get(REQUEST_ID_HEADER) or get_request_id()


def error_envelope(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    *,
    details: list[dict] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = {
        "error": {
            "code": code,
            "message": message,
            "request_id": _request_id_for(request),
            "path": request.url.path,
            "details": details,
        }
    }
    return JSONResponse(status_code=status_code, content=body, headers=headers)


async def request_logging_middleware(request: Request, call_next):
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    request.state.request_id = request_id
    reset_token = _current_request_id.set(request_id)
    started = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
    finally:
        log_event(
            logger,
            "request",
            method=request.method,
            path=request.url.path,
            status_code=status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        _current_request_id.reset(reset_token)

    response.headers[REQUEST_ID_HEADER] = request_id
    response.headers["X-API-Timeout-Hint-Ms"] = str(settings.api_timeout_hint_ms)
    return response


async def http_exception_handler(request: Request, exc: HTTPException):
    if isinstance(exc.detail, str):
        message, details = exc.detail, None
    else:
        message, details = "HTTP error", exc.detail
    return error_envelope(
        request,
        exc.status_code,
        _ERROR_CODES.get(exc.status_code, "http_error"),
        message,
        details=details,
        headers=exc.headers,
    )


async def domain_exception_handler(request: Request, exc: ReviewFlowError):
    log_event(logger, "domain_error", level=logging.WARNING, path=request.url.path, code=exc.code, error=exc.message)
    return error_envelope(request, exc.status_code, exc.code, exc.message)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    issues = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        issues.append({"field": field or "body", "message": err.get("msg", "Invalid value"), "type": err.get("type")})
    return error_envelope(request, 422, "validation_error", "Validation failed", details=issues)


async def unhandled_exception_handler(request: Request, exc: Exception):
    # Runs outside the logging middleware, so the id is passed explicitly.
    logger.error(
        json.dumps(
            {
                "event": "unhandled_exception",
                "request_id": _request_id_for(request),
                "path": request.url.path,
                "error": str(exc),
                "traceback": traceback.format_exc(limit=10),
            }
        )
    )
    return error_envelope(request, 500, "internal_error", "Internal server error")


def install_observability(app: FastAPI) -> None:
    setup_observability()
    app.middleware("http")(request_logging_middleware)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(ReviewFlowError, domain_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
