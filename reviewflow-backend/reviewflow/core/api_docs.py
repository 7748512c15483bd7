"""OpenAPI error response docs built from the error envelope and domain errors."""

from reviewflow.core import errors
from reviewflow.schemas.common import ErrorOut

# Codes produced by HTTPException and the framework handlers.
_HTTP_CODES: dict[int, tuple[str, str]] = {
    400: ("bad_request", "Bad request"),
    401: ("unauthorized", "Missing or invalid bearer token"),
    403: ("forbidden", "Role or signature check failed"),
    404: ("not_found", "Resource not found"),
    409: ("conflict", "Conflicting state for this resource"),
    422: ("validation_error", "Validation failed"),
    429: ("rate_limited", "Too many requests"),
    500: ("internal_error", "Internal server error"),
}


def _domain_errors() -> list[type[errors.ReviewFlowError]]:
    found = []
    pending = list(errors.ReviewFlowError.__subclasses__())
    while pending:
        cls = pending.pop(0)
        found.append(cls)
        pending.extend(cls.__subclasses__())
    return found


def _envelope(code: str, message: str) -> dict:
    return {
        "error": {
            "code": code,
            "message": message,
            "request_id": "3f1c9a0e-5d2b-4f4e-9b8a-0c7d6e5f4a3b",
            "path": "/review-requests",
            "details": None,
        }
    }


def _examples_for(status_code: int) -> dict[str, dict]:
    examples: dict[str, dict] = {}
    if status_code in _HTTP_CODES:
        code, message = _HTTP_CODES[status_code]
        examples[code] = {"summary": message, "value": _envelope(code, message)}
    for cls in _domain_errors():
        if cls.status_code == status_code and cls.code not in examples:
            message = (cls.__doc__ or cls.code).strip()
            examples[cls.code] = {"summary": message, "value": _envelope(cls.code, message)}
    if not examples:
        examples["http_error"] = {"summary": "HTTP error", "value": _envelope("http_error", "HTTP error")}
    return examples


def error_responses(*status_codes: int) -> dict[int, dict]:
    responses: dict[int, dict] = {}
    for status_code in status_codes:
        examples = _examples_for(status_code)
        responses[status_code] = {
            "model": ErrorOut,
            "description": " / ".join(examples),
            "content": {"application/json": {"examples": examples}},
        }
    return responses
