"""
Error handling and sanitization

- BookstackError subclasses -> JSON {error, code, message, details} with a mapped status
- Unexpected exceptions -> logged with traceback, generic 500 to the client
- Messages that look like internals (SQL, paths, credentials) are sanitized unless DEBUG
"""
import logging
from typing import Dict, Type, Union

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from bookstack.core.exceptions import (
    BatchNotFoundError,
    BatchQueueingError,
    BookstackError,
    ManifestError,
    PersistenceError,
    RecordValidationError,
    UploadTooLargeError,
)

logger = logging.getLogger(__name__)

# Patterns that indicate internal/sensitive error information
SENSITIVE_PATTERNS = [
    "password",
    "secret",
    "token",
    "api_key",
    "credential",
    "sqlalchemy",
    "asyncpg",
    "postgresql",
    "sqlite",
    "traceback",
    "file \"",
    "/app/",
]

# Most specific class first
STATUS_CODES: Dict[Type[BookstackError], int] = {
    UploadTooLargeError: 413,
    ManifestError: 400,
    RecordValidationError: 400,
    BatchNotFoundError: 404,
    BatchQueueingError: 503,
    PersistenceError: 503,
}

GENERIC_MESSAGE = "An unexpected error occurred. Please try again later."


def is_sensitive_error(message: str) -> bool:
    message_lower = message.lower()
    return any(pattern in message_lower for pattern in SENSITIVE_PATTERNS)


def sanitize_error_message(error: Union[str, Exception], debug: bool = False) -> str:
    """
    Sanitize an error message for safe client exposure.

    In debug mode the full message is returned.
    """
    message = error if isinstance(error, str) else str(error)
    if debug:
        return message
    if is_sensitive_error(message):
        return "An internal error occurred. Please try again later."
    if len(message) > 200:
        return message[:200] + "..."
    return message


def status_code_for(error: BookstackError) -> int:
    for error_type, status_code in STATUS_CODES.items():
        if isinstance(error, error_type):
            return status_code
    return 500


def register_error_handlers(app: FastAPI, debug: bool = False) -> None:
    @app.exception_handler(BookstackError)
    async def bookstack_error_handler(request: Request, exc: BookstackError):
        status_code = status_code_for(exc)
        if status_code >= 500:
            logger.error(f"[API] {request.method} {request.url.path} -> {status_code}: {exc!r}")
        else:
            logger.info(f"[API] {request.method} {request.url.path} -> {status_code}: {exc.message}")
        return JSONResponse(
            status_code=status_code,
            content={
                "error": exc.__class__.__name__,
                "code": exc.code,
                "message": sanitize_error_message(exc.message, debug),
                "details": exc.details if status_code < 500 or debug else {
                    k: v for k, v in exc.details.items() if k == "batch_id"
                },
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"[API] Unhandled exception on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_error",
                "code": "INTERNAL_ERROR",
                "message": str(exc) if debug else GENERIC_MESSAGE,
                "details": {"type": type(exc).__name__} if debug else {},
            },
        )
