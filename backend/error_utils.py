import logging
from enum import Enum
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from typing import Optional, Dict

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    INTEGRITY = "INTEGRITY"
    RATE_LIMITED = "RATE_LIMITED"
    QUEUE_UNAVAILABLE = "QUEUE_UNAVAILABLE"
    EXTERNAL_SCORER_FAILURE = "EXTERNAL_SCORER_FAILURE"
    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    VALIDATION = "VALIDATION"


class GradingEngineError(Exception):
    """Base class for every failure the engine surfaces to its callers."""
    kind: ErrorKind = ErrorKind.VALIDATION
    status_code: int = 400

    def __init__(self, message: str = "", headers: Optional[Dict[str, str]] = None):
        super().__init__(message or self.kind.value)
        self.message = message or self.kind.value
        self.headers = headers or {}


class IntegrityError(GradingEngineError):
    """Bad nonce or request id. Never retried."""
    kind = ErrorKind.INTEGRITY
    status_code = 403


class RateLimitedError(GradingEngineError):
    kind = ErrorKind.RATE_LIMITED
    status_code = 429

    def __init__(self, message: str = "", retry_after: int = 0):
        super().__init__(message, headers={"Retry-After": str(retry_after)})
        self.retry_after = retry_after


class QueueUnavailableError(GradingEngineError):
    kind = ErrorKind.QUEUE_UNAVAILABLE
    status_code = 503


class ExternalScorerError(GradingEngineError):
    """The external grading model failed or timed out; the job is abandoned."""
    kind = ErrorKind.EXTERNAL_SCORER_FAILURE
    status_code = 502


class NotFoundError(GradingEngineError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class UnauthorizedError(GradingEngineError):
    kind = ErrorKind.UNAUTHORIZED
    status_code = 401


class ForbiddenError(UnauthorizedError):
    status_code = 403


class ValidationError(GradingEngineError):
    kind = ErrorKind.VALIDATION
    status_code = 400


async def grading_error_handler(request: Request, exc: GradingEngineError) -> JSONResponse:
    """Render engine errors as {"error": KIND, "message": ...}."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.kind.value, request.method, request.url.path, exc.message)
    else:
        logger.info("%s on %s %s: %s", exc.kind.value, request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.kind.value, "message": exc.message},
        headers=exc.headers or None,
    )


def safe_raise_http(user_message: str, exc: Optional[Exception] = None, status_code: int = 500) -> None:
    """
    Log the full exception server-side and raise a generic HTTPException for clients.

    - user_message: short, non-sensitive message returned to client
    - exc: optional exception instance; full details are logged with stack trace
    - status_code: HTTP status code to raise
    """
    if exc is not None:
        logger.exception("%s: %s", user_message, exc)
    else:
        logger.error(user_message)
    raise HTTPException(status_code=status_code, detail=user_message)


def safe_log(user_message: str, exc: Optional[Exception] = None) -> None:
    """
    Log exceptions safely on the server. Prefer logger.exception to capture stack traces.
    """
    if exc is not None:
        logger.exception("%s: %s", user_message, exc)
    else:
        logger.error(user_message)
