"""Error taxonomy and normalized HTTP error handlers."""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from subsync.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class UnauthenticatedError(AppError):
    """Caller identity missing or invalid."""
    code = "unauthenticated"
    status_code = 401


class WebhookSignatureError(AppError):
    """Inbound webhook failed signature verification (or could not be read)."""
    code = "unauthorized"
    status_code = 400


class ValidationError(AppError, ValueError):
    code = "invalid_argument"
    status_code = 400


class FailedPreconditionError(AppError):
    """Valid request made in the wrong business state."""
    code = "failed_precondition"
    status_code = 409


class TransientError(AppError):
    """Retryable infrastructure failure (store or provider unreachable, timeouts)."""
    code = "temporarily_unavailable"
    status_code = 503


class ConflictError(TransientError):
    """Optimistic write kept losing to concurrent writers."""
    code = "conflict_retry_exhausted"


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid)
    logger = logging.getLogger("subsync")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    if isinstance(exc, TransientError):
        response.headers["retry-after"] = "5"
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("subsync")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("subsync")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _extract_request_id(request)
    fields = [".".join(str(p) for p in err.get("loc", ()) if p != "body") for err in exc.errors()]
    message = f"Invalid request: {', '.join(f for f in fields if f) or 'malformed body'}"
    payload = _error_payload(ValidationError.code, message, rid)
    logging.getLogger("subsync").warning(
        "request.invalid", extra={"request_id": rid, "error_code": ValidationError.code, "status": 400}
    )
    response = JSONResponse(status_code=400, content=payload)
    response.headers["x-request-id"] = rid
    return response
