"""Error normalization and handlers.

Every error leaves the API as ``{"success": false, "error": <message>}`` plus a
machine-readable ``code`` and the correlating ``request_id``.
"""

import logging
import builtins
from typing import Optional
from uuid import uuid4

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request

from personachat.core.logging import get_request_id


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
    code = "unauthenticated"
    status_code = 401


class RateLimitError(AppError):
    code = "rate_limited"
    status_code = 429


class ValidationError(AppError, ValueError):
    code = "invalid_input"
    status_code = 400


class QuotaExceededError(AppError):
    code = "quota_exceeded"
    status_code = 403


class ProvidersUnavailableError(AppError):
    code = "providers_unavailable"
    status_code = 503


class InvalidAmountError(ValidationError):
    code = "invalid_amount"
    status_code = 400


class InvalidPaymentMethodError(ValidationError):
    code = "invalid_payment_method"
    status_code = 400


class SignatureInvalidError(AppError):
    code = "signature_invalid"
    status_code = 401


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class UnauthorizedError(AppError, builtins.PermissionError):
    """Caller is authenticated but does not own the resource."""
    code = "unauthorized"
    status_code = 403


class InvalidTokenError(AppError):
    code = "invalid_token"
    status_code = 400


class AlreadyActivatedError(AppError):
    code = "already_activated"
    status_code = 409


class TransactionConflictError(AppError):
    code = "transaction_conflict"
    status_code = 409


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "success": False,
        "error": message,
        "code": code,
        "request_id": request_id,
    }


def _error_response(status_code: int, code: str, message: str, rid: str, headers: Optional[dict] = None) -> JSONResponse:
    response = JSONResponse(status_code=status_code, content=_error_payload(code, message, rid), headers=headers)
    response.headers["x-request-id"] = rid
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    logger = logging.getLogger("personachat")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return _error_response(exc.status_code, exc.code, exc.message, rid)


_HTTP_CODES = {
    401: "unauthenticated",
    403: "unauthorized",
    404: "not_found",
    405: "method_not_allowed",
}


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    rid = _extract_request_id(request)
    code = _HTTP_CODES.get(exc.status_code, "http_error")
    if exc.status_code == 405:
        message = "Method not allowed"
    else:
        message = exc.detail if isinstance(exc.detail, str) and exc.detail else "HTTP error"
    logger = logging.getLogger("personachat")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return _error_response(exc.status_code, code, message, rid, headers=getattr(exc, "headers", None))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _extract_request_id(request)
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    else:
        message = "Invalid request"
    logger = logging.getLogger("personachat")
    logger.warning("request.invalid", extra={"request_id": rid, "error_code": ValidationError.code, "status": 400})
    return _error_response(400, ValidationError.code, message, rid)


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("personachat")
    logger.error("unhandled.exception", exc_info=exc, extra={"request_id": rid, "error_code": "internal_error"})
    return _error_response(500, "internal_error", "Internal server error", rid)
