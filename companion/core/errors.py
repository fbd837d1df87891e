"""Error taxonomy and FastAPI handlers.

Every error that reaches a caller carries a user-safe message; provider
payloads and stack traces only go to the log.
"""

import logging
import builtins
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from companion.core.logging import LOGGER_NAME, get_request_id


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


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class LimitReachedError(AppError):
    """A rate or resource cap was hit (daily messages, weekly images, companions)."""
    code = "limit_reached"
    status_code = 429

    def __init__(self, message: str, *, current_usage: Optional[int] = None, limit: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.current_usage = current_usage
        self.limit = limit


class InsufficientFundsError(AppError):
    """A ledger debit would take the balance below zero."""
    code = "insufficient_funds"
    status_code = 402

    def __init__(self, message: str, *, balance: int = 0, required: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.balance = balance
        self.required = required


class UpgradeRequiredError(AppError):
    code = "upgrade_required"
    status_code = 402


class BudgetExceededError(AppError):
    code = "budget_exceeded"
    status_code = 503


class PersistenceError(AppError):
    code = "persistence_error"
    status_code = 500


class ProviderError(AppError):
    code = "provider_error"
    status_code = 502


class QuotaExceededError(AppError):
    """Image provider reported the account's generation quota is spent."""
    code = "quota_exceeded"
    status_code = 402


class AccessDeniedError(AppError):
    """Image provider refused the request for this account (premium only)."""
    code = "access_denied"
    status_code = 403


class JobInProgressError(ConflictError):
    code = "job_in_progress"


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
    logger = logging.getLogger(LOGGER_NAME)
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger(LOGGER_NAME)
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger(LOGGER_NAME)
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
