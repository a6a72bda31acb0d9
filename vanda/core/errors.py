"""Error normalization and handlers."""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from vanda.core.logging import get_request_id


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

    def payload_extra(self) -> Dict[str, Any]:
        """Additional fields exposed to API clients alongside code/message."""
        return {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotAuthenticatedError(AppError):
    """No caller identity. Recoverable by signing in."""
    code = "not_authenticated"
    status_code = 401

    def __init__(self, message: str = "Not authenticated", **kwargs):
        super().__init__(message, **kwargs)


class ForbiddenError(AppError):
    code = "forbidden"
    status_code = 403


class SubscriptionNotFoundError(AppError):
    """consume/upgrade called before ensure_subscription. Integration bug, not a user error."""
    code = "subscription_not_found"
    status_code = 500

    def __init__(self, user_id: str, **kwargs):
        super().__init__(
            f"No subscription found for user {user_id}. Call ensure_subscription first.",
            **kwargs,
        )
        self.user_id = user_id


class QuotaExceededError(AppError):
    code = "quota_exceeded"
    status_code = 403

    def __init__(self, message: Optional[str] = None, *, remaining: int = 0, requested: int = 1, **kwargs):
        if message is None:
            message = f"Insufficient quota. You have {remaining} prompts remaining."
        super().__init__(message, **kwargs)
        self.remaining = remaining
        self.requested = requested

    def payload_extra(self) -> Dict[str, Any]:
        return {"remaining": self.remaining, "requested": self.requested}


class InvalidPlanError(AppError, ValueError):
    code = "invalid_plan"
    status_code = 400

    def __init__(self, plan: str, **kwargs):
        super().__init__(f"Invalid plan: {plan}", **kwargs)
        self.plan = plan


class MeteredOperationError(AppError):
    """A metered collaborator failed after the quota check. No credit was used."""
    code = "metered_operation_failed"
    status_code = 502
    credit_used = False

    def payload_extra(self) -> Dict[str, Any]:
        return {"credit_used": self.credit_used}


class UsageTrackerError(AppError):
    code = "usage_tracker_error"
    status_code = 502


class WebhookSignatureError(AppError):
    code = "invalid_signature"
    status_code = 400


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, extra: Optional[Dict[str, Any]] = None) -> dict:
    error = {"code": code, "message": message, "request_id": request_id}
    if extra:
        error.update(extra)
    return {
        "error": error,
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.payload_extra())
    logger = logging.getLogger("vanda")
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
    logger = logging.getLogger("vanda")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("vanda")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
