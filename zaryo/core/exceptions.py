from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED", status_code=status.HTTP_401_UNAUTHORIZED)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class ValidationError(AppError):
    """Malformed amounts or identifiers passed to a ledger operation."""

    def __init__(self, message: str = "Validation error", details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
        )


# Business rejections: expected outcomes, surfaced to the caller as-is.


class InsufficientFundsError(AppError):
    def __init__(self, message: str = "Insufficient tokens", details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code="INSUFFICIENT_FUNDS",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details=details,
        )


class NotPurchasableError(AppError):
    def __init__(self, message: str = "Item is not available for purchase"):
        super().__init__(message, code="NOT_PURCHASABLE", status_code=status.HTTP_409_CONFLICT)


class SelfPurchaseError(AppError):
    def __init__(self, message: str = "Cannot purchase your own content"):
        super().__init__(message, code="SELF_PURCHASE", status_code=status.HTTP_400_BAD_REQUEST)


class SettlementFailedError(AppError):
    """Settlement could not be applied atomically; nothing was persisted. Safe to retry with the same reference."""

    def __init__(self, message: str = "Settlement failed", details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code="SETTLEMENT_FAILED",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"retryable": True, **(details or {})},
        )


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body = {
        "error": {
            "message": exc.message,
            "code": exc.code,
            "details": exc.details,
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(status_code=exc.status_code, content=body)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    from zaryo.core.logging import get_logger
    log = get_logger(__name__)
    if exc.status_code >= 500:
        log.error("request_failed", code=exc.code, message=exc.message, path=request.url.path)
    else:
        log.info("request_rejected", code=exc.code, message=exc.message, path=request.url.path)
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "error": {
            "message": "Validation error",
            "code": "VALIDATION_ERROR",
            "details": {"errors": exc.errors()},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from zaryo.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    body = {
        "error": {
            "message": "Internal server error",
            "code": "INTERNAL_ERROR",
            "details": {},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body,
    )
