"""
Typed service errors and their HTTP mapping
"""
from typing import Any

import structlog
from fastapi import FastAPI
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = structlog.get_logger()


class ServiceError(Exception):
    """Base error raised by the service layer.

    Carries a stable dot-separated `code` for clients and the HTTP status
    the API surface should answer with.
    """

    status_code = 500
    default_code = "internal.error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.meta = dict(meta or {})

    def to_public_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.meta:
            payload["meta"] = self.meta
        return payload


class NotFoundError(ServiceError):
    status_code = 404
    default_code = "resource.not_found"


class PermissionDeniedError(ServiceError):
    status_code = 403
    default_code = "auth.forbidden"


class ConflictError(ServiceError):
    status_code = 409
    default_code = "resource.conflict"


class ValidationError(ServiceError, ValueError):
    status_code = 400
    default_code = "request.invalid"


class RateLimitError(ServiceError):
    status_code = 429
    default_code = "rate_limit.exceeded"

    def __init__(self, message: str, *, retry_after: int, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        self.meta.setdefault("retry_after", retry_after)


class PaymentError(ServiceError):
    """Stripe-side failure while moving money."""

    status_code = 502
    default_code = "payment.failed"

    def __init__(self, message: str, *, retryable: bool = False, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.retryable = retryable
        self.meta.setdefault("retryable", retryable)


class PayoutIneligibleError(PaymentError):
    status_code = 402
    default_code = "payout.ineligible"


def register_exception_handlers(app: FastAPI) -> None:
    """Register the service error handlers on a FastAPI app."""

    @app.exception_handler(ServiceError)
    async def _service_error_handler(request: Request, exc: ServiceError) -> Response:
        if exc.status_code >= 500:
            logger.error("service_error", code=exc.code, path=request.url.path, error=exc.message)
        headers = {}
        if isinstance(exc, RateLimitError):
            headers["Retry-After"] = str(exc.retry_after)
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_public_dict(),
            headers=headers,
        )
