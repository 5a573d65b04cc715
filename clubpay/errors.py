"""Billing error taxonomy and structured error handlers.

Every error response includes a consistent envelope:
    {
        "code": "error_code",
        "message": "Human-readable message",
        "details": null | object,
        "request_id": "uuid"
    }
"""
from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class BillingError(Exception):
    status_code = 400
    code = "billing_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(BillingError):
    status_code = 404
    code = "not_found"


class InvalidTransitionError(BillingError):
    """Requested status change is not in the transition table.

    Callers must re-read the current status before retrying.
    """

    status_code = 409
    code = "invalid_transition"

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(
            f"Cannot transition from {current} to {requested}",
            {"current_status": current, "requested_status": requested},
        )
        self.current = current
        self.requested = requested


class ConflictError(BillingError):
    status_code = 409
    code = "conflict"


class ValidationError(BillingError):
    status_code = 400
    code = "validation_error"


class StateTokenError(ValidationError):
    code = "invalid_state_token"


class ProviderError(BillingError):
    """The remote payment processor rejected or failed a call."""

    status_code = 502
    code = "provider_error"

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        http_status: int | None = None,
        error_type: str | None = None,
        request_id: str | None = None,
    ) -> None:
        super().__init__(
            message,
            {
                "provider": provider,
                "http_status": http_status,
                "error_type": error_type,
                "provider_request_id": request_id,
            },
        )
        self.provider = provider
        self.http_status = http_status
        self.error_type = error_type
        self.request_id = request_id


class SignatureInvalidError(BillingError):
    status_code = 401
    code = "invalid_signature"


def _get_request_id(request: Request) -> str:
    """Extract request_id set by ObservabilityMiddleware."""
    return getattr(request.state, "request_id", "unknown")


def _error_payload(
    code: str, message: str, details: object, request_id: str
) -> dict:
    return {
        "code": code,
        "message": message,
        "details": details,
        "request_id": request_id,
    }


def register_error_handlers(app: object) -> None:
    @app.exception_handler(BillingError)  # type: ignore[arg-type]
    async def billing_error_handler(
        request: Request, exc: BillingError
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        if exc.status_code >= 500:
            logger.error(
                "%s on %s %s: %s",
                exc.code,
                request.method,
                request.url.path,
                exc.message,
                extra={"request_id": request_id},
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(exc.code, exc.message, exc.details, request_id),
        )

    @app.exception_handler(HTTPException)  # type: ignore[arg-type]
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        detail = exc.detail
        code = f"http_{exc.status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(code, message, details, request_id),
        )

    @app.exception_handler(RequestValidationError)  # type: ignore[arg-type]
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        logger.warning(
            "Validation error on %s %s: %s",
            request.method,
            request.url.path,
            exc.errors(),
            extra={"request_id": request_id},
        )
        return JSONResponse(
            status_code=422,
            content=_error_payload(
                "validation_error",
                "Validation error",
                _jsonable_errors(exc),
                request_id,
            ),
        )

    @app.exception_handler(Exception)  # type: ignore[arg-type]
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        logger.exception(
            "Unhandled exception on %s %s",
            request.method,
            request.url.path,
            extra={"request_id": request_id},
        )
        return JSONResponse(
            status_code=500,
            content=_error_payload(
                "internal_error",
                "Internal server error",
                None,
                request_id,
            ),
        )


def _jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    # pydantic puts the raw exception object under "ctx" for custom validators
    errors = []
    for error in exc.errors():
        item = dict(error)
        if "ctx" in item:
            item["ctx"] = {key: str(value) for key, value in item["ctx"].items()}
        errors.append(item)
    return errors
