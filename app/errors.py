from __future__ import annotations

import logging
import uuid

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.services.billing.runs import BillingRunNotFoundError
from app.services.billing_errors import (
    AccountNotFoundError,
    BillingError,
    BillingSelectionError,
    FailedJobNotFoundError,
    FailedJobStateError,
    InvalidTransition,
)

logger = logging.getLogger(__name__)

_BILLING_ERROR_STATUS: dict[type[BillingError], int] = {
    AccountNotFoundError: 404,
    FailedJobNotFoundError: 404,
    BillingRunNotFoundError: 404,
    InvalidTransition: 409,
    FailedJobStateError: 409,
    BillingSelectionError: 503,
}


def _error_payload(code: str, message: str, details: object, request_id: str | None):
    return {"code": code, "message": message, "details": details, "request_id": request_id}


def _request_id(request: Request) -> str:
    rid = getattr(request.state, "request_id", None)
    return str(rid) if rid else "unknown"


def billing_error_status(exc: BillingError) -> int:
    for error_cls in type(exc).__mro__:
        if error_cls in _BILLING_ERROR_STATUS:
            return _BILLING_ERROR_STATUS[error_cls]
    return 400


def register_error_handlers(app) -> None:
    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request.state.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        response = await call_next(request)
        response.headers["X-Request-ID"] = request.state.request_id
        return response

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError):
        status_code = billing_error_status(exc)
        details = None
        if isinstance(exc, InvalidTransition):
            details = {
                "from_status": getattr(exc.from_status, "value", exc.from_status),
                "to_status": getattr(exc.to_status, "value", exc.to_status),
            }
        if status_code >= 500:
            logger.error(f"Billing error on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status_code,
            content=_error_payload(exc.code, str(exc), details, _request_id(request)),
        )

    async def _handle_http_exception(request: Request, status_code: int, detail: object):
        code = f"http_{status_code}"
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
            status_code=status_code,
            content=_error_payload(code, message, details, _request_id(request)),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return await _handle_http_exception(request, exc.status_code, exc.detail)

    @app.exception_handler(StarletteHTTPException)
    async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail if getattr(exc, "detail", None) is not None else "Request failed"
        return await _handle_http_exception(request, exc.status_code, detail)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            error_copy = dict(error)
            error_copy.pop("ctx", None)
            if "input" in error_copy and not isinstance(
                error_copy["input"], (str, int, float, bool, type(None), dict, list)
            ):
                error_copy["input"] = str(error_copy["input"])
            errors.append(error_copy)
        return JSONResponse(
            status_code=422,
            content=_error_payload(
                "validation_error", "Validation error", errors, _request_id(request)
            ),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "Unhandled exception on %s %s",
            request.method,
            request.url.path,
            extra={"request_id": _request_id(request)},
        )
        return JSONResponse(
            status_code=500,
            content=_error_payload(
                "internal_error", "Internal server error", None, _request_id(request)
            ),
        )
