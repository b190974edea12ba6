from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from riskgov.apps.api.response import error_response
from riskgov.core.errors import (
    ConstraintViolation,
    EntityNotFound,
    GovernanceError,
    InvalidTransition,
    MissingReason,
    RecordNotFound,
    TenantMismatchError,
    TransitionError,
    Unauthorized,
)
from riskgov.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
}

# Most specific class first; lookups walk this list in order.
_GOVERNANCE_STATUS: tuple[tuple[type[GovernanceError], int], ...] = (
    (Unauthorized, 403),
    (TenantMismatchError, 403),
    (InvalidTransition, 409),
    (MissingReason, 422),
    (EntityNotFound, 404),
    (RecordNotFound, 404),
    (TransitionError, 400),
    (ConstraintViolation, 500),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def status_for_governance_error(exc: GovernanceError) -> int:
    for error_type, status_code in _GOVERNANCE_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from FastAPI HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: HTTPException | StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def governance_exception_handler(request: Request, exc: GovernanceError) -> JSONResponse:
    status_code = status_for_governance_error(exc)
    if status_code >= 500:
        logger.error("governance_error path=%s code=%s error=%s", request.url.path, exc.code, exc)
        payload = error_response(request=request, code=exc.code, message="Internal server error")
        return JSONResponse(content=payload, status_code=status_code)
    message = exc.message if isinstance(exc, TransitionError) else str(exc)
    details = exc.details if isinstance(exc, TransitionError) else None
    payload = error_response(request=request, code=exc.code, message=message, details=details or None)
    return JSONResponse(content=payload, status_code=status_code)


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    # A query reached the store without a tenant scope; never leak which one.
    logger.error("tenant_predicate_missing path=%s error=%s", request.url.path, exc.message)
    payload = error_response(request=request, code="TENANT_SCOPE_REQUIRED", message="Tenant scope required")
    return JSONResponse(content=payload, status_code=500)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_api_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
