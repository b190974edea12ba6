from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)


class LedgerErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


def get_request_id(request: Request) -> str:
    # The middleware stores one id per request; errors raised before it ran mint their own.
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    return request_id


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    return {"data": data, "meta": ResponseMeta(request_id=get_request_id(request)).model_dump()}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    body = LedgerErrorBody(code=code, message=message, details=details)
    return {
        "error": body.model_dump(exclude_none=True),
        "meta": ResponseMeta(request_id=get_request_id(request)).model_dump(),
    }
