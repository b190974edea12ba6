from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from riskgov.persistence.db import get_session
from riskgov.services.audit import record_event
from riskgov.services.transitions import ROLE_LEVELS, SUPER_TENANT_ROLE, role_level


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Identity asserted by the upstream gateway after authentication.
    actor_id: str
    tenant_id: str
    role: str

    @property
    def is_super_tenant(self) -> bool:
        return self.role == SUPER_TENANT_ROLE


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _forbidden_error(message: str) -> HTTPException:
    # Use 403 for authenticated principals lacking permissions.
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


async def get_current_principal(request: Request) -> Principal:
    # Authentication happens at the gateway; these headers are trusted as-is.
    tenant_id = request.headers.get("X-Tenant-Id")
    actor_id = request.headers.get("X-Actor-Id")
    if not tenant_id or not actor_id:
        raise _auth_error("X-Tenant-Id and X-Actor-Id headers are required")
    role = (request.headers.get("X-Role") or "viewer").strip().lower()
    if role not in ROLE_LEVELS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": f"Unsupported role: {role}"},
        )
    return Principal(actor_id=actor_id, tenant_id=tenant_id, role=role)


def require_role(minimum_role: str):
    # Dependency factory to enforce RBAC at the route level.
    async def _dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        if role_level(principal.role) < role_level(minimum_role):
            # Denials are recorded before the 403 so investigations can see probing.
            await record_event(
                db,
                tenant_id=principal.tenant_id,
                actor_type="user",
                actor_id=principal.actor_id,
                actor_role=principal.role,
                event_type="rbac.forbidden",
                outcome="failure",
                resource_type="ledger",
                request_id=getattr(request.state, "request_id", None),
                metadata={"path": request.url.path, "method": request.method, "required_role": minimum_role},
                error_code="AUTH_FORBIDDEN",
            )
            await db.commit()
            raise _forbidden_error("Insufficient role for this operation")
        return principal

    return _dependency


def resolve_tenant_scope(principal: Principal, requested_tenant_id: str | None) -> str:
    # Tenant admins see their own tenant; only the super-tenant operator may look elsewhere.
    if not requested_tenant_id or requested_tenant_id == principal.tenant_id:
        return principal.tenant_id
    if not principal.is_super_tenant:
        raise _forbidden_error("Tenant scope does not match caller")
    return requested_tenant_id
