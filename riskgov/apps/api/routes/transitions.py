from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from riskgov.apps.api.deps import Principal, get_db, require_role, resolve_tenant_scope
from riskgov.apps.api.response import success_response
from riskgov.core.config import get_settings
from riskgov.persistence.repos import ledger as ledger_repo
from riskgov.services.transitions import ADMIN_MIN_ROLE


router = APIRouter(prefix="/transitions", tags=["transitions"])


class TransitionRecordResponse(BaseModel):
    id: int
    tenant_id: str
    entity_id: str
    field: str
    from_value: str | None
    to_value: str
    transition_type: str
    actor_id: str
    actor_role: str
    reason: str | None
    request_id: str | None
    occurred_at: str


class TransitionRecordsPage(BaseModel):
    items: list[TransitionRecordResponse]
    next_offset: int | None


def _to_response(record) -> TransitionRecordResponse:
    return TransitionRecordResponse(
        id=record.id,
        tenant_id=record.tenant_id,
        entity_id=record.entity_id,
        field=record.field,
        from_value=record.from_value,
        to_value=record.to_value,
        transition_type=record.transition_type,
        actor_id=record.actor_id,
        actor_role=record.actor_role,
        reason=record.reason,
        request_id=record.request_id,
        occurred_at=record.occurred_at.isoformat(),
    )


@router.get("")
async def list_transition_records(
    request: Request,
    tenant_id: str | None = None,
    entity_id: str | None = None,
    field: str | None = None,
    transition_type: str | None = None,
    actor_id: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1),
    principal: Principal = Depends(require_role(ADMIN_MIN_ROLE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    scoped_tenant_id = resolve_tenant_scope(principal, tenant_id)
    limit = min(limit, get_settings().ledger_max_page_size)
    try:
        records = await ledger_repo.list_transitions(
            db,
            tenant_id=scoped_tenant_id,
            entity_id=entity_id,
            field=field,
            transition_type=transition_type,
            actor_id=actor_id,
            occurred_from=occurred_from,
            occurred_to=occurred_to,
            offset=offset,
            limit=limit + 1,
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching transitions") from exc

    next_offset = None
    if len(records) > limit:
        records = records[:limit]
        next_offset = offset + limit

    page = TransitionRecordsPage(items=[_to_response(record) for record in records], next_offset=next_offset)
    return success_response(request=request, data=page.model_dump())


@router.get("/{record_id}")
async def get_transition_record(
    request: Request,
    record_id: int,
    tenant_id: str | None = None,
    principal: Principal = Depends(require_role(ADMIN_MIN_ROLE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    scoped_tenant_id = resolve_tenant_scope(principal, tenant_id)
    try:
        record = await ledger_repo.get_transition(db, tenant_id=scoped_tenant_id, record_id=record_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching transition") from exc
    if record is None:
        raise HTTPException(status_code=404, detail="Transition record not found")
    return success_response(request=request, data=_to_response(record).model_dump())
