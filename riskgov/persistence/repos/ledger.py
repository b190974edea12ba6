from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from riskgov.domain.models import TransitionRecord
from riskgov.persistence.guards import tenant_predicate


async def list_transitions(
    session: AsyncSession,
    *,
    tenant_id: str,
    entity_id: str | None = None,
    field: str | None = None,
    transition_type: str | None = None,
    actor_id: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[TransitionRecord]:
    # Newest first; ids are monotonic so they break timestamp ties.
    stmt = select(TransitionRecord).where(tenant_predicate(TransitionRecord, tenant_id))
    if entity_id:
        stmt = stmt.where(TransitionRecord.entity_id == entity_id)
    if field:
        stmt = stmt.where(TransitionRecord.field == field)
    if transition_type:
        stmt = stmt.where(TransitionRecord.transition_type == transition_type)
    if actor_id:
        stmt = stmt.where(TransitionRecord.actor_id == actor_id)
    if occurred_from:
        stmt = stmt.where(TransitionRecord.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(TransitionRecord.occurred_at <= occurred_to)

    stmt = stmt.order_by(TransitionRecord.id.desc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_transition(
    session: AsyncSession,
    *,
    tenant_id: str,
    record_id: int,
) -> TransitionRecord | None:
    result = await session.execute(
        select(TransitionRecord).where(
            TransitionRecord.id == record_id,
            tenant_predicate(TransitionRecord, tenant_id),
        )
    )
    return result.scalar_one_or_none()


async def history_for_entity(
    session: AsyncSession,
    *,
    tenant_id: str,
    entity_id: str,
    field: str,
) -> list[TransitionRecord]:
    # Oldest first so callers can fold the chain forward.
    result = await session.execute(
        select(TransitionRecord)
        .where(
            tenant_predicate(TransitionRecord, tenant_id),
            TransitionRecord.entity_id == entity_id,
            TransitionRecord.field == field,
        )
        .order_by(TransitionRecord.id.asc())
    )
    return list(result.scalars().all())
