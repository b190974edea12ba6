from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Iterable
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from riskgov.core.config import RISK_SCALE_MAX
from riskgov.core.errors import ConstraintViolation, RecordNotFound, Unauthorized
from riskgov.domain.context import ActorContext
from riskgov.domain.models import CONTROL_TARGETS, RISK_STATUSES, Control, Risk, RiskControlLink, Tenant
from riskgov.persistence.guards import ensure_tenant_owns, tenant_predicate
from riskgov.services import residual as residual_service
from riskgov.services.audit import record_event
from riskgov.services.sequences import ENTITY_CLASS_CONTROL, allocate_code, risk_scope_prefix
from riskgov.services.transitions import role_level


logger = logging.getLogger(__name__)

# Viewers read the register; everyone from "user" upward may edit it.
REGISTER_WRITE_MIN_ROLE = "user"

_SCORE_FIELDS = ("design_score", "implementation_score", "monitoring_score", "evaluation_score")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _require_writer(actor: ActorContext) -> None:
    if not actor.authenticated:
        raise Unauthorized("Not authenticated", details={"reason": "AUTH_REQUIRED"})
    if role_level(actor.role) < role_level(REGISTER_WRITE_MIN_ROLE):
        raise Unauthorized(
            "Role cannot modify the risk register",
            details={"your_role": actor.role, "required_role": REGISTER_WRITE_MIN_ROLE},
        )


def _validate_inherent(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= RISK_SCALE_MAX:
        raise ValueError(f"{name} must be an integer between 1 and {RISK_SCALE_MAX}")


def _validate_target(target: str) -> str:
    normalized = target.strip().lower()
    if normalized not in CONTROL_TARGETS:
        raise ValueError(f"Unsupported control target: {target}")
    return normalized


async def _audit(
    session: AsyncSession,
    actor: ActorContext,
    *,
    event_type: str,
    resource_type: str,
    resource_id: str,
    metadata: dict[str, Any] | None = None,
) -> None:
    await record_event(
        session,
        tenant_id=actor.tenant_id,
        actor_type=actor.actor_type,
        actor_id=actor.actor_id,
        actor_role=actor.role,
        event_type=event_type,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=actor.request_id,
        metadata=metadata,
    )


async def ensure_tenant(session: AsyncSession, tenant_id: str, *, name: str | None = None) -> Tenant:
    tenant = await session.get(Tenant, tenant_id)
    if tenant is not None:
        return tenant
    tenant = Tenant(id=tenant_id, name=name or tenant_id)
    session.add(tenant)
    await session.flush()
    return tenant


async def get_risk(session: AsyncSession, *, tenant_id: str, risk_id: str) -> Risk:
    result = await session.execute(select(Risk).where(Risk.id == risk_id, tenant_predicate(Risk, tenant_id)))
    risk = result.scalar_one_or_none()
    if risk is None:
        raise RecordNotFound(f"Risk {risk_id} not found")
    return risk


async def get_control(
    session: AsyncSession,
    *,
    tenant_id: str,
    control_id: str,
    include_deleted: bool = False,
) -> Control:
    stmt = select(Control).where(Control.id == control_id, tenant_predicate(Control, tenant_id))
    if not include_deleted:
        stmt = stmt.where(Control.deleted_at.is_(None))
    control = (await session.execute(stmt)).scalar_one_or_none()
    if control is None:
        raise RecordNotFound(f"Control {control_id} not found")
    return control


async def list_controls_for_risk(
    session: AsyncSession,
    *,
    tenant_id: str,
    risk_id: str,
    include_deleted: bool = False,
) -> list[Control]:
    stmt = (
        select(Control)
        .join(RiskControlLink, RiskControlLink.control_id == Control.id)
        .where(RiskControlLink.risk_id == risk_id, tenant_predicate(Control, tenant_id))
        .order_by(Control.code)
    )
    if not include_deleted:
        stmt = stmt.where(Control.deleted_at.is_(None))
    return list((await session.execute(stmt)).scalars().all())


async def linked_risk_ids(session: AsyncSession, *, tenant_id: str, control_id: str) -> list[str]:
    result = await session.execute(
        select(RiskControlLink.risk_id).where(
            RiskControlLink.control_id == control_id,
            tenant_predicate(RiskControlLink, tenant_id),
        )
    )
    return sorted(result.scalars().all())


async def create_risk(
    session: AsyncSession,
    actor: ActorContext,
    *,
    title: str,
    inherent_likelihood: int,
    inherent_impact: int,
    division: str | None = None,
    category: str | None = None,
) -> Risk:
    """Create a risk with a DIV-CAT code; residual starts equal to inherent."""
    _require_writer(actor)
    _validate_inherent("inherent_likelihood", inherent_likelihood)
    _validate_inherent("inherent_impact", inherent_impact)
    allocated = await allocate_code(
        session,
        tenant_id=actor.tenant_id,
        entity_class="RISK",
        scope=risk_scope_prefix(division, category),
    )
    risk = Risk(
        id=uuid4().hex,
        tenant_id=actor.tenant_id,
        code=allocated.code,
        title=title,
        division=division,
        category=category,
        status="open",
        inherent_likelihood=inherent_likelihood,
        inherent_impact=inherent_impact,
        residual_likelihood=inherent_likelihood,
        residual_impact=inherent_impact,
        residual_score=inherent_likelihood * inherent_impact,
        inputs_version=0,
    )
    session.add(risk)
    await session.flush()
    await residual_service.recompute_risk(session, tenant_id=actor.tenant_id, risk_id=risk.id)
    await _audit(
        session,
        actor,
        event_type="risk.created",
        resource_type="risk",
        resource_id=risk.id,
        metadata={"code": risk.code, "fallback_code": allocated.fallback},
    )
    return risk


async def update_risk_inherent(
    session: AsyncSession,
    actor: ActorContext,
    *,
    risk_id: str,
    inherent_likelihood: int | None = None,
    inherent_impact: int | None = None,
) -> Risk:
    _require_writer(actor)
    risk = await residual_service.load_risk_for_update(session, tenant_id=actor.tenant_id, risk_id=risk_id)
    before = {"likelihood": risk.inherent_likelihood, "impact": risk.inherent_impact}
    if inherent_likelihood is not None:
        _validate_inherent("inherent_likelihood", inherent_likelihood)
        risk.inherent_likelihood = inherent_likelihood
    if inherent_impact is not None:
        _validate_inherent("inherent_impact", inherent_impact)
        risk.inherent_impact = inherent_impact
    # Clamp so the row satisfies its bounds until the recompute below rewrites it.
    risk.residual_likelihood = min(risk.residual_likelihood, risk.inherent_likelihood)
    risk.residual_impact = min(risk.residual_impact, risk.inherent_impact)
    risk.residual_score = risk.residual_likelihood * risk.residual_impact
    await session.flush()
    await residual_service.refresh_risks(session, tenant_id=actor.tenant_id, risk_ids=[risk.id])
    await _audit(
        session,
        actor,
        event_type="risk.inherent.updated",
        resource_type="risk",
        resource_id=risk.id,
        metadata={
            "before": before,
            "after": {"likelihood": risk.inherent_likelihood, "impact": risk.inherent_impact},
        },
    )
    return risk


async def set_risk_status(session: AsyncSession, actor: ActorContext, *, risk_id: str, status: str) -> Risk:
    # Risks are retired by status, never deleted.
    _require_writer(actor)
    normalized = status.strip().lower()
    if normalized not in RISK_STATUSES:
        raise ValueError(f"Unsupported risk status: {status}")
    risk = await get_risk(session, tenant_id=actor.tenant_id, risk_id=risk_id)
    previous = risk.status
    risk.status = normalized
    await session.flush()
    await _audit(
        session,
        actor,
        event_type="risk.status.updated",
        resource_type="risk",
        resource_id=risk.id,
        metadata={"from": previous, "to": normalized},
    )
    return risk


async def create_control(
    session: AsyncSession,
    actor: ActorContext,
    *,
    title: str,
    target: str,
    design_score: int | None = None,
    implementation_score: int | None = None,
    monitoring_score: int | None = None,
    evaluation_score: int | None = None,
    risk_ids: Iterable[str] = (),
) -> Control:
    _require_writer(actor)
    resolved_target = _validate_target(target)
    scores = {
        "design_score": design_score,
        "implementation_score": implementation_score,
        "monitoring_score": monitoring_score,
        "evaluation_score": evaluation_score,
    }
    for name, value in scores.items():
        residual_service.validate_sub_score(name, value)
    allocated = await allocate_code(session, tenant_id=actor.tenant_id, entity_class=ENTITY_CLASS_CONTROL)
    control = Control(
        id=uuid4().hex,
        tenant_id=actor.tenant_id,
        code=allocated.code,
        title=title,
        target=resolved_target,
        **scores,
    )
    session.add(control)
    await session.flush()
    targets = sorted(set(risk_ids))
    for risk_id in targets:
        await get_risk(session, tenant_id=actor.tenant_id, risk_id=risk_id)
        session.add(RiskControlLink(risk_id=risk_id, control_id=control.id, tenant_id=actor.tenant_id))
    await session.flush()
    await residual_service.refresh_risks(session, tenant_id=actor.tenant_id, risk_ids=targets)
    await _audit(
        session,
        actor,
        event_type="control.created",
        resource_type="control",
        resource_id=control.id,
        metadata={"code": control.code, "risk_ids": targets, "fallback_code": allocated.fallback},
    )
    return control


async def update_control(
    session: AsyncSession,
    actor: ActorContext,
    *,
    control_id: str,
    changes: dict[str, Any],
) -> Control:
    """Apply score/target/title changes and recompute every linked risk."""
    _require_writer(actor)
    allowed = {"title", "target", *_SCORE_FIELDS}
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Unsupported control fields: {', '.join(sorted(unknown))}")
    control = await get_control(session, tenant_id=actor.tenant_id, control_id=control_id)
    for name, value in changes.items():
        if name in _SCORE_FIELDS:
            residual_service.validate_sub_score(name, value)
        elif name == "target":
            value = _validate_target(value)
        setattr(control, name, value)
    await session.flush()
    risks = await linked_risk_ids(session, tenant_id=actor.tenant_id, control_id=control.id)
    await residual_service.refresh_risks(session, tenant_id=actor.tenant_id, risk_ids=risks)
    await _audit(
        session,
        actor,
        event_type="control.updated",
        resource_type="control",
        resource_id=control.id,
        metadata={"fields": sorted(changes), "risk_ids": risks},
    )
    return control


async def link_control(session: AsyncSession, actor: ActorContext, *, risk_id: str, control_id: str) -> None:
    _require_writer(actor)
    risk = await get_risk(session, tenant_id=actor.tenant_id, risk_id=risk_id)
    control = await get_control(session, tenant_id=actor.tenant_id, control_id=control_id)
    ensure_tenant_owns(control, risk.tenant_id)
    existing = await session.get(RiskControlLink, (risk_id, control_id))
    if existing is not None:
        return
    session.add(RiskControlLink(risk_id=risk_id, control_id=control_id, tenant_id=actor.tenant_id))
    await session.flush()
    await residual_service.refresh_risks(session, tenant_id=actor.tenant_id, risk_ids=[risk_id])
    await _audit(
        session,
        actor,
        event_type="control.linked",
        resource_type="control",
        resource_id=control_id,
        metadata={"risk_id": risk_id},
    )


async def unlink_control(session: AsyncSession, actor: ActorContext, *, risk_id: str, control_id: str) -> None:
    _require_writer(actor)
    await get_risk(session, tenant_id=actor.tenant_id, risk_id=risk_id)
    result = await session.execute(
        delete(RiskControlLink).where(
            RiskControlLink.risk_id == risk_id,
            RiskControlLink.control_id == control_id,
            tenant_predicate(RiskControlLink, actor.tenant_id),
        )
    )
    if result.rowcount == 0:
        return
    await residual_service.refresh_risks(session, tenant_id=actor.tenant_id, risk_ids=[risk_id])
    await _audit(
        session,
        actor,
        event_type="control.unlinked",
        resource_type="control",
        resource_id=control_id,
        metadata={"risk_id": risk_id},
    )


async def soft_delete_control(session: AsyncSession, actor: ActorContext, *, control_id: str) -> Control:
    # Tombstone only; the row, its code and its links survive for audit.
    _require_writer(actor)
    control = await get_control(session, tenant_id=actor.tenant_id, control_id=control_id)
    control.deleted_at = _utc_now()
    await session.flush()
    risks = await linked_risk_ids(session, tenant_id=actor.tenant_id, control_id=control.id)
    await residual_service.refresh_risks(session, tenant_id=actor.tenant_id, risk_ids=risks)
    await _audit(
        session,
        actor,
        event_type="control.deleted",
        resource_type="control",
        resource_id=control.id,
        metadata={"code": control.code, "risk_ids": risks, "mode": "tombstone"},
    )
    return control


async def restore_control(session: AsyncSession, actor: ActorContext, *, control_id: str) -> Control:
    _require_writer(actor)
    control = await get_control(session, tenant_id=actor.tenant_id, control_id=control_id, include_deleted=True)
    if control.deleted_at is None:
        return control
    control.deleted_at = None
    await session.flush()
    risks = await linked_risk_ids(session, tenant_id=actor.tenant_id, control_id=control.id)
    await residual_service.refresh_risks(session, tenant_id=actor.tenant_id, risk_ids=risks)
    await _audit(
        session,
        actor,
        event_type="control.restored",
        resource_type="control",
        resource_id=control.id,
        metadata={"risk_ids": risks},
    )
    return control


async def purge_control(session: AsyncSession, actor: ActorContext, *, control_id: str) -> list[str]:
    """Physically remove a tombstoned control and recompute the risks it touched.

    The control's code reservation is kept, so the code is never reissued.
    """
    _require_writer(actor)
    control = await get_control(session, tenant_id=actor.tenant_id, control_id=control_id, include_deleted=True)
    if control.deleted_at is None:
        raise ConstraintViolation(f"Control {control.code} must be tombstoned before it is purged")
    risks = await linked_risk_ids(session, tenant_id=actor.tenant_id, control_id=control.id)
    await session.execute(
        delete(RiskControlLink).where(
            RiskControlLink.control_id == control.id,
            tenant_predicate(RiskControlLink, actor.tenant_id),
        )
    )
    code = control.code
    await session.delete(control)
    await session.flush()
    await residual_service.refresh_risks(session, tenant_id=actor.tenant_id, risk_ids=risks)
    await _audit(
        session,
        actor,
        event_type="control.purged",
        resource_type="control",
        resource_id=control_id,
        metadata={"code": code, "risk_ids": risks},
    )
    logger.info("control_purged tenant_id=%s control_id=%s risks=%s", actor.tenant_id, control_id, len(risks))
    return risks
